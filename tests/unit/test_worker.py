"""Tests for the queue worker."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from eval_jobs.errors import RetryableWorkerError, StoreError
from eval_jobs.jobs.datasource import BATCH_PHASES
from eval_jobs.messaging.queue import MAX_DELIVERY_COUNT_EXCEEDED, LeaseLostError
from eval_jobs.metrics import MESSAGES_RETRIED
from eval_jobs.models.enums import JobMessageType, JobStatus
from eval_jobs.models.evaluation import EvaluationResult, ItemScore, JobResults
from eval_jobs.models.messages import JobCreatedPayload, JobMessage


class StaticScorer:
    """Scores every item 0.9 and counts calls."""

    def __init__(self, score: float = 0.9):
        self.score_value = score
        self.calls = []

    @property
    def name(self) -> str:
        return "static"

    async def score(self, item, configuration):
        self.calls.append(item.item_id)
        return ItemScore(
            actual_response=f"answer to {item.prompt}", similarity_score=self.score_value
        )


class AlwaysThrottledScorer(StaticScorer):
    async def score(self, item, configuration):
        self.calls.append(item.item_id)
        raise RetryableWorkerError("429 Too Many Requests")


class CancellingScorer(StaticScorer):
    """Cancels the job while scoring the second item."""

    def __init__(self, query, job_id: str):
        super().__init__()
        self._query = query
        self._job_id = job_id

    async def score(self, item, configuration):
        if len(self.calls) == 1:
            await self._query.cancel_job(self._job_id, reason="operator request")
        return await super().score(item, configuration)


class CancelWhileThrottledScorer(StaticScorer):
    """Always throttled; cancels the job during call number ``cancel_on``."""

    def __init__(self, query, job_id: str, cancel_on: int = 1):
        super().__init__()
        self._query = query
        self._job_id = job_id
        self._cancel_on = cancel_on

    async def score(self, item, configuration):
        self.calls.append(item.item_id)
        if len(self.calls) == self._cancel_on:
            await self._query.cancel_job(self._job_id, reason="operator request")
        raise RetryableWorkerError("503 Service Unavailable")


class SlowScorer(StaticScorer):
    """Takes ``delay`` seconds per item and records which calls returned."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.finished = []

    async def score(self, item, configuration):
        self.calls.append(item.item_id)
        await asyncio.sleep(self.delay)
        self.finished.append(item.item_id)
        return ItemScore(actual_response="slow answer", similarity_score=self.score_value)


class GatedScorer(StaticScorer):
    """Blocks every call until ``release`` is set and tracks concurrent calls."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.active = 0
        self.peak = 0

    async def score(self, item, configuration):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return await super().score(item, configuration)


async def eventually(check, timeout: float = 5.0) -> None:
    """Poll the async ``check`` until it returns True."""
    deadline = time.monotonic() + timeout
    while not await check():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


async def drain(worker) -> int:
    handled = 0
    while await worker.process_one():
        handled += 1
    return handled


class TestJobCompletion:
    """Tests for jobs that run to completion."""

    @pytest.mark.asyncio
    async def test_three_items_complete(self, services, make_worker, make_request):
        """A 3-item job completes with 100% progress and a results reference."""
        scorer = StaticScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(3))

        assert await worker.process_one() is True

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.progress.completed_items == 3
        assert job.progress.total_items == 3
        assert job.progress.percentage == 100.0
        assert job.result_reference is not None
        assert job.result_reference.object_name == f"{job.id}/results.json"
        assert job.results.summary.total_evaluations == 3
        assert job.results.summary.passed_evaluations == 3
        assert job.results.summary.average_score == 0.9
        assert scorer.calls == ["item_1", "item_2", "item_3"]

        stored = await services.object_store.get_bytes(job.result_reference)
        assert JobResults.model_validate_json(stored) == job.results

    @pytest.mark.asyncio
    async def test_lifecycle_messages_are_drained(self, services, make_worker, make_request):
        worker = make_worker(StaticScorer())
        await services.producer.submit_job(make_request(2))

        # JobCreated, then JobStarted, two JobProgress and JobCompleted
        assert await drain(worker) == 5
        assert await services.queue.depth() == 0
        assert await services.queue.dead_letter_count() == 0

    @pytest.mark.asyncio
    async def test_threshold_from_criteria(self, services, make_worker, make_request):
        worker = make_worker(StaticScorer(score=0.5))
        request = make_request(2)
        request["configuration"]["evaluation_criteria"] = {"similarity_threshold": 0.4}
        receipt = await services.producer.submit_job(request)
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.results.summary.passed_evaluations == 2
        assert job.results.summary.pass_rate == 100.0

    @pytest.mark.asyncio
    async def test_items_below_default_threshold_fail(self, services, make_worker, make_request):
        worker = make_worker(StaticScorer(score=0.5))
        receipt = await services.producer.submit_job(make_request(2))
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.results.summary.failed_evaluations == 2
        assert job.results.summary.pass_rate == 0.0
        assert all(not r.passed for r in job.results.detailed_results)

    @pytest.mark.asyncio
    async def test_large_results_are_only_referenced(
        self, services, make_worker, make_request, config
    ):
        """Results above the inline limit are kept in the object store only."""
        config.limits.max_inline_result_bytes = 10
        worker = make_worker(StaticScorer())
        receipt = await services.producer.submit_job(make_request(3))
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.results is None
        results = await services.query.get_results(job.id)
        assert results.summary.total_evaluations == 3

    @pytest.mark.asyncio
    async def test_batch_processing_runs_phases(self, services, make_worker):
        phases = []

        async def record_phase(job, phase, configuration):
            phases.append(phase)

        worker = make_worker(StaticScorer(), phase_runner=record_phase)
        receipt = await services.producer.submit_job(
            {"name": "Reindex", "type": "batch_processing", "configuration": {}}
        )
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert phases == BATCH_PHASES
        assert job.status == JobStatus.COMPLETED
        assert job.progress.completed_items == len(BATCH_PHASES)
        assert job.results.summary.total_evaluations == 0

    @pytest.mark.asyncio
    async def test_run_once(self, services, make_worker, make_request):
        """The run loop processes one message and exits."""
        worker = make_worker(StaticScorer())
        receipt = await services.producer.submit_job(make_request(1))

        await asyncio.wait_for(worker.run(once=True), timeout=10)

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED


class TestJobFailure:
    """Tests for failure paths."""

    @pytest.mark.asyncio
    async def test_retry_exhaustion_fails_and_dead_letters(
        self, services, make_worker, make_request, metrics
    ):
        """An always-retryable scorer fails the job and dead-letters the message."""
        scorer = AlwaysThrottledScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(3))

        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.FAILED
        assert job.completed_at is not None
        assert job.error_details.error_code == "RETRY_EXHAUSTED"
        assert job.error_details.retry_possible is True
        assert job.error_details.details["attempts"] == 3
        assert len(scorer.calls) == 3
        assert metrics.counters[MESSAGES_RETRIED] == 2

        dead = await services.queue.list_dead_letters()
        assert len(dead) == 1
        assert dead[0].job_id == job.id
        assert dead[0].reason == "RETRY_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_missing_actual_response_fails_without_retry(self, services, make_worker):
        worker = make_worker()
        receipt = await services.producer.submit_job(
            {
                "name": "No answers",
                "type": "single_evaluation",
                "configuration": {"items": [{"prompt": "Hi", "expected_response": "Hello"}]},
            }
        )
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_details.error_code == "EXECUTION_FAILED"
        assert await services.queue.dead_letter_count() == 0

    @pytest.mark.asyncio
    async def test_unreadable_data_source_fails(self, services, make_worker, tmp_path):
        worker = make_worker(StaticScorer())
        receipt = await services.producer.submit_job(
            {
                "name": "Missing file",
                "type": "bulk_evaluation",
                "configuration": {"data_source": str(tmp_path / "missing.jsonl")},
            }
        )
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_details.error_code == "DATA_SOURCE_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_data_source_outside_root_is_refused(
        self, services, make_worker, config, tmp_path
    ):
        config.worker.data_root = tmp_path / "datasets"
        config.worker.data_root.mkdir()
        outside = tmp_path / "outside-root.jsonl"
        outside.write_text('{"prompt": "secret", "expected_response": "x"}\n')
        scorer = StaticScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(
            {
                "name": "Escape",
                "type": "bulk_evaluation",
                "configuration": {"data_source": "../outside-root.jsonl"},
            }
        )
        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_details.error_code == "DATA_SOURCE_UNAVAILABLE"
        assert "outside the allowed data root" in job.error_details.error_message
        assert scorer.calls == []

    @pytest.mark.asyncio
    async def test_infrastructure_errors_abandon_then_exhaust(
        self, services, make_worker, make_request, monkeypatch
    ):
        """Store failures are redelivered, then the job fails after the last delivery."""
        worker = make_worker(StaticScorer())
        failing = AsyncMock(side_effect=StoreError("disk I/O error"))
        monkeypatch.setattr(worker, "_execute", failing)
        receipt = await services.producer.submit_job(make_request(1))

        for _ in range(2):
            await worker.process_one()
            job = await services.store.get_job(receipt.job_id)
            assert job.status == JobStatus.RUNNING
            assert await services.queue.dead_letter_count() == 0

        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_details.error_code == "DELIVERY_EXHAUSTED"
        dead = await services.queue.list_dead_letters()
        assert [entry.reason for entry in dead] == ["DELIVERY_EXHAUSTED"]
        assert dead[0].delivery_count == 3


class TestCancellation:
    """Tests for cancellation while a job runs."""

    @pytest.mark.asyncio
    async def test_cancel_mid_run_freezes_progress(self, services, make_worker, make_request):
        receipt = await services.producer.submit_job(make_request(3))
        scorer = CancellingScorer(services.query, receipt.job_id)
        worker = make_worker(scorer)

        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert job.progress.completed_items == 1
        assert job.result_reference is None
        # The third item is never scored
        assert scorer.calls == ["item_1", "item_2"]

        # Remaining lifecycle messages, including JobCancelled, are acknowledged
        await drain(worker)
        assert await services.queue.depth() == 0
        assert await services.queue.dead_letter_count() == 0
        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.progress.completed_items == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_start_is_dropped(self, services, make_worker, make_request):
        scorer = StaticScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(2))
        await services.query.cancel_job(receipt.job_id)

        await drain(worker)

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.CANCELLED
        assert scorer.calls == []


class TestRedelivery:
    """Tests for duplicate and redelivered messages."""

    @pytest.mark.asyncio
    async def test_duplicate_created_after_completion(self, services, make_worker, make_request):
        scorer = StaticScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(3))
        job = await services.store.get_job(receipt.job_id)
        await services.producer.enqueue_created(job)

        await drain(worker)

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED
        assert len(scorer.calls) == 3
        assert await services.queue.depth() == 0

    @pytest.mark.asyncio
    async def test_duplicate_while_running_elsewhere(self, services, make_worker, make_request):
        """A JobCreated for a job started by another message is dropped."""
        scorer = StaticScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(2))
        await services.store.transition(
            receipt.job_id, JobStatus.RUNNING, message_id="another-message"
        )

        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.RUNNING
        assert scorer.calls == []
        assert await services.queue.depth() == 0

    @pytest.mark.asyncio
    async def test_redelivery_resumes_from_checkpoint(self, services, make_worker, make_request):
        scorer = StaticScorer()
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(3))

        # Simulate a worker that started the job and scored one item before dying
        received = await services.queue.receive()
        message = received.decode()
        await services.store.transition(
            receipt.job_id, JobStatus.RUNNING, message_id=message.message_id
        )
        checkpoint = EvaluationResult(
            item_id="item_1",
            prompt="What is 1 + 1?",
            expected_response="The answer is 2.",
            actual_response="The answer is 2.",
            similarity_score=1.0,
            passed=True,
        )
        await services.store.save_item_result(receipt.job_id, 0, checkpoint)

        await worker.handle(received)

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED
        assert scorer.calls == ["item_2", "item_3"]
        assert job.results.detailed_results[0] == checkpoint
        assert job.results.summary.total_evaluations == 3

    @pytest.mark.asyncio
    async def test_undecodable_message_is_dead_lettered(self, services, make_worker, make_request):
        worker = make_worker(StaticScorer())
        receipt = await services.producer.submit_job(make_request(1))

        received = await services.queue.receive()
        received.body = "{not json"
        await worker.handle(received)

        dead = await services.queue.list_dead_letters()
        assert len(dead) == 1
        assert dead[0].reason == "DESERIALIZATION_FAILED"
        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_message_for_unknown_job_is_dead_lettered(self, services, make_worker):
        worker = make_worker(StaticScorer())
        await services.queue.send(
            JobMessage.create(
                "job_doesNotExist",
                JobMessageType.JOB_CREATED,
                JobCreatedPayload(configuration={}),
            )
        )

        await worker.process_one()

        dead = await services.queue.list_dead_letters()
        assert [entry.reason for entry in dead] == ["JOB_NOT_FOUND"]


class TestCancellationDuringRetries:
    """Tests for jobs cancelled while a scoring call is being retried."""

    @pytest.mark.asyncio
    async def test_cancel_between_attempts_stops_retrying(
        self, services, make_worker, make_request
    ):
        receipt = await services.producer.submit_job(make_request(3))
        scorer = CancelWhileThrottledScorer(services.query, receipt.job_id, cancel_on=1)
        worker = make_worker(scorer)

        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.error_details is None
        assert scorer.calls == ["item_1"]
        assert await services.queue.dead_letter_count() == 0

        await drain(worker)
        assert await services.queue.depth() == 0

    @pytest.mark.asyncio
    async def test_exhaustion_after_cancel_is_acknowledged(
        self, services, make_worker, make_request
    ):
        """Cancelled during the last attempt: no failure and no dead letter."""
        receipt = await services.producer.submit_job(make_request(2))
        scorer = CancelWhileThrottledScorer(services.query, receipt.job_id, cancel_on=3)
        worker = make_worker(scorer)

        await worker.process_one()

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.CANCELLED
        assert len(scorer.calls) == 3
        assert await services.queue.dead_letter_count() == 0

        await drain(worker)
        assert await services.queue.depth() == 0


class TestLeases:
    """Tests for lease renewal while a job runs."""

    @pytest.mark.asyncio
    async def test_long_job_keeps_its_lease(self, services, make_worker, make_request, monkeypatch):
        """A job outliving the lease is not redelivered to another consumer."""
        services.queue.lease_seconds = 0.3
        original = services.queue.renew_lease
        renewals = []

        async def counting_renew(received):
            renewals.append(received.message_id)
            return await original(received)

        monkeypatch.setattr(services.queue, "renew_lease", counting_renew)
        worker = make_worker(SlowScorer(delay=0.25))
        receipt = await services.producer.submit_job(make_request(3))

        async def second_consumer():
            await asyncio.sleep(0.6)
            return await services.queue.receive()

        competitor = asyncio.create_task(second_consumer())
        await asyncio.wait_for(worker.process_one(), timeout=10)

        assert await competitor is None
        assert len(renewals) >= 2
        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.COMPLETED
        assert await services.queue.dead_letter_count() == 0

    @pytest.mark.asyncio
    async def test_lost_lease_cancels_the_handler(
        self, services, make_worker, make_request, monkeypatch
    ):
        services.queue.lease_seconds = 0.6
        monkeypatch.setattr(
            services.queue, "renew_lease", AsyncMock(side_effect=LeaseLostError("taken"))
        )
        scorer = SlowScorer(delay=2.0)
        worker = make_worker(scorer)
        receipt = await services.producer.submit_job(make_request(3))

        await asyncio.wait_for(worker.process_one(), timeout=10)

        # Scoring of the first item was interrupted and nothing was recorded
        assert scorer.calls == ["item_1"]
        assert scorer.finished == []
        assert await services.store.get_item_results(receipt.job_id) == {}
        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.RUNNING
        assert job.progress.completed_items == 0
        assert await services.queue.dead_letter_count() == 0


class TestRunLoop:
    """Tests for the concurrent run loop."""

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, services, make_worker, make_request, config):
        config.worker.max_concurrency = 2
        scorer = GatedScorer()
        worker = make_worker(scorer)
        job_ids = []
        for _ in range(3):
            receipt = await services.producer.submit_job(make_request(1))
            job_ids.append(receipt.job_id)

        async def statuses():
            return [(await services.store.get_job(job_id)).status for job_id in job_ids]

        async def two_scoring():
            return scorer.active == 2

        run_task = asyncio.create_task(worker.run())
        try:
            await eventually(two_scoring)
            # Several poll intervals pass without a third job starting
            await asyncio.sleep(0.3)
            assert scorer.active == 2
            current = await statuses()
            assert current.count(JobStatus.RUNNING) == 2
            assert current.count(JobStatus.PENDING) == 1

            scorer.release.set()

            async def all_completed():
                return all(status == JobStatus.COMPLETED for status in await statuses())

            await eventually(all_completed)
        finally:
            worker.stop()
            await asyncio.wait_for(run_task, timeout=10)

        assert scorer.peak == 2
        assert len(scorer.calls) == 3


class TestOrphanedJobs:
    """Tests for running jobs whose JobCreated message was dead-lettered."""

    async def _orphan(self, services, make_request) -> str:
        """Start a job from a message whose lease then expires for good."""
        services.queue.lease_seconds = 0.05
        services.queue.max_delivery_count = 1
        receipt = await services.producer.submit_job(make_request(1))

        received = await services.queue.receive()
        await services.store.transition(
            receipt.job_id, JobStatus.RUNNING, message_id=received.message_id
        )
        await asyncio.sleep(0.1)
        assert await services.queue.receive() is None
        return receipt.job_id

    @pytest.mark.asyncio
    async def test_sweep_fails_orphaned_job(self, services, make_worker, make_request):
        job_id = await self._orphan(services, make_request)
        dead = await services.queue.list_dead_letters()
        assert [entry.reason for entry in dead] == [MAX_DELIVERY_COUNT_EXCEEDED]

        assert await make_worker(StaticScorer()).fail_orphaned_jobs() == [job_id]

        job = await services.store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.completed_at is not None
        assert job.error_details.error_code == "DELIVERY_EXHAUSTED"
        assert job.error_details.retry_possible is True

    @pytest.mark.asyncio
    async def test_job_with_live_message_is_left_running(
        self, services, make_worker, make_request
    ):
        receipt = await services.producer.submit_job(make_request(1))
        received = await services.queue.receive()
        await services.store.transition(
            receipt.job_id, JobStatus.RUNNING, message_id=received.message_id
        )

        assert await make_worker(StaticScorer()).fail_orphaned_jobs() == []

        job = await services.store.get_job(receipt.job_id)
        assert job.status == JobStatus.RUNNING

    @pytest.mark.asyncio
    async def test_run_loop_sweeps_on_start(self, services, make_worker, make_request):
        job_id = await self._orphan(services, make_request)

        await asyncio.wait_for(make_worker(StaticScorer()).run(once=True), timeout=10)

        job = await services.store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_details.error_code == "DELIVERY_EXHAUSTED"
