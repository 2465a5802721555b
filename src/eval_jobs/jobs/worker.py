"""Queue consumer that executes evaluation jobs."""

import asyncio
import contextlib
import logging
import signal
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception_type
from tenacity import stop_after_attempt, wait_exponential

from eval_jobs.config.models import (
    EvalJobsConfig,
    LimitsConfig,
    ObjectStoreConfig,
    QueueConfig,
    WorkerConfig,
)
from eval_jobs.errors import (
    EvalJobsError,
    NotFoundError,
    ObjectStoreError,
    QueueError,
    RetryableWorkerError,
    RetryExhaustedError,
    StoreError,
    TerminalWorkerError,
    WorkerError,
)
from eval_jobs.jobs.datasource import BATCH_PHASES, InvalidDatasetError, load_items
from eval_jobs.jobs.models import Job, JobConfiguration, JobErrorDetails, JobProgress
from eval_jobs.jobs.store import JobStore
from eval_jobs.messaging.offload import pack_message, resolve_payload
from eval_jobs.messaging.queue import LeaseLostError, MessageQueue, ReceivedMessage
from eval_jobs.metrics import (
    ITEM_DURATION_SECONDS,
    JOBS_ACTIVE,
    JOBS_COMPLETED,
    JOBS_FAILED,
    MESSAGES_DEAD_LETTERED,
    MESSAGES_PROCESSED,
    MESSAGES_RETRIED,
    JobMetrics,
    NullMetrics,
)
from eval_jobs.models.enums import ErrorCode, JobMessageType, JobStatus, JobType
from eval_jobs.models.evaluation import EvaluationItem, EvaluationResult, JobResults, ResultsSummary
from eval_jobs.models.messages import (
    JobCompletedPayload,
    JobCreatedPayload,
    JobFailedPayload,
    JobMessage,
    JobProgressPayload,
    JobStartedPayload,
)
from eval_jobs.scoring.factory import create_scorer
from eval_jobs.scoring.protocol import Scorer
from eval_jobs.services import build_services
from eval_jobs.storage.object_store import ObjectStore
from eval_jobs.utils.logging import job_logger

logger = logging.getLogger("eval_jobs.jobs.worker")

INFRASTRUCTURE_ERRORS = (StoreError, QueueError, ObjectStoreError)

PhaseRunner = Callable[[Job, str, JobConfiguration], Awaitable[None]]


async def _log_phase(job: Job, phase: str, configuration: JobConfiguration) -> None:
    job_logger(logger, job.id).info(f"Phase: {phase}")


class JobWorker:
    """Consumes job messages and drives jobs to a terminal state.

    Delivery is at-least-once, so every handler is safe to run twice for
    the same message: duplicate JobCreated messages are dropped, and a
    redelivery of the message that started a job resumes from the
    checkpointed item results.
    """

    def __init__(
        self,
        store: JobStore,
        queue: MessageQueue,
        object_store: ObjectStore,
        scorer: Scorer,
        worker_config: Optional[WorkerConfig] = None,
        queue_config: Optional[QueueConfig] = None,
        limits: Optional[LimitsConfig] = None,
        objects_config: Optional[ObjectStoreConfig] = None,
        default_threshold: float = 0.8,
        metrics: Optional[JobMetrics] = None,
        phase_runner: Optional[PhaseRunner] = None,
    ):
        """Initialize the worker.

        Args:
            store: Job store.
            queue: Queue to consume from and emit lifecycle messages to.
            object_store: Store for offloaded payloads and results.
            scorer: Scoring collaborator.
            worker_config: Concurrency, retry and progress settings.
            queue_config: Lease and delivery settings.
            limits: Inline size limits.
            objects_config: Results container and retention.
            default_threshold: Pass threshold when a job sets none.
            metrics: Metrics sink.
            phase_runner: Callable run for each batch_processing phase.
        """
        self._store = store
        self._queue = queue
        self._object_store = object_store
        self._scorer = scorer
        self._config = worker_config or WorkerConfig()
        self._queue_config = queue_config or QueueConfig(
            lease_seconds=queue.lease_seconds,
            max_delivery_count=queue.max_delivery_count,
        )
        self._limits = limits or LimitsConfig()
        self._objects = objects_config or ObjectStoreConfig()
        self._default_threshold = default_threshold
        self._metrics = metrics or NullMetrics()
        self._phase_runner = phase_runner or _log_phase

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    def stop(self) -> None:
        """Ask the run loop to finish in-flight messages and exit."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    def _handle_signal(self, signum: int) -> None:
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    async def run(self, once: bool = False) -> None:
        """Run the worker loop.

        Args:
            once: If True, process one message and exit (useful for testing).
        """
        self._running = True
        self._stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self._handle_signal, signum)

        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info(f"Worker started (concurrency {self._config.max_concurrency})")

        next_reconcile = time.monotonic()
        try:
            while self._running:
                if time.monotonic() >= next_reconcile:
                    await self._reconcile()
                    next_reconcile = time.monotonic() + self._config.reconcile_interval_seconds

                await semaphore.acquire()
                if not self._running:
                    semaphore.release()
                    break

                try:
                    received = await self._queue.receive()
                except QueueError as e:
                    semaphore.release()
                    logger.error(f"Receive failed: {e}")
                    await self._idle()
                    continue

                if received is None:
                    semaphore.release()
                    if once:
                        break
                    await self._idle()
                    continue

                task = asyncio.create_task(self._handle_guarded(received, semaphore))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
                if once:
                    break

            if in_flight:
                await asyncio.gather(*in_flight)
        finally:
            for signum in (signal.SIGTERM, signal.SIGINT):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(signum)
            self._running = False

        logger.info("Worker stopped")

    async def _idle(self) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(
                self._stop_event.wait(), timeout=self._queue_config.poll_interval_seconds
            )

    async def _handle_guarded(
        self, received: ReceivedMessage, semaphore: asyncio.Semaphore
    ) -> None:
        try:
            await self.handle(received)
        except Exception:
            logger.exception(f"Unhandled error processing message {received.message_id}")
        finally:
            semaphore.release()

    async def process_one(self) -> bool:
        """Receive and handle a single message.

        Returns:
            True if a message was handled, False if the queue was empty.
        """
        received = await self._queue.receive()
        if received is None:
            return False
        await self.handle(received)
        return True

    async def fail_orphaned_jobs(self, limit: int = 100) -> list[str]:
        """Fail running jobs whose processing message is no longer deliverable.

        When the queue dead-letters a JobCreated message whose lease kept
        expiring, no handler is left to settle the job it started. Such jobs
        are failed with DELIVERY_EXHAUSTED and ``retry_possible`` set.

        Args:
            limit: Maximum number of running jobs to inspect.

        Returns:
            Ids of the jobs marked failed.
        """
        failed: list[str] = []
        running = await self._store.list_running(limit)
        for job_id, message_id in running.items():
            if message_id is not None and await self._queue.is_deliverable(message_id):
                continue
            job = await self._fail_job(
                job_id,
                ErrorCode.DELIVERY_EXHAUSTED.value,
                "Processing message was dead-lettered or removed while the job was running",
                retry_possible=True,
            )
            if job is not None:
                failed.append(job_id)
        return failed

    async def _reconcile(self) -> None:
        try:
            failed = await self.fail_orphaned_jobs()
        except EvalJobsError as e:
            logger.error(f"Orphaned job sweep failed: {e}")
            return
        if failed:
            logger.warning(f"Failed {len(failed)} running job(s) without a deliverable message")

    async def handle(self, received: ReceivedMessage) -> None:
        """Handle one delivery and settle it.

        Args:
            received: Leased message.
        """
        log = job_logger(logger, received.job_id)
        self._metrics.increment(MESSAGES_PROCESSED)

        try:
            message = received.decode()
        except PydanticValidationError as e:
            log.error(f"Undecodable message {received.message_id}: {e}")
            await self._dead_letter(
                received, ErrorCode.DESERIALIZATION_FAILED, f"Invalid message body: {e}"[:1000]
            )
            return

        handlers = {
            JobMessageType.JOB_CREATED: self._handle_created,
            JobMessageType.JOB_PROGRESS: self._handle_progress,
            JobMessageType.JOB_CANCELLED: self._handle_cancelled,
        }
        handler = handlers.get(message.message_type)

        try:
            if handler is None:
                log.debug(f"Acknowledging {message.message_type.value} message")
                await self._queue.complete(received)
                return

            await self._run_with_lease(received, handler(received, message))
        except LeaseLostError as e:
            log.warning(f"Lost lease on message {received.message_id}, stopped processing: {e}")
        except INFRASTRUCTURE_ERRORS as e:
            await self._abandon_or_exhaust(received, message, e)

    async def _run_with_lease(self, received: ReceivedMessage, work: Awaitable[None]) -> None:
        """Run ``work`` while renewing the message lease in the background.

        Raises:
            LeaseLostError: If a renewal finds the lease taken. ``work`` is
                cancelled before this is raised.
        """
        work_task = asyncio.create_task(work)
        renew_task = asyncio.create_task(self._renew_lease_loop(received))
        try:
            await asyncio.wait({work_task, renew_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            work_task.cancel()
            renew_task.cancel()
            await asyncio.gather(work_task, renew_task, return_exceptions=True)

        if not renew_task.cancelled() and renew_task.exception() is not None:
            raise renew_task.exception()
        work_task.result()

    async def _renew_lease_loop(self, received: ReceivedMessage) -> None:
        interval = self._queue.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self._queue.renew_lease(received)
            except LeaseLostError:
                logger.warning(f"Lease on message {received.message_id} lost during processing")
                raise
            except QueueError as e:
                logger.warning(f"Lease renewal failed for message {received.message_id}: {e}")

    async def _abandon_or_exhaust(
        self,
        received: ReceivedMessage,
        message: JobMessage,
        error: EvalJobsError,
    ) -> None:
        log = job_logger(logger, message.job_id)

        try:
            if received.delivery_count < self._queue_config.max_delivery_count:
                delay = min(
                    self._config.backoff_max_seconds,
                    self._config.backoff_min_seconds * 2 ** (received.delivery_count - 1),
                )
                log.warning(
                    f"Infrastructure error on delivery {received.delivery_count}, "
                    f"abandoning for redelivery in {delay:.1f}s: {error}"
                )
                await self._queue.abandon(received, delay_seconds=delay)
                return

            log.error(f"Delivery attempts exhausted: {error}")
            await self._dead_letter(received, ErrorCode.DELIVERY_EXHAUSTED, str(error))
        except QueueError as e:
            log.error(f"Could not settle message {received.message_id}: {e}")
            return

        if message.message_type == JobMessageType.JOB_CREATED:
            try:
                await self._fail_job(
                    message.job_id,
                    ErrorCode.DELIVERY_EXHAUSTED.value,
                    f"Processing failed after {received.delivery_count} deliveries: {error}",
                    message=message,
                    retry_possible=True,
                )
            except EvalJobsError as e:
                log.error(f"Could not record failure: {e}")

    async def _dead_letter(
        self,
        received: ReceivedMessage,
        reason: ErrorCode,
        description: str,
    ) -> None:
        await self._queue.dead_letter(received, reason.value, description)
        self._metrics.increment(MESSAGES_DEAD_LETTERED)

    async def _emit(
        self,
        job: Job,
        message_type: JobMessageType,
        payload: Optional[BaseModel] = None,
    ) -> None:
        message = JobMessage.create(
            job.id, message_type, payload, correlation_id=job.correlation_id
        )
        message = await pack_message(
            message, self._object_store, self._limits.max_inline_message_bytes
        )
        await self._queue.send(message)

    # JobCreated

    async def _handle_created(self, received: ReceivedMessage, message: JobMessage) -> None:
        log = job_logger(logger, message.job_id)

        job = await self._store.get_job(message.job_id)
        if job is None:
            log.error("Job not found, dead-lettering message")
            await self._dead_letter(
                received, ErrorCode.JOB_NOT_FOUND, f"Job '{message.job_id}' does not exist"
            )
            return

        if job.status == JobStatus.RUNNING:
            active = await self._store.get_active_message_id(job.id)
            if active != message.message_id:
                log.info("Already running from another message, dropping duplicate")
                await self._queue.complete(received)
                return
            log.info(f"Resuming after redelivery {received.delivery_count}")
        elif job.status != JobStatus.PENDING:
            log.info(f"Job is {job.status.value}, dropping duplicate")
            await self._queue.complete(received)
            return
        else:
            started = await self._store.transition(
                job.id, JobStatus.RUNNING, message_id=message.message_id
            )
            if started is None:
                log.info("Job left pending before it could be started, dropping message")
                await self._queue.complete(received)
                return
            job = started
            await self._emit(
                job, JobMessageType.JOB_STARTED, JobStartedPayload(name=job.name, type=job.type)
            )

        self._metrics.increment(JOBS_ACTIVE)
        try:
            await self._execute(job, message)
        except RetryExhaustedError as e:
            failed = await self._fail_job(
                job.id, e.code, e.message, details=e.details, retry_possible=True
            )
            if failed is not None:
                log.error(f"Retries exhausted: {e.message}")
                await self._dead_letter(received, ErrorCode.RETRY_EXHAUSTED, e.message)
                return
            log.info("Retries exhausted after the job stopped running, acknowledging message")
        except WorkerError as e:
            log.error(f"Job failed: {e.message}")
            await self._fail_job(job.id, e.code, e.message, details=e.details)
        except INFRASTRUCTURE_ERRORS:
            raise
        except EvalJobsError as e:
            log.error(f"Job failed: {e.message}")
            await self._fail_job(job.id, e.code, e.message, details=e.details)
        except Exception as e:
            log.exception(f"Job failed: {e}")
            await self._fail_job(job.id, ErrorCode.EXECUTION_FAILED.value, str(e))
        finally:
            self._metrics.decrement(JOBS_ACTIVE)

        await self._queue.complete(received)

    async def _load_configuration(self, message: JobMessage) -> JobConfiguration:
        try:
            payload = await resolve_payload(message, self._object_store)
            created = JobCreatedPayload.model_validate(payload)
            return JobConfiguration.model_validate(created.configuration)
        except NotFoundError as e:
            raise TerminalWorkerError(
                f"Job configuration payload is unavailable: {e.message}",
                code=ErrorCode.INVALID_CONFIGURATION.value,
            ) from e
        except (PydanticValidationError, ValueError) as e:
            raise TerminalWorkerError(
                f"Job configuration is invalid: {e}",
                code=ErrorCode.INVALID_CONFIGURATION.value,
            ) from e

    async def _execute(self, job: Job, message: JobMessage) -> None:
        """Run a started job to completion, failure or cancellation."""
        configuration = await self._load_configuration(message)

        if job.type == JobType.BATCH_PROCESSING:
            await self._run_batch(job, configuration)
            return

        items = await load_items(configuration, self._object_store, self._config.data_root)
        if not items:
            raise InvalidDatasetError("Dataset contains no items")
        if job.type == JobType.SINGLE_EVALUATION and len(items) != 1:
            raise InvalidDatasetError(
                f"single_evaluation jobs take exactly one item, dataset has {len(items)}"
            )

        await self._run_items(job, configuration, items)

    async def _no_longer_running(self, job_id: str) -> bool:
        job = await self._store.get_job(job_id)
        return job is None or job.status != JobStatus.RUNNING

    async def _run_items(
        self,
        job: Job,
        configuration: JobConfiguration,
        items: list[EvaluationItem],
    ) -> None:
        log = job_logger(logger, job.id)
        criteria = configuration.evaluation_criteria
        threshold = self._default_threshold
        if criteria and criteria.similarity_threshold is not None:
            threshold = criteria.similarity_threshold

        total = len(items)
        done = await self._store.get_item_results(job.id)
        await self._store.update_progress(job.id, JobProgress.of(len(done), total))
        log.info(f"Evaluating {total} items ({len(done)} already done)")

        started_at = time.monotonic()
        processed = 0
        for index, item in enumerate(items):
            if index in done:
                continue
            if await self._no_longer_running(job.id):
                log.info("Job is no longer running, stopping")
                return

            result = await self._evaluate_item(job, item, configuration, threshold)
            if result is None:
                log.info("Job stopped running while retrying, stopping")
                return
            done[index] = result
            await self._store.save_item_result(job.id, index, done[index])
            processed += 1

            completed = len(done)
            elapsed = time.monotonic() - started_at
            eta = datetime.now(timezone.utc) + timedelta(
                seconds=elapsed / processed * (total - completed)
            )
            progress = JobProgress.of(completed, total)
            await self._store.update_progress(job.id, progress, estimated_completion=eta)

            if completed % self._config.progress_interval == 0 or completed == total:
                await self._emit(
                    job,
                    JobMessageType.JOB_PROGRESS,
                    JobProgressPayload(
                        total_items=total,
                        completed_items=completed,
                        percentage=progress.percentage,
                        current_item=item.item_id,
                    ),
                )

        results = [done[index] for index in range(total)]
        await self._finish(
            job,
            JobResults(summary=ResultsSummary.from_results(results), detailed_results=results),
            total,
        )

    async def _run_batch(self, job: Job, configuration: JobConfiguration) -> None:
        log = job_logger(logger, job.id)
        total = len(BATCH_PHASES)

        for index, phase in enumerate(BATCH_PHASES):
            if await self._no_longer_running(job.id):
                log.info("Job is no longer running, stopping")
                return

            await self._phase_runner(job, phase, configuration)
            progress = JobProgress.of(index + 1, total)
            await self._store.update_progress(job.id, progress)
            await self._emit(
                job,
                JobMessageType.JOB_PROGRESS,
                JobProgressPayload(
                    total_items=total,
                    completed_items=index + 1,
                    percentage=progress.percentage,
                    current_item=phase,
                ),
            )

        await self._finish(job, JobResults(), total)

    async def _score_once(self, item: EvaluationItem, configuration: JobConfiguration):
        try:
            return await asyncio.wait_for(
                self._scorer.score(item, configuration),
                timeout=self._config.call_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RetryableWorkerError(
                f"Scoring timed out after {self._config.call_timeout_seconds}s"
            ) from e

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self._metrics.increment(MESSAGES_RETRIED)
        logger.warning(
            f"Retrying scoring call after attempt {retry_state.attempt_number}: "
            f"{retry_state.outcome.exception()}"
        )

    async def _evaluate_item(
        self,
        job: Job,
        item: EvaluationItem,
        configuration: JobConfiguration,
        threshold: float,
    ) -> Optional[EvaluationResult]:
        """Score one item, retrying transient failures with backoff.

        The job status is checked again before every retry.

        Returns:
            The item result, or None if the job stopped running between
            attempts.

        Raises:
            RetryExhaustedError: If every attempt failed with a transient error.
            TerminalWorkerError: If the scorer reported a permanent failure.
        """
        started = time.monotonic()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._config.max_attempts),
                wait=wait_exponential(
                    multiplier=self._config.backoff_min_seconds,
                    min=self._config.backoff_min_seconds,
                    max=self._config.backoff_max_seconds,
                ),
                retry=retry_if_exception_type(RetryableWorkerError),
                before_sleep=self._before_retry,
            ):
                retrying = attempt.retry_state.attempt_number > 1
                if retrying and await self._no_longer_running(job.id):
                    return None
                with attempt:
                    score = await self._score_once(item, configuration)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise RetryExhaustedError(
                f"Scoring item '{item.item_id}' failed after "
                f"{e.last_attempt.attempt_number} attempts: {last_error}",
                attempts=e.last_attempt.attempt_number,
                last_error=last_error,
            ) from last_error

        self._metrics.observe(ITEM_DURATION_SECONDS, time.monotonic() - started)
        return EvaluationResult(
            item_id=item.item_id or "",
            prompt=item.prompt,
            expected_response=item.expected_response,
            actual_response=score.actual_response,
            similarity_score=score.similarity_score,
            passed=score.similarity_score >= threshold,
            reasoning=score.reasoning,
            differences=score.differences,
        )

    async def _finish(self, job: Job, results: JobResults, total: int) -> None:
        log = job_logger(logger, job.id)

        data = results.model_dump_json().encode("utf-8")
        ref = await self._object_store.put_bytes(
            self._objects.container,
            f"{job.id}/results.json",
            data,
            expires_at=datetime.now(timezone.utc) + timedelta(days=self._objects.retention_days),
        )
        inline = results if len(data) <= self._limits.max_inline_result_bytes else None

        completed = await self._store.transition(
            job.id,
            JobStatus.COMPLETED,
            progress=JobProgress.of(total, total),
            result_reference=ref,
            results=inline,
        )
        if completed is None:
            log.info("Job is no longer running, results not recorded as completion")
            return

        self._metrics.increment(JOBS_COMPLETED)
        log.info(
            f"Completed: {results.summary.passed_evaluations}/"
            f"{results.summary.total_evaluations} passed"
        )
        await self._emit(
            completed,
            JobMessageType.JOB_COMPLETED,
            JobCompletedPayload(results_summary=results.summary, results_ref=ref),
        )

    async def _fail_job(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        details: Optional[dict[str, Any]] = None,
        message: Optional[JobMessage] = None,
        retry_possible: bool = False,
    ) -> Optional[Job]:
        """Mark a job failed and emit JobFailed.

        A pending job is first moved to running so the failure follows the
        normal transition path.
        """
        if message is not None:
            await self._store.transition(job_id, JobStatus.RUNNING, message_id=message.message_id)

        failed = await self._store.transition(
            job_id,
            JobStatus.FAILED,
            error_details=JobErrorDetails(
                error_code=error_code,
                error_message=error_message,
                retry_possible=retry_possible,
                details=details or None,
            ),
        )
        if failed is None:
            job_logger(logger, job_id).info("Job is no longer running, failure not recorded")
            return None

        self._metrics.increment(JOBS_FAILED)
        await self._emit(
            failed,
            JobMessageType.JOB_FAILED,
            JobFailedPayload(
                error_code=error_code,
                error_message=error_message,
                retry_possible=retry_possible,
            ),
        )
        return failed

    # Informational messages

    async def _handle_progress(self, received: ReceivedMessage, message: JobMessage) -> None:
        try:
            payload = JobProgressPayload.model_validate(
                await resolve_payload(message, self._object_store)
            )
            progress = JobProgress(
                total_items=payload.total_items,
                completed_items=payload.completed_items,
                percentage=payload.percentage,
            )
        except (PydanticValidationError, NotFoundError, ValueError) as e:
            job_logger(logger, message.job_id).warning(f"Ignoring malformed progress message: {e}")
        else:
            await self._store.update_progress(message.job_id, progress)

        await self._queue.complete(received)

    async def _handle_cancelled(self, received: ReceivedMessage, message: JobMessage) -> None:
        job = await self._store.get_job(message.job_id)
        if job is not None and not job.is_terminal:
            cancelled = await self._store.transition(job.id, JobStatus.CANCELLED)
            if cancelled is not None:
                job_logger(logger, job.id).info("Cancelled from cancellation message")
        await self._queue.complete(received)


def build_worker(
    config: EvalJobsConfig,
    scorer: Optional[Scorer] = None,
    metrics: Optional[JobMetrics] = None,
) -> JobWorker:
    """Wire a worker from configuration.

    Args:
        config: EvalJobsConfig.
        scorer: Scorer override; built from ``config.scoring`` when absent.
        metrics: Metrics sink.

    Returns:
        Ready-to-run JobWorker.
    """
    services = build_services(config, metrics=metrics)
    return JobWorker(
        store=services.store,
        queue=services.queue,
        object_store=services.object_store,
        scorer=scorer or create_scorer(config.scoring),
        worker_config=config.worker,
        queue_config=config.queue,
        limits=config.limits,
        objects_config=config.objects,
        default_threshold=config.scoring.default_threshold,
        metrics=services.metrics,
    )


def main():
    """Entry point for eval-jobs-worker command."""
    import argparse
    from pathlib import Path

    from eval_jobs.config import load_config
    from eval_jobs.utils.logging import setup_logging

    parser = argparse.ArgumentParser(description="Evaluation job worker")
    parser.add_argument("--once", action="store_true", help="Process one message and exit")
    parser.add_argument("--config", type=Path, help="Path to config file")
    parser.add_argument("--concurrency", type=int, help="Maximum concurrent messages")
    parser.add_argument("-v", "--verbose", action="count", default=None, help="Increase verbosity")
    args = parser.parse_args()

    config = load_config(args.config, concurrency=args.concurrency, verbose=args.verbose)
    setup_logging(config.verbosity, config.log_file)

    worker = build_worker(config)
    asyncio.run(worker.run(once=args.once))


if __name__ == "__main__":
    main()
