"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Any

import pytest

from eval_jobs.config.models import (
    EvalJobsConfig,
    ObjectStoreConfig,
    QueueConfig,
    StoreConfig,
    WorkerConfig,
)
from eval_jobs.jobs.worker import JobWorker
from eval_jobs.metrics import InMemoryMetrics
from eval_jobs.scoring.similarity import SimilarityScorer
from eval_jobs.services import Services, build_services


@pytest.fixture
def config(tmp_path: Path) -> EvalJobsConfig:
    """Configuration with every file under a temporary directory and no backoff."""
    return EvalJobsConfig(
        store=StoreConfig(db_path=tmp_path / "jobs.db"),
        queue=QueueConfig(db_path=tmp_path / "queue.db", poll_interval_seconds=0.05),
        objects=ObjectStoreConfig(root_path=tmp_path / "objects"),
        worker=WorkerConfig(
            max_attempts=3,
            backoff_min_seconds=0.0,
            backoff_max_seconds=0.0,
            progress_interval=1,
            data_root=tmp_path,
        ),
    )


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def services(config: EvalJobsConfig, metrics: InMemoryMetrics) -> Services:
    """Store, queue, object store, producer and query service on temp files."""
    return build_services(config, metrics=metrics)


@pytest.fixture
def make_worker(services: Services, config: EvalJobsConfig, metrics: InMemoryMetrics):
    """Factory building a worker over the shared services."""

    def _make(scorer=None, **kwargs) -> JobWorker:
        return JobWorker(
            store=services.store,
            queue=services.queue,
            object_store=services.object_store,
            scorer=scorer or SimilarityScorer(),
            worker_config=config.worker,
            queue_config=config.queue,
            limits=config.limits,
            objects_config=config.objects,
            default_threshold=config.scoring.default_threshold,
            metrics=metrics,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_request():
    """Factory for job submission payloads with inline items."""

    def _make(item_count: int = 3, **overrides: Any) -> dict[str, Any]:
        request = {
            "name": "Regression suite",
            "description": "Nightly agent evaluation",
            "type": "bulk_evaluation",
            "configuration": {
                "items": [
                    {
                        "prompt": f"What is {i} + {i}?",
                        "expected_response": f"The answer is {i + i}.",
                        "actual_response": f"The answer is {i + i}.",
                    }
                    for i in range(1, item_count + 1)
                ],
            },
        }
        request.update(overrides)
        return request

    return _make
