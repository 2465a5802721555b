"""Wiring of the job lifecycle components from configuration."""

from dataclasses import dataclass
from typing import Optional

from eval_jobs.config.models import EvalJobsConfig
from eval_jobs.jobs.producer import JobProducer
from eval_jobs.jobs.query import JobQueryService
from eval_jobs.jobs.store import JobStore
from eval_jobs.messaging.queue import MessageQueue
from eval_jobs.metrics import JobMetrics, NullMetrics
from eval_jobs.storage.object_store import LocalObjectStore


@dataclass
class Services:
    """The components shared by the API, the CLI and the worker."""

    config: EvalJobsConfig
    store: JobStore
    queue: MessageQueue
    object_store: LocalObjectStore
    producer: JobProducer
    query: JobQueryService
    metrics: JobMetrics

    async def initialize(self) -> None:
        """Create database schemas."""
        await self.store.initialize()
        await self.queue.initialize()


def build_services(
    config: Optional[EvalJobsConfig] = None,
    metrics: Optional[JobMetrics] = None,
) -> Services:
    """Build store, queue, object store, producer and query service.

    Args:
        config: Configuration (defaults when absent).
        metrics: Metrics sink shared by all components.

    Returns:
        Services bundle.
    """
    config = config or EvalJobsConfig()
    metrics = metrics or NullMetrics()

    store = JobStore(config.store.db_path)
    queue = MessageQueue(
        db_path=config.queue.db_path,
        queue_name=config.queue.queue_name,
        lease_seconds=config.queue.lease_seconds,
        max_delivery_count=config.queue.max_delivery_count,
        session_ordering=config.queue.session_ordering,
    )
    object_store = LocalObjectStore(config.objects.root_path, config.objects.retention_days)

    producer = JobProducer(
        store=store,
        queue=queue,
        object_store=object_store,
        limits=config.limits,
        metrics=metrics,
        status_url_prefix=f"{config.api.base_url.rstrip('/')}/api/jobs",
    )
    query = JobQueryService(store=store, object_store=object_store, queue=queue, metrics=metrics)

    return Services(
        config=config,
        store=store,
        queue=queue,
        object_store=object_store,
        producer=producer,
        query=query,
        metrics=metrics,
    )
