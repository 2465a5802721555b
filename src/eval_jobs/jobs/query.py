"""Read side of the job lifecycle, plus cancellation."""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional, TypeVar, Union

from eval_jobs.errors import (
    ConflictError,
    JobNotCompletedError,
    NotFoundError,
    ObjectStoreError,
    QueueError,
    ValidationError,
)
from eval_jobs.jobs.models import Job
from eval_jobs.jobs.state_machine import ensure_transition
from eval_jobs.jobs.store import JobStore
from eval_jobs.messaging.queue import MessageQueue
from eval_jobs.metrics import JOBS_CANCELLED, JobMetrics, NullMetrics
from eval_jobs.models.enums import JobMessageType, JobStatus, JobType, SortField, SortOrder
from eval_jobs.models.evaluation import JobResults
from eval_jobs.models.messages import JobCancelledPayload, JobMessage
from eval_jobs.storage.object_store import ObjectStore

logger = logging.getLogger("eval_jobs.jobs.query")

MAX_PAGE_SIZE = 100
CANCEL_ATTEMPTS = 3

EnumT = TypeVar("EnumT", bound=Enum)


def parse_enum(
    enum_cls: type[EnumT],
    value: Union[str, EnumT, None],
    field_name: str,
) -> Optional[EnumT]:
    """Parse a query parameter into a closed enumeration.

    Raises:
        ValidationError: If the value is not a member.
    """
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value.lower())
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {', '.join(allowed)}",
            details={"field": field_name, "allowed": allowed},
        ) from None


@dataclass
class JobPage:
    """One page of a job listing."""

    items: list[Job]
    total_count: int
    page: int
    page_size: int
    filters: dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


class JobQueryService:
    """Answers job queries and applies cancellation."""

    def __init__(
        self,
        store: JobStore,
        object_store: ObjectStore,
        queue: Optional[MessageQueue] = None,
        metrics: Optional[JobMetrics] = None,
    ):
        """Initialize the service.

        Args:
            store: Job store.
            object_store: Store holding referenced results.
            queue: Queue that receives JobCancelled notifications.
            metrics: Metrics sink.
        """
        self._store = store
        self._object_store = object_store
        self._queue = queue
        self._metrics = metrics or NullMetrics()

    async def list_jobs(
        self,
        status: Union[str, JobStatus, None] = None,
        job_type: Union[str, JobType, None] = None,
        page: int = 1,
        page_size: int = 20,
        sort: Union[str, SortField, None] = None,
        order: Union[str, SortOrder, None] = None,
    ) -> JobPage:
        """List jobs, newest first by default.

        Args:
            status: Optional status filter.
            job_type: Optional type filter.
            page: 1-based page number.
            page_size: Jobs per page (1 to 100).
            sort: created_at, updated_at or name.
            order: asc or desc.

        Returns:
            The requested page with the total matching count.

        Raises:
            ValidationError: On any invalid parameter.
        """
        if page < 1:
            raise ValidationError("Page must be greater than 0", details={"field": "page"})
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(
                f"Limit must be between 1 and {MAX_PAGE_SIZE}", details={"field": "limit"}
            )

        status_filter = parse_enum(JobStatus, status, "status")
        type_filter = parse_enum(JobType, job_type, "type")
        sort_field = parse_enum(SortField, sort, "sort") or SortField.CREATED_AT
        sort_order = parse_enum(SortOrder, order, "order") or SortOrder.DESC

        jobs, total = await self._store.list_jobs(
            status=status_filter,
            job_type=type_filter,
            limit=page_size,
            offset=(page - 1) * page_size,
            sort=sort_field,
            order=sort_order,
        )

        return JobPage(
            items=jobs,
            total_count=total,
            page=page,
            page_size=page_size,
            filters={
                "status": status_filter.value if status_filter else None,
                "type": type_filter.value if type_filter else None,
                "sort": sort_field.value,
                "order": sort_order.value,
            },
        )

    async def get_job(self, job_id: str) -> Job:
        """Get a job by id.

        Raises:
            NotFoundError: If the job does not exist.
        """
        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job with ID '{job_id}' not found")
        return job

    async def _completed_job(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if job.status != JobStatus.COMPLETED:
            raise JobNotCompletedError(
                f"Job '{job_id}' is {job.status.value}; results are available once it completes",
                details={"status": job.status.value},
            )
        return job

    async def get_results(self, job_id: str) -> JobResults:
        """Get the results of a completed job.

        Inline results are returned directly; otherwise they are loaded from
        the object store.

        Raises:
            NotFoundError: If the job or its results object does not exist.
            JobNotCompletedError: If the job has not completed.
        """
        job = await self._completed_job(job_id)
        if job.results is not None:
            return job.results
        if job.result_reference is None:
            return JobResults()

        data = await self._object_store.get_bytes(job.result_reference)
        try:
            return JobResults.model_validate_json(data)
        except ValueError as e:
            raise ObjectStoreError(f"Stored results for job '{job_id}' are unreadable: {e}") from e

    async def stream_results(self, job_id: str) -> AsyncIterator[bytes]:
        """Stream the serialized results of a completed job.

        The job state is checked before the first chunk is produced, so
        errors surface before any output.

        Raises:
            NotFoundError: If the job or its results object does not exist.
            JobNotCompletedError: If the job has not completed.
        """
        job = await self._completed_job(job_id)

        if job.result_reference is not None and await self._object_store.exists(
            job.result_reference
        ):
            return self._object_store.open_stream(job.result_reference)

        results = await self.get_results(job_id)
        return _single_chunk(results.model_dump_json().encode("utf-8"))

    async def cancel_job(self, job_id: str, reason: Optional[str] = None) -> Job:
        """Cancel a pending or running job.

        The store write is authoritative. A JobCancelled message is also
        enqueued; failure to enqueue it is logged and does not fail the
        call.

        Raises:
            NotFoundError: If the job does not exist.
            ConflictError: If the job already reached a terminal status.
        """
        for _ in range(CANCEL_ATTEMPTS):
            job = await self.get_job(job_id)
            ensure_transition(job.id, job.status, JobStatus.CANCELLED)

            cancelled = await self._store.transition(job.id, JobStatus.CANCELLED)
            if cancelled is not None:
                break
            # The job moved on between the read and the write
        else:
            raise ConflictError(f"Job '{job_id}' kept changing state, retry the cancellation")

        self._metrics.increment(JOBS_CANCELLED)
        logger.info(f"Cancelled job {job_id}")

        if self._queue is not None:
            message = JobMessage.create(
                job_id,
                JobMessageType.JOB_CANCELLED,
                JobCancelledPayload(reason=reason),
                correlation_id=cancelled.correlation_id,
            )
            try:
                await self._queue.send(message)
            except QueueError as e:
                logger.warning(f"Could not enqueue cancellation message for job {job_id}: {e}")

        return cancelled


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data
