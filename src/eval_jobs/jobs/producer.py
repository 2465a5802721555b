"""Job producer: validates submissions, persists jobs and enqueues work."""

import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from eval_jobs.config.models import LimitsConfig
from eval_jobs.errors import EnqueueError, ObjectStoreError, QueueError, StoreError, ValidationError
from eval_jobs.jobs.models import Job, JobCreateRequest, JobProgress
from eval_jobs.jobs.store import JobIdCollisionError, JobStore
from eval_jobs.messaging.offload import pack_message
from eval_jobs.messaging.queue import MessageQueue
from eval_jobs.metrics import JOBS_SUBMITTED, JobMetrics, NullMetrics
from eval_jobs.models.enums import JobMessageType, JobStatus
from eval_jobs.models.messages import JobCreatedPayload, JobMessage
from eval_jobs.storage.object_store import ObjectStore

logger = logging.getLogger("eval_jobs.jobs.producer")

JOB_ID_PREFIX = "job_"
JOB_ID_ALPHABET = string.ascii_letters + string.digits
JOB_ID_LENGTH = 12


def generate_job_id() -> str:
    """Generate a job id: ``job_`` followed by 12 random alphanumerics."""
    suffix = "".join(secrets.choice(JOB_ID_ALPHABET) for _ in range(JOB_ID_LENGTH))
    return f"{JOB_ID_PREFIX}{suffix}"


def validation_details(error: PydanticValidationError) -> dict[str, Any]:
    """Flatten pydantic errors into a JSON-safe details mapping."""
    return {
        "errors": [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
                "type": err["type"],
            }
            for err in error.errors(include_url=False, include_context=False, include_input=False)
        ]
    }


class SubmissionReceipt(BaseModel):
    """What a client gets back from a submission."""

    job_id: str
    status_url: str
    status: JobStatus = JobStatus.PENDING
    created: bool = True
    correlation_id: Optional[str] = None


class JobProducer:
    """Accepts job submissions.

    A job is always persisted before its JobCreated message is enqueued, so
    a worker never sees a message for a job that does not exist.
    """

    def __init__(
        self,
        store: JobStore,
        queue: MessageQueue,
        object_store: ObjectStore,
        limits: Optional[LimitsConfig] = None,
        metrics: Optional[JobMetrics] = None,
        status_url_prefix: str = "/api/jobs",
    ):
        """Initialize the producer.

        Args:
            store: Job store.
            queue: Queue receiving JobCreated messages.
            object_store: Store for payloads too large to send inline.
            limits: Size and validity limits.
            metrics: Metrics sink.
            status_url_prefix: Prefix of the status URL returned to clients.
        """
        self._store = store
        self._queue = queue
        self._object_store = object_store
        self._limits = limits or LimitsConfig()
        self._metrics = metrics or NullMetrics()
        self._status_url_prefix = status_url_prefix.rstrip("/")

    def status_url(self, job_id: str) -> str:
        return f"{self._status_url_prefix}/{job_id}"

    def validate_request(
        self, request: Union[JobCreateRequest, dict[str, Any]]
    ) -> JobCreateRequest:
        """Validate a submission.

        Args:
            request: Parsed request or raw mapping.

        Returns:
            The validated request.

        Raises:
            ValidationError: If the request is malformed or too large.
        """
        if not isinstance(request, JobCreateRequest):
            try:
                request = JobCreateRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid job request", details=validation_details(e)
                ) from e

        size = request.configuration.inline_dataset_bytes()
        if size > self._limits.max_inline_dataset_bytes:
            raise ValidationError(
                f"Inline dataset is {size} bytes, above the "
                f"{self._limits.max_inline_dataset_bytes}-byte limit; "
                "upload it and pass data_source_ref instead",
                details={"size_bytes": size, "max_bytes": self._limits.max_inline_dataset_bytes},
            )
        return request

    async def submit_job(
        self,
        request: Union[JobCreateRequest, dict[str, Any]],
        idempotency_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SubmissionReceipt:
        """Submit a job for asynchronous execution.

        Args:
            request: Job submission.
            idempotency_key: Optional client key; a repeated key within its
                validity window returns the original job.
            correlation_id: Caller trace id, generated when absent.

        Returns:
            SubmissionReceipt with the job id and status URL.

        Raises:
            ValidationError: If the request is invalid. Nothing is stored.
            StoreError: If the job could not be persisted. Nothing is enqueued.
            EnqueueError: If the job was stored but could not be enqueued.
        """
        request = self.validate_request(request)
        correlation_id = correlation_id or uuid.uuid4().hex

        job, created = await self._persist(request, idempotency_key, correlation_id)
        if not created:
            logger.info(f"Duplicate submission for idempotency key, returning job {job.id}")
            return SubmissionReceipt(
                job_id=job.id,
                status_url=self.status_url(job.id),
                status=job.status,
                created=False,
                correlation_id=job.correlation_id,
            )

        await self.enqueue_created(job)
        self._metrics.increment(JOBS_SUBMITTED)

        return SubmissionReceipt(
            job_id=job.id,
            status_url=self.status_url(job.id),
            correlation_id=correlation_id,
        )

    async def _persist(
        self,
        request: JobCreateRequest,
        idempotency_key: Optional[str],
        correlation_id: str,
    ) -> tuple[Job, bool]:
        attempts = self._limits.job_id_attempts
        for attempt in range(1, attempts + 1):
            now = datetime.now(timezone.utc)
            job = Job(
                id=generate_job_id(),
                name=request.name,
                description=request.description,
                type=request.type,
                status=JobStatus.PENDING,
                priority=request.priority,
                configuration=request.configuration,
                created_at=now,
                updated_at=now,
                progress=JobProgress(),
                correlation_id=correlation_id,
            )
            try:
                return await self._store.create_job(
                    job,
                    idempotency_key=idempotency_key,
                    idempotency_ttl_seconds=self._limits.idempotency_ttl_seconds,
                )
            except JobIdCollisionError:
                logger.warning(f"Job id collision on attempt {attempt}/{attempts}, regenerating")

        raise StoreError(f"Could not allocate a unique job id after {attempts} attempts")

    async def enqueue_created(self, job: Job) -> JobMessage:
        """Enqueue the JobCreated message for a persisted job.

        Raises:
            EnqueueError: If the message could not be enqueued.
        """
        payload = JobCreatedPayload(
            configuration=job.configuration.model_dump(mode="json", exclude_none=True),
            priority=job.priority,
        )
        message = JobMessage.create(
            job.id,
            JobMessageType.JOB_CREATED,
            payload,
            correlation_id=job.correlation_id,
        )

        try:
            message = await pack_message(
                message, self._object_store, self._limits.max_inline_message_bytes
            )
            await self._queue.send(message)
        except (QueueError, ObjectStoreError) as e:
            logger.error(f"Job {job.id} persisted but not enqueued: {e}")
            raise EnqueueError(f"Job {job.id} could not be enqueued: {e}", job_id=job.id) from e

        logger.info(f"Enqueued job {job.id} ({job.type.value})")
        return message

    async def requeue_stale_pending(self, older_than: timedelta, limit: int = 100) -> list[str]:
        """Re-enqueue JobCreated for jobs stuck in Pending.

        A job whose enqueue failed after persistence stays Pending forever
        unless swept. Workers drop duplicate JobCreated messages, so
        re-enqueueing a job that is merely slow to start is harmless.

        Args:
            older_than: Minimum age of a Pending job to be swept.
            limit: Maximum number of jobs to re-enqueue.

        Returns:
            Ids of the re-enqueued jobs.
        """
        cutoff = datetime.now(timezone.utc) - older_than
        stale = await self._store.list_stale_pending(cutoff, limit=limit)

        requeued = []
        for job in stale:
            try:
                await self.enqueue_created(job)
            except EnqueueError:
                continue
            requeued.append(job.id)

        if requeued:
            logger.info(f"Re-enqueued {len(requeued)} stale pending job(s)")
        return requeued
