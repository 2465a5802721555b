"""Error taxonomy for the job lifecycle.

Each error carries a stable ``code`` and the HTTP status the API layer maps
it to. Infrastructure errors (store, queue, object store) are reported to
API callers with a trace id only.
"""

from typing import Any, Optional


class EvalJobsError(Exception):
    """Base class for all job lifecycle errors."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class ValidationError(EvalJobsError):
    """Client input is malformed or violates a submission constraint."""

    code = "VALIDATION_ERROR"
    http_status = 400


class JobNotCompletedError(ValidationError):
    """Results were requested for a job that has not completed."""

    code = "JOB_NOT_COMPLETED"


class NotFoundError(EvalJobsError):
    """The referenced job (or object) does not exist."""

    code = "JOB_NOT_FOUND"
    http_status = 404


class ConflictError(EvalJobsError):
    """The requested state transition is not allowed."""

    code = "INVALID_STATE_TRANSITION"
    http_status = 409


class JobNotCancellableError(ConflictError):
    """Cancellation was requested for a job that already completed or failed."""

    code = "JOB_NOT_CANCELLABLE"
    http_status = 400


class StoreError(EvalJobsError):
    """The job store could not complete an operation."""

    code = "STORE_ERROR"


class QueueError(EvalJobsError):
    """The message queue could not complete an operation."""

    code = "QUEUE_ERROR"


class ObjectStoreError(EvalJobsError):
    """The object reference store could not complete an operation."""

    code = "OBJECT_STORE_ERROR"


class WorkerError(EvalJobsError):
    """Base class for errors raised while a worker executes a job."""

    code = "EXECUTION_FAILED"


class RetryableWorkerError(WorkerError):
    """Transient failure (timeout, throttling); the call may be retried."""

    code = "TRANSIENT_FAILURE"


class TerminalWorkerError(WorkerError):
    """Non-retryable failure; the job is marked failed immediately."""

    code = "EXECUTION_FAILED"


class RetryExhaustedError(WorkerError):
    """A retryable call kept failing for every allowed attempt."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            message,
            details={
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None,
            },
        )
        self.attempts = attempts
        self.last_error = last_error


class ObjectNotFoundError(NotFoundError):
    """A referenced object is missing or past its retention window."""

    code = "OBJECT_NOT_FOUND"


class EnqueueError(QueueError):
    """A job was persisted but its processing message could not be enqueued.

    The job stays Pending until a reconciliation sweep re-enqueues it.
    """

    code = "ENQUEUE_FAILED"

    def __init__(self, message: str, job_id: str):
        super().__init__(message, details={"job_id": job_id})
        self.job_id = job_id


class AuthenticationError(EvalJobsError):
    """The request carries no valid bearer credentials."""

    code = "UNAUTHORIZED"
    http_status = 401
