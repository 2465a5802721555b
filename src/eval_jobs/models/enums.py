"""Enumerations for the job lifecycle."""

from enum import Enum


class JobStatus(str, Enum):
    """Status of a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can leave this status."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    """Kinds of evaluation jobs."""

    BULK_EVALUATION = "bulk_evaluation"
    SINGLE_EVALUATION = "single_evaluation"
    BATCH_PROCESSING = "batch_processing"


class JobMessageType(str, Enum):
    """Types of messages travelling on the job queue."""

    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"


class JobPriority(str, Enum):
    """Submission priority carried on the JobCreated message."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SortField(str, Enum):
    """Fields the job list may be sorted by."""

    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    NAME = "name"


class SortOrder(str, Enum):
    """Sort direction for the job list."""

    ASC = "asc"
    DESC = "desc"


class ErrorCode(str, Enum):
    """Error codes recorded on failed jobs and dead-lettered messages."""

    EXECUTION_FAILED = "EXECUTION_FAILED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    DELIVERY_EXHAUSTED = "DELIVERY_EXHAUSTED"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    DATA_SOURCE_UNAVAILABLE = "DATA_SOURCE_UNAVAILABLE"
    DESERIALIZATION_FAILED = "DESERIALIZATION_FAILED"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
