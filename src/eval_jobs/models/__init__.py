"""Data models shared across the job lifecycle."""

from eval_jobs.models.enums import (
    ErrorCode,
    JobMessageType,
    JobPriority,
    JobStatus,
    JobType,
    SortField,
    SortOrder,
)
from eval_jobs.models.evaluation import (
    EvaluationItem,
    EvaluationResult,
    ItemScore,
    JobResults,
    ResultsSummary,
)
from eval_jobs.models.messages import (
    JobCancelledPayload,
    JobCompletedPayload,
    JobCreatedPayload,
    JobFailedPayload,
    JobMessage,
    JobProgressPayload,
    JobStartedPayload,
)
from eval_jobs.models.objects import ObjectReference

__all__ = [
    "ErrorCode",
    "EvaluationItem",
    "EvaluationResult",
    "ItemScore",
    "JobCancelledPayload",
    "JobCompletedPayload",
    "JobCreatedPayload",
    "JobFailedPayload",
    "JobMessage",
    "JobMessageType",
    "JobPriority",
    "JobProgressPayload",
    "JobResults",
    "JobStartedPayload",
    "JobStatus",
    "JobType",
    "ObjectReference",
    "ResultsSummary",
    "SortField",
    "SortOrder",
]
