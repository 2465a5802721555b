"""Job lifecycle: models, persistence and state transitions."""

from eval_jobs.jobs.models import (
    Job,
    JobConfiguration,
    JobCreateRequest,
    JobErrorDetails,
    JobProgress,
)
from eval_jobs.jobs.state_machine import can_transition, ensure_transition
from eval_jobs.jobs.store import JobStore

__all__ = [
    "Job",
    "JobConfiguration",
    "JobCreateRequest",
    "JobErrorDetails",
    "JobProgress",
    "JobStore",
    "can_transition",
    "ensure_transition",
]
