"""Job status transitions.

    pending -> running -> completed | failed
    pending -> cancelled
    running -> cancelled

Completed, failed and cancelled are terminal.
"""

from eval_jobs.errors import ConflictError, JobNotCancellableError
from eval_jobs.models.enums import JobStatus

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether ``current -> target`` is a legal transition."""
    return target in ALLOWED_TRANSITIONS[current]


def source_statuses(target: JobStatus) -> frozenset[JobStatus]:
    """All statuses from which ``target`` can be reached."""
    return frozenset(
        status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def ensure_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    """Raise ConflictError unless ``current -> target`` is legal."""
    if can_transition(current, target):
        return

    if target == JobStatus.CANCELLED and current == JobStatus.CANCELLED:
        raise ConflictError(
            f"Job '{job_id}' is already cancelled",
            code="JOB_ALREADY_CANCELLED",
        )
    if target == JobStatus.CANCELLED:
        raise JobNotCancellableError(
            f"Job '{job_id}' is {current.value} and can no longer be cancelled"
        )
    raise ConflictError(
        f"Job '{job_id}' cannot move from {current.value} to {target.value}",
        details={"current_status": current.value, "target_status": target.value},
    )
