"""Eval Jobs.

Asynchronous evaluation job service. Clients submit evaluation jobs, a pool
of queue workers scores each item against an external scoring collaborator,
and a query API exposes job state and results.
"""

__version__ = "0.1.0"

from eval_jobs.models.enums import JobMessageType, JobStatus, JobType

__all__ = [
    "__version__",
    "JobMessageType",
    "JobStatus",
    "JobType",
]
