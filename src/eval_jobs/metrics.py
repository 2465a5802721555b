"""Metrics collaborator used by producer and worker.

Counters and observations are reported through an injected object so that
job processing never depends on a metrics backend being present.
"""

from collections import defaultdict
from typing import Protocol, runtime_checkable

# Metric names
JOBS_SUBMITTED = "jobs_submitted"
JOBS_ACTIVE = "jobs_active"
JOBS_COMPLETED = "jobs_completed"
JOBS_FAILED = "jobs_failed"
JOBS_CANCELLED = "jobs_cancelled"
MESSAGES_PROCESSED = "messages_processed"
MESSAGES_RETRIED = "messages_retried"
MESSAGES_DEAD_LETTERED = "messages_dead_lettered"
ITEM_DURATION_SECONDS = "item_duration_seconds"


@runtime_checkable
class JobMetrics(Protocol):
    """Protocol for metrics sinks."""

    def increment(self, name: str, value: float = 1.0) -> None:
        """Increase a counter or gauge."""
        ...

    def decrement(self, name: str, value: float = 1.0) -> None:
        """Decrease a gauge."""
        ...

    def observe(self, name: str, value: float) -> None:
        """Record one observation of a distribution."""
        ...


class NullMetrics:
    """Metrics sink that discards everything."""

    def increment(self, name: str, value: float = 1.0) -> None:
        pass

    def decrement(self, name: str, value: float = 1.0) -> None:
        pass

    def observe(self, name: str, value: float) -> None:
        pass


class InMemoryMetrics:
    """Metrics sink that keeps values in memory, for tests and the CLI."""

    def __init__(self):
        self.counters: dict[str, float] = defaultdict(float)
        self.observations: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, value: float = 1.0) -> None:
        self.counters[name] += value

    def decrement(self, name: str, value: float = 1.0) -> None:
        self.counters[name] -= value

    def observe(self, name: str, value: float) -> None:
        self.observations[name].append(value)
