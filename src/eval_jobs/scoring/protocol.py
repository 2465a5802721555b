"""Protocol definitions for scoring collaborators."""

from typing import Protocol, runtime_checkable

from eval_jobs.jobs.models import JobConfiguration
from eval_jobs.models.evaluation import EvaluationItem, ItemScore


@runtime_checkable
class Scorer(Protocol):
    """Protocol for item scorers.

    A scorer compares the actual response for an item with the expected
    one. Implementations raise RetryableWorkerError for transient failures
    and TerminalWorkerError for failures that retrying cannot fix.
    """

    @property
    def name(self) -> str:
        """Return the scorer identifier."""
        ...

    async def score(self, item: EvaluationItem, configuration: JobConfiguration) -> ItemScore:
        """Score a single item.

        Args:
            item: The item to score.
            configuration: Configuration of the job the item belongs to.

        Returns:
            ItemScore with the actual response and a score in [0, 1].
        """
        ...
