"""Evaluation item and result models."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EvaluationItem(BaseModel):
    """A single prompt to evaluate against its expected response."""

    model_config = ConfigDict(extra="forbid")

    item_id: Optional[str] = None
    prompt: str
    expected_response: str = ""
    # Pre-recorded agent answer; when absent the scorer produces one
    actual_response: Optional[str] = None


class ItemScore(BaseModel):
    """What the scoring collaborator returns for one item."""

    actual_response: str
    similarity_score: float = Field(ge=0.0, le=1.0)
    reasoning: Optional[str] = None
    differences: Optional[str] = None


class EvaluationResult(BaseModel):
    """Scored outcome for one evaluation item."""

    item_id: str
    prompt: str
    expected_response: str = ""
    actual_response: Optional[str] = None
    similarity_score: Optional[float] = None
    passed: bool = False
    reasoning: Optional[str] = None
    differences: Optional[str] = None


class ResultsSummary(BaseModel):
    """Aggregate statistics over a job's evaluation results."""

    total_evaluations: int = 0
    passed_evaluations: int = 0
    failed_evaluations: int = 0
    average_score: float = 0.0
    pass_rate: float = 0.0

    @classmethod
    def from_results(cls, results: list[EvaluationResult]) -> "ResultsSummary":
        """Summarize a list of results.

        Args:
            results: Per-item evaluation results.

        Returns:
            Summary with average score rounded to 3 decimals and pass rate
            (percent) rounded to 1 decimal.
        """
        total = len(results)
        passed = sum(1 for r in results if r.passed)
        scores = [r.similarity_score for r in results if r.similarity_score is not None]
        average = sum(scores) / len(scores) if scores else 0.0
        pass_rate = passed / total * 100.0 if total else 0.0

        return cls(
            total_evaluations=total,
            passed_evaluations=passed,
            failed_evaluations=total - passed,
            average_score=round(average, 3),
            pass_rate=round(pass_rate, 1),
        )


class JobResults(BaseModel):
    """Full result set of a completed job."""

    summary: ResultsSummary = Field(default_factory=ResultsSummary)
    detailed_results: list[EvaluationResult] = Field(default_factory=list)
