"""Job data models."""

import json
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from eval_jobs.models.enums import JobPriority, JobStatus, JobType
from eval_jobs.models.evaluation import EvaluationItem, JobResults
from eval_jobs.models.objects import ObjectReference


class EvaluationCriteria(BaseModel):
    """How item responses are judged."""

    model_config = ConfigDict(extra="forbid")

    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    use_semantic_scoring: bool = True
    custom_evaluators: Optional[list[str]] = None


class AgentConfiguration(BaseModel):
    """Hints for the agent that produces responses."""

    model_config = ConfigDict(extra="forbid")

    selected_agent_id: Optional[str] = None
    additional_instructions: Optional[str] = None
    knowledge_source: Optional[str] = None


class JobConfiguration(BaseModel):
    """Versioned configuration of an evaluation job.

    The dataset comes from exactly one of ``data_source`` (a JSON or
    JSON-lines location), ``data_source_ref`` (an object store id) or
    ``items`` (inline). Unknown fields are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    data_source: Optional[str] = None
    data_source_ref: Optional[str] = None
    items: Optional[list[EvaluationItem]] = None
    prompt_template: Optional[str] = None
    evaluation_criteria: Optional[EvaluationCriteria] = None
    agent_configuration: Optional[AgentConfiguration] = None

    @property
    def dataset_sources(self) -> list[str]:
        """Names of the dataset fields that are set."""
        sources = []
        if self.data_source:
            sources.append("data_source")
        if self.data_source_ref:
            sources.append("data_source_ref")
        if self.items is not None:
            sources.append("items")
        return sources

    def inline_dataset_bytes(self) -> int:
        """Serialized size of the inline items, in bytes."""
        if not self.items:
            return 0
        data = [item.model_dump(mode="json") for item in self.items]
        return len(json.dumps(data).encode("utf-8"))


class JobCreateRequest(BaseModel):
    """A job submission."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    type: JobType
    configuration: JobConfiguration
    priority: JobPriority = JobPriority.NORMAL

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Job name is required")
        return value

    @model_validator(mode="after")
    def _check_dataset(self) -> "JobCreateRequest":
        if self.type == JobType.BATCH_PROCESSING:
            return self

        sources = self.configuration.dataset_sources
        if not sources:
            raise ValueError(
                f"{self.type.value} jobs need one of data_source, data_source_ref or items"
            )
        if len(sources) > 1:
            raise ValueError(f"Only one dataset source may be set, got: {', '.join(sources)}")

        items = self.configuration.items
        if items is not None and not items:
            raise ValueError("Inline items must not be empty")
        if self.type == JobType.SINGLE_EVALUATION and items is not None and len(items) != 1:
            raise ValueError("single_evaluation jobs take exactly one item")
        return self


class JobProgress(BaseModel):
    """Progress of a running job."""

    total_items: int = Field(default=0, ge=0)
    completed_items: int = Field(default=0, ge=0)
    percentage: float = Field(default=0.0, ge=0.0, le=100.0)

    @model_validator(mode="after")
    def _completed_within_total(self) -> "JobProgress":
        if self.completed_items > self.total_items:
            raise ValueError("completed_items cannot exceed total_items")
        return self

    @classmethod
    def of(cls, completed: int, total: int) -> "JobProgress":
        """Build progress with the percentage derived from the counts."""
        percentage = round(completed / total * 100, 2) if total else 0.0
        return cls(total_items=total, completed_items=completed, percentage=percentage)


class JobErrorDetails(BaseModel):
    """Structured error recorded on a failed job."""

    error_code: str
    error_message: str
    error_timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    retry_possible: bool = False
    details: Optional[dict[str, Any]] = None


class Job(BaseModel):
    """An evaluation job tracked through its lifecycle."""

    id: str = Field(..., description="Unique job identifier")
    name: str
    description: Optional[str] = None
    type: JobType
    status: JobStatus = Field(default=JobStatus.PENDING)
    priority: JobPriority = JobPriority.NORMAL
    configuration: JobConfiguration

    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None

    progress: JobProgress = Field(default_factory=JobProgress)

    # Outcome
    error_details: Optional[JobErrorDetails] = None
    result_reference: Optional[ObjectReference] = None
    results: Optional[JobResults] = None

    correlation_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Check if job is in a terminal state."""
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        """Seconds from creation to completion (or now, while active)."""
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.created_at).total_seconds()
