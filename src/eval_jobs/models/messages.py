"""Queue message contract."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, Field

from eval_jobs.models.enums import JobMessageType, JobPriority, JobType
from eval_jobs.models.evaluation import ResultsSummary
from eval_jobs.models.objects import ObjectReference

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class JobMessage(BaseModel):
    """A message on the job queue.

    Every message references exactly one job. When the serialized payload
    exceeds the inline threshold the payload is empty and ``object_refs``
    points at the stored body instead.
    """

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job_id: str = Field(..., min_length=1)
    message_type: JobMessageType
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    object_refs: Optional[list[ObjectReference]] = None
    retry_count: int = Field(default=0, ge=0)

    @classmethod
    def create(
        cls,
        job_id: str,
        message_type: JobMessageType,
        payload: Union[BaseModel, dict[str, Any], None] = None,
        correlation_id: Optional[str] = None,
    ) -> "JobMessage":
        """Build a message with a typed or plain payload."""
        if isinstance(payload, BaseModel):
            body = payload.model_dump(mode="json", exclude_none=True)
        else:
            body = dict(payload or {})
        return cls(
            job_id=job_id,
            message_type=message_type,
            payload=body,
            correlation_id=correlation_id,
        )

    @property
    def is_offloaded(self) -> bool:
        """Whether the payload travels as an object reference."""
        return bool(self.object_refs)

    def payload_as(self, model: type[PayloadT]) -> PayloadT:
        """Parse the inline payload into a typed payload model."""
        return model.model_validate(self.payload)


class JobCreatedPayload(BaseModel):
    """Payload of JobCreated: a copy of the job configuration."""

    configuration: dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL


class JobStartedPayload(BaseModel):
    """Payload of JobStarted."""

    name: str
    type: JobType


class JobProgressPayload(BaseModel):
    """Payload of JobProgress."""

    total_items: int
    completed_items: int
    percentage: float
    current_item: Optional[str] = None


class JobCompletedPayload(BaseModel):
    """Payload of JobCompleted."""

    results_summary: Optional[ResultsSummary] = None
    results_ref: Optional[ObjectReference] = None


class JobFailedPayload(BaseModel):
    """Payload of JobFailed."""

    error_code: str
    error_message: str
    retry_possible: bool = False


class JobCancelledPayload(BaseModel):
    """Payload of JobCancelled."""

    reason: Optional[str] = None
