"""Wire representations for the HTTP surface."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from eval_jobs.jobs.models import Job
from eval_jobs.jobs.query import JobPage
from eval_jobs.models.enums import JobPriority, JobStatus, JobType
from eval_jobs.models.evaluation import ResultsSummary


class ErrorDetail(BaseModel):
    """Body of an error response."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Error envelope: ``{"error": {...}}``."""

    error: ErrorDetail


class ProgressResponse(BaseModel):
    total_items: int
    completed_items: int
    percentage: float


class ErrorDetailsResponse(BaseModel):
    error_code: str
    error_message: str
    error_timestamp: datetime
    retry_possible: bool
    details: Optional[dict[str, Any]] = None


class ResultReferenceResponse(BaseModel):
    object_id: str
    container: str
    object_name: str
    content_type: str
    size_bytes: int
    expires_at: Optional[datetime] = None


class JobResponse(BaseModel):
    """A job as returned by the API."""

    id: str
    name: str
    description: Optional[str] = None
    type: JobType
    status: JobStatus
    priority: JobPriority
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    configuration: dict[str, Any]
    progress: ProgressResponse
    error_details: Optional[ErrorDetailsResponse] = None
    result_reference: Optional[ResultReferenceResponse] = None
    results_summary: Optional[ResultsSummary] = None
    correlation_id: Optional[str] = None


class JobCreatedResponse(BaseModel):
    """Response to an accepted submission."""

    job_id: str
    status: JobStatus
    status_url: str
    created: bool
    message: str


class PaginationResponse(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_previous: bool


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    pagination: PaginationResponse
    filters: dict[str, Optional[str]] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


def job_to_wire(job: Job) -> JobResponse:
    """Map a stored job to its API representation."""
    error_details = None
    if job.error_details is not None:
        error_details = ErrorDetailsResponse(
            error_code=job.error_details.error_code,
            error_message=job.error_details.error_message,
            error_timestamp=job.error_details.error_timestamp,
            retry_possible=job.error_details.retry_possible,
            details=job.error_details.details,
        )

    result_reference = None
    if job.result_reference is not None:
        ref = job.result_reference
        result_reference = ResultReferenceResponse(
            object_id=ref.object_id,
            container=ref.container,
            object_name=ref.object_name,
            content_type=ref.content_type,
            size_bytes=ref.size_bytes,
            expires_at=ref.expires_at,
        )

    return JobResponse(
        id=job.id,
        name=job.name,
        description=job.description,
        type=job.type,
        status=job.status,
        priority=job.priority,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
        estimated_completion=job.estimated_completion,
        configuration=job.configuration.model_dump(mode="json", exclude_none=True),
        progress=ProgressResponse(
            total_items=job.progress.total_items,
            completed_items=job.progress.completed_items,
            percentage=job.progress.percentage,
        ),
        error_details=error_details,
        result_reference=result_reference,
        results_summary=job.results.summary if job.results is not None else None,
        correlation_id=job.correlation_id,
    )


def page_to_wire(page: JobPage) -> JobListResponse:
    """Map a page of jobs to the list response."""
    return JobListResponse(
        jobs=[job_to_wire(job) for job in page.items],
        pagination=PaginationResponse(
            current_page=page.page,
            total_pages=page.total_pages,
            total_items=page.total_count,
            items_per_page=page.page_size,
            has_next=page.has_next,
            has_previous=page.has_previous,
        ),
        filters=page.filters,
    )
