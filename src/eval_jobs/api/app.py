"""
HTTP surface for submitting, tracking and cancelling evaluation jobs.

This module only handles HTTP concerns; the job lifecycle lives in
``eval_jobs.jobs``.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from eval_jobs import __version__
from eval_jobs.api.schemas import (
    CancelRequest,
    ErrorDetail,
    ErrorResponse,
    JobCreatedResponse,
    JobListResponse,
    JobResponse,
    job_to_wire,
    page_to_wire,
)
from eval_jobs.config.models import EvalJobsConfig
from eval_jobs.errors import AuthenticationError, EvalJobsError
from eval_jobs.services import Services, build_services

logger = logging.getLogger("eval_jobs.api")

# Receives the bearer token (or None) and returns a truthy principal when valid
Authenticator = Callable[[Optional[str]], Awaitable[Any]]


def error_body(code: str, message: str, details: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Build the ``{"error": {...}}`` envelope."""
    return ErrorResponse(
        error=ErrorDetail(code=code, message=message, details=details or {})
    ).model_dump()


def _internal_error(trace_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content=error_body(
            "INTERNAL_ERROR",
            "An internal error occurred",
            {"trace_id": trace_id},
        ),
    )


def create_app(
    config: Optional[EvalJobsConfig] = None,
    services: Optional[Services] = None,
    authenticate: Optional[Authenticator] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Configuration used to build services when none are given.
        services: Pre-built services (tests pass their own).
        authenticate: Optional bearer-token check; no auth when absent.

    Returns:
        Configured FastAPI app instance
    """
    services = services or build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.initialize()
        logger.info("Evaluation jobs API started")
        yield

    app = FastAPI(
        title="Evaluation Jobs API",
        description="Submit, track and cancel asynchronous evaluation jobs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # Credentials are only allowed for an explicit origin list, never with "*"
    origins = services.config.api.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=bool(origins) and "*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app, services, authenticate)

    return app


def _register_error_handlers(app: FastAPI):
    """Map errors to the uniform error envelope."""

    @app.exception_handler(EvalJobsError)
    async def handle_eval_jobs_error(request: Request, exc: EvalJobsError):
        if exc.http_status >= 500:
            trace_id = uuid.uuid4().hex
            logger.error(f"[{trace_id}] {exc.code}: {exc.message}")
            return _internal_error(trace_id)

        return JSONResponse(
            status_code=exc.http_status,
            content=error_body(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=error_body("VALIDATION_ERROR", "Invalid request", {"errors": errors}),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        trace_id = uuid.uuid4().hex
        logger.exception(f"[{trace_id}] Unhandled error on {request.method} {request.url.path}")
        return _internal_error(trace_id)


def _register_routes(app: FastAPI, services: Services, authenticate: Optional[Authenticator]):
    """Register all API routes."""

    async def require_auth(authorization: Optional[str] = Header(None)) -> None:
        if authenticate is None:
            return
        token = None
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
        if not await authenticate(token):
            raise AuthenticationError("Missing or invalid bearer token")

    producer = services.producer
    query = services.query

    @app.get("/health")
    async def health_check():
        """Liveness with queue depth and dead-letter count."""
        return {
            "status": "healthy",
            "version": __version__,
            "queue_depth": await services.queue.depth(),
            "dead_letter_count": await services.queue.dead_letter_count(),
            "jobs": await services.store.count_by_status(),
        }

    @app.post(
        "/api/jobs",
        status_code=202,
        response_model=JobCreatedResponse,
        dependencies=[Depends(require_auth)],
    )
    async def create_job(
        body: dict[str, Any] = Body(...),
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        traceparent: Optional[str] = Header(None),
    ):
        """
        Submit an evaluation job.

        The job is persisted and queued; use the status URL to follow it.
        """
        receipt = await producer.submit_job(
            body,
            idempotency_key=idempotency_key,
            correlation_id=traceparent,
        )
        message = "Job created successfully" if receipt.created else "Job already submitted"
        return JobCreatedResponse(
            job_id=receipt.job_id,
            status=receipt.status,
            status_url=receipt.status_url,
            created=receipt.created,
            message=message,
        )

    @app.get("/api/jobs", response_model=JobListResponse, dependencies=[Depends(require_auth)])
    async def list_jobs(
        status: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        page: int = Query(1),
        limit: int = Query(20),
        sort: Optional[str] = Query(None),
        order: Optional[str] = Query(None),
    ):
        """List jobs with filtering, sorting and pagination."""
        result = await query.list_jobs(
            status=status,
            job_type=type,
            page=page,
            page_size=limit,
            sort=sort,
            order=order,
        )
        return page_to_wire(result)

    @app.get(
        "/api/jobs/{job_id}",
        response_model=JobResponse,
        dependencies=[Depends(require_auth)],
    )
    async def get_job(job_id: str):
        """Get a job by id."""
        return job_to_wire(await query.get_job(job_id))

    @app.post(
        "/api/jobs/{job_id}/cancel",
        response_model=JobResponse,
        dependencies=[Depends(require_auth)],
    )
    async def cancel_job(job_id: str, body: Optional[CancelRequest] = Body(None)):
        """Cancel a pending or running job."""
        reason = body.reason if body else None
        return job_to_wire(await query.cancel_job(job_id, reason=reason))

    @app.get("/api/jobs/{job_id}/results", dependencies=[Depends(require_auth)])
    async def get_results(job_id: str):
        """Stream the results of a completed job."""
        stream = await query.stream_results(job_id)
        return StreamingResponse(stream, media_type="application/json")
