"""Tests for the HTTP API."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from eval_jobs.api.app import create_app
from eval_jobs.errors import StoreError


@pytest.fixture
def client(services):
    """Test client with the app lifespan running."""
    app = create_app(services=services)
    with TestClient(app) as test_client:
        yield test_client


def submit(client, request, **headers):
    return client.post("/api/jobs", json=request, headers=headers)


class TestHealth:
    def test_health(self, client, make_request):
        submit(client, make_request(1))

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["queue_depth"] == 1
        assert body["dead_letter_count"] == 0
        assert body["jobs"]["pending"] == 1


class TestSubmitJob:
    """Tests for POST /api/jobs."""

    def test_accepted(self, client, make_request):
        response = submit(client, make_request(2))

        assert response.status_code == 202
        body = response.json()
        assert body["job_id"].startswith("job_")
        assert body["status"] == "pending"
        assert body["status_url"] == f"/api/jobs/{body['job_id']}"
        assert body["created"] is True

    def test_traceparent_becomes_correlation_id(self, client, make_request):
        traceparent = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
        job_id = submit(client, make_request(1), traceparent=traceparent).json()["job_id"]

        job = client.get(f"/api/jobs/{job_id}").json()
        assert job["correlation_id"] == traceparent

    def test_idempotency_key(self, client, make_request):
        first = submit(client, make_request(1), **{"Idempotency-Key": "retry-1"})
        second = submit(client, make_request(1), **{"Idempotency-Key": "retry-1"})

        assert second.status_code == 202
        assert second.json()["job_id"] == first.json()["job_id"]
        assert second.json()["created"] is False
        assert client.get("/health").json()["queue_depth"] == 1

    def test_validation_error(self, client, make_request):
        response = submit(client, make_request(1, type="nightly"))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert any(e["field"] == "type" for e in error["details"]["errors"])

    def test_body_must_be_an_object(self, client):
        response = client.post("/api/jobs", json=["not", "an", "object"])

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestGetAndListJobs:
    """Tests for job lookup and listing."""

    def test_get_job(self, client, make_request):
        job_id = submit(client, make_request(3)).json()["job_id"]

        response = client.get(f"/api/jobs/{job_id}")

        assert response.status_code == 200
        job = response.json()
        assert job["id"] == job_id
        assert job["type"] == "bulk_evaluation"
        assert job["progress"] == {"total_items": 0, "completed_items": 0, "percentage": 0.0}
        assert len(job["configuration"]["items"]) == 3

    def test_get_missing_job(self, client):
        response = client.get("/api/jobs/job_doesNotExist")

        assert response.status_code == 404
        assert response.json() == {
            "error": {
                "code": "JOB_NOT_FOUND",
                "message": "Job with ID 'job_doesNotExist' not found",
                "details": {},
            }
        }

    def test_list_pagination(self, client, make_request):
        for i in range(5):
            submit(client, make_request(1, name=f"Job {i}"))

        response = client.get("/api/jobs", params={"page": 2, "limit": 2})

        assert response.status_code == 200
        body = response.json()
        assert len(body["jobs"]) == 2
        assert body["pagination"] == {
            "current_page": 2,
            "total_pages": 3,
            "total_items": 5,
            "items_per_page": 2,
            "has_next": True,
            "has_previous": True,
        }

    def test_list_invalid_status(self, client):
        response = client.get("/api/jobs", params={"status": "paused"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_list_limit_out_of_range(self, client):
        assert client.get("/api/jobs", params={"limit": 500}).status_code == 400


class TestCancelJob:
    """Tests for POST /api/jobs/{id}/cancel."""

    def test_cancel(self, client, make_request):
        job_id = submit(client, make_request(1)).json()["job_id"]

        response = client.post(f"/api/jobs/{job_id}/cancel", json={"reason": "duplicate run"})

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["completed_at"] is not None

    def test_cancel_without_body(self, client, make_request):
        job_id = submit(client, make_request(1)).json()["job_id"]
        assert client.post(f"/api/jobs/{job_id}/cancel").status_code == 200

    def test_cancel_twice_conflicts(self, client, make_request):
        job_id = submit(client, make_request(1)).json()["job_id"]
        client.post(f"/api/jobs/{job_id}/cancel")

        response = client.post(f"/api/jobs/{job_id}/cancel")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "JOB_ALREADY_CANCELLED"

    def test_cancel_missing(self, client):
        assert client.post("/api/jobs/job_doesNotExist/cancel").status_code == 404

    def test_cancel_completed_job(self, client, make_request, make_worker):
        job_id = submit(client, make_request(1)).json()["job_id"]
        asyncio.run(make_worker().process_one())

        response = client.post(f"/api/jobs/{job_id}/cancel")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "JOB_NOT_CANCELLABLE"


class TestResults:
    """Tests for GET /api/jobs/{id}/results."""

    def test_results_not_ready(self, client, make_request):
        job_id = submit(client, make_request(1)).json()["job_id"]

        response = client.get(f"/api/jobs/{job_id}/results")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "JOB_NOT_COMPLETED"

    def test_results_after_worker_run(self, client, make_request, make_worker):
        """End to end: submit over HTTP, run the worker, fetch results."""
        job_id = submit(client, make_request(3)).json()["job_id"]

        worker = make_worker()
        assert asyncio.run(worker.process_one()) is True

        job = client.get(f"/api/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["progress"]["percentage"] == 100.0
        assert job["results_summary"]["passed_evaluations"] == 3
        assert job["result_reference"]["object_name"] == f"{job_id}/results.json"

        response = client.get(f"/api/jobs/{job_id}/results")
        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["total_evaluations"] == 3
        assert len(body["detailed_results"]) == 3
        assert all(result["similarity_score"] == 1.0 for result in body["detailed_results"])


class TestErrors:
    def test_infrastructure_error_hides_details(self, services, client, monkeypatch):
        monkeypatch.setattr(
            services.store, "get_job", AsyncMock(side_effect=StoreError("disk full at /var/db"))
        )

        response = client.get("/api/jobs/job_anything")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert error["message"] == "An internal error occurred"
        assert error["details"]["trace_id"]
        assert "disk full" not in response.text

    def test_unexpected_error(self, services, monkeypatch):
        monkeypatch.setattr(
            services.store, "count_by_status", AsyncMock(side_effect=RuntimeError("boom"))
        )
        app = create_app(services=services)

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/health")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"


class TestAuthentication:
    @pytest.fixture
    def secured(self, services):
        async def authenticate(token):
            return token == "s3cret"

        with TestClient(create_app(services=services, authenticate=authenticate)) as client:
            yield client

    def test_missing_token(self, secured):
        response = secured.get("/api/jobs")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_wrong_token(self, secured):
        response = secured.get("/api/jobs", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_valid_token(self, secured):
        response = secured.get("/api/jobs", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200

    def test_health_is_open(self, secured):
        assert secured.get("/health").status_code == 200


class TestCors:
    """Tests for cross-origin access."""

    def _preflight(self, client, origin):
        return client.options(
            "/api/jobs",
            headers={"Origin": origin, "Access-Control-Request-Method": "GET"},
        )

    def test_no_origins_by_default(self, client):
        response = client.get("/api/jobs", headers={"Origin": "https://evil.example"})

        assert "access-control-allow-origin" not in response.headers
        assert "access-control-allow-credentials" not in response.headers
        assert self._preflight(client, "https://evil.example").status_code == 400

    def test_configured_origin_gets_credentials(self, services):
        services.config.api.cors_origins = ["https://dashboard.example"]

        with TestClient(create_app(services=services)) as client:
            allowed = client.get("/api/jobs", headers={"Origin": "https://dashboard.example"})
            other = client.get("/api/jobs", headers={"Origin": "https://evil.example"})

        assert allowed.headers["access-control-allow-origin"] == "https://dashboard.example"
        assert allowed.headers["access-control-allow-credentials"] == "true"
        assert "access-control-allow-origin" not in other.headers

    def test_wildcard_never_allows_credentials(self, services):
        services.config.api.cors_origins = ["*"]

        with TestClient(create_app(services=services)) as client:
            response = client.get("/api/jobs", headers={"Origin": "https://evil.example"})

        assert response.headers["access-control-allow-origin"] == "*"
        assert "access-control-allow-credentials" not in response.headers
