"""
Integration tests for API endpoints.
"""

from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.api.auth import create_access_token
from jobcore.config import get_settings
from jobcore.constants import JobType
from jobcore.db.repository import JobRepository


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "version" in data

    async def test_liveness_check(self, client: AsyncClient):
        """Test liveness check endpoint."""
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["alive"] is True

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["ready"] is True

    async def test_metrics_endpoint(self, client: AsyncClient):
        """Test Prometheus metrics endpoint."""
        await client.get("/live")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "api_requests_total" in response.text


class TestAuthEndpoints:
    """Tests for authentication endpoints."""

    async def test_get_token_valid(self, client: AsyncClient):
        """Test getting a producer token with a valid API key."""
        settings = get_settings()
        response = await client.post(
            "/auth/token",
            json={"api_key": settings.api_key, "tenant_id": "test-tenant"},
        )

        assert response.status_code == 200
        data = response.json()
        assert "access_token" in data
        assert data["token_type"] == "bearer"
        assert data["operator"] is False

    async def test_get_operator_token(self, client: AsyncClient):
        settings = get_settings()
        response = await client.post(
            "/auth/token",
            json={"api_key": settings.operator_api_key, "tenant_id": "ops"},
        )

        assert response.status_code == 200
        assert response.json()["operator"] is True

    async def test_get_token_invalid(self, client: AsyncClient):
        """Test getting token with invalid API key."""
        response = await client.post(
            "/auth/token",
            json={"api_key": "invalid-key", "tenant_id": "test-tenant"},
        )

        assert response.status_code == 401

    async def test_missing_token_rejected(self, client: AsyncClient):
        response = await client.get("/v1/jobs")

        assert response.status_code in (401, 403)


class TestJobEndpoints:
    """Tests for job management endpoints."""

    async def test_enqueue_job(
        self,
        client: AsyncClient,
        auth_headers: dict,
        test_tenant_id: str,
    ):
        """Test enqueuing a job for the caller's tenant."""
        response = await client.post(
            "/v1/jobs",
            json={
                "job_type": "ai_response",
                "payload": {"conversation_id": "c-1"},
                "priority": 10,
            },
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["tenant_id"] == test_tenant_id
        assert data["status"] == "pending"
        assert data["priority"] == 10
        assert data["retry_count"] == 0
        assert data["max_retries"] == 3

    async def test_enqueue_schedule_with_offset_stored_as_utc(
        self,
        client: AsyncClient,
        auth_headers: dict,
    ):
        """Test schedule times sent with a UTC offset or Z suffix come back in UTC."""
        response = await client.post(
            "/v1/jobs",
            json={
                "job_type": "send_reminder",
                "scheduled_for": "2030-01-01T05:30:00+05:00",
                "not_before": "2030-01-01T00:15:00Z",
            },
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["scheduled_for"].startswith("2030-01-01T00:30:00")
        assert data["not_before"].startswith("2030-01-01T00:15:00")

    async def test_enqueue_validation(self, client: AsyncClient, auth_headers: dict):
        """Test malformed enqueue requests are rejected."""
        unknown_type = await client.post(
            "/v1/jobs",
            json={"job_type": "mine_bitcoin"},
            headers=auth_headers,
        )
        bad_priority = await client.post(
            "/v1/jobs",
            json={"job_type": "ai_response", "priority": 0},
            headers=auth_headers,
        )

        assert unknown_type.status_code == 422
        assert bad_priority.status_code == 422

    async def test_enqueue_for_other_tenant_forbidden(
        self,
        client: AsyncClient,
        auth_headers: dict,
    ):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "ai_response", "tenant_id": "someone-else"},
            headers=auth_headers,
        )

        assert response.status_code == 403

    async def test_operator_enqueues_for_any_tenant(
        self,
        client: AsyncClient,
        operator_headers: dict,
    ):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "daily_report", "tenant_id": "acme"},
            headers=operator_headers,
        )

        assert response.status_code == 201
        assert response.json()["tenant_id"] == "acme"

    async def test_get_job(self, client: AsyncClient, auth_headers: dict):
        """Test getting job details."""
        create_response = await client.post(
            "/v1/jobs",
            json={"job_type": "sync_contact", "payload": {"contact_id": "9"}},
            headers=auth_headers,
        )
        job_id = create_response.json()["id"]

        response = await client.get(f"/v1/jobs/{job_id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["id"] == job_id
        assert response.json()["payload"] == {"contact_id": "9"}

    async def test_get_job_not_found(self, client: AsyncClient, auth_headers: dict):
        """Test getting non-existent job."""
        response = await client.get(f"/v1/jobs/{uuid4()}", headers=auth_headers)

        assert response.status_code == 404

    async def test_get_job_of_other_tenant_forbidden(
        self,
        client: AsyncClient,
        auth_headers: dict,
    ):
        """Test tenant isolation on reads."""
        create_response = await client.post(
            "/v1/jobs",
            json={"job_type": "sync_contact"},
            headers=auth_headers,
        )
        job_id = create_response.json()["id"]
        other_headers = {
            "Authorization": f"Bearer {create_access_token(tenant_id='other-tenant')}"
        }

        response = await client.get(f"/v1/jobs/{job_id}", headers=other_headers)

        assert response.status_code == 403

    async def test_list_jobs(self, client: AsyncClient, auth_headers: dict):
        """Test listing jobs."""
        for _ in range(3):
            await client.post(
                "/v1/jobs",
                json={"job_type": "send_reminder"},
                headers=auth_headers,
            )

        response = await client.get(
            "/v1/jobs?page=1&page_size=2&job_type=send_reminder",
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert len(data["jobs"]) == 2
        assert data["has_next"] is True

    async def test_cancel_job(self, client: AsyncClient, auth_headers: dict):
        """Test cancelling a pending job and cancelling it again."""
        create_response = await client.post(
            "/v1/jobs",
            json={"job_type": "send_reminder"},
            headers=auth_headers,
        )
        job_id = create_response.json()["id"]

        response = await client.post(f"/v1/jobs/{job_id}/cancel", headers=auth_headers)
        again = await client.post(f"/v1/jobs/{job_id}/cancel", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert again.status_code == 409

    async def test_retry_requires_dead_job(
        self,
        client: AsyncClient,
        auth_headers: dict,
    ):
        create_response = await client.post(
            "/v1/jobs",
            json={"job_type": "send_reminder"},
            headers=auth_headers,
        )
        job_id = create_response.json()["id"]

        response = await client.post(f"/v1/jobs/{job_id}/retry", headers=auth_headers)

        assert response.status_code == 400

    async def test_retry_dead_job(
        self,
        client: AsyncClient,
        auth_headers: dict,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        """Test an operator-style manual retry puts a dead job back in the queue."""
        repo = JobRepository(db_session)
        await repo.enqueue(active_tenant, JobType.AI_RESPONSE, {}, max_retries=0)
        await db_session.commit()
        claimed = await repo.claim_next("w")
        await repo.mark_failed(claimed.id, claimed.lease_token, "boom")
        await db_session.commit()

        response = await client.post(
            f"/v1/jobs/{claimed.id}/retry",
            json={"reset_retries": True},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["completed_at"] is None

    async def test_job_stats(self, client: AsyncClient, auth_headers: dict):
        await client.post("/v1/jobs", json={"job_type": "ai_response"}, headers=auth_headers)

        response = await client.get("/v1/jobs/stats", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["counts"]["pending"] == 1
        assert data["counts"]["dead"] == 0
        assert data["queue_depth"] == 1


class TestDeadLetterEndpoints:
    """Tests for dead letter endpoints."""

    @pytest.fixture
    def submission(self) -> dict:
        return {
            "correlation_id": "wamid.123",
            "channel": "whatsapp",
            "stage": "webhook",
            "payload": {"text": "hello"},
            "error_message": "contact not found",
            "error_code": "contact_not_found",
        }

    async def test_submit_and_dedup(
        self,
        client: AsyncClient,
        auth_headers: dict,
        submission: dict,
        test_tenant_id: str,
    ):
        """Test a repeated submission collapses into the first entry."""
        first = await client.post("/v1/dead-letters", json=submission, headers=auth_headers)
        second = await client.post("/v1/dead-letters", json=submission, headers=auth_headers)

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["entry"]["tenant_id"] == test_tenant_id
        assert second.json()["created"] is False
        assert second.json()["entry"]["id"] == first.json()["entry"]["id"]
        assert second.json()["entry"]["failure_count"] == 2

    async def test_list_and_get(
        self,
        client: AsyncClient,
        auth_headers: dict,
        submission: dict,
    ):
        created = await client.post("/v1/dead-letters", json=submission, headers=auth_headers)
        entry_id = created.json()["entry"]["id"]

        listing = await client.get("/v1/dead-letters?status=pending", headers=auth_headers)
        detail = await client.get(f"/v1/dead-letters/{entry_id}", headers=auth_headers)

        assert listing.status_code == 200
        assert listing.json()["total"] == 1
        assert detail.status_code == 200
        assert detail.json()["error_code"] == "contact_not_found"

    async def test_resolve_is_operator_only(
        self,
        client: AsyncClient,
        auth_headers: dict,
        operator_headers: dict,
        submission: dict,
    ):
        created = await client.post("/v1/dead-letters", json=submission, headers=auth_headers)
        entry_id = created.json()["entry"]["id"]

        forbidden = await client.post(
            f"/v1/dead-letters/{entry_id}/resolve", headers=auth_headers
        )
        resolved = await client.post(
            f"/v1/dead-letters/{entry_id}/resolve",
            json={"notes": "contact created manually"},
            headers=operator_headers,
        )
        again = await client.post(
            f"/v1/dead-letters/{entry_id}/dismiss", headers=operator_headers
        )

        assert forbidden.status_code == 403
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"
        assert resolved.json()["resolution_notes"] == "contact created manually"
        assert again.status_code == 409

    async def test_archive_is_operator_only(
        self,
        client: AsyncClient,
        auth_headers: dict,
        operator_headers: dict,
        submission: dict,
    ):
        await client.post("/v1/dead-letters", json=submission, headers=auth_headers)

        forbidden = await client.post("/v1/dead-letters/archive", headers=auth_headers)
        response = await client.post(
            "/v1/dead-letters/archive",
            json={"max_failures": 1},
            headers=operator_headers,
        )

        assert forbidden.status_code == 403
        assert response.status_code == 200
        assert response.json()["archived"] == 1

    async def test_stats(
        self,
        client: AsyncClient,
        auth_headers: dict,
        submission: dict,
    ):
        await client.post("/v1/dead-letters", json=submission, headers=auth_headers)

        response = await client.get("/v1/dead-letters/stats", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["counts"]["pending"] == 1
