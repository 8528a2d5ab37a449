"""
Locust load testing for the jobcore API.

Run with:
    locust -f tests/load/locustfile.py --host=http://localhost:8000

Or headless:
    locust -f tests/load/locustfile.py --host=http://localhost:8000 \
        --headless -u 100 -r 10 --run-time 5m

Set JOBCORE_API_KEY to the deployment's producer key.
"""

import os
import random
import uuid
from typing import Any

from locust import HttpUser, between, task

API_KEY = os.getenv("JOBCORE_API_KEY", "producer-key-change-in-production")

# Test tenant configuration
TEST_TENANTS = [f"load-test-tenant-{i}" for i in range(5)]

JOB_TYPES = ["ai_response", "send_whatsapp", "send_reminder", "sync_contact"]


class ProducerUser(HttpUser):
    """
    Simulated producer.

    Traffic mix:
    - Job submissions (most common)
    - Job status checks
    - Job listing
    - Stats queries
    """

    wait_time = between(0.5, 2)

    def on_start(self):
        self.tenant_id = random.choice(TEST_TENANTS)
        self.token = _get_token(self.client, self.tenant_id)
        self.created_job_ids: list[str] = []

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @task(10)
    def enqueue_job(self):
        job_type = random.choice(JOB_TYPES)
        payload: dict[str, Any] = {"conversation_id": uuid.uuid4().hex[:12]}

        response = self.client.post(
            "/v1/jobs",
            json={
                "job_type": job_type,
                "payload": payload,
                "priority": random.choice([10, 100, 500]),
                "max_retries": 3,
            },
            headers=self._headers(),
            name="/v1/jobs [POST]",
        )

        if response.status_code == 201:
            self.created_job_ids.append(response.json()["id"])
            # Keep only recent job IDs
            if len(self.created_job_ids) > 100:
                self.created_job_ids = self.created_job_ids[-100:]

    @task(5)
    def get_job_status(self):
        if not self.created_job_ids:
            return

        job_id = random.choice(self.created_job_ids)
        self.client.get(
            f"/v1/jobs/{job_id}",
            headers=self._headers(),
            name="/v1/jobs/{job_id} [GET]",
        )

    @task(3)
    def list_jobs(self):
        status_filter = random.choice([None, "pending", "processing", "completed", "dead"])
        params: dict[str, Any] = {"page": 1, "page_size": 20}
        if status_filter:
            params["status"] = status_filter

        self.client.get(
            "/v1/jobs",
            params=params,
            headers=self._headers(),
            name="/v1/jobs [GET]",
        )

    @task(2)
    def get_stats(self):
        self.client.get(
            "/v1/jobs/stats",
            headers=self._headers(),
            name="/v1/jobs/stats [GET]",
        )

    @task(1)
    def health_check(self):
        self.client.get("/health", name="/health [GET]")


class WebhookFailureUser(HttpUser):
    """
    Producer that keeps reporting the same few failures.

    Exercises dead letter deduplication: most submissions should collapse
    into an existing entry rather than create a new one.
    """

    wait_time = between(1, 3)

    def on_start(self):
        self.tenant_id = random.choice(TEST_TENANTS)
        self.token = _get_token(self.client, self.tenant_id)
        self.correlation_ids = [f"wamid.{uuid.uuid4().hex[:10]}" for _ in range(5)]

    @task
    def report_failure(self):
        correlation_id = random.choice(self.correlation_ids)
        with self.client.post(
            "/v1/dead-letters",
            json={
                "correlation_id": correlation_id,
                "channel": "whatsapp",
                "stage": "webhook",
                "payload": {"id": correlation_id},
                "error_message": "contact not found",
            },
            headers={"Authorization": f"Bearer {self.token}"},
            name="/v1/dead-letters [POST]",
            catch_response=True,
        ) as response:
            if response.status_code != 201:
                response.failure(f"Unexpected status {response.status_code}")


def _get_token(client, tenant_id: str) -> str:
    response = client.post(
        "/auth/token",
        json={"api_key": API_KEY, "tenant_id": tenant_id},
    )
    if response.status_code == 200:
        return response.json()["access_token"]
    return ""
