"""Tests for the status, queue stats and health endpoints."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from jobcore.broker.memory import InMemoryBroker
from jobcore.broker.models import QueueName
from jobcore.errors import BrokerUnavailableError
from jobcore.main import app
from jobcore.services.infrastructure.job_management.job_manager import JobService


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def service(broker, fast_config):
    return JobService(broker, app_config=fast_config)


@pytest.fixture
def client(service):
    """Test client with the job service installed before startup."""
    app.state.job_service = service
    with TestClient(app) as test_client:
        yield test_client
    app.state.job_service = None


def enqueue(service, payload) -> str:
    result = asyncio.run(service.producer.add_job(payload.kind, payload))
    return result.job_id


class TestStatusEndpoint:
    def test_get_status(self, service, client, video_payload):
        job_id = enqueue(service, video_payload)

        response = client.get("/jobs/status", params={"job_id": job_id, "queue": "video"})

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == job_id
        assert body["status"] == "waiting"
        assert body["progress"] == 0

    def test_unknown_job_is_404(self, client):
        response = client.get("/jobs/status", params={"job_id": "42", "queue": "ai"})
        assert response.status_code == 404

    def test_missing_parameters_are_rejected(self, client):
        assert client.get("/jobs/status", params={"job_id": "1"}).status_code == 422
        response = client.get("/jobs/status", params={"job_id": "1", "queue": "audio"})
        assert response.status_code == 422

    def test_broker_outage_is_503(self, broker, client):
        broker.set_available(False)

        response = client.get("/jobs/status", params={"job_id": "1", "queue": "video"})

        assert response.status_code == 503


class TestBatchStatusEndpoint:
    def test_batch_status(self, service, client, video_payload, ai_payload):
        video_id = enqueue(service, video_payload)
        ai_id = enqueue(service, ai_payload)

        response = client.post(
            "/jobs/status",
            json={
                "jobs": [
                    {"job_id": video_id, "queue": "video"},
                    {"job_id": ai_id, "queue": "ai"},
                    {"job_id": "77", "queue": "document"},
                ]
            },
        )

        assert response.status_code == 200
        statuses = [job["status"] for job in response.json()["jobs"]]
        assert statuses == ["waiting", "waiting", "not_found"]

    def test_batch_limit(self, client):
        jobs = [{"job_id": str(i), "queue": "video"} for i in range(21)]

        response = client.post("/jobs/status", json={"jobs": jobs})

        assert response.status_code == 400

    def test_empty_batch_is_rejected(self, client):
        assert client.post("/jobs/status", json={"jobs": []}).status_code == 422


class TestOperationalEndpoints:
    def test_queue_stats(self, service, client, document_payload):
        enqueue(service, document_payload)

        response = client.get("/jobs/queue-stats")

        assert response.status_code == 200
        body = response.json()
        assert body["queues"]["document"]["waiting"] == 1
        assert body["totals"]["total"] == 1

    def test_queue_stats_broker_outage(self, broker, client):
        broker.get_counts = AsyncMock(side_effect=BrokerUnavailableError())
        assert client.get("/jobs/queue-stats").status_code == 503

    def test_health_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["broker_reachable"] is True
        assert set(body["queues"]) == {q.value for q in QueueName}

    def test_health_degraded(self, broker, client):
        broker.ping = AsyncMock(return_value=False)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_health_unhealthy(self, broker, client):
        broker.set_available(False)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_worker_stats(self, client):
        response = client.get("/jobs/worker-stats")

        assert response.status_code == 200
        body = response.json()
        assert body["running"] is False
        assert body["pools"] == {}
        assert body["metrics"]["total_executions"] == 0
