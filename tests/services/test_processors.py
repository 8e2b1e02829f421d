"""Tests for the default processors that call the collaborator services."""

import json

import httpx
import pytest

from jobcore.broker.memory import InMemoryBroker
from jobcore.broker.models import QueueName
from jobcore.config import Config, ServicesConfig
from jobcore.errors import NonRetryableJobError, ServiceCallError
from jobcore.services.infrastructure.job_management.base import JobContext
from jobcore.services.processors import ServiceProcessors, build_registry


def make_services(**overrides) -> ServicesConfig:
    values = dict(
        video_url="http://video.test",
        document_url="http://documents.test",
        ai_url="http://ai.test",
        api_key="secret",
        timeout_seconds=5,
    )
    values.update(overrides)
    return ServicesConfig(**values)


def make_context(queue_name: QueueName) -> JobContext:
    return JobContext(
        job_id="1",
        queue_name=queue_name,
        attempt=1,
        max_attempts=3,
        worker_name="test-worker",
        broker=InMemoryBroker(),
    )


class TestServiceProcessors:
    @pytest.mark.asyncio
    async def test_ai_job_posts_to_task_endpoint(self, ai_payload):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"embedding": [0.1, 0.2]})

        processors = ServiceProcessors(make_services(), httpx.MockTransport(handler))

        result = await processors.process_ai(ai_payload, make_context(QueueName.AI))

        assert result["success"] is True
        assert result["data"] == {"embedding": [0.1, 0.2]}
        assert requests[0].url == "http://ai.test/ai/embedding"
        assert requests[0].headers["x-api-key"] == "secret"
        body = json.loads(requests[0].content)
        assert body["user_id"] == "user-1"
        assert "kind" not in body

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, video_payload):
        transport = httpx.MockTransport(lambda request: httpx.Response(422))
        processors = ServiceProcessors(make_services(), transport)

        with pytest.raises(NonRetryableJobError):
            await processors.process_video(video_payload, make_context(QueueName.VIDEO))

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, video_payload):
        transport = httpx.MockTransport(lambda request: httpx.Response(429))
        processors = ServiceProcessors(make_services(), transport)

        with pytest.raises(ServiceCallError) as exc_info:
            await processors.process_video(video_payload, make_context(QueueName.VIDEO))
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, document_payload):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        processors = ServiceProcessors(make_services(), transport)

        with pytest.raises(ServiceCallError) as exc_info:
            await processors.process_document(
                document_payload, make_context(QueueName.DOCUMENT)
            )
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error_is_retried(self, document_payload):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        processors = ServiceProcessors(make_services(), httpx.MockTransport(handler))

        with pytest.raises(ServiceCallError):
            await processors.process_document(
                document_payload, make_context(QueueName.DOCUMENT)
            )

    @pytest.mark.asyncio
    async def test_missing_service_url(self, video_payload):
        processors = ServiceProcessors(make_services(video_url=""))

        with pytest.raises(NonRetryableJobError):
            await processors.process_video(video_payload, make_context(QueueName.VIDEO))


def test_build_registry_covers_every_queue(fast_config):
    app_config = Config(queues=fast_config.queues, services=make_services())

    registry = build_registry(app_config)

    assert registry.missing() == []
    assert registry.settings_for(QueueName.VIDEO).concurrency == 2
    assert registry.settings_for(QueueName.AI).concurrency == 4
