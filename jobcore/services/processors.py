"""Default processors: hand each job to the external video, document or AI service."""

import time
from typing import Any, Dict, Optional

import httpx

from jobcore.broker.models import (
    AIProcessingPayload,
    DocumentProcessingPayload,
    QueueName,
    VideoProcessingPayload,
)
from jobcore.config import Config, ServicesConfig, config
from jobcore.errors import NonRetryableJobError, ServiceCallError
from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.job_management.base import JobContext
from jobcore.services.infrastructure.job_management.registry import (
    ProcessorRegistry,
    QueueSettings,
)

logger = configure_logger(__name__)

# Client errors that can still succeed on a later attempt
RETRYABLE_CLIENT_STATUSES = frozenset({408, 409, 425, 429})


class ServiceClient:
    """Posts job payloads to one collaborator service.

    4xx answers fail the job for good; 5xx answers, timeouts and connection
    problems raise ServiceCallError so the job is retried.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.base_url = base_url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _build_headers(self) -> Dict[str, str]:
        headers = {"User-Agent": "jobcore/0.1.0", "Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def post(self, path: str, body: Dict[str, Any]) -> Any:
        if not self.base_url:
            raise NonRetryableJobError(
                f"No URL configured for the {self.name} service",
                {"service": self.name},
            )

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                headers=self._build_headers(),
                transport=self.transport,
            ) as client:
                response = await client.post(path, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code < 500 and status_code not in RETRYABLE_CLIENT_STATUSES:
                raise NonRetryableJobError(
                    f"{self.name} service rejected the job with HTTP {status_code}",
                    {
                        "service": self.name,
                        "status_code": status_code,
                        "response_body": e.response.text[:500],
                    },
                ) from e
            raise ServiceCallError(
                f"{self.name} service returned HTTP {status_code}",
                service=self.name,
                status_code=status_code,
            ) from e
        except httpx.RequestError as e:
            raise ServiceCallError(
                f"Could not reach the {self.name} service: {e.__class__.__name__}",
                service=self.name,
            ) from e

        if not response.content:
            return None
        return response.json()


class ServiceProcessors:
    """The production processors for the three workload classes."""

    def __init__(
        self,
        services: Optional[ServicesConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        services = services or config.services
        options = dict(
            api_key=services.api_key,
            timeout_seconds=services.timeout_seconds,
            transport=transport,
        )
        self.video = ServiceClient("video", services.video_url, **options)
        self.document = ServiceClient("document", services.document_url, **options)
        self.ai = ServiceClient("ai", services.ai_url, **options)

    async def _run(
        self, client: ServiceClient, path: str, body: Dict[str, Any], context: JobContext
    ) -> Dict[str, Any]:
        start_time = time.time()
        await context.update_progress(10)
        data = await client.post(path, body)
        processing_time_ms = int((time.time() - start_time) * 1000)

        logger.debug(
            f"{client.name} service call finished",
            extra={
                "queue": str(context.queue_name),
                "job_id": context.job_id,
                "attempt": context.attempt,
                "processing_time_ms": processing_time_ms,
                "event_type": "service_call_finished",
            },
        )
        return {"success": True, "data": data, "processing_time_ms": processing_time_ms}

    async def process_video(
        self, payload: VideoProcessingPayload, context: JobContext
    ) -> Dict[str, Any]:
        return await self._run(
            self.video,
            "/videos/process",
            payload.model_dump(mode="json", exclude={"kind"}),
            context,
        )

    async def process_document(
        self, payload: DocumentProcessingPayload, context: JobContext
    ) -> Dict[str, Any]:
        return await self._run(
            self.document,
            "/documents/process",
            payload.model_dump(mode="json", exclude={"kind"}),
            context,
        )

    async def process_ai(
        self, payload: AIProcessingPayload, context: JobContext
    ) -> Dict[str, Any]:
        return await self._run(
            self.ai,
            f"/ai/{payload.task}",
            payload.model_dump(mode="json", exclude={"kind"}),
            context,
        )


def build_registry(
    app_config: Optional[Config] = None,
    processors: Optional[ServiceProcessors] = None,
) -> ProcessorRegistry:
    """Registry with the service processors for every queue."""
    app_config = app_config or config
    processors = processors or ServiceProcessors(app_config.services)

    registry = ProcessorRegistry()
    for queue_name, processor in (
        (QueueName.VIDEO, processors.process_video),
        (QueueName.DOCUMENT, processors.process_document),
        (QueueName.AI, processors.process_ai),
    ):
        registry.register(
            queue_name,
            processor,
            settings=QueueSettings.from_config(queue_name, app_config),
        )
    return registry
