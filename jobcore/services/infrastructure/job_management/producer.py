"""Producer API used by request handlers to submit background work."""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import (
    AIProcessingPayload,
    AITaskType,
    CustomBaseModel,
    DocumentProcessingPayload,
    JobOptions,
    JobPayload,
    QueueName,
    VideoProcessingPayload,
    payload_adapter,
)
from jobcore.errors import JobValidationError, QueueClosedError
from jobcore.lib.logger import configure_logger

from .monitoring import QueueHealthAggregator
from .registry import QueueSettings

logger = configure_logger(__name__)

# (priority, delay_ms) per workload; lower priority runs first
VIDEO_DEFAULTS = (2, 100)
DOCUMENT_DEFAULTS = (3, 50)
AI_EMBEDDING_DEFAULTS = (5, 0)
AI_DEFAULTS = (8, 200)


class EnqueueResult(CustomBaseModel):
    job_id: str
    queue: QueueName
    status: str = "queued"
    estimated_wait_ms: int


class JobProducer:
    """Validates payloads and hands them to the broker.

    Producers never wait for the job itself: they get back the job id and
    an estimated wait, and poll the status tracker afterwards.
    """

    def __init__(
        self,
        broker: AbstractBroker,
        settings: Mapping[QueueName, QueueSettings],
        health: QueueHealthAggregator,
    ):
        self.broker = broker
        self.settings = dict(settings)
        self.health = health
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Refuse every further enqueue."""
        if not self._closed:
            self._closed = True
            logger.info("Producer closed", extra={"event_type": "producer_closed"})

    def _validate(
        self, queue_name: QueueName, payload: Union[JobPayload, Dict[str, Any]]
    ) -> JobPayload:
        if isinstance(payload, dict):
            payload = {"kind": str(queue_name), **payload}
        try:
            validated = payload_adapter.validate_python(payload)
        except ValidationError as e:
            raise JobValidationError(
                f"Invalid payload for queue: {queue_name}",
                {"errors": e.errors(include_url=False)},
            ) from e

        if validated.kind != str(queue_name):
            raise JobValidationError(
                f"Payload of kind {validated.kind} cannot go to queue: {queue_name}",
                {"queue": str(queue_name), "kind": validated.kind},
            )
        return validated

    async def add_job(
        self,
        queue_name: Union[QueueName, str],
        payload: Union[JobPayload, Dict[str, Any]],
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> EnqueueResult:
        """Enqueue a job and return its id with an estimated wait.

        Raises:
            QueueClosedError: the service is shutting down.
            JobValidationError: unknown queue or payload that does not fit it.
            BrokerUnavailableError: the broker could not record the job.
        """
        if self._closed:
            raise QueueClosedError()

        queue = self._queue(queue_name, delay_ms)
        validated = self._validate(queue, payload)
        return await self._enqueue(queue, validated, priority, delay_ms)

    async def add_jobs(
        self,
        queue_name: Union[QueueName, str],
        payloads: Sequence[Union[JobPayload, Dict[str, Any]]],
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> List[EnqueueResult]:
        """Enqueue several jobs for one queue.

        Every payload is validated before the first one is enqueued, so a bad
        payload rejects the whole batch. A broker failure part way through
        leaves the jobs before it queued.
        """
        if self._closed:
            raise QueueClosedError()

        queue = self._queue(queue_name, delay_ms)
        validated: List[JobPayload] = []
        for index, payload in enumerate(payloads):
            try:
                validated.append(self._validate(queue, payload))
            except JobValidationError as e:
                raise JobValidationError(
                    f"Invalid payload at index {index} for queue: {queue}",
                    {"index": index, **e.details},
                ) from e

        results = [
            await self._enqueue(queue, payload, priority, delay_ms)
            for payload in validated
        ]
        logger.info(
            f"Job batch queued: {queue}",
            extra={
                "queue": str(queue),
                "count": len(results),
                "event_type": "job_batch_queued",
            },
        )
        return results

    def _queue(
        self, queue_name: Union[QueueName, str], delay_ms: Optional[int]
    ) -> QueueName:
        try:
            queue = QueueName(queue_name)
        except ValueError as e:
            raise JobValidationError(f"Unknown queue: {queue_name}") from e
        if delay_ms is not None and delay_ms < 0:
            raise JobValidationError("delay_ms must not be negative", {"delay_ms": delay_ms})
        return queue

    async def _enqueue(
        self,
        queue: QueueName,
        validated: JobPayload,
        priority: Optional[int],
        delay_ms: Optional[int],
    ) -> EnqueueResult:
        settings = self.settings.get(queue) or QueueSettings(name=queue)
        options: JobOptions = settings.job_options(
            priority=priority or 0, delay_ms=delay_ms or 0
        )

        job = await self.broker.enqueue(queue, validated, options)
        estimated_wait_ms = await self.health.estimate_wait(queue)

        logger.info(
            f"Job queued: {queue}",
            extra={
                "queue": str(queue),
                "job_id": job.id,
                "priority": options.priority,
                "delay_ms": options.delay_ms,
                "user_id": validated.user_id,
                "estimated_wait_ms": estimated_wait_ms,
                "event_type": "job_queued",
            },
        )
        return EnqueueResult(
            job_id=job.id, queue=queue, estimated_wait_ms=estimated_wait_ms
        )

    async def add_video_processing_job(
        self,
        payload: Union[VideoProcessingPayload, Dict[str, Any]],
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> EnqueueResult:
        default_priority, default_delay = VIDEO_DEFAULTS
        return await self.add_job(
            QueueName.VIDEO,
            payload,
            priority=default_priority if priority is None else priority,
            delay_ms=default_delay if delay_ms is None else delay_ms,
        )

    async def add_document_processing_job(
        self,
        payload: Union[DocumentProcessingPayload, Dict[str, Any]],
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> EnqueueResult:
        default_priority, default_delay = DOCUMENT_DEFAULTS
        return await self.add_job(
            QueueName.DOCUMENT,
            payload,
            priority=default_priority if priority is None else priority,
            delay_ms=default_delay if delay_ms is None else delay_ms,
        )

    async def add_ai_processing_job(
        self,
        payload: Union[AIProcessingPayload, Dict[str, Any]],
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ) -> EnqueueResult:
        """Embeddings feed search and matching, so they jump the AI queue."""
        task = (
            payload.task
            if isinstance(payload, AIProcessingPayload)
            else payload.get("task")
        )
        if task == AITaskType.EMBEDDING:
            default_priority, default_delay = AI_EMBEDDING_DEFAULTS
        else:
            default_priority, default_delay = AI_DEFAULTS
        return await self.add_job(
            QueueName.AI,
            payload,
            priority=default_priority if priority is None else priority,
            delay_ms=default_delay if delay_ms is None else delay_ms,
        )
