from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import JobPayload, JobRecord, QueueName
from jobcore.lib.logger import configure_logger

logger = configure_logger(__name__)


@dataclass
class JobContext:
    """Context handed to a processor alongside the job payload."""

    job_id: str
    queue_name: QueueName
    attempt: int
    max_attempts: int
    worker_name: str
    broker: AbstractBroker = field(repr=False)
    enqueued_at: Optional[int] = None

    @classmethod
    def for_job(
        cls, job: JobRecord, worker_name: str, broker: AbstractBroker
    ) -> "JobContext":
        return cls(
            job_id=job.id,
            queue_name=job.queue_name,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            worker_name=worker_name,
            broker=broker,
            enqueued_at=job.enqueued_at,
        )

    async def update_progress(self, progress: int) -> None:
        """Report progress (0-100) for status polling."""
        await self.broker.update_progress(self.queue_name, self.job_id, progress)
        logger.debug(
            "Job progress updated",
            extra={
                "queue": str(self.queue_name),
                "job_id": self.job_id,
                "progress": progress,
                "event_type": "job_progress",
            },
        )


# A processor receives the payload and context and returns a JSON-serializable
# result. Plain functions run in a worker thread so they cannot block the loop.
Processor = Callable[[JobPayload, JobContext], Union[Awaitable[Any], Any]]
