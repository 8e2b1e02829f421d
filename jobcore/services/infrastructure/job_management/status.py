"""Read-only job status lookups for polling clients."""

from datetime import datetime, timezone
from typing import Any, List, Optional

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import CustomBaseModel, JobRecord, QueueName
from jobcore.errors import BrokerUnavailableError, JobValidationError
from jobcore.lib.logger import configure_logger

logger = configure_logger(__name__)

MAX_BATCH_SIZE = 20

# Batch-only statuses next to the JobState values
NOT_FOUND = "not_found"
ERROR = "error"


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class JobStatusView(CustomBaseModel):
    id: str
    queue: QueueName
    status: str
    progress: int = 0
    result: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = 0
    max_attempts: Optional[int] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobStatusView":
        return cls(
            id=job.id,
            queue=job.queue_name,
            status=str(job.status),
            progress=job.progress,
            result=job.result,
            error=job.failure_reason,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            created_at=_from_ms(job.enqueued_at),
            processed_at=_from_ms(job.started_at),
            finished_at=_from_ms(job.finished_at),
        )


class StatusRequest(CustomBaseModel):
    job_id: str
    queue: QueueName


class StatusTracker:
    """Looks jobs up in the broker on every call."""

    def __init__(self, broker: AbstractBroker):
        self.broker = broker

    async def get_status(
        self, job_id: str, queue_name: QueueName
    ) -> Optional[JobStatusView]:
        """Current view of a job, or None when it is unknown or already evicted."""
        job = await self.broker.get_job(queue_name, job_id)
        if job is None:
            return None
        return JobStatusView.from_record(job)

    async def get_statuses(self, requests: List[StatusRequest]) -> List[JobStatusView]:
        """Look up several jobs at once.

        Unknown jobs come back with status "not_found"; a lookup that fails
        comes back with status "error" instead of failing the whole batch.
        """
        if len(requests) > MAX_BATCH_SIZE:
            raise JobValidationError(
                f"Maximum {MAX_BATCH_SIZE} jobs per status request",
                {"requested": len(requests)},
            )

        views = []
        for request in requests:
            try:
                view = await self.get_status(request.job_id, request.queue)
            except BrokerUnavailableError as e:
                logger.warning(
                    "Status lookup failed",
                    extra={
                        "queue": str(request.queue),
                        "job_id": request.job_id,
                        "error": str(e),
                        "event_type": "status_lookup_failed",
                    },
                )
                view = JobStatusView(
                    id=request.job_id, queue=request.queue, status=ERROR, error=str(e)
                )
            if view is None:
                view = JobStatusView(
                    id=request.job_id, queue=request.queue, status=NOT_FOUND
                )
            views.append(view)
        return views
