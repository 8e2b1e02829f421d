from abc import ABC, abstractmethod
from typing import Any, List, Optional

from jobcore.broker.models import (
    JobOptions,
    JobPayload,
    JobRecord,
    JobState,
    QueueCounts,
    QueueName,
    StalledResult,
)


class AbstractBroker(ABC):
    """Durable, at-least-once job store with per-queue state sets.

    Every state change of a job record goes through one of these calls, and
    each call is atomic at the broker. Operations that need the broker and
    cannot reach it raise BrokerUnavailableError.
    """

    # ----------- PRODUCER -----------
    @abstractmethod
    async def enqueue(
        self, queue_name: QueueName, payload: JobPayload, options: JobOptions
    ) -> JobRecord:
        """Record a new job and return it with its broker-assigned id.

        Returns only after the job is durably stored. A positive
        options.delay_ms stores the job as delayed instead of waiting.
        """
        pass

    # ----------- WORKER -----------
    @abstractmethod
    async def dequeue(
        self, queue_name: QueueName, lock_token: str, lock_duration_ms: int
    ) -> Optional[JobRecord]:
        """Take the next waiting job, mark it active and lock it.

        Increments attempts and sets started_at. Returns None when nothing
        is waiting.
        """
        pass

    @abstractmethod
    async def complete(
        self, queue_name: QueueName, job_id: str, lock_token: str, result: Any
    ) -> bool:
        """Acknowledge success. False if the lock is no longer held."""
        pass

    @abstractmethod
    async def fail(
        self, queue_name: QueueName, job_id: str, lock_token: str, reason: str
    ) -> bool:
        """Mark the job terminally failed. False if the lock is no longer held."""
        pass

    @abstractmethod
    async def retry(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        delay_ms: int,
        reason: str,
    ) -> bool:
        """Move the job to delayed until now + delay_ms. False if the lock is lost."""
        pass

    @abstractmethod
    async def extend_lock(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        lock_duration_ms: int,
    ) -> bool:
        pass

    @abstractmethod
    async def update_progress(
        self, queue_name: QueueName, job_id: str, progress: int
    ) -> None:
        pass

    # ----------- MAINTENANCE -----------
    @abstractmethod
    async def promote_delayed(self, queue_name: QueueName) -> int:
        """Move every delayed job whose resume time has passed back to waiting."""
        pass

    @abstractmethod
    async def requeue_stalled(
        self, queue_name: QueueName, max_stalled_count: int
    ) -> StalledResult:
        """Requeue active jobs whose lock expired.

        The interrupted attempt is not counted. A job stalling more than
        max_stalled_count times is failed instead.
        """
        pass

    # ----------- INSPECTION -----------
    @abstractmethod
    async def get_job(self, queue_name: QueueName, job_id: str) -> Optional[JobRecord]:
        pass

    @abstractmethod
    async def list_by_state(
        self, queue_name: QueueName, state: JobState
    ) -> List[JobRecord]:
        pass

    @abstractmethod
    async def get_counts(self, queue_name: QueueName) -> QueueCounts:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """True when the broker answers. Never raises."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
