from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import (
    STALLED_FAILURE_REASON,
    JobOptions,
    JobPayload,
    JobRecord,
    JobState,
    QueueCounts,
    QueueName,
    StalledResult,
    now_ms,
)
from jobcore.errors import BrokerUnavailableError
from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.job_management.scheduler import (
    PriorityScheduler,
    job_sequence,
)

logger = configure_logger(__name__)


class InMemoryBroker(AbstractBroker):
    """Process-local broker for tests and single-process development runs.

    Nothing survives a restart. Selected only through configuration, never
    as a stand-in for an unreachable Redis.

    Each method runs to completion without awaiting, which is what makes
    its state transitions atomic on the event loop.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._scheduler = PriorityScheduler()
        self._jobs: Dict[QueueName, Dict[str, JobRecord]] = defaultdict(dict)
        self._locks: Dict[Tuple[QueueName, str], Tuple[str, int]] = {}
        self._sequences: Dict[QueueName, int] = defaultdict(int)
        self._available = True
        self._closed = False

    def set_available(self, available: bool) -> None:
        """Simulate the broker going away and coming back."""
        self._available = available

    def _ensure_available(self, operation: str) -> None:
        if self._closed:
            raise BrokerUnavailableError(
                "Broker connection is closed", operation=operation
            )
        if not self._available:
            raise BrokerUnavailableError(operation=operation)

    def _held_job(
        self, queue_name: QueueName, job_id: str, lock_token: str
    ) -> Optional[JobRecord]:
        job = self._jobs[queue_name].get(job_id)
        lock = self._locks.get((queue_name, job_id))
        if job is None or job.status != JobState.ACTIVE:
            return None
        if lock is None or lock[0] != lock_token:
            return None
        return job

    def _trim(self, queue_name: QueueName, state: JobState, keep: int) -> None:
        finished = sorted(
            (job for job in self._jobs[queue_name].values() if job.status == state),
            key=lambda job: (job.finished_at or 0, job_sequence(job.id)),
        )
        excess = len(finished) - keep
        for job in finished[: max(excess, 0)]:
            del self._jobs[queue_name][job.id]

    async def enqueue(
        self, queue_name: QueueName, payload: JobPayload, options: JobOptions
    ) -> JobRecord:
        self._ensure_available("enqueue")
        self._sequences[queue_name] += 1
        job_id = str(self._sequences[queue_name])
        now = self._clock()

        job = JobRecord(
            id=job_id,
            queue_name=queue_name,
            payload=payload.model_copy(deep=True),
            priority=options.priority,
            max_attempts=options.max_attempts,
            backoff=options.backoff,
            enqueued_at=now,
            keep_completed=options.keep_completed,
            keep_failed=options.keep_failed,
        )
        if options.delay_ms > 0:
            job.status = JobState.DELAYED
            job.delay_until = now + options.delay_ms

        self._jobs[queue_name][job_id] = job
        return job.model_copy(deep=True)

    async def dequeue(
        self, queue_name: QueueName, lock_token: str, lock_duration_ms: int
    ) -> Optional[JobRecord]:
        self._ensure_available("dequeue")
        waiting = [
            job
            for job in self._jobs[queue_name].values()
            if job.status == JobState.WAITING
        ]
        job = self._scheduler.select_next(waiting)
        if job is None:
            return None

        now = self._clock()
        job.status = JobState.ACTIVE
        job.attempts += 1
        job.started_at = now
        job.finished_at = None
        self._locks[(queue_name, job.id)] = (lock_token, now + lock_duration_ms)
        return job.model_copy(deep=True)

    async def complete(
        self, queue_name: QueueName, job_id: str, lock_token: str, result: Any
    ) -> bool:
        self._ensure_available("complete")
        job = self._held_job(queue_name, job_id, lock_token)
        if job is None:
            return False

        job.status = JobState.COMPLETED
        job.finished_at = self._clock()
        job.result = result
        job.failure_reason = None
        job.progress = 100
        del self._locks[(queue_name, job_id)]
        self._trim(queue_name, JobState.COMPLETED, job.keep_completed)
        return True

    async def fail(
        self, queue_name: QueueName, job_id: str, lock_token: str, reason: str
    ) -> bool:
        self._ensure_available("fail")
        job = self._held_job(queue_name, job_id, lock_token)
        if job is None:
            return False

        job.status = JobState.FAILED
        job.finished_at = self._clock()
        job.failure_reason = reason
        del self._locks[(queue_name, job_id)]
        self._trim(queue_name, JobState.FAILED, job.keep_failed)
        return True

    async def retry(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        delay_ms: int,
        reason: str,
    ) -> bool:
        self._ensure_available("retry")
        job = self._held_job(queue_name, job_id, lock_token)
        if job is None:
            return False

        job.failure_reason = reason
        del self._locks[(queue_name, job_id)]
        if delay_ms > 0:
            job.status = JobState.DELAYED
            job.delay_until = self._clock() + delay_ms
        else:
            job.status = JobState.WAITING
        return True

    async def extend_lock(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        lock_duration_ms: int,
    ) -> bool:
        self._ensure_available("extend_lock")
        if self._held_job(queue_name, job_id, lock_token) is None:
            return False
        self._locks[(queue_name, job_id)] = (
            lock_token,
            self._clock() + lock_duration_ms,
        )
        return True

    async def update_progress(
        self, queue_name: QueueName, job_id: str, progress: int
    ) -> None:
        self._ensure_available("update_progress")
        job = self._jobs[queue_name].get(job_id)
        if job is not None:
            job.progress = max(0, min(100, int(progress)))

    async def promote_delayed(self, queue_name: QueueName) -> int:
        self._ensure_available("promote_delayed")
        now = self._clock()
        promoted = 0
        for job in self._jobs[queue_name].values():
            if job.status == JobState.DELAYED and (job.delay_until or 0) <= now:
                job.status = JobState.WAITING
                job.delay_until = None
                promoted += 1
        return promoted

    async def requeue_stalled(
        self, queue_name: QueueName, max_stalled_count: int
    ) -> StalledResult:
        self._ensure_available("requeue_stalled")
        now = self._clock()
        outcome = StalledResult()

        for job in list(self._jobs[queue_name].values()):
            if job.status != JobState.ACTIVE:
                continue
            lock = self._locks.get((queue_name, job.id))
            if lock is not None and lock[1] > now:
                continue

            self._locks.pop((queue_name, job.id), None)
            job.stalled_count += 1
            if job.stalled_count > max_stalled_count:
                job.status = JobState.FAILED
                job.finished_at = now
                job.failure_reason = STALLED_FAILURE_REASON
                outcome.failed.append(job.id)
                self._trim(queue_name, JobState.FAILED, job.keep_failed)
            else:
                job.status = JobState.WAITING
                job.attempts = max(0, job.attempts - 1)
                job.started_at = None
                outcome.requeued.append(job.id)

        return outcome

    async def get_job(self, queue_name: QueueName, job_id: str) -> Optional[JobRecord]:
        self._ensure_available("get_job")
        job = self._jobs[queue_name].get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_by_state(
        self, queue_name: QueueName, state: JobState
    ) -> List[JobRecord]:
        self._ensure_available("list_by_state")
        jobs = [job for job in self._jobs[queue_name].values() if job.status == state]
        if state == JobState.WAITING:
            jobs = self._scheduler.order(jobs)
        else:
            jobs.sort(key=lambda job: job_sequence(job.id))
        return [job.model_copy(deep=True) for job in jobs]

    async def get_counts(self, queue_name: QueueName) -> QueueCounts:
        self._ensure_available("get_counts")
        counts = defaultdict(int)
        for job in self._jobs[queue_name].values():
            counts[job.status.value] += 1
        return QueueCounts(**counts)

    async def ping(self) -> bool:
        return self._available and not self._closed

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            logger.info("In-memory broker closed", extra={"event_type": "broker_closed"})
