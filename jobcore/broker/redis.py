import json
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import (
    STALLED_FAILURE_REASON,
    BackoffPolicy,
    JobOptions,
    JobPayload,
    JobRecord,
    JobState,
    QueueCounts,
    QueueName,
    StalledResult,
    now_ms,
    payload_adapter,
)
from jobcore.errors import BrokerUnavailableError
from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.job_management.scheduler import (
    SEQUENCE_WIDTH,
    PriorityScheduler,
)

logger = configure_logger(__name__)

# Shared by the scripts that move a job into a terminal set: keeps the newest
# `keep` members and deletes the hashes of the evicted ones.
_TRIM = """
local function trim(set_key, keep, job_prefix)
  local excess = redis.call('ZCARD', set_key) - keep
  if excess > 0 then
    local evicted = redis.call('ZRANGE', set_key, 0, excess - 1)
    for _, old_id in ipairs(evicted) do
      redis.call('DEL', job_prefix .. old_id)
    end
    redis.call('ZREMRANGEBYRANK', set_key, 0, excess - 1)
  end
end
"""

# KEYS: wait, active
# ARGV: job key prefix, now, lock expiry, lock token
_DEQUEUE = """
while true do
  local popped = redis.call('ZPOPMIN', KEYS[1])
  if #popped == 0 then
    return false
  end
  local id = (string.gsub(popped[1], '^0+', ''))
  local key = ARGV[1] .. id
  if redis.call('EXISTS', key) == 1 then
    redis.call('HSET', key, 'status', 'active', 'started_at', ARGV[2], 'lock_token', ARGV[4])
    redis.call('HDEL', key, 'finished_at')
    redis.call('HINCRBY', key, 'attempts', 1)
    redis.call('ZADD', KEYS[2], ARGV[3], id)
    return id
  end
end
"""

# KEYS: active, completed|failed
# ARGV: job key, lock token, id, now, status, field, value, keep, job key prefix
_FINISH = (
    _TRIM
    + """
if redis.call('HGET', ARGV[1], 'lock_token') ~= ARGV[2] then
  return 0
end
if redis.call('ZREM', KEYS[1], ARGV[3]) == 0 then
  return 0
end
redis.call('HSET', ARGV[1], 'status', ARGV[5], 'finished_at', ARGV[4], ARGV[6], ARGV[7])
redis.call('HDEL', ARGV[1], 'lock_token')
if ARGV[5] == 'completed' then
  redis.call('HSET', ARGV[1], 'progress', '100')
  redis.call('HDEL', ARGV[1], 'failure_reason')
end
redis.call('ZADD', KEYS[2], ARGV[4], ARGV[3])
trim(KEYS[2], tonumber(ARGV[8]), ARGV[9])
return 1
"""
)

# KEYS: active, delayed, wait
# ARGV: job key, lock token, id, resume at, reason, delay ms, wait member
_RETRY = """
if redis.call('HGET', ARGV[1], 'lock_token') ~= ARGV[2] then
  return 0
end
if redis.call('ZREM', KEYS[1], ARGV[3]) == 0 then
  return 0
end
redis.call('HSET', ARGV[1], 'failure_reason', ARGV[5])
redis.call('HDEL', ARGV[1], 'lock_token')
if tonumber(ARGV[6]) > 0 then
  redis.call('HSET', ARGV[1], 'status', 'delayed', 'delay_until', ARGV[4])
  redis.call('ZADD', KEYS[2], ARGV[4], ARGV[3])
else
  redis.call('HSET', ARGV[1], 'status', 'waiting')
  redis.call('ZADD', KEYS[3], redis.call('HGET', ARGV[1], 'priority'), ARGV[7])
end
return 1
"""

# KEYS: active
# ARGV: job key, lock token, id, lock expiry
_EXTEND_LOCK = """
if redis.call('HGET', ARGV[1], 'lock_token') ~= ARGV[2] then
  return 0
end
if redis.call('ZSCORE', KEYS[1], ARGV[3]) == false then
  return 0
end
redis.call('ZADD', KEYS[1], 'XX', ARGV[4], ARGV[3])
return 1
"""

# KEYS: delayed, wait
# ARGV: now, job key prefix, member width
_PROMOTE = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local width = tonumber(ARGV[3])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  if redis.call('EXISTS', key) == 1 then
    redis.call('HSET', key, 'status', 'waiting')
    redis.call('HDEL', key, 'delay_until')
    redis.call('ZADD', KEYS[2], redis.call('HGET', key, 'priority'), string.rep('0', width - #id) .. id)
  end
end
return #due
"""

# KEYS: active, wait, failed
# ARGV: now, job key prefix, max stalled count, member width, failure reason
_REQUEUE_STALLED = (
    _TRIM
    + """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local width = tonumber(ARGV[4])
local requeued = {}
local failed = {}
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  if redis.call('EXISTS', key) == 1 then
    local count = redis.call('HINCRBY', key, 'stalled_count', 1)
    redis.call('HDEL', key, 'lock_token')
    if count > tonumber(ARGV[3]) then
      redis.call('HSET', key, 'status', 'failed', 'finished_at', ARGV[1], 'failure_reason', ARGV[5])
      redis.call('ZADD', KEYS[3], ARGV[1], id)
      trim(KEYS[3], tonumber(redis.call('HGET', key, 'keep_failed') or '50'), ARGV[2])
      table.insert(failed, id)
    else
      local attempts = tonumber(redis.call('HGET', key, 'attempts') or '0')
      if attempts > 0 then
        redis.call('HSET', key, 'attempts', attempts - 1)
      end
      redis.call('HSET', key, 'status', 'waiting')
      redis.call('HDEL', key, 'started_at')
      redis.call('ZADD', KEYS[2], redis.call('HGET', key, 'priority'), string.rep('0', width - #id) .. id)
      table.insert(requeued, id)
    end
  end
end
return {requeued, failed}
"""
)

_STATE_SETS = {
    JobState.WAITING: "wait",
    JobState.ACTIVE: "active",
    JobState.DELAYED: "delayed",
    JobState.COMPLETED: "completed",
    JobState.FAILED: "failed",
}


@contextmanager
def _broker_errors(operation: str) -> Iterator[None]:
    """Translate connection-level Redis failures into BrokerUnavailableError."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, OSError) as e:
        raise BrokerUnavailableError(
            f"Redis unavailable during {operation}: {e}", operation=operation
        ) from e


class RedisBroker(AbstractBroker):
    """Broker backed by Redis sorted sets and per-job hashes.

    Layout per queue, under `{prefix}:{queue}`:
      id                          counter for job ids
      job:{id}                    hash holding the job record
      wait                        zset, score=priority, member=zero-padded id
      active                      zset, score=lock expiry (ms)
      delayed                     zset, score=resume time (ms)
      completed, failed           zsets, score=finished time (ms)
    """

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "jobcore",
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self._clock = clock
        self._dequeue = client.register_script(_DEQUEUE)
        self._finish = client.register_script(_FINISH)
        self._retry = client.register_script(_RETRY)
        self._extend_lock = client.register_script(_EXTEND_LOCK)
        self._promote = client.register_script(_PROMOTE)
        self._requeue_stalled = client.register_script(_REQUEUE_STALLED)

    # ----------- KEYS -----------
    def _key(self, queue_name: QueueName, suffix: str) -> str:
        return f"{self.key_prefix}:{queue_name}:{suffix}"

    def _job_prefix(self, queue_name: QueueName) -> str:
        return self._key(queue_name, "job:")

    def _job_key(self, queue_name: QueueName, job_id: str) -> str:
        return self._job_prefix(queue_name) + job_id

    # ----------- SERIALIZATION -----------
    @staticmethod
    def _to_hash(job: JobRecord) -> Dict[str, str]:
        fields = {
            "id": job.id,
            "queue_name": job.queue_name.value,
            "payload": job.payload.model_dump_json(),
            "priority": str(job.priority),
            "attempts": str(job.attempts),
            "max_attempts": str(job.max_attempts),
            "backoff": job.backoff.model_dump_json(),
            "status": job.status.value,
            "enqueued_at": str(job.enqueued_at),
            "progress": str(job.progress),
            "stalled_count": str(job.stalled_count),
            "keep_completed": str(job.keep_completed),
            "keep_failed": str(job.keep_failed),
        }
        if job.delay_until is not None:
            fields["delay_until"] = str(job.delay_until)
        return fields

    @staticmethod
    def _from_hash(data: Dict[str, str]) -> JobRecord:
        def optional_int(name: str) -> Optional[int]:
            value = data.get(name)
            return int(value) if value not in (None, "") else None

        return JobRecord(
            id=data["id"],
            queue_name=QueueName(data["queue_name"]),
            payload=payload_adapter.validate_json(data["payload"]),
            priority=int(data.get("priority", 0)),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            backoff=BackoffPolicy.model_validate_json(data["backoff"]),
            status=JobState(data["status"]),
            enqueued_at=int(data["enqueued_at"]),
            started_at=optional_int("started_at"),
            finished_at=optional_int("finished_at"),
            result=json.loads(data["result"]) if data.get("result") else None,
            failure_reason=data.get("failure_reason") or None,
            progress=int(data.get("progress", 0)),
            stalled_count=int(data.get("stalled_count", 0)),
            delay_until=optional_int("delay_until"),
            keep_completed=int(data.get("keep_completed", 10)),
            keep_failed=int(data.get("keep_failed", 50)),
        )

    # ----------- PRODUCER -----------
    async def enqueue(
        self, queue_name: QueueName, payload: JobPayload, options: JobOptions
    ) -> JobRecord:
        with _broker_errors("enqueue"):
            job_id = str(await self.client.incr(self._key(queue_name, "id")))
            now = self._clock()
            job = JobRecord(
                id=job_id,
                queue_name=queue_name,
                payload=payload,
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

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(queue_name, job_id), mapping=self._to_hash(job))
                if job.status == JobState.DELAYED:
                    pipe.zadd(self._key(queue_name, "delayed"), {job_id: job.delay_until})
                else:
                    pipe.zadd(
                        self._key(queue_name, "wait"),
                        {
                            PriorityScheduler.wait_member(job_id): PriorityScheduler.wait_score(
                                job.priority
                            )
                        },
                    )
                await pipe.execute()
        return job

    # ----------- WORKER -----------
    async def dequeue(
        self, queue_name: QueueName, lock_token: str, lock_duration_ms: int
    ) -> Optional[JobRecord]:
        with _broker_errors("dequeue"):
            now = self._clock()
            job_id = await self._dequeue(
                keys=[self._key(queue_name, "wait"), self._key(queue_name, "active")],
                args=[
                    self._job_prefix(queue_name),
                    now,
                    now + lock_duration_ms,
                    lock_token,
                ],
            )
            if not job_id:
                return None
            return await self.get_job(queue_name, str(job_id))

    async def _finish_job(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        state: JobState,
        field: str,
        value: str,
        keep: int,
    ) -> bool:
        result = await self._finish(
            keys=[self._key(queue_name, "active"), self._key(queue_name, state.value)],
            args=[
                self._job_key(queue_name, job_id),
                lock_token,
                job_id,
                self._clock(),
                state.value,
                field,
                value,
                keep,
                self._job_prefix(queue_name),
            ],
        )
        return bool(result)

    async def _keep_count(self, queue_name: QueueName, job_id: str, field: str) -> int:
        value = await self.client.hget(self._job_key(queue_name, job_id), field)
        return int(value) if value is not None else 0

    async def complete(
        self, queue_name: QueueName, job_id: str, lock_token: str, result: Any
    ) -> bool:
        with _broker_errors("complete"):
            keep = await self._keep_count(queue_name, job_id, "keep_completed")
            return await self._finish_job(
                queue_name,
                job_id,
                lock_token,
                JobState.COMPLETED,
                "result",
                json.dumps(result, default=str),
                keep,
            )

    async def fail(
        self, queue_name: QueueName, job_id: str, lock_token: str, reason: str
    ) -> bool:
        with _broker_errors("fail"):
            keep = await self._keep_count(queue_name, job_id, "keep_failed")
            return await self._finish_job(
                queue_name,
                job_id,
                lock_token,
                JobState.FAILED,
                "failure_reason",
                reason,
                keep,
            )

    async def retry(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        delay_ms: int,
        reason: str,
    ) -> bool:
        with _broker_errors("retry"):
            result = await self._retry(
                keys=[
                    self._key(queue_name, "active"),
                    self._key(queue_name, "delayed"),
                    self._key(queue_name, "wait"),
                ],
                args=[
                    self._job_key(queue_name, job_id),
                    lock_token,
                    job_id,
                    self._clock() + delay_ms,
                    reason,
                    delay_ms,
                    PriorityScheduler.wait_member(job_id),
                ],
            )
            return bool(result)

    async def extend_lock(
        self,
        queue_name: QueueName,
        job_id: str,
        lock_token: str,
        lock_duration_ms: int,
    ) -> bool:
        with _broker_errors("extend_lock"):
            result = await self._extend_lock(
                keys=[self._key(queue_name, "active")],
                args=[
                    self._job_key(queue_name, job_id),
                    lock_token,
                    job_id,
                    self._clock() + lock_duration_ms,
                ],
            )
            return bool(result)

    async def update_progress(
        self, queue_name: QueueName, job_id: str, progress: int
    ) -> None:
        with _broker_errors("update_progress"):
            key = self._job_key(queue_name, job_id)
            if await self.client.exists(key):
                await self.client.hset(key, "progress", max(0, min(100, int(progress))))

    # ----------- MAINTENANCE -----------
    async def promote_delayed(self, queue_name: QueueName) -> int:
        with _broker_errors("promote_delayed"):
            promoted = await self._promote(
                keys=[self._key(queue_name, "delayed"), self._key(queue_name, "wait")],
                args=[self._clock(), self._job_prefix(queue_name), SEQUENCE_WIDTH],
            )
            return int(promoted or 0)

    async def requeue_stalled(
        self, queue_name: QueueName, max_stalled_count: int
    ) -> StalledResult:
        with _broker_errors("requeue_stalled"):
            requeued, failed = await self._requeue_stalled(
                keys=[
                    self._key(queue_name, "active"),
                    self._key(queue_name, "wait"),
                    self._key(queue_name, "failed"),
                ],
                args=[
                    self._clock(),
                    self._job_prefix(queue_name),
                    max_stalled_count,
                    SEQUENCE_WIDTH,
                    STALLED_FAILURE_REASON,
                ],
            )
            return StalledResult(
                requeued=[str(job_id) for job_id in requeued],
                failed=[str(job_id) for job_id in failed],
            )

    # ----------- INSPECTION -----------
    async def get_job(self, queue_name: QueueName, job_id: str) -> Optional[JobRecord]:
        with _broker_errors("get_job"):
            data = await self.client.hgetall(self._job_key(queue_name, job_id))
        if not data:
            return None
        return self._from_hash(data)

    async def list_by_state(
        self, queue_name: QueueName, state: JobState
    ) -> List[JobRecord]:
        with _broker_errors("list_by_state"):
            members = await self.client.zrange(
                self._key(queue_name, _STATE_SETS[state]), 0, -1
            )
            job_ids = [member.lstrip("0") for member in members]
            async with self.client.pipeline(transaction=False) as pipe:
                for job_id in job_ids:
                    pipe.hgetall(self._job_key(queue_name, job_id))
                rows = await pipe.execute()
        return [self._from_hash(row) for row in rows if row]

    async def get_counts(self, queue_name: QueueName) -> QueueCounts:
        with _broker_errors("get_counts"):
            async with self.client.pipeline(transaction=False) as pipe:
                for state in JobState:
                    pipe.zcard(self._key(queue_name, _STATE_SETS[state]))
                cards = await pipe.execute()
        return QueueCounts(
            **{state.value: int(card) for state, card in zip(JobState, cards)}
        )

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.warning(
                "Redis connection check failed",
                extra={"error": str(e), "event_type": "broker_ping_failed"},
            )
            return False

    async def close(self) -> None:
        await self.client.aclose()
        logger.info("Redis broker connection closed", extra={"event_type": "broker_closed"})
