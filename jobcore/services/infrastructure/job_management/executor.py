"""Worker pools that drain one queue each with bounded concurrency."""

import asyncio
import inspect
import time
import uuid
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import JobRecord
from jobcore.errors import BrokerUnavailableError
from jobcore.lib.logger import configure_logger

from .base import JobContext
from .monitoring import MetricsCollector
from .registry import QueueSettings, RegisteredProcessor
from .retry import RetryManager

logger = configure_logger(__name__)


class WorkerPool:
    """Runs `concurrency` worker slots against a single queue.

    Each slot takes one job at a time from the broker, holds its lock while
    the processor runs and reports the outcome back. A job whose lock is lost
    mid-flight is left to stall detection.
    """

    def __init__(
        self,
        registered: RegisteredProcessor,
        broker: AbstractBroker,
        metrics: Optional[MetricsCollector] = None,
        poll_interval_seconds: float = 0.5,
        error_backoff_seconds: float = 1.0,
        worker_name: Optional[str] = None,
    ):
        self.registered = registered
        self.broker = broker
        self.metrics = metrics or MetricsCollector()
        self.poll_interval_seconds = poll_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.worker_name = worker_name or f"{registered.settings.name}-pool"
        self._running = False
        self._paused = False
        self._stopping = asyncio.Event()
        self._worker_tasks: List[asyncio.Task] = []
        self._in_flight: Set[str] = set()

    @property
    def settings(self) -> QueueSettings:
        return self.registered.settings

    @property
    def queue_name(self):
        return self.settings.name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        if self._running:
            logger.warning(
                f"Worker pool already running: {self.queue_name}",
                extra={"queue": str(self.queue_name), "event_type": "pool_already_running"},
            )
            return

        self._running = True
        self._stopping = asyncio.Event()
        for i in range(self.settings.concurrency):
            task = asyncio.create_task(self._worker(f"{self.worker_name}-{i}"))
            self._worker_tasks.append(task)

        logger.info(
            f"Worker pool started: {self.queue_name}",
            extra={
                "queue": str(self.queue_name),
                "concurrency": self.settings.concurrency,
                "processor": self.registered.name,
                "event_type": "pool_started",
            },
        )

    async def stop(self, grace_seconds: float = 30.0) -> None:
        """Stop taking jobs and wait for in-flight ones.

        Slots still busy after the grace period are cancelled; their jobs stay
        active in the broker until stall detection picks them up.
        """
        if not self._running:
            return

        self._running = False
        self._stopping.set()

        abandoned = 0
        if self._worker_tasks:
            _, pending = await asyncio.wait(self._worker_tasks, timeout=grace_seconds)
            abandoned = len(self._in_flight)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)

        self._worker_tasks.clear()
        logger.info(
            f"Worker pool stopped: {self.queue_name}",
            extra={
                "queue": str(self.queue_name),
                "abandoned_jobs": abandoned,
                "event_type": "pool_stopped",
            },
        )

    def pause(self) -> None:
        """Stop taking new jobs. Jobs already running finish normally."""
        if self._paused:
            return
        self._paused = True
        logger.info(
            f"Worker pool paused: {self.queue_name}",
            extra={
                "queue": str(self.queue_name),
                "active_jobs": self.active_count,
                "event_type": "pool_paused",
            },
        )

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        logger.info(
            f"Worker pool resumed: {self.queue_name}",
            extra={"queue": str(self.queue_name), "event_type": "pool_resumed"},
        )

    async def _idle(self, seconds: float) -> None:
        """Sleep, waking early when the pool is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker(self, slot_name: str) -> None:
        logger.debug(
            f"Worker starting: {slot_name}",
            extra={"queue": str(self.queue_name), "event_type": "worker_start"},
        )

        while self._running:
            if self._paused:
                await self._idle(self.poll_interval_seconds)
                continue

            try:
                lock_token = uuid.uuid4().hex
                job = await self.broker.dequeue(
                    self.queue_name, lock_token, self.settings.lock_duration_ms
                )
                if job is None:
                    await self._idle(self.poll_interval_seconds)
                    continue

                self._in_flight.add(job.id)
                try:
                    await self._execute_job(job, lock_token, slot_name)
                finally:
                    self._in_flight.discard(job.id)

            except BrokerUnavailableError as e:
                logger.warning(
                    f"Broker unavailable, worker pausing: {slot_name}",
                    extra={
                        "queue": str(self.queue_name),
                        "error": str(e),
                        "event_type": "worker_broker_unavailable",
                    },
                )
                await self._idle(self.error_backoff_seconds)
            except Exception as e:
                logger.error(
                    f"Worker encountered error: {slot_name}",
                    extra={
                        "queue": str(self.queue_name),
                        "error": str(e),
                        "event_type": "worker_error",
                    },
                    exc_info=True,
                )
                await self._idle(self.error_backoff_seconds)

        logger.debug(
            f"Worker exiting: {slot_name}",
            extra={"queue": str(self.queue_name), "event_type": "worker_stop"},
        )

    async def _execute_job(self, job: JobRecord, lock_token: str, slot_name: str) -> None:
        context = JobContext.for_job(job, slot_name, self.broker)
        start_time = time.time()

        logger.info(
            f"Job started: {slot_name}",
            extra={
                "queue": str(job.queue_name),
                "job_id": job.id,
                "attempt": job.attempts,
                "max_attempts": job.max_attempts,
                "event_type": "job_started",
            },
        )
        self.metrics.record_execution_start(job, slot_name)

        renewal = asyncio.create_task(self._renew_lock(job, lock_token))
        error: Optional[Exception] = None
        result: Any = None
        try:
            result = await self._run_processor(job, context)
        except Exception as e:
            error = e
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

        duration = time.time() - start_time
        if error is None:
            await self._handle_success(job, lock_token, result, duration)
        else:
            await self._handle_failure(job, lock_token, error, duration)

    async def _run_processor(self, job: JobRecord, context: JobContext) -> Any:
        processor = self.registered.processor
        timeout = self.settings.timeout_seconds

        thread: Optional[asyncio.Future] = None
        if inspect.iscoroutinefunction(processor):
            call = processor(job.payload, context)
        else:
            thread = asyncio.ensure_future(
                asyncio.to_thread(processor, job.payload, context)
            )
            call = asyncio.shield(thread)

        try:
            if timeout:
                result = await asyncio.wait_for(call, timeout=timeout)
            else:
                result = await call
        except asyncio.TimeoutError as e:
            if thread is not None:
                # Threads cannot be interrupted; the slot stays taken until it returns
                await asyncio.gather(thread, return_exceptions=True)
            raise asyncio.TimeoutError(f"Job timed out after {timeout}s") from e

        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json")
        return result

    async def _handle_success(
        self, job: JobRecord, lock_token: str, result: Any, duration: float
    ) -> None:
        if not await self.broker.complete(job.queue_name, job.id, lock_token, result):
            self.metrics.record_execution_discarded(job)
            self._log_lock_lost(job, "complete")
            return

        self.metrics.record_execution_completion(job, duration)
        logger.info(
            "Job completed successfully",
            extra={
                "queue": str(job.queue_name),
                "job_id": job.id,
                "attempt": job.attempts,
                "duration_seconds": round(duration, 3),
                "event_type": "job_completed",
            },
        )

    async def _handle_failure(
        self, job: JobRecord, lock_token: str, error: Exception, duration: float
    ) -> None:
        reason = str(error) or error.__class__.__name__

        logger.error(
            "Job execution failed",
            extra={
                "queue": str(job.queue_name),
                "job_id": job.id,
                "attempt": job.attempts,
                "duration_seconds": round(duration, 3),
                "error": reason,
                "error_type": error.__class__.__name__,
                "event_type": "job_failed",
            },
        )

        if RetryManager.should_retry(job, error):
            delay_ms = RetryManager.next_delay(job)
            if not await self.broker.retry(
                job.queue_name, job.id, lock_token, delay_ms, reason
            ):
                self.metrics.record_execution_discarded(job)
                self._log_lock_lost(job, "retry")
                return

            self.metrics.record_execution_failure(job, reason, duration)
            self.metrics.record_execution_retry(job, delay_ms)
            logger.info(
                "Job scheduled for retry",
                extra={
                    "queue": str(job.queue_name),
                    "job_id": job.id,
                    "attempt": job.attempts,
                    "max_attempts": job.max_attempts,
                    "delay_ms": delay_ms,
                    "event_type": "job_retry_scheduled",
                },
            )
            return

        if not await self.broker.fail(job.queue_name, job.id, lock_token, reason):
            self.metrics.record_execution_discarded(job)
            self._log_lock_lost(job, "fail")
            return

        self.metrics.record_execution_failure(job, reason, duration)
        self.metrics.record_dead_letter(job, reason)
        logger.error(
            "Job failed permanently",
            extra={
                "queue": str(job.queue_name),
                "job_id": job.id,
                "attempt": job.attempts,
                "max_attempts": job.max_attempts,
                "error": reason,
                "retryable": RetryManager.is_retryable(error),
                "event_type": "job_dead_letter",
            },
        )

    async def _renew_lock(self, job: JobRecord, lock_token: str) -> None:
        interval = self.settings.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.broker.extend_lock(
                    job.queue_name, job.id, lock_token, self.settings.lock_duration_ms
                )
            except BrokerUnavailableError as e:
                logger.warning(
                    "Could not renew job lock",
                    extra={
                        "queue": str(job.queue_name),
                        "job_id": job.id,
                        "error": str(e),
                        "event_type": "job_lock_renew_failed",
                    },
                )
                continue

            if not held:
                self._log_lock_lost(job, "extend_lock")
                return

    def _log_lock_lost(self, job: JobRecord, operation: str) -> None:
        logger.warning(
            "Job lock no longer held, outcome discarded",
            extra={
                "queue": str(job.queue_name),
                "job_id": job.id,
                "attempt": job.attempts,
                "operation": operation,
                "event_type": "job_lock_lost",
            },
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue": str(self.queue_name),
            "running": self._running,
            "concurrency": self.settings.concurrency,
            "worker_count": len(self._worker_tasks),
            "paused": self._paused,
            "active_jobs": self.active_count,
        }
