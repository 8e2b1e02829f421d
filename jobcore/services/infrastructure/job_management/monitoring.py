"""Job execution metrics and queue health reporting."""

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

from pydantic import Field

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import CustomBaseModel, JobRecord, QueueCounts, QueueName
from jobcore.config import EstimationConfig
from jobcore.lib.logger import configure_logger

logger = configure_logger(__name__)


@dataclass
class JobMetrics:
    """Execution counters and timings for one queue."""

    queue_name: QueueName
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    retried_executions: int = 0
    dead_letter_executions: int = 0
    stalled_executions: int = 0
    discarded_executions: int = 0

    total_execution_time: float = 0.0
    min_execution_time: Optional[float] = None
    max_execution_time: Optional[float] = None
    avg_execution_time: float = 0.0

    current_running: int = 0
    max_concurrent_reached: int = 0

    last_execution: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue": str(self.queue_name),
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "success_rate": (
                self.successful_executions / self.total_executions
                if self.total_executions > 0
                else 0.0
            ),
            "average_duration_seconds": self.avg_execution_time,
            "min_duration_seconds": self.min_execution_time or 0.0,
            "max_duration_seconds": self.max_execution_time or 0.0,
            "retry_count": self.retried_executions,
            "dead_letter_count": self.dead_letter_executions,
            "stalled_count": self.stalled_executions,
            "discarded_count": self.discarded_executions,
            "current_running": self.current_running,
            "max_concurrent_reached": self.max_concurrent_reached,
            "last_execution": (
                self.last_execution.isoformat() if self.last_execution else None
            ),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


@dataclass
class ExecutionEvent:
    """Individual execution event for detailed tracking."""

    job_id: str
    queue_name: QueueName
    event_type: str  # started, completed, failed, retried, dead_letter, stalled, discarded
    timestamp: datetime
    attempt: int = 0
    duration: Optional[float] = None
    error: Optional[str] = None
    delay_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class MetricsCollector:
    """Collects and aggregates job execution metrics per queue.

    Events are kept in a bounded ring; the oldest fall off once max_events
    is reached.
    """

    def __init__(self, max_events: int = 10000):
        self._metrics: Dict[QueueName, JobMetrics] = {}
        self._events: Deque[ExecutionEvent] = deque(maxlen=max_events)
        self._start_time = datetime.now()

    def _metrics_for(self, queue_name: QueueName) -> JobMetrics:
        if queue_name not in self._metrics:
            self._metrics[queue_name] = JobMetrics(queue_name=queue_name)
        return self._metrics[queue_name]

    def _add_event(self, job: JobRecord, event_type: str, **kwargs) -> None:
        self._events.append(
            ExecutionEvent(
                job_id=job.id,
                queue_name=job.queue_name,
                event_type=event_type,
                timestamp=datetime.now(),
                attempt=job.attempts,
                **kwargs,
            )
        )

    def record_execution_start(self, job: JobRecord, worker_name: str = "") -> None:
        metrics = self._metrics_for(job.queue_name)
        metrics.total_executions += 1
        metrics.current_running += 1
        metrics.max_concurrent_reached = max(
            metrics.max_concurrent_reached, metrics.current_running
        )
        metrics.last_execution = datetime.now()
        self._add_event(job, "started", metadata={"worker": worker_name})

    def record_execution_completion(self, job: JobRecord, duration: float) -> None:
        metrics = self._metrics_for(job.queue_name)
        metrics.current_running = max(0, metrics.current_running - 1)
        metrics.successful_executions += 1
        metrics.last_success = datetime.now()
        self._update_timing_metrics(metrics, duration)
        self._add_event(job, "completed", duration=duration)

    def record_execution_failure(
        self, job: JobRecord, error: str, duration: float
    ) -> None:
        metrics = self._metrics_for(job.queue_name)
        metrics.current_running = max(0, metrics.current_running - 1)
        metrics.failed_executions += 1
        metrics.last_failure = datetime.now()
        self._update_timing_metrics(metrics, duration)
        self._add_event(job, "failed", duration=duration, error=error)

    def record_execution_discarded(self, job: JobRecord) -> None:
        """The outcome was dropped because the job lock was no longer held."""
        metrics = self._metrics_for(job.queue_name)
        metrics.current_running = max(0, metrics.current_running - 1)
        metrics.discarded_executions += 1
        self._add_event(job, "discarded")

    def record_execution_retry(self, job: JobRecord, delay_ms: int) -> None:
        self._metrics_for(job.queue_name).retried_executions += 1
        self._add_event(job, "retried", delay_ms=delay_ms)

    def record_dead_letter(self, job: JobRecord, reason: str) -> None:
        self._metrics_for(job.queue_name).dead_letter_executions += 1
        self._add_event(job, "dead_letter", error=reason)

    def record_stalled(self, queue_name: QueueName, job_id: str, abandoned: bool) -> None:
        """A stalled job was requeued, or failed once abandoned too often."""
        self._metrics_for(queue_name).stalled_executions += 1
        self._events.append(
            ExecutionEvent(
                job_id=job_id,
                queue_name=queue_name,
                event_type="stalled",
                timestamp=datetime.now(),
                metadata={"abandoned": abandoned},
            )
        )

    def _update_timing_metrics(self, metrics: JobMetrics, duration: float) -> None:
        if metrics.min_execution_time is None or duration < metrics.min_execution_time:
            metrics.min_execution_time = duration
        if metrics.max_execution_time is None or duration > metrics.max_execution_time:
            metrics.max_execution_time = duration

        metrics.total_execution_time += duration
        total_count = metrics.successful_executions + metrics.failed_executions
        if total_count > 0:
            metrics.avg_execution_time = metrics.total_execution_time / total_count

    def average_processing_ms(self, queue_name: QueueName) -> Optional[float]:
        """Mean duration of finished executions, None before the first one."""
        metrics = self._metrics.get(queue_name)
        if not metrics or (metrics.successful_executions + metrics.failed_executions) == 0:
            return None
        return metrics.avg_execution_time * 1000

    def get_metrics(
        self, queue_name: Optional[QueueName] = None
    ) -> Dict[QueueName, JobMetrics]:
        if queue_name:
            return {queue_name: self._metrics_for(queue_name)}
        return self._metrics.copy()

    def get_recent_events(
        self,
        queue_name: Optional[QueueName] = None,
        event_type: Optional[str] = None,
        job_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ExecutionEvent]:
        """Most recent events first."""
        events = [
            event
            for event in reversed(self._events)
            if (queue_name is None or event.queue_name == queue_name)
            and (event_type is None or event.event_type == event_type)
            and (job_id is None or event.job_id == job_id)
        ]
        return events[:limit]

    def get_system_metrics(self) -> Dict[str, Any]:
        total_executions = sum(m.total_executions for m in self._metrics.values())
        total_successful = sum(m.successful_executions for m in self._metrics.values())

        return {
            "uptime_seconds": (datetime.now() - self._start_time).total_seconds(),
            "total_executions": total_executions,
            "total_successful": total_successful,
            "total_failed": sum(m.failed_executions for m in self._metrics.values()),
            "total_dead_letter": sum(
                m.dead_letter_executions for m in self._metrics.values()
            ),
            "success_rate": (
                (total_successful / total_executions) if total_executions > 0 else 0
            ),
            "queues": {str(q): m.to_dict() for q, m in self._metrics.items()},
            "total_events": len(self._events),
        }


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    def __str__(self):
        return self.value


class HealthReport(CustomBaseModel):
    status: HealthStatus
    broker_reachable: bool
    queues: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    details: Dict[str, int] = Field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class QueueHealthAggregator:
    """Per-queue counts, wait estimates and the overall health verdict.

    Reads broker state on demand; nothing is cached between calls.
    """

    def __init__(
        self,
        broker: AbstractBroker,
        concurrency: Dict[QueueName, int],
        metrics: Optional[MetricsCollector] = None,
        estimation: Optional[EstimationConfig] = None,
        queues: Optional[Iterable[QueueName]] = None,
    ):
        self.broker = broker
        self.concurrency = dict(concurrency)
        self.metrics = metrics or MetricsCollector()
        self.estimation = estimation or EstimationConfig()
        self.queues: List[QueueName] = list(queues or QueueName)

    async def queue_stats(self, queue_name: QueueName) -> QueueCounts:
        return await self.broker.get_counts(queue_name)

    async def all_queue_stats(self) -> Dict[str, Any]:
        """Counts for every queue plus system-wide totals."""
        queues: Dict[str, Dict[str, int]] = {}
        totals = QueueCounts()
        for queue_name in self.queues:
            counts = await self.queue_stats(queue_name)
            queues[str(queue_name)] = counts.to_dict()
            totals.waiting += counts.waiting
            totals.active += counts.active
            totals.completed += counts.completed
            totals.failed += counts.failed
            totals.delayed += counts.delayed

        return {
            "queues": queues,
            "totals": totals.to_dict(),
            "timestamp": datetime.now().isoformat(),
        }

    def average_processing_ms(self, queue_name: QueueName) -> float:
        observed = self.metrics.average_processing_ms(queue_name)
        if observed is None:
            return float(self.estimation.average_processing_ms)
        return observed

    @staticmethod
    def compute_wait_estimate(
        waiting: int,
        active: int,
        concurrency: int,
        average_processing_ms: float,
        max_wait_ms: int,
    ) -> int:
        """ceil((waiting + active) / concurrency) * average, capped at max_wait_ms."""
        if concurrency < 1:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        rounds = math.ceil((waiting + active) / concurrency)
        return int(min(rounds * average_processing_ms, max_wait_ms))

    async def estimate_wait(self, queue_name: QueueName) -> int:
        """Expected wait in milliseconds for a job enqueued now."""
        try:
            counts = await self.queue_stats(queue_name)
            return self.compute_wait_estimate(
                counts.waiting,
                counts.active,
                self.concurrency[queue_name],
                self.average_processing_ms(queue_name),
                self.estimation.max_wait_ms,
            )
        except Exception as e:
            logger.warning(
                f"Could not estimate wait time for queue: {queue_name}",
                extra={
                    "queue": str(queue_name),
                    "error": str(e),
                    "event_type": "wait_estimate_fallback",
                },
            )
            return self.estimation.default_wait_ms

    async def health_check(self) -> HealthReport:
        try:
            stats = {
                str(queue_name): (await self.queue_stats(queue_name)).to_dict()
                for queue_name in self.queues
            }
        except Exception as e:
            logger.error(
                "Queue health check failed",
                extra={"error": str(e), "event_type": "health_check_failed"},
                exc_info=True,
            )
            return HealthReport(
                status=HealthStatus.UNHEALTHY,
                broker_reachable=False,
                error=str(e),
            )

        broker_reachable = await self.broker.ping()
        status = HealthStatus.HEALTHY if broker_reachable else HealthStatus.DEGRADED
        if not broker_reachable:
            logger.warning(
                "Broker ping failed, queue health degraded",
                extra={"event_type": "health_degraded"},
            )

        return HealthReport(
            status=status,
            broker_reachable=broker_reachable,
            queues=stats,
            details={
                "total_jobs": sum(q["total"] for q in stats.values()),
                "waiting_jobs": sum(q["waiting"] for q in stats.values()),
                "active_jobs": sum(q["active"] for q in stats.values()),
                "failed_jobs": sum(q["failed"] for q in stats.values()),
            },
        )
