"""Background job management: scheduling, execution, retries, status and health."""

from .base import JobContext, Processor
from .executor import WorkerPool
from .job_manager import JobService
from .monitoring import (
    ExecutionEvent,
    HealthReport,
    HealthStatus,
    JobMetrics,
    MetricsCollector,
    QueueHealthAggregator,
)
from .producer import EnqueueResult, JobProducer
from .registry import ProcessorRegistry, QueueSettings, RegisteredProcessor
from .retry import RetryManager
from .scheduler import PriorityScheduler
from .status import JobStatusView, StatusRequest, StatusTracker

__all__ = [
    "EnqueueResult",
    "ExecutionEvent",
    "HealthReport",
    "HealthStatus",
    "JobContext",
    "JobMetrics",
    "JobProducer",
    "JobService",
    "JobStatusView",
    "MetricsCollector",
    "PriorityScheduler",
    "Processor",
    "ProcessorRegistry",
    "QueueHealthAggregator",
    "QueueSettings",
    "RegisteredProcessor",
    "RetryManager",
    "StatusRequest",
    "StatusTracker",
    "WorkerPool",
]
