from .abstract import AbstractBroker
from .memory import InMemoryBroker
from .models import (
    AIProcessingPayload,
    AITaskType,
    BackoffKind,
    BackoffPolicy,
    DocumentProcessingPayload,
    JobOptions,
    JobPayload,
    JobRecord,
    JobState,
    QueueCounts,
    QueueName,
    StalledResult,
    VideoProcessingPayload,
)

__all__ = [
    "AbstractBroker",
    "InMemoryBroker",
    "AIProcessingPayload",
    "AITaskType",
    "BackoffKind",
    "BackoffPolicy",
    "DocumentProcessingPayload",
    "JobOptions",
    "JobPayload",
    "JobRecord",
    "JobState",
    "QueueCounts",
    "QueueName",
    "StalledResult",
    "VideoProcessingPayload",
]
