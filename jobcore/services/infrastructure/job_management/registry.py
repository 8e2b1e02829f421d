"""Processor registry: queue name -> processor function and queue settings."""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from jobcore.broker.models import BackoffKind, BackoffPolicy, JobOptions, QueueName
from jobcore.config import Config
from jobcore.errors import ProcessorNotRegisteredError
from jobcore.lib.logger import configure_logger

from .base import Processor

logger = configure_logger(__name__)


@dataclass
class QueueSettings:
    """Execution settings for one queue."""

    name: QueueName
    concurrency: int = 1
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    keep_completed: int = 10
    keep_failed: int = 50
    timeout_seconds: Optional[float] = None
    lock_duration_ms: int = 30000

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"Queue {self.name}: concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError(f"Queue {self.name}: max_attempts must be at least 1")

    @classmethod
    def from_config(cls, queue_name: QueueName, app_config: Config, **overrides):
        """Settings for a queue from the environment-driven configuration."""
        queues = app_config.queues
        values = dict(
            name=queue_name,
            concurrency=queues.concurrency_for(queue_name),
            max_attempts=queues.default_attempts,
            backoff=BackoffPolicy(
                kind=BackoffKind(queues.backoff_kind),
                delay_ms=queues.backoff_delay_ms,
            ),
            keep_completed=queues.keep_completed,
            keep_failed=queues.keep_failed,
            timeout_seconds=queues.timeout_seconds or None,
            lock_duration_ms=app_config.worker.lock_duration_ms,
        )
        values.update(overrides)
        return cls(**values)

    def job_options(self, priority: int = 0, delay_ms: int = 0) -> JobOptions:
        return JobOptions(
            priority=priority,
            delay_ms=delay_ms,
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            keep_completed=self.keep_completed,
            keep_failed=self.keep_failed,
        )


@dataclass
class RegisteredProcessor:
    processor: Processor
    settings: QueueSettings

    @property
    def name(self) -> str:
        return getattr(self.processor, "__name__", repr(self.processor))


class ProcessorRegistry:
    """Explicit mapping from queue to processor, filled once at start-up."""

    def __init__(self):
        self._entries: Dict[QueueName, RegisteredProcessor] = {}

    def register(
        self,
        queue_name: Union[QueueName, str],
        processor: Optional[Processor] = None,
        settings: Optional[QueueSettings] = None,
        **kwargs,
    ) -> Union[Processor, Callable[[Processor], Processor]]:
        """Register a processor for a queue.

        Works as a plain call or as a decorator:

            registry.register("ai", embed_text, concurrency=4)

            @registry.register(QueueName.VIDEO, concurrency=2)
            async def transcode(payload, context): ...

        Settings fields may be passed as keyword arguments instead of a
        QueueSettings instance.
        """
        queue = QueueName(queue_name)

        def decorator(func: Processor) -> Processor:
            if queue in self._entries:
                raise ValueError(f"A processor is already registered for queue: {queue}")

            queue_settings = settings or QueueSettings(name=queue, **kwargs)
            self._entries[queue] = RegisteredProcessor(
                processor=func, settings=queue_settings
            )
            logger.info(
                f"Registered processor: {queue} -> {getattr(func, '__name__', func)}",
                extra={
                    "queue": str(queue),
                    "concurrency": queue_settings.concurrency,
                    "max_attempts": queue_settings.max_attempts,
                    "event_type": "processor_registered",
                },
            )
            return func

        if processor is not None:
            return decorator(processor)
        return decorator

    def get(self, queue_name: Union[QueueName, str]) -> Optional[RegisteredProcessor]:
        return self._entries.get(QueueName(queue_name))

    def require(self, queue_name: Union[QueueName, str]) -> RegisteredProcessor:
        """Entry for a queue, raising when nothing is registered for it."""
        entry = self.get(queue_name)
        if entry is None:
            raise ProcessorNotRegisteredError(str(queue_name))
        return entry

    def settings_for(self, queue_name: Union[QueueName, str]) -> Optional[QueueSettings]:
        entry = self.get(queue_name)
        return entry.settings if entry else None

    def list_queues(self) -> List[QueueName]:
        return list(self._entries.keys())

    def missing(self) -> List[QueueName]:
        """Workload classes with no processor registered."""
        return [queue for queue in QueueName if queue not in self._entries]

    def __contains__(self, queue_name) -> bool:
        return self.get(queue_name) is not None

    def __len__(self) -> int:
        return len(self._entries)
