import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

from jobcore.lib.logger import configure_logger

logger = configure_logger(__name__)

load_dotenv()


@dataclass
class BrokerConfig:
    """Connection settings for the job broker."""

    # "redis" in every deployed environment; "memory" only for tests and local runs
    backend: str = os.getenv("JOBCORE_BROKER_BACKEND", "redis")
    url: str = os.getenv("JOBCORE_REDIS_URL", "")
    host: str = os.getenv("JOBCORE_REDIS_HOST", "localhost")
    port: int = int(os.getenv("JOBCORE_REDIS_PORT", "6379"))
    password: str = os.getenv("JOBCORE_REDIS_PASSWORD", "")
    db: int = int(os.getenv("JOBCORE_REDIS_DB", "0"))
    key_prefix: str = os.getenv("JOBCORE_REDIS_KEY_PREFIX", "jobcore")
    connect_timeout_seconds: float = float(
        os.getenv("JOBCORE_REDIS_CONNECT_TIMEOUT_SECONDS", "10")
    )
    command_timeout_seconds: float = float(
        os.getenv("JOBCORE_REDIS_COMMAND_TIMEOUT_SECONDS", "5")
    )


@dataclass
class QueueConfig:
    """Per-queue concurrency and job defaults."""

    video_concurrency: int = int(os.getenv("JOBCORE_VIDEO_CONCURRENCY", "2"))
    document_concurrency: int = int(os.getenv("JOBCORE_DOCUMENT_CONCURRENCY", "3"))
    ai_concurrency: int = int(os.getenv("JOBCORE_AI_CONCURRENCY", "4"))

    default_attempts: int = int(os.getenv("JOBCORE_DEFAULT_ATTEMPTS", "3"))
    # "exponential" or "fixed"
    backoff_kind: str = os.getenv("JOBCORE_BACKOFF_KIND", "exponential")
    backoff_delay_ms: int = int(os.getenv("JOBCORE_BACKOFF_DELAY_MS", "2000"))

    keep_completed: int = int(os.getenv("JOBCORE_KEEP_COMPLETED", "10"))
    keep_failed: int = int(os.getenv("JOBCORE_KEEP_FAILED", "50"))

    timeout_seconds: float = float(os.getenv("JOBCORE_JOB_TIMEOUT_SECONDS", "0"))

    def concurrency_for(self, queue_name: str) -> int:
        """Configured concurrency for a queue, 1 for unknown queues."""
        return self.concurrency_by_queue().get(str(queue_name), 1)

    def concurrency_by_queue(self) -> Dict[str, int]:
        return {
            "video": self.video_concurrency,
            "document": self.document_concurrency,
            "ai": self.ai_concurrency,
        }


@dataclass
class WorkerConfig:
    """Worker loop, stall detection and shutdown settings."""

    poll_interval_seconds: float = float(
        os.getenv("JOBCORE_POLL_INTERVAL_SECONDS", "0.5")
    )
    stalled_interval_ms: int = int(os.getenv("JOBCORE_STALLED_INTERVAL_MS", "30000"))
    max_stalled_count: int = int(os.getenv("JOBCORE_MAX_STALLED_COUNT", "1"))
    lock_duration_ms: int = int(os.getenv("JOBCORE_LOCK_DURATION_MS", "30000"))
    delayed_check_interval_ms: int = int(
        os.getenv("JOBCORE_DELAYED_CHECK_INTERVAL_MS", "1000")
    )
    shutdown_grace_seconds: float = float(
        os.getenv("JOBCORE_SHUTDOWN_GRACE_SECONDS", "30")
    )


@dataclass
class EstimationConfig:
    """Constants for queue wait-time estimates."""

    average_processing_ms: int = int(
        os.getenv("JOBCORE_AVERAGE_PROCESSING_MS", "30000")
    )
    max_wait_ms: int = int(os.getenv("JOBCORE_MAX_WAIT_ESTIMATE_MS", "300000"))
    default_wait_ms: int = int(os.getenv("JOBCORE_DEFAULT_WAIT_ESTIMATE_MS", "60000"))


@dataclass
class ServicesConfig:
    """Endpoints of the external video, document and AI services."""

    video_url: str = os.getenv("JOBCORE_VIDEO_SERVICE_URL", "")
    document_url: str = os.getenv("JOBCORE_DOCUMENT_SERVICE_URL", "")
    ai_url: str = os.getenv("JOBCORE_AI_SERVICE_URL", "")
    api_key: str = os.getenv("JOBCORE_SERVICES_API_KEY", "")
    timeout_seconds: float = float(os.getenv("JOBCORE_SERVICES_TIMEOUT_SECONDS", "300"))


@dataclass
class Config:
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    estimation: EstimationConfig = field(default_factory=EstimationConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)

    @classmethod
    def load(cls) -> "Config":
        """Load and validate configuration"""
        config = cls()
        if config.queues.backoff_kind not in ("fixed", "exponential"):
            raise ValueError(
                f"Unsupported JOBCORE_BACKOFF_KIND: {config.queues.backoff_kind}"
            )
        if config.broker.backend not in ("redis", "memory"):
            raise ValueError(
                f"Unsupported JOBCORE_BROKER_BACKEND: {config.broker.backend}"
            )
        logger.info(
            "Configuration loaded successfully",
            extra={"broker": config.broker.backend, "event_type": "config_loaded"},
        )
        return config


config = Config.load()
