"""Job service: wires broker, pools, producer, status and health together."""

import asyncio
from typing import Any, Dict, List, Optional, Set, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.models import QueueName
from jobcore.config import Config, config
from jobcore.errors import BrokerUnavailableError
from jobcore.lib.logger import configure_logger

from .executor import WorkerPool
from .monitoring import HealthReport, MetricsCollector, QueueHealthAggregator
from .producer import JobProducer
from .registry import ProcessorRegistry, QueueSettings
from .status import StatusTracker

logger = configure_logger(__name__)


class JobService:
    """Owns everything the job system needs for one process.

    An API process uses the producer, status tracker and health aggregator
    only. A worker process also calls start(), which launches one worker
    pool per registered queue and the maintenance jobs that promote delayed
    jobs and recover stalled ones.
    """

    def __init__(
        self,
        broker: AbstractBroker,
        registry: Optional[ProcessorRegistry] = None,
        app_config: Optional[Config] = None,
        metrics: Optional[MetricsCollector] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.broker = broker
        self.registry = registry or ProcessorRegistry()
        self.config = app_config or config
        self.metrics = metrics or MetricsCollector()
        self.scheduler = scheduler or AsyncIOScheduler()

        self.settings: Dict[QueueName, QueueSettings] = {
            queue_name: (
                self.registry.settings_for(queue_name)
                or QueueSettings.from_config(queue_name, self.config)
            )
            for queue_name in QueueName
        }
        self.health = QueueHealthAggregator(
            broker,
            {name: settings.concurrency for name, settings in self.settings.items()},
            metrics=self.metrics,
            estimation=self.config.estimation,
        )
        self.producer = JobProducer(broker, self.settings, self.health)
        self.status = StatusTracker(broker)

        self.pools: Dict[QueueName, WorkerPool] = {}
        self._paused: Set[QueueName] = set()
        self._started = False
        self._shut_down = False

    @classmethod
    def from_config(
        cls,
        registry: Optional[ProcessorRegistry] = None,
        app_config: Optional[Config] = None,
    ) -> "JobService":
        """Build a service around the broker selected by configuration."""
        from jobcore.broker.factory import get_broker

        app_config = app_config or config
        return cls(get_broker(app_config.broker), registry, app_config)

    @property
    def is_running(self) -> bool:
        return self._started and not self._shut_down

    @property
    def maintained_queues(self) -> List[QueueName]:
        return self.registry.list_queues()

    async def start(self) -> None:
        """Start worker pools and maintenance jobs for the registered queues."""
        if self._started:
            logger.warning(
                "Job service already started",
                extra={"event_type": "job_service_already_started"},
            )
            return
        if len(self.registry) == 0:
            logger.warning(
                "No processors registered, no worker pools will run",
                extra={"event_type": "no_processors"},
            )
        elif self.registry.missing():
            logger.warning(
                "Queues without a processor will only accumulate jobs",
                extra={
                    "queues": ",".join(str(q) for q in self.registry.missing()),
                    "event_type": "queues_without_processor",
                },
            )

        self._started = True
        worker_config = self.config.worker

        for queue_name in self.registry.list_queues():
            pool = WorkerPool(
                self.registry.require(queue_name),
                self.broker,
                metrics=self.metrics,
                poll_interval_seconds=worker_config.poll_interval_seconds,
            )
            self.pools[queue_name] = pool
            if queue_name in self._paused:
                pool.pause()
            await pool.start()

        self.scheduler.add_job(
            self.promote_delayed,
            "interval",
            seconds=worker_config.delayed_check_interval_ms / 1000,
            id="jobcore_promote_delayed",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.requeue_stalled,
            "interval",
            seconds=worker_config.stalled_interval_ms / 1000,
            id="jobcore_requeue_stalled",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()

        logger.info(
            "Job service started",
            extra={
                "queues": ",".join(str(q) for q in self.pools),
                "broker": type(self.broker).__name__,
                "event_type": "job_service_started",
            },
        )

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come back to waiting."""
        promoted = 0
        for queue_name in self.maintained_queues:
            try:
                count = await self.broker.promote_delayed(queue_name)
            except BrokerUnavailableError as e:
                logger.warning(
                    "Could not promote delayed jobs",
                    extra={
                        "queue": str(queue_name),
                        "error": str(e),
                        "event_type": "promote_delayed_failed",
                    },
                )
                continue

            if count:
                logger.debug(
                    f"Promoted delayed jobs: {count}",
                    extra={
                        "queue": str(queue_name),
                        "promoted": count,
                        "event_type": "delayed_promoted",
                    },
                )
            promoted += count
        return promoted

    async def requeue_stalled(self) -> Dict[str, Dict[str, List[str]]]:
        """Recover active jobs whose lock expired."""
        max_stalled_count = self.config.worker.max_stalled_count
        outcome: Dict[str, Dict[str, List[str]]] = {}

        for queue_name in self.maintained_queues:
            try:
                result = await self.broker.requeue_stalled(queue_name, max_stalled_count)
            except BrokerUnavailableError as e:
                logger.warning(
                    "Could not check for stalled jobs",
                    extra={
                        "queue": str(queue_name),
                        "error": str(e),
                        "event_type": "stall_check_failed",
                    },
                )
                continue

            for job_id in result.requeued:
                self.metrics.record_stalled(queue_name, job_id, abandoned=False)
                logger.warning(
                    "Stalled job requeued",
                    extra={
                        "queue": str(queue_name),
                        "job_id": job_id,
                        "event_type": "job_stalled",
                    },
                )
            for job_id in result.failed:
                self.metrics.record_stalled(queue_name, job_id, abandoned=True)
                logger.error(
                    "Stalled job failed permanently",
                    extra={
                        "queue": str(queue_name),
                        "job_id": job_id,
                        "max_stalled_count": max_stalled_count,
                        "event_type": "job_stalled_failed",
                    },
                )
            outcome[str(queue_name)] = result.model_dump()
        return outcome

    def pause_queue(self, queue_name: Union[QueueName, str]) -> None:
        """Stop taking jobs from a queue; producers can still add to it.

        Raises:
            ProcessorNotRegisteredError: no processor handles the queue.
        """
        queue = QueueName(queue_name)
        self.registry.require(queue)
        self._paused.add(queue)
        if queue in self.pools:
            self.pools[queue].pause()

    def resume_queue(self, queue_name: Union[QueueName, str]) -> None:
        queue = QueueName(queue_name)
        self.registry.require(queue)
        self._paused.discard(queue)
        if queue in self.pools:
            self.pools[queue].resume()

    async def get_queue_stats(self) -> Dict[str, Any]:
        return await self.health.all_queue_stats()

    async def health_check(self) -> HealthReport:
        return await self.health.health_check()

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """Stop accepting jobs, drain the pools and close the broker.

        Safe to call more than once; only the first call does anything.
        """
        if self._shut_down:
            return
        self._shut_down = True
        grace = (
            self.config.worker.shutdown_grace_seconds
            if grace_seconds is None
            else grace_seconds
        )

        logger.info(
            "Initiating job service shutdown",
            extra={"grace_seconds": grace, "event_type": "shutdown_start"},
        )
        self.producer.close()

        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
                logger.info(
                    "Maintenance scheduler stopped",
                    extra={"event_type": "scheduler_stopped"},
                )

            if self.pools:
                await asyncio.gather(
                    *(pool.stop(grace) for pool in self.pools.values())
                )

            await self.broker.close()
        except Exception as e:
            logger.error(
                "Error during job service shutdown",
                extra={"error": str(e), "event_type": "shutdown_error"},
                exc_info=True,
            )

        logger.info("Job service shutdown complete", extra={"event_type": "shutdown_complete"})

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "paused": sorted(str(q) for q in self._paused),
            "pools": {str(q): pool.get_stats() for q, pool in self.pools.items()},
            "metrics": self.metrics.get_system_metrics(),
        }
