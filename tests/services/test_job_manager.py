"""Tests for the job service wiring, end to end on the in-memory broker."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from jobcore.broker.memory import InMemoryBroker
from jobcore.broker.models import BackoffKind, BackoffPolicy, JobState, QueueName
from jobcore.config import BrokerConfig, Config
from jobcore.errors import ProcessorNotRegisteredError, QueueClosedError
from jobcore.services.infrastructure.job_management.job_manager import JobService
from jobcore.services.infrastructure.job_management.monitoring import HealthStatus
from jobcore.services.infrastructure.job_management.registry import ProcessorRegistry

VIDEO = QueueName.VIDEO


@pytest.fixture
def registry():
    return ProcessorRegistry()


class TestJobServiceEndToEnd:
    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(
        self, live_broker, registry, fast_config, video_payload, wait_for_state
    ):
        """Exponential backoff of 500 ms: retries after 500 then 1000 ms."""
        attempts_seen = []

        async def flaky(payload, context):
            attempts_seen.append(context.attempt)
            if context.attempt < 3:
                raise RuntimeError(f"attempt {context.attempt} failed")
            return {"ok": True}

        registry.register(
            VIDEO,
            flaky,
            concurrency=1,
            max_attempts=3,
            backoff=BackoffPolicy(kind=BackoffKind.EXPONENTIAL, delay_ms=500),
        )
        service = JobService(live_broker, registry, fast_config)

        await service.start()
        try:
            queued = await service.producer.add_job(VIDEO, video_payload)
            done = await wait_for_state(
                live_broker, VIDEO, queued.job_id, JobState.COMPLETED, timeout=10
            )
        finally:
            await service.shutdown()

        assert done.attempts == 3
        assert attempts_seen == [1, 2, 3]
        retries = service.metrics.get_recent_events(VIDEO, event_type="retried")
        assert [event.delay_ms for event in reversed(retries)] == [500, 1000]

    @pytest.mark.asyncio
    async def test_single_attempt_fails_terminally(
        self, live_broker, registry, fast_config, video_payload, wait_for_state
    ):
        processor = AsyncMock(side_effect=RuntimeError("transcoder crashed"))
        registry.register(VIDEO, processor, max_attempts=1)
        service = JobService(live_broker, registry, fast_config)

        await service.start()
        try:
            queued = await service.producer.add_job(VIDEO, video_payload)
            failed = await wait_for_state(
                live_broker, VIDEO, queued.job_id, JobState.FAILED
            )
        finally:
            await service.shutdown()

        assert failed.attempts == 1
        assert failed.failure_reason == "transcoder crashed"
        processor.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_delayed_job_is_promoted_and_run(
        self, live_broker, registry, fast_config, video_payload, wait_for_state
    ):
        registry.register(VIDEO, AsyncMock(return_value="ok"))
        service = JobService(live_broker, registry, fast_config)

        await service.start()
        try:
            queued = await service.producer.add_video_processing_job(video_payload)
            assert (await live_broker.get_job(VIDEO, queued.job_id)).status == (
                JobState.DELAYED
            )
            await wait_for_state(live_broker, VIDEO, queued.job_id, JobState.COMPLETED)
        finally:
            await service.shutdown()


class TestJobServiceLifecycle:
    @pytest.mark.asyncio
    async def test_start_schedules_maintenance(self, broker, registry, fast_config):
        scheduler = MagicMock(spec=AsyncIOScheduler)
        scheduler.running = False
        service = JobService(broker, registry, fast_config, scheduler=scheduler)

        await service.start()

        job_ids = [call.kwargs["id"] for call in scheduler.add_job.call_args_list]
        assert job_ids == ["jobcore_promote_delayed", "jobcore_requeue_stalled"]
        intervals = [call.kwargs["seconds"] for call in scheduler.add_job.call_args_list]
        assert intervals == [0.02, 30.0]
        scheduler.start.assert_called_once()
        assert service.pools == {}

        await service.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent_and_closes_everything(
        self, broker, registry, fast_config, video_payload
    ):
        registry.register(VIDEO, AsyncMock(return_value="ok"))
        service = JobService(broker, registry, fast_config)
        await service.start()

        await service.shutdown()
        await service.shutdown()

        assert not service.is_running
        assert not service.scheduler.running
        assert not service.pools[VIDEO].is_running
        assert await broker.ping() is False
        with pytest.raises(QueueClosedError):
            await service.producer.add_job(VIDEO, video_payload)

    @pytest.mark.asyncio
    async def test_from_config_uses_configured_broker(self, fast_config):
        app_config = Config(
            broker=BrokerConfig(backend="memory"),
            queues=fast_config.queues,
            worker=fast_config.worker,
        )

        service = JobService.from_config(app_config=app_config)

        assert isinstance(service.broker, InMemoryBroker)
        assert service.settings[QueueName.AI].concurrency == 4
        assert service.health.concurrency[VIDEO] == 2


class TestQueuePause:
    @pytest.mark.asyncio
    async def test_paused_queue_resumes_where_it_left_off(
        self, live_broker, registry, fast_config, video_payload, wait_for_state
    ):
        processor = AsyncMock(return_value="ok")
        registry.register(VIDEO, processor)
        service = JobService(live_broker, registry, fast_config)
        service.pause_queue("video")

        await service.start()
        try:
            queued = await service.producer.add_job(VIDEO, video_payload)
            await asyncio.sleep(0.05)
            processor.assert_not_awaited()

            stats = service.get_stats()
            assert stats["paused"] == ["video"]
            assert stats["pools"]["video"]["paused"] is True

            service.resume_queue(VIDEO)
            await wait_for_state(live_broker, VIDEO, queued.job_id, JobState.COMPLETED)
        finally:
            await service.shutdown()

        stats = service.get_stats()
        assert stats["paused"] == []
        assert stats["metrics"]["total_successful"] == 1

    def test_pausing_queue_without_processor(self, broker, registry, fast_config):
        service = JobService(broker, registry, fast_config)

        with pytest.raises(ProcessorNotRegisteredError):
            service.pause_queue(QueueName.AI)
        with pytest.raises(ProcessorNotRegisteredError):
            service.resume_queue("ai")


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_requeue_stalled_records_outcome(
        self, broker, clock, registry, fast_config, video_payload
    ):
        registry.register(VIDEO, AsyncMock())
        service = JobService(broker, registry, fast_config)
        queued = await service.producer.add_job(VIDEO, video_payload)

        await broker.dequeue(VIDEO, "dead-worker", 1000)
        clock.advance(1001)
        outcome = await service.requeue_stalled()

        assert outcome["video"]["requeued"] == [queued.job_id]
        stalled = service.metrics.get_metrics(VIDEO)[VIDEO].stalled_executions
        assert stalled == 1

        await broker.dequeue(VIDEO, "dead-worker-2", 1000)
        clock.advance(1001)
        outcome = await service.requeue_stalled()

        assert outcome["video"]["failed"] == [queued.job_id]
        assert (await broker.get_job(VIDEO, queued.job_id)).status == JobState.FAILED

    @pytest.mark.asyncio
    async def test_promote_delayed_skips_unavailable_broker(
        self, broker, clock, registry, fast_config, video_payload
    ):
        registry.register(VIDEO, AsyncMock())
        service = JobService(broker, registry, fast_config)
        await service.producer.add_job(VIDEO, video_payload, delay_ms=100)

        broker.set_available(False)
        assert await service.promote_delayed() == 0

        broker.set_available(True)
        clock.advance(100)
        assert await service.promote_delayed() == 1

    @pytest.mark.asyncio
    async def test_health_check_passthrough(self, broker, registry, fast_config):
        service = JobService(broker, registry, fast_config)

        assert (await service.health_check()).status == HealthStatus.HEALTHY
        stats = await service.get_queue_stats()
        assert stats["totals"]["total"] == 0
