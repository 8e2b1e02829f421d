"""Tests for the producer API."""

import pytest

from jobcore.broker.models import JobState, QueueName
from jobcore.config import EstimationConfig
from jobcore.errors import BrokerUnavailableError, JobValidationError, QueueClosedError
from jobcore.services.infrastructure.job_management.monitoring import (
    QueueHealthAggregator,
)
from jobcore.services.infrastructure.job_management.producer import JobProducer
from jobcore.services.infrastructure.job_management.registry import QueueSettings


@pytest.fixture
def producer(broker):
    """Producer over the in-memory broker with the default queue settings."""
    settings = {
        QueueName.VIDEO: QueueSettings(name=QueueName.VIDEO, concurrency=2),
        QueueName.DOCUMENT: QueueSettings(name=QueueName.DOCUMENT, concurrency=3),
        QueueName.AI: QueueSettings(name=QueueName.AI, concurrency=4, max_attempts=5),
    }
    health = QueueHealthAggregator(
        broker,
        {name: s.concurrency for name, s in settings.items()},
        estimation=EstimationConfig(
            average_processing_ms=30000, max_wait_ms=300000, default_wait_ms=60000
        ),
    )
    return JobProducer(broker, settings, health)


class TestAddJob:
    @pytest.mark.asyncio
    async def test_returns_queued_acknowledgement(self, producer, broker, document_payload):
        result = await producer.add_job(QueueName.DOCUMENT, document_payload)

        assert result.status == "queued"
        assert result.job_id == "1"
        assert result.estimated_wait_ms == 30000

        job = await broker.get_job(QueueName.DOCUMENT, result.job_id)
        assert job.status == JobState.WAITING
        assert job.payload == document_payload

    @pytest.mark.asyncio
    async def test_applies_queue_settings(self, producer, broker, ai_payload):
        result = await producer.add_job("ai", ai_payload, priority=1, delay_ms=0)

        job = await broker.get_job(QueueName.AI, result.job_id)
        assert job.max_attempts == 5
        assert job.priority == 1

    @pytest.mark.asyncio
    async def test_accepts_plain_dicts(self, producer, broker):
        result = await producer.add_job(
            "video",
            {
                "user_id": "user-2",
                "storage_path": "videos/user-2/a.mp4",
                "file_name": "a.mp4",
                "original_size": 10,
            },
        )
        job = await broker.get_job(QueueName.VIDEO, result.job_id)
        assert job.payload.kind == "video"

    @pytest.mark.asyncio
    async def test_rejects_invalid_payload(self, producer, broker):
        with pytest.raises(JobValidationError):
            await producer.add_job("video", {"user_id": "user-2"})
        assert (await broker.get_counts(QueueName.VIDEO)).total == 0

    @pytest.mark.asyncio
    async def test_rejects_payload_for_other_queue(self, producer, video_payload):
        with pytest.raises(JobValidationError):
            await producer.add_job(QueueName.AI, video_payload)

    @pytest.mark.asyncio
    async def test_rejects_unknown_queue(self, producer, video_payload):
        with pytest.raises(JobValidationError):
            await producer.add_job("audio", video_payload)

    @pytest.mark.asyncio
    async def test_rejects_negative_delay(self, producer, video_payload):
        with pytest.raises(JobValidationError):
            await producer.add_job("video", video_payload, delay_ms=-1)

    @pytest.mark.asyncio
    async def test_closed_producer_rejects(self, producer, broker, video_payload):
        producer.close()

        with pytest.raises(QueueClosedError):
            await producer.add_job(QueueName.VIDEO, video_payload)
        assert (await broker.get_counts(QueueName.VIDEO)).total == 0

    @pytest.mark.asyncio
    async def test_broker_outage_is_surfaced(self, producer, broker, video_payload):
        broker.set_available(False)

        with pytest.raises(BrokerUnavailableError):
            await producer.add_job(QueueName.VIDEO, video_payload)


class TestAddJobs:
    @pytest.mark.asyncio
    async def test_queues_every_payload(self, producer, broker, ai_payload):
        other = ai_payload.model_copy(update={"user_id": "user-2"})

        results = await producer.add_jobs(QueueName.AI, [ai_payload, other], priority=4)

        assert [r.job_id for r in results] == ["1", "2"]
        assert all(r.status == "queued" for r in results)
        jobs = [await broker.get_job(QueueName.AI, r.job_id) for r in results]
        assert [j.payload.user_id for j in jobs] == ["user-1", "user-2"]
        assert {j.priority for j in jobs} == {4}

    @pytest.mark.asyncio
    async def test_one_bad_payload_rejects_the_batch(self, producer, broker, video_payload):
        with pytest.raises(JobValidationError) as exc_info:
            await producer.add_jobs("video", [video_payload, {"user_id": "user-2"}])

        assert exc_info.value.details["index"] == 1
        assert (await broker.get_counts(QueueName.VIDEO)).total == 0

    @pytest.mark.asyncio
    async def test_closed_producer_rejects_batches(self, producer, video_payload):
        producer.close()

        with pytest.raises(QueueClosedError):
            await producer.add_jobs(QueueName.VIDEO, [video_payload])


class TestTypedWrappers:
    @pytest.mark.asyncio
    async def test_video_defaults(self, producer, broker, video_payload):
        result = await producer.add_video_processing_job(video_payload)

        job = await broker.get_job(QueueName.VIDEO, result.job_id)
        assert job.priority == 2
        assert job.status == JobState.DELAYED

    @pytest.mark.asyncio
    async def test_document_defaults(self, producer, broker, document_payload):
        result = await producer.add_document_processing_job(document_payload)

        job = await broker.get_job(QueueName.DOCUMENT, result.job_id)
        assert job.priority == 3

    @pytest.mark.asyncio
    async def test_embedding_runs_immediately(self, producer, broker, ai_payload):
        result = await producer.add_ai_processing_job(ai_payload)

        job = await broker.get_job(QueueName.AI, result.job_id)
        assert (job.priority, job.status) == (5, JobState.WAITING)

    @pytest.mark.asyncio
    async def test_other_ai_tasks_are_deferred(self, producer, broker, clock):
        result = await producer.add_ai_processing_job(
            {"user_id": "user-3", "text": "Match me", "task": "matching"}
        )

        job = await broker.get_job(QueueName.AI, result.job_id)
        assert job.priority == 8
        assert job.delay_until == clock.now + 200

    @pytest.mark.asyncio
    async def test_explicit_options_override_defaults(self, producer, broker, video_payload):
        result = await producer.add_video_processing_job(
            video_payload, priority=0, delay_ms=0
        )

        job = await broker.get_job(QueueName.VIDEO, result.job_id)
        assert (job.priority, job.status) == (0, JobState.WAITING)
