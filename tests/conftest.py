import asyncio
import os
from typing import Callable

import pytest

# Never reach for a real Redis from the test suite
os.environ.setdefault("JOBCORE_BROKER_BACKEND", "memory")

from jobcore.broker.memory import InMemoryBroker  # noqa: E402
from jobcore.broker.models import (  # noqa: E402
    AIProcessingPayload,
    AITaskType,
    DocumentProcessingPayload,
    JobState,
    VideoProcessingPayload,
)
from jobcore.config import (  # noqa: E402
    Config,
    EstimationConfig,
    QueueConfig,
    WorkerConfig,
)


class ManualClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> ManualClock:
    """A manually driven clock."""
    return ManualClock()


@pytest.fixture
def broker(clock) -> InMemoryBroker:
    """In-memory broker on the manual clock."""
    return InMemoryBroker(clock=clock)


@pytest.fixture
def live_broker() -> InMemoryBroker:
    """In-memory broker on the wall clock, for tests that run worker pools."""
    return InMemoryBroker()


@pytest.fixture
def fast_config() -> Config:
    """Configuration with short intervals so worker tests finish quickly."""
    return Config(
        queues=QueueConfig(
            video_concurrency=2,
            document_concurrency=3,
            ai_concurrency=4,
            default_attempts=3,
            backoff_kind="exponential",
            backoff_delay_ms=2000,
            keep_completed=10,
            keep_failed=50,
            timeout_seconds=0,
        ),
        worker=WorkerConfig(
            poll_interval_seconds=0.01,
            stalled_interval_ms=30000,
            max_stalled_count=1,
            lock_duration_ms=30000,
            delayed_check_interval_ms=20,
            shutdown_grace_seconds=1,
        ),
        estimation=EstimationConfig(
            average_processing_ms=30000,
            max_wait_ms=300000,
            default_wait_ms=60000,
        ),
    )


@pytest.fixture
def video_payload() -> VideoProcessingPayload:
    return VideoProcessingPayload(
        user_id="user-1",
        storage_path="videos/user-1/intro.webm",
        file_name="intro.webm",
        original_size=1_048_576,
        content_type="video/webm",
    )


@pytest.fixture
def document_payload() -> DocumentProcessingPayload:
    return DocumentProcessingPayload(
        user_id="user-1",
        storage_path="resumes/user-1/cv.pdf",
        file_name="cv.pdf",
        file_type="application/pdf",
        original_size=204_800,
    )


@pytest.fixture
def ai_payload() -> AIProcessingPayload:
    return AIProcessingPayload(
        user_id="user-1",
        text="Senior backend engineer with eight years of Python.",
        task=AITaskType.EMBEDDING,
    )


@pytest.fixture
def wait_for_state() -> Callable:
    """Poll the broker until a job reaches a state, or fail after a timeout."""

    async def wait(broker, queue_name, job_id, state: JobState, timeout: float = 5.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            job = await broker.get_job(queue_name, job_id)
            if job is not None and job.status == state:
                return job
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(
                    f"job {job_id} did not reach {state}, last seen: {job}"
                )
            await asyncio.sleep(0.01)

    return wait
