"""Tests for retry decisions and backoff delays."""

import pytest

from jobcore.broker.models import BackoffKind, BackoffPolicy, JobRecord, QueueName
from jobcore.errors import NonRetryableJobError
from jobcore.services.infrastructure.job_management.retry import RetryManager


def make_job(video_payload, attempts: int, max_attempts: int = 3, **backoff) -> JobRecord:
    return JobRecord(
        id="1",
        queue_name=QueueName.VIDEO,
        payload=video_payload,
        attempts=attempts,
        max_attempts=max_attempts,
        backoff=BackoffPolicy(**backoff),
        enqueued_at=0,
    )


class TestRetryManager:
    def test_exponential_delay_doubles_per_attempt(self):
        """Exponential backoff of 1000 ms gives 1000, 2000, 4000."""
        policy = BackoffPolicy(kind=BackoffKind.EXPONENTIAL, delay_ms=1000)
        delays = [RetryManager.calculate_retry_delay(policy, n) for n in (1, 2, 3)]
        assert delays == [1000, 2000, 4000]

    def test_exponential_delay_is_uncapped(self):
        policy = BackoffPolicy(kind=BackoffKind.EXPONENTIAL, delay_ms=2000)
        assert RetryManager.calculate_retry_delay(policy, 11) == 2000 * 1024

    def test_fixed_delay_is_constant(self):
        policy = BackoffPolicy(kind=BackoffKind.FIXED, delay_ms=1000)
        assert {RetryManager.calculate_retry_delay(policy, n) for n in range(1, 6)} == {
            1000
        }

    def test_next_delay_uses_job_attempts(self, video_payload):
        job = make_job(video_payload, attempts=2, delay_ms=500)
        assert RetryManager.next_delay(job) == 1000
        # Pure function of the record
        assert RetryManager.next_delay(job) == RetryManager.next_delay(job)

    @pytest.mark.parametrize(
        "attempts,max_attempts,expected",
        [(1, 3, True), (2, 3, True), (3, 3, False), (1, 1, False)],
    )
    def test_should_retry_while_attempts_remain(
        self, video_payload, attempts, max_attempts, expected
    ):
        job = make_job(video_payload, attempts=attempts, max_attempts=max_attempts)
        assert RetryManager.should_retry(job, RuntimeError("boom")) is expected

    def test_non_retryable_error_is_never_retried(self, video_payload):
        job = make_job(video_payload, attempts=1, max_attempts=5)
        assert RetryManager.should_retry(job, NonRetryableJobError("bad file")) is False
        assert RetryManager.is_retryable(ValueError("transient")) is True
