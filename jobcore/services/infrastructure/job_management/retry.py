"""Retry decisions and backoff delays for failed jobs.

Everything here is a pure function of the job record, so the same job always
yields the same decision and delay.
"""

from jobcore.broker.models import BackoffKind, BackoffPolicy, JobRecord
from jobcore.errors import NonRetryableJobError


class RetryManager:
    """Manages job retry logic with fixed or exponential backoff."""

    @staticmethod
    def calculate_retry_delay(policy: BackoffPolicy, attempts: int) -> int:
        """Delay in milliseconds after the given number of attempts.

        fixed:       delay_ms
        exponential: delay_ms * 2 ** (attempts - 1), uncapped
        """
        if policy.kind == BackoffKind.FIXED:
            return policy.delay_ms
        exponent = max(attempts - 1, 0)
        return policy.delay_ms * (2**exponent)

    @staticmethod
    def next_delay(job: JobRecord) -> int:
        return RetryManager.calculate_retry_delay(job.backoff, job.attempts)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return not isinstance(error, NonRetryableJobError)

    @staticmethod
    def should_retry(job: JobRecord, error: BaseException) -> bool:
        """Retry while attempts remain, unless the processor ruled it out."""
        if not RetryManager.is_retryable(error):
            return False
        return job.attempts < job.max_attempts
