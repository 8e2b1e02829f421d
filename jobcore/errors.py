"""Exceptions raised by the job queue core."""

from typing import Any, Dict, Optional


class JobQueueError(Exception):
    """Base exception for all job queue errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class JobValidationError(JobQueueError):
    """A payload was rejected before it reached the broker."""


class BrokerUnavailableError(JobQueueError):
    """The broker could not be reached. Transient; callers may retry later."""

    def __init__(
        self,
        message: str = "Job broker is unavailable",
        operation: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.copy()
        if operation is not None:
            details["operation"] = operation
        super().__init__(message, details)
        self.operation = operation


class QueueClosedError(JobQueueError):
    """The job service is shutting down and no longer accepts jobs."""

    def __init__(self, message: str = "Job service is shutting down") -> None:
        super().__init__(message)


class ProcessorNotRegisteredError(JobQueueError):
    """No processor is registered for the queue."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(
            f"No processor registered for queue: {queue_name}",
            {"queue": queue_name},
        )
        self.queue_name = queue_name


class NonRetryableJobError(JobQueueError):
    """Raised by a processor to fail the job without using its remaining attempts."""


class ServiceCallError(JobQueueError):
    """A collaborator service call failed in a way worth retrying."""

    def __init__(
        self,
        message: str,
        service: str,
        status_code: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        details = {"service": service, **kwargs}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.service = service
        self.status_code = status_code
