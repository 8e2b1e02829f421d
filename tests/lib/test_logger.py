import logging
import os
from typing import Generator

import pytest

from jobcore.lib.logger import StructuredFormatter, configure_logger


@pytest.fixture
def reset_logging() -> Generator[None, None, None]:
    """Reset logging configuration after each test."""
    yield
    for name in ("jobcore", "test_logger"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).setLevel(logging.NOTSET)


@pytest.fixture
def env_cleanup() -> Generator[None, None, None]:
    """Clean up environment variables after each test."""
    old_level = os.environ.get("LOG_LEVEL")
    yield
    if old_level:
        os.environ["LOG_LEVEL"] = old_level
    else:
        os.environ.pop("LOG_LEVEL", None)


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="jobcore.services.infrastructure.job_management.executor",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_configure_logger_default(reset_logging: None, env_cleanup: None) -> None:
    """Test logger configuration with default settings."""
    os.environ.pop("LOG_LEVEL", None)
    logger = configure_logger()
    assert logger.name == "jobcore"
    assert logger.level == logging.INFO


def test_configure_logger_custom_level(reset_logging: None, env_cleanup: None) -> None:
    os.environ["LOG_LEVEL"] = "debug"
    logger = configure_logger("test_logger")
    assert logger.level == logging.DEBUG


def test_configure_logger_invalid_level(reset_logging: None, env_cleanup: None) -> None:
    os.environ["LOG_LEVEL"] = "INVALID"
    logger = configure_logger("test_logger")
    assert logger.level == logging.INFO


def test_configure_logger_adds_one_handler(reset_logging: None) -> None:
    configure_logger("test_logger")
    logger = configure_logger("test_logger")
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, StructuredFormatter)


def test_formatter_puts_job_fields_first() -> None:
    """Job identity comes right after the message, in a fixed order."""
    record = make_record(
        "Job completed successfully",
        duration_seconds=1.23456,
        attempt=2,
        job_id="17",
        queue="video",
        event_type="job_completed",
    )

    line = StructuredFormatter().format(record)

    assert "| executor " in line
    assert line.endswith(
        "Job completed successfully | type=job_completed queue=video job_id=17 "
        "attempt=2 duration_seconds=1.235"
    )


def test_formatter_summarizes_http_requests() -> None:
    record = make_record(
        "GET /health -> 200",
        request={"method": "GET", "path": "/health", "client": "127.0.0.1"},
        response={"status_code": 200, "process_time_ms": 1.5},
        event_type="http_request",
    )

    line = StructuredFormatter().format(record)

    assert "type=http_request request=GET /health response=200 time=1.5ms" in line


def test_formatter_skips_empty_extras() -> None:
    record = make_record("Broker closed", error=None, event_type="broker_closed")
    assert StructuredFormatter().format(record).endswith("| type=broker_closed")
