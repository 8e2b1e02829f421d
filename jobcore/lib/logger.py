import logging
import os
from typing import Optional

# Map string log levels to logging constants
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRIBUTES = frozenset(
    [
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    ]
)

# Extras rendered first, in this order, so job events line up when tailing
_LEADING_KEYS = ("event_type", "queue", "job_id", "attempt")


class StructuredFormatter(logging.Formatter):
    """Human-readable log lines followed by the `extra` fields as key=value pairs."""

    def format(self, record):
        timestamp = self.formatTime(record, self.datefmt or "%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)
        logger_name = record.name.split(".")[-1][:20].ljust(20)
        message = record.getMessage()

        log_line = f"{timestamp} | {level} | {logger_name} | {message}"

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and value is not None
        }

        extras = []
        for key in _LEADING_KEYS:
            if key in fields:
                value = fields.pop(key)
                label = "type" if key == "event_type" else key
                extras.append(f"{label}={value}")

        for key, value in fields.items():
            if isinstance(value, dict):
                if key == "request":
                    method = value.get("method", "")
                    path = value.get("path", "")
                    if method and path:
                        extras.append(f"request={method} {path}")
                elif key == "response":
                    status = value.get("status_code", "")
                    time_ms = value.get("process_time_ms", "")
                    if status:
                        extras.append(f"response={status}")
                    if time_ms:
                        extras.append(f"time={time_ms}ms")
                else:
                    extras.append(f"{key}={str(value)[:100]}")
            elif isinstance(value, float):
                extras.append(f"{key}={value:.3f}")
            else:
                extras.append(f"{key}={value}")

        if extras:
            log_line += f" | {' '.join(extras)}"

        if record.exc_info:
            log_line += f"\n{self.formatException(record.exc_info)}"

        return log_line


def configure_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Configure and return a logger instance with consistent formatting and level.

    Args:
        name (Optional[str]): Logger name. If None, returns the package logger

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name if name else "jobcore")

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = LOG_LEVELS.get(log_level_str, logging.INFO)
    logger.setLevel(log_level)

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


def setup_uvicorn_logging():
    """Route uvicorn and FastAPI log output through the structured formatter."""
    # Request logging is done by LoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    structured_formatter = StructuredFormatter()

    for logger_name in ["uvicorn", "uvicorn.error", "fastapi", ""]:
        for handler in logging.getLogger(logger_name).handlers:
            handler.setFormatter(structured_formatter)
