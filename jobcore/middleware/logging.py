import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from jobcore.lib.logger import configure_logger

logger = configure_logger(__name__)

# Polled constantly by clients; successful hits are logged at debug level
QUIET_PATHS = ("/jobs/status", "/health")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per HTTP request with method, path, status and timing."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response: Response = await call_next(request)
        process_time = time.time() - start_time

        request_info = {
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else "unknown",
        }
        if request.query_params:
            request_info["query_params"] = dict(request.query_params)

        response_info = {
            "status_code": response.status_code,
            "process_time_ms": round(process_time * 1000, 2),
        }

        if response.status_code >= 500:
            log = logger.warning
        elif request.url.path.startswith(QUIET_PATHS) and response.status_code < 400:
            log = logger.debug
        else:
            log = logger.info
        log(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                "request": request_info,
                "response": response_info,
                "event_type": "http_request",
            },
        )
        return response
