from fastapi import HTTPException, Request

from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.job_management.job_manager import JobService

logger = configure_logger(__name__)


async def get_job_service(request: Request) -> JobService:
    """The job service created at application startup."""
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        logger.error(
            "Job service requested before startup",
            extra={"event_type": "job_service_missing"},
        )
        raise HTTPException(status_code=503, detail="Job service is not available")
    return service
