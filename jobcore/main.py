from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from jobcore.api import jobs
from jobcore.api.dependencies import get_job_service
from jobcore.config import config
from jobcore.lib.logger import configure_logger, setup_uvicorn_logging
from jobcore.middleware.logging import LoggingMiddleware
from jobcore.services.infrastructure.job_management.job_manager import JobService
from jobcore.services.infrastructure.job_management.monitoring import HealthStatus

logger = configure_logger(__name__)

app = FastAPI(
    title="Job Core",
    description="Status and health API for background video, document and AI jobs",
    version="0.1.0",
)

app.add_middleware(LoggingMiddleware)
app.include_router(jobs.router)


@app.get("/health")
async def health_check(service: JobService = Depends(get_job_service)):
    """Queue health verdict; 503 only when queue stats cannot be read at all."""
    report = await service.health_check()
    status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
    return JSONResponse(
        status_code=status_code, content=report.model_dump(mode="json")
    )


@app.on_event("startup")
async def startup_event():
    """Create the job service unless one was provided beforehand."""
    setup_uvicorn_logging()

    logger.info("Starting FastAPI web server...")
    if getattr(app.state, "job_service", None) is None:
        # Workers run in worker.py; this process only enqueues and reads
        app.state.job_service = JobService.from_config(app_config=config)
    logger.info("Web server startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down FastAPI web server...")
    service = getattr(app.state, "job_service", None)
    if service is not None:
        await service.shutdown(grace_seconds=0)
        app.state.job_service = None
    logger.info("Web server shutdown complete")
