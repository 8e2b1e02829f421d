"""Worker entrypoint: runs the job worker pools without the web server."""

import asyncio
import sys

from jobcore.config import config
from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.startup_service import run_standalone

logger = configure_logger(__name__)


async def main():
    logger.info(
        "Starting job workers",
        extra={
            "broker": config.broker.backend,
            "concurrency": config.queues.concurrency_by_queue(),
            "event_type": "worker_mode_start",
        },
    )

    try:
        await run_standalone()
    except KeyboardInterrupt:
        logger.info("Worker mode interrupted by user")
    except Exception as e:
        logger.error(f"Critical error in worker mode: {e}", exc_info=True)
        sys.exit(1)
    finally:
        logger.info("Worker mode shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
