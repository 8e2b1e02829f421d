"""Worker process lifecycle: start the job service and drain it on SIGTERM/SIGINT."""

import asyncio
import signal
import sys
from typing import List, Optional

from jobcore.config import config
from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.job_management.job_manager import JobService

logger = configure_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownCoordinator:
    """Turns termination signals into one orderly job service shutdown."""

    def __init__(self, service: JobService, grace_seconds: Optional[float] = None):
        self.service = service
        self.grace_seconds = grace_seconds
        self.shutdown_event = asyncio.Event()
        self._installed: List[signal.Signals] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if self.shutdown_event.is_set():
            return
        logger.info(
            "Shutdown signal received - initiating graceful shutdown",
            extra={"signal": signum, "event_type": "shutdown_signal"},
        )
        self.shutdown_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except NotImplementedError:
                # Event loops without add_signal_handler (Windows)
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self.request_shutdown, signum
                    ),
                )
            self._installed.append(sig)

    def remove_signal_handlers(self) -> None:
        for sig in self._installed:
            try:
                self._loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)
        self._installed.clear()

    async def shutdown(self) -> None:
        self.shutdown_event.set()
        await self.service.shutdown(self.grace_seconds)

    async def run_until_shutdown(self) -> None:
        """Start the service, block until a signal arrives, then drain it."""
        self.install_signal_handlers()
        try:
            await self.service.start()
            logger.info(
                "Job workers running - Press Ctrl+C to stop",
                extra={"event_type": "services_running"},
            )
            await self.shutdown_event.wait()
        finally:
            await self.shutdown()
            self.remove_signal_handlers()


async def run_standalone(service: Optional[JobService] = None) -> None:
    """Run the job workers until SIGTERM/SIGINT."""
    if service is None:
        from jobcore.services.processors import build_registry

        service = JobService.from_config(build_registry(config), config)

    coordinator = ShutdownCoordinator(service)
    try:
        await coordinator.run_until_shutdown()
    except Exception as e:
        logger.error(
            "Critical error in standalone mode",
            extra={"error": str(e), "event_type": "critical_error"},
            exc_info=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(run_standalone())
