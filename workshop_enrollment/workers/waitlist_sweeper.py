"""
Waitlist sweeper background worker.

Expires claim offers whose window has passed and promotes the next waiting
customer for each, every ``waitlist_sweep_interval_seconds``.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from workshop_enrollment.bootstrap import Application, build_application
from workshop_enrollment.core import EnrollmentCore
from workshop_enrollment.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class WaitlistSweeper:
    """Periodic expiry sweep over all workshops."""

    def __init__(self, core: EnrollmentCore, interval_seconds: float = 60.0):
        self.core = core
        self.interval_seconds = interval_seconds
        self._running = False

    async def run_once(self) -> int:
        """
        Run a single sweep.

        Returns:
            int: Number of offers expired
        """
        expired = await self.core.sweep_expired_claims()
        logger.info("waitlist_sweep_pass_completed", expired=expired)
        return expired

    async def run(self) -> None:
        """Sweep until stop() is called."""
        self._running = True
        logger.info("waitlist_sweeper_started", interval_seconds=self.interval_seconds)

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                # The next pass retries the same overdue offers
                logger.error("waitlist_sweep_failed", error=str(e))

            waited = 0.0
            while self._running and waited < self.interval_seconds:
                step = min(1.0, self.interval_seconds - waited)
                await asyncio.sleep(step)
                waited += step

        logger.info("waitlist_sweeper_stopped")

    def stop(self) -> None:
        self._running = False


async def start_waitlist_sweeper(
    once: bool = False, application: Optional[Application] = None
) -> None:
    """
    Start the waitlist sweeper worker.

    Args:
        once: Run a single sweep and exit
        application: Prebuilt application graph (built from settings otherwise)
    """
    setup_logging()
    application = application or build_application()
    sweeper = WaitlistSweeper(
        application.core,
        interval_seconds=application.settings.waitlist_sweep_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("waitlist_sweeper_shutdown_signal_received", signal=sig)
        sweeper.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if once:
            await sweeper.run_once()
        else:
            await sweeper.run()
    finally:
        await application.close()


if __name__ == "__main__":
    asyncio.run(start_waitlist_sweeper())
