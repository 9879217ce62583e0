"""
Presence cleanup service: evicts stale check-ins.

Background worker that polls every 10 minutes and removes presence records not
refreshed within the stale threshold. Check-in also sweeps opportunistically;
this covers quiet periods when nobody checks in.
"""

import asyncio
import logging
from typing import Optional

from kingz.database import db
from kingz.services import presence_service
from kingz.utils.constants import PRESENCE_SWEEP_INTERVAL_SECONDS, STALE_CHECK_IN_HOURS

logger = logging.getLogger(__name__)


class PresenceCleanupService:
    """Background service that removes stale presence records."""

    def __init__(self, poll_interval_seconds: float = PRESENCE_SWEEP_INTERVAL_SECONDS):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.poll_interval_seconds = poll_interval_seconds

    def start(self) -> None:
        """Start the background cleanup worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Presence cleanup worker started")

    def stop(self) -> None:
        """Stop the background cleanup worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Presence cleanup worker stopped")

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def _poll_loop(self) -> None:
        """Main loop: sweep, then sleep. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error in presence cleanup worker: {e}", exc_info=True)

            # Wait for poll interval or until stop is signalled
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.poll_interval_seconds
                )
                break
            except asyncio.TimeoutError:
                pass

    async def sweep_once(self) -> int:
        """Run one sweep in its own session. Returns the number of records removed."""
        async with db.AsyncSessionLocal() as session:
            return await presence_service.cleanup_stale_check_ins(
                session, threshold_hours=STALE_CHECK_IN_HOURS
            )


# Global service instance
_presence_cleanup_service = PresenceCleanupService()


def get_presence_cleanup_service() -> PresenceCleanupService:
    """Get the global presence cleanup service instance."""
    return _presence_cleanup_service
