"""
Periodic pass scheduling with a single in-flight guard.
"""

import asyncio
import logging

from eds_graph_sync.models import CalendarSyncError
from eds_graph_sync.models import SyncStats

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs orchestrator passes on a timer; overlapping triggers are no-ops."""

    def __init__(self, orchestrator, interval_minutes: float):
        self.orchestrator = orchestrator
        self.interval_seconds = max(interval_minutes, 0) * 60
        self.in_flight = False
        self.last_stats: SyncStats | None = None
        self.last_error: str | None = None
        self._stopped = asyncio.Event()

    def request_full_resync(self):
        self.orchestrator.request_full_resync()

    async def trigger(self, full: bool = False) -> SyncStats | None:
        """Run one pass now unless one is already running."""
        if self.in_flight:
            logger.info("A sync pass is already running, ignoring trigger")
            return None

        self.in_flight = True
        try:
            stats = await self.orchestrator.run_pass(force_full=full)
        except CalendarSyncError as e:
            self.last_error = str(e)
            logger.error(f"Sync failed: {e}")
            return None
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Unexpected error during synchronization: {e}", exc_info=True)
            return None
        finally:
            self.in_flight = False
        self.last_error = None
        self.last_stats = stats
        return stats

    async def run_forever(self):
        """Trigger a pass, wait for the interval, repeat until stop()."""
        while not self._stopped.is_set():
            await self.trigger()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self):
        self._stopped.set()
