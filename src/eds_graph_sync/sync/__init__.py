"""
CalendarSynchronizer: wires the EDS source, the Graph destination and the
orchestrator together for one CLI invocation.
"""

import logging

from eds_graph_sync.graph_client import GraphCalendarClient
from eds_graph_sync.models import SyncConfig
from eds_graph_sync.models import SyncStats
from eds_graph_sync.sync.orchestrator import SyncOrchestrator
from eds_graph_sync.sync.scheduler import SyncScheduler


class CalendarSynchronizer:
    """Main synchronization engine."""

    def __init__(self, config: SyncConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _source_store(self):
        # EDS bindings are only needed once a pass actually runs.
        from eds_graph_sync.eds_client import EDSSourceStore

        return EDSSourceStore(self.config.source_calendar_id, self.config.time_zone)

    def _graph_client(self) -> GraphCalendarClient:
        return GraphCalendarClient(access_token=self.config.access_token)

    async def run(self, full: bool = False) -> SyncStats:
        """Execute one synchronization pass."""
        async with self._graph_client() as destination:
            orchestrator = SyncOrchestrator(self.config, self._source_store(), destination)
            return await orchestrator.run_pass(force_full=full)

    async def watch(self):
        """Run passes every ``sync_interval_minutes`` until cancelled."""
        async with self._graph_client() as destination:
            orchestrator = SyncOrchestrator(self.config, self._source_store(), destination)
            scheduler = SyncScheduler(orchestrator, self.config.sync_interval_minutes)
            self.logger.info(
                f"Auto-sync every {self.config.sync_interval_minutes} minutes, Ctrl-C to stop"
            )
            try:
                await scheduler.run_forever()
            finally:
                scheduler.stop()

    async def delete_event(self, destination_id: str) -> bool:
        async with self._graph_client() as destination:
            orchestrator = SyncOrchestrator(self.config, None, destination)
            return await orchestrator.delete_synced_event(destination_id)

    async def clear(self) -> SyncStats:
        async with self._graph_client() as destination:
            orchestrator = SyncOrchestrator(self.config, None, destination)
            return await orchestrator.delete_all_synced()


__all__ = ["CalendarSynchronizer", "SyncOrchestrator", "SyncScheduler"]
