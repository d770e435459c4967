"""
One synchronization pass: local EDS calendar → remote calendar.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime

from eds_graph_sync.db import IdentityMap
from eds_graph_sync.db import IdentityMapStore
from eds_graph_sync.models import CalendarSyncError
from eds_graph_sync.models import CollaboratorUnavailable
from eds_graph_sync.models import ConfigurationError
from eds_graph_sync.models import DestinationItem
from eds_graph_sync.models import ItemSyncError
from eds_graph_sync.models import MappingConsistencyError
from eds_graph_sync.models import OrphanResolutionError
from eds_graph_sync.models import PassState
from eds_graph_sync.models import SourceException
from eds_graph_sync.models import SourceItem
from eds_graph_sync.models import SyncConfig
from eds_graph_sync.models import SyncStats
from eds_graph_sync.sync.classifier import Classification
from eds_graph_sync.sync.classifier import SyncAction
from eds_graph_sync.sync.classifier import classify
from eds_graph_sync.sync.series_exceptions import reconcile_exceptions
from eds_graph_sync.sync.utils import apply_source_fields
from eds_graph_sync.sync.utils import build_destination_item
from eds_graph_sync.sync.utils import is_appointment_old
from eds_graph_sync.sync.utils import is_not_found_error
from eds_graph_sync.sync.utils import relevant_exceptions
from eds_graph_sync.sync.utils import resolve_zone
from eds_graph_sync.sync.utils import to_local


@dataclass
class _PlannedItem:
    source: SourceItem
    destination: DestinationItem | None
    classification: Classification
    exceptions: list[SourceException] = field(default_factory=list)


class SyncOrchestrator:
    """Drives full passes and the explicit delete operations."""

    def __init__(
        self,
        config: SyncConfig,
        source_store,
        destination,
        map_store_factory=None,
        today=None,
    ):
        self.config = config
        self.source_store = source_store
        self.destination = destination
        self.logger = logging.getLogger(__name__)
        self.zone = resolve_zone(config.time_zone)
        self.state = PassState.IDLE
        self._map_store_factory = map_store_factory or self._default_map_store
        self._today = today
        self._force_next = config.force_full_resync

    def _default_map_store(self) -> IdentityMapStore:
        return IdentityMapStore(
            self.config.state_dir, self.config.user, self.config.mapping_calendar
        )

    def _set_state(self, state: PassState):
        self.logger.debug(f"Pass state: {self.state.value} -> {state.value}")
        self.state = state

    def today(self) -> date:
        if self._today is not None:
            return self._today()
        return datetime.now(self.zone).date()

    def request_full_resync(self):
        """Make the next pass ignore the "unchanged" fast path."""
        self._force_next = True

    def _check_preconditions(self):
        if not self.config.destination_calendar_id:
            raise ConfigurationError("No remote calendar selected")
        if not self.destination.is_authenticated():
            raise ConfigurationError("User not logged in, cannot sync")

    # ------------------------------------------------------------------ #
    # Full pass                                                            #
    # ------------------------------------------------------------------ #

    async def run_pass(self, force_full: bool = False) -> SyncStats:
        """Execute one synchronization pass and return its summary.

        Pass-level failures move the pass to ABORTED, leave the persisted
        identity map untouched and are re-raised.
        """
        stats = SyncStats()
        self._set_state(PassState.IDLE)
        try:
            self._check_preconditions()
            with self._map_store_factory() as map_store:
                self._set_state(PassState.LOADING_SNAPSHOT)
                identity_map = map_store.load()
                stored_version = map_store.get_data_version()
                force = force_full or self._force_next
                if stored_version != self.config.data_version:
                    self.logger.info(
                        f"Data version changed ({stored_version} -> "
                        f"{self.config.data_version}), forcing a full sync"
                    )
                    force = True

                with self.source_store.session() as session:
                    destination_items = await self._load_destination_snapshot()
                    targets = self._claim_synced(identity_map, destination_items)
                    self.logger.info(
                        f"Syncing local appointments to remote calendar "
                        f"[{self.config.destination_calendar_name or self.config.destination_calendar_id}] "
                        f"on account [{self.config.user}]."
                    )

                    self._set_state(PassState.DIFFING)
                    plan = self._diff(session, identity_map, targets, force, stats)

                    self._set_state(PassState.APPLYING)
                    recurring = await self._apply(plan, identity_map, stats)
                    await self._delete_unclaimed(targets, identity_map, stats)

                    self._set_state(PassState.RECONCILING_EXCEPTIONS)
                    await self._reconcile(recurring, identity_map, stats)

                self._set_state(PassState.PERSISTING)
                map_store.save(identity_map)
                map_store.set_data_version(self.config.data_version)
        except CalendarSyncError as e:
            self._set_state(PassState.ABORTED)
            stats.finish(PassState.ABORTED)
            self.logger.error(f"Sync aborted: {e}")
            raise
        except Exception:
            self._set_state(PassState.ABORTED)
            stats.finish(PassState.ABORTED)
            self.logger.error("Unexpected error during synchronization", exc_info=True)
            raise

        self._force_next = False
        self._set_state(PassState.DONE)
        stats.finish(PassState.DONE)
        self._log_summary(stats)
        return stats

    async def _load_destination_snapshot(self) -> list[DestinationItem]:
        try:
            return list(await self.destination.list_events(self.config.destination_calendar_id))
        except CalendarSyncError:
            raise
        except Exception as e:
            raise CollaboratorUnavailable(f"Could not read the remote calendar: {e}") from e

    def _claim_synced(
        self, identity_map: IdentityMap, destination_items: list[DestinationItem]
    ) -> dict[str, DestinationItem]:
        """Pair map entries with snapshot items; drop entries whose item is gone."""
        by_id = {item.id: item for item in destination_items if item.id}
        targets: dict[str, DestinationItem] = {}
        for source_id in identity_map:
            entry = identity_map.get(source_id)
            item = by_id.get(entry.destination_id) if entry.destination_id else None
            if item is None:
                error = OrphanResolutionError(
                    f"Remote event {entry.destination_id} for {source_id} no longer exists"
                )
                self.logger.info(f"    {error}; treating it as not synced.")
                identity_map.remove(source_id)
                continue
            targets[source_id] = item
        return targets

    def _iter_appointments(self, session):
        try:
            yield from session.list_appointments()
        except CalendarSyncError:
            raise
        except Exception as e:
            raise CollaboratorUnavailable(f"Could not read local appointments: {e}") from e

    def _diff(
        self,
        session,
        identity_map: IdentityMap,
        targets: dict[str, DestinationItem],
        force: bool,
        stats: SyncStats,
    ) -> list[_PlannedItem]:
        today = self.today()
        skip_old = self.config.skip_old_appointments
        retention = self.config.retention_days
        plan: list[_PlannedItem] = []
        seen: set[str] = set()

        for source in self._iter_appointments(session):
            if not source.id:
                self.logger.info(f"    [{source.subject}] has no stable identifier, ignoring it.")
                continue
            if source.id in seen:
                self.logger.warning(f"    [{source.subject}] listed twice, ignoring duplicate.")
                continue
            seen.add(source.id)

            if skip_old and is_appointment_old(source, today, retention):
                self.logger.debug(
                    f"Skipping [{source.subject}] as it ended more than {retention} days ago."
                )
                stats.skipped_old += 1
                if not self.config.purge_aged_out:
                    # Leave the remote copy alone: claimed, not re-synced.
                    targets.pop(source.id, None)
                continue

            destination = targets.pop(source.id, None)
            exceptions = []
            if source.recurrence is not None:
                exceptions = relevant_exceptions(source.recurrence, skip_old, today, retention)

            classification = classify(
                source,
                destination,
                identity_map.get(source.id),
                force,
                self.zone,
                exceptions=exceptions,
                strict_recurring_times=self.config.strict_recurring_times,
            )
            plan.append(_PlannedItem(source, destination, classification, exceptions))
        return plan

    async def _apply(
        self, plan: list[_PlannedItem], identity_map: IdentityMap, stats: SyncStats
    ) -> list[tuple[SourceItem, list[SourceException]]]:
        recurring = []
        for planned in plan:
            source = planned.source
            classification = planned.classification
            chain = ["Checking if target appointment already exists"]
            try:
                if classification.action == SyncAction.SKIP:
                    if classification.refresh_stamp:
                        identity_map.set_stamp(source.id, source.modification_stamp)
                    stats.unchanged += 1
                else:
                    self._log_decision(source, classification)
                    await self._push(planned, identity_map, chain)
                    stats.synced += 1
            except (MappingConsistencyError, CollaboratorUnavailable):
                raise
            except Exception as e:
                stats.errors += 1
                if isinstance(e, ItemSyncError) and e.operation_chain:
                    chain = e.operation_chain
                self.logger.error(f"    ERROR: Could not sync appointment [{source.subject}]: {e}")
                self.logger.error(f"    Chain of performed operations: {'; '.join(chain)}.")
                self.logger.debug("Traceback:", exc_info=True)
                continue

            if source.is_recurring and source.id in identity_map:
                recurring.append((source, planned.exceptions))
        return recurring

    def _log_decision(self, source: SourceItem, classification: Classification):
        if source.recurrence is None:
            when = f"on {to_local(source.start, self.zone):%Y-%m-%d %H:%M}"
        else:
            when = f"recurring at {to_local(source.start, self.zone):%H:%M}"
        self.logger.info(f"    [{source.subject}]: {when}. {classification.reason}.")

    async def _push(self, planned: _PlannedItem, identity_map: IdentityMap, chain: list[str]):
        source = planned.source
        action = planned.classification.action
        destination = planned.destination

        if action == SyncAction.UPDATE_IN_PLACE:
            apply_source_fields(destination, source, self.zone, chain)
            chain.append("Saving")
            await self.destination.update_event(destination)
            identity_map.set_stamp(source.id, source.modification_stamp)
            return

        if action == SyncAction.DELETE_AND_RECREATE:
            # The remote series cannot be edited into shape, rebuild it.
            chain.append("Deleting target appointment")
            try:
                await self.destination.delete_event(destination)
            except Exception as e:
                if not is_not_found_error(e):
                    raise
            identity_map.remove(source.id)

        await self._create(source, identity_map, chain)

    async def _create(self, source: SourceItem, identity_map: IdentityMap, chain: list[str]):
        calendar_id = self.config.destination_calendar_id
        chain.append("Creating a new target appointment")
        item = build_destination_item(source, self.zone, chain)
        chain.append("Saving")
        try:
            await self.destination.add_event(calendar_id, item)
        except CollaboratorUnavailable:
            raise
        except Exception as e:
            if item.id is None:
                raise ItemSyncError(
                    f"Could not create appointment [{source.subject}]: {e}", chain
                ) from e
            self.logger.warning(f"    WARNING: first attempt for [{source.subject}] failed, retrying")
            chain.append("Deleting partially created appointment")
            await self.destination.delete_event(item)
            chain.append("Retrying creation")
            item = build_destination_item(source, self.zone)
            try:
                await self.destination.add_event(calendar_id, item)
            except CollaboratorUnavailable:
                raise
            except Exception as e2:
                await self._discard_partial(item)
                raise ItemSyncError(
                    f"Could not create appointment [{source.subject}]: {e2}", chain
                ) from e2
        identity_map.add(source.id, item.id, source.modification_stamp)

    async def _discard_partial(self, item: DestinationItem):
        if item.id is None:
            return
        try:
            await self.destination.delete_event(item)
        except CollaboratorUnavailable:
            raise
        except Exception as e:
            self.logger.warning(f"    Could not remove partially created event {item.id}: {e}")

    async def _delete_unclaimed(
        self,
        targets: dict[str, DestinationItem],
        identity_map: IdentityMap,
        stats: SyncStats,
    ):
        """Remove remote copies of appointments that disappeared locally."""
        for source_id, item in targets.items():
            self.logger.info(f"    Deleting remote appointment [{item.subject}].")
            try:
                await self.destination.delete_event(item)
            except CollaboratorUnavailable:
                raise
            except Exception as e:
                if not is_not_found_error(e):
                    self.logger.error(
                        f"    ERROR: Could not delete remote appointment [{item.subject}]: {e}"
                    )
                    stats.errors += 1
                    continue
            identity_map.remove(source_id)
            stats.deleted += 1

    async def _reconcile(
        self,
        recurring: list[tuple[SourceItem, list[SourceException]]],
        identity_map: IdentityMap,
        stats: SyncStats,
    ):
        if recurring:
            self.logger.info(
                "Syncing exceptions (deleted or changed instances) for recurring appointments."
            )
        for source, exceptions in recurring:
            entry = identity_map.get(source.id)
            if entry is None or entry.destination_id is None:
                raise MappingConsistencyError(f"Series [{source.subject}] lost its mapping")
            if not exceptions:
                continue
            try:
                result = await reconcile_exceptions(
                    source,
                    entry.destination_id,
                    exceptions,
                    identity_map,
                    self.destination,
                    self.zone,
                )
            except (MappingConsistencyError, CollaboratorUnavailable):
                raise
            except Exception as e:
                self.logger.error(f"  ERROR: Could not sync exceptions of [{source.subject}]: {e}")
                stats.errors += 1
                continue
            stats.exceptions_synced += result.synced
            stats.exceptions_unchanged += result.unchanged
            stats.errors += result.failed

    def _log_summary(self, stats: SyncStats):
        self.logger.info("Sync done.")
        if stats.synced:
            self.logger.info(f"{stats.synced} appointments updated / created.")
        if stats.deleted:
            self.logger.info(f"{stats.deleted} appointments deleted.")
        if stats.errors:
            self.logger.info(f"{stats.errors} appointments failed to be updated.")
        if stats.unchanged:
            self.logger.info(f"{stats.unchanged} appointments did not change since their last sync.")
        if stats.skipped_old:
            self.logger.info(
                f"{stats.skipped_old} appointments not synced because they ended more than "
                f"{self.config.retention_days} days ago."
            )

    # ------------------------------------------------------------------ #
    # Explicit deletes                                                     #
    # ------------------------------------------------------------------ #

    async def delete_synced_event(self, destination_id: str) -> bool:
        """Delete one remote event and forget its mapping. Returns True if mapped."""
        self._check_preconditions()
        with self._map_store_factory() as map_store:
            identity_map = map_store.load()
            try:
                item = await self.destination.get_event(destination_id)
                await self.destination.delete_event(item)
            except Exception as e:
                if not is_not_found_error(e):
                    raise
                self.logger.info(f"Remote event {destination_id} already gone")
            source_id = identity_map.remove_destination(destination_id)
            map_store.save(identity_map)
        return source_id is not None

    async def delete_all_synced(self) -> SyncStats:
        """Delete every remote event recorded in the identity map."""
        self._check_preconditions()
        stats = SyncStats()
        with self._map_store_factory() as map_store:
            identity_map = map_store.load()
            destination_items = await self._load_destination_snapshot()
            targets = self._claim_synced(identity_map, destination_items)
            await self._delete_unclaimed(targets, identity_map, stats)
            map_store.save(identity_map)
        stats.finish(PassState.DONE)
        return stats
