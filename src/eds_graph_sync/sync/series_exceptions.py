"""
Per-occurrence exception sync for recurring series already present remotely.
"""

import logging
from dataclasses import dataclass
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import tzinfo

from eds_graph_sync.db import IdentityMap
from eds_graph_sync.models import CollaboratorUnavailable
from eds_graph_sync.models import DestinationItem
from eds_graph_sync.models import MappingConsistencyError
from eds_graph_sync.models import SourceException
from eds_graph_sync.models import SourceItem
from eds_graph_sync.sync.utils import apply_exception_fields
from eds_graph_sync.sync.utils import is_not_found_error
from eds_graph_sync.sync.utils import original_date_key
from eds_graph_sync.sync.utils import to_local

logger = logging.getLogger(__name__)


@dataclass
class ExceptionResult:
    synced: int = 0
    unchanged: int = 0
    failed: int = 0


def _window_anchor(original: datetime | date, zone: tzinfo) -> datetime:
    if isinstance(original, datetime):
        return to_local(original, zone)
    return datetime.combine(original, time(), tzinfo=zone)


async def find_occurrence(
    destination,
    series_id: str,
    original: datetime | date,
    zone: tzinfo,
) -> DestinationItem | None:
    """Resolve the remote occurrence of series_id that falls on original's date."""
    anchor = _window_anchor(original, zone)
    wanted = original_date_key(original, zone)
    instances = await destination.get_occurrence_instances(
        series_id, anchor - timedelta(days=1), anchor + timedelta(days=1)
    )
    for instance in instances:
        if to_local(instance.start, zone).date().isoformat() == wanted:
            return instance
    return None


def _is_unchanged(exception: SourceException, recorded) -> bool:
    if exception.deleted:
        return recorded.destination_id is None
    if exception.item is None:
        return False
    return recorded.last_sync_stamp == exception.item.modification_stamp


async def _resolve_target(destination, recorded, series_id, exception, zone):
    if recorded is not None and recorded.destination_id:
        try:
            return await destination.get_event(recorded.destination_id)
        except Exception as e:
            if not is_not_found_error(e):
                raise
            logger.debug(
                f"Recorded occurrence {recorded.destination_id} is gone, resolving by date"
            )
    return await find_occurrence(destination, series_id, exception.original_date, zone)


async def reconcile_exceptions(
    source: SourceItem,
    series_id: str,
    exceptions: list[SourceException],
    identity_map: IdentityMap,
    destination,
    zone: tzinfo,
) -> ExceptionResult:
    """
    Bring the remote occurrences of one series in line with its local exceptions.

    Each exception is applied on its own: a failure is logged and counted and
    processing moves on to the next one.
    """
    entry = identity_map.get(source.id)
    if entry is None:
        raise MappingConsistencyError(
            f"Exceptions requested for [{source.subject}] ({source.id}) which has no mapping"
        )

    result = ExceptionResult()
    for exception in exceptions:
        key = original_date_key(exception.original_date, zone)
        recorded = entry.exceptions.get(key)
        if recorded is not None and _is_unchanged(exception, recorded):
            result.unchanged += 1
            continue

        try:
            target = await _resolve_target(destination, recorded, series_id, exception, zone)
            if target is None:
                kind = "deleted " if exception.deleted else ""
                logger.error(
                    f"  [{source.subject}]: no remote instance found for local "
                    f"{kind}exception on {key}."
                )
                result.failed += 1
                continue

            if exception.deleted:
                await destination.delete_event(target)
                identity_map.update_exception(source.id, key, None)
            elif exception.item is None:
                logger.warning(f"  [{source.subject}]: exception on {key} has no details")
                result.failed += 1
                continue
            else:
                apply_exception_fields(target, exception.item, series_id, zone)
                await destination.update_event(target)
                identity_map.update_exception(
                    source.id, key, target.id, exception.item.modification_stamp
                )
            result.synced += 1
        except (MappingConsistencyError, CollaboratorUnavailable):
            raise
        except Exception as e:
            logger.error(f"  ERROR: could not sync exception {key} of [{source.subject}]: {e}")
            result.failed += 1

    if result.synced:
        logger.info(
            f"    [{source.subject}]: {result.synced} exceptions have been synced, "
            f"{result.unchanged} unchanged since last sync."
        )
    return result
