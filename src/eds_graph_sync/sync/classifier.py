"""
Change classification: decides what a sync pass must do with one appointment.
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from datetime import tzinfo

from eds_graph_sync.db import IdentityMapEntry
from eds_graph_sync.models import DestinationItem
from eds_graph_sync.models import SourceException
from eds_graph_sync.models import SourceItem
from eds_graph_sync.sync.patterns import diff_recurrence
from eds_graph_sync.sync.patterns import get_free_busy_status
from eds_graph_sync.sync.patterns import get_pattern_type
from eds_graph_sync.sync.patterns import translate
from eds_graph_sync.sync.utils import is_time_identical
from eds_graph_sync.sync.utils import original_date_key
from eds_graph_sync.sync.utils import to_local


class SyncAction(enum.Enum):
    SKIP = "skip"
    CREATE = "create"
    UPDATE_IN_PLACE = "update-in-place"
    DELETE_AND_RECREATE = "delete-and-recreate"


@dataclass
class Classification:
    """Outcome of classify().

    ``reason`` is the first detected difference and is only ever logged;
    ``differences`` lists every mismatch that was found.
    """

    action: SyncAction
    reason: str | None = None
    differences: list[str] = field(default_factory=list)
    # True for a SKIP whose stored timestamp must be refreshed because the
    # source was touched without changing any synced attribute.
    refresh_stamp: bool = False


def _locations_differ(source_location: str | None, destination_location: str | None) -> bool:
    src = source_location or ""
    dst = destination_location or ""
    if not src and not dst:
        return False
    return src != dst


def _time_differences(
    source: SourceItem,
    destination: DestinationItem,
    zone: tzinfo,
    strict_recurring_times: bool,
) -> list[str]:
    recurring = source.is_recurring
    src_start = to_local(source.start, zone)
    src_end = to_local(source.end, zone)
    if source.is_all_day:
        # Remote all-day events are floating dates; read them as wall-clock values.
        dst_start, dst_end = destination.start, destination.end
    else:
        dst_start = to_local(destination.start, zone)
        dst_end = to_local(destination.end, zone)

    if recurring and not strict_recurring_times:
        same_start = is_time_identical(src_start, dst_start)
        same_end = is_time_identical(src_end, dst_end)
    elif source.is_all_day:
        same_start = src_start.date() == dst_start.date()
        same_end = src_end.date() == dst_end.date()
    else:
        same_start = src_start == dst_start
        same_end = src_end == dst_end

    reasons = []
    if not same_start:
        reasons.append("RecurringStart changed" if recurring else "Start changed")
    if not same_end:
        reasons.append("RecurringEnd changed" if recurring else "Duration changed")
    return reasons


def exception_shape_differences(
    exceptions: list[SourceException],
    entry: IdentityMapEntry,
    zone: tzinfo,
) -> list[str]:
    """
    Detect exception changes that the per-occurrence reconciler cannot repair.

    New exception dates are ignored (the reconciler picks them up). A date
    recorded as deleted that is no longer deleted at the source, or a mapped
    date that vanished from the source, requires the series to be rebuilt.
    """
    synced = 0
    for exception in exceptions:
        key = original_date_key(exception.original_date, zone)
        recorded = entry.exceptions.get(key)
        if recorded is None:
            continue
        synced += 1
        if not exception.deleted and recorded.destination_id is None:
            return ["Series Exception changed"]
    if synced != len(entry.exceptions):
        return ["Series Exceptions changed"]
    return []


def diff_fields(
    source: SourceItem,
    destination: DestinationItem,
    entry: IdentityMapEntry,
    zone: tzinfo,
    exceptions: list[SourceException] | None = None,
    strict_recurring_times: bool = False,
) -> list[str]:
    """Compare the synced attribute set, in a fixed order."""
    reasons = []
    if destination.is_recurring != source.is_recurring:
        reasons.append("Recurrence changed")
    if destination.is_all_day != source.is_all_day:
        reasons.append("All Day changed")
    if destination.subject != source.subject:
        reasons.append("Subject Changed")
    if _locations_differ(source.location, destination.location):
        reasons.append("Location changed")
    if destination.show_as != get_free_busy_status(source.busy_status):
        reasons.append("FreeBusyStatus changed")
    if destination.is_reminder_on != source.reminder_set:
        reasons.append("ReminderSet changed")
    elif source.reminder_set and destination.reminder_minutes != source.reminder_minutes:
        reasons.append("Reminder value changed")

    if source.recurrence is None:
        reasons.extend(_time_differences(source, destination, zone, strict_recurring_times))
        return reasons

    # from here on, a recurring appointment
    pattern = source.recurrence
    recurrence = destination.recurrence
    if recurrence is None:
        reasons.append("Destination recurrence pattern is not set")
        return reasons
    reasons.extend(_time_differences(source, destination, zone, strict_recurring_times))
    if recurrence.type != get_pattern_type(pattern.recurrence_type):
        reasons.append("RecurrenceType changed")

    # A translated copy of the local pattern eases the field comparison.
    if recurrence.type == get_pattern_type(pattern.recurrence_type):
        reasons.extend(diff_recurrence(translate(pattern), recurrence))

    if exceptions is None:
        exceptions = pattern.exceptions
    reasons.extend(exception_shape_differences(exceptions, entry, zone))
    return reasons


def classify(
    source: SourceItem,
    destination: DestinationItem | None,
    entry: IdentityMapEntry | None,
    force_full: bool,
    zone: tzinfo,
    exceptions: list[SourceException] | None = None,
    strict_recurring_times: bool = False,
) -> Classification:
    """
    Decide whether source needs to be pushed to the remote store.

    ``exceptions`` are the series exceptions still inside the sync window
    (defaults to all of them).
    """
    if entry is None or destination is None:
        return Classification(SyncAction.CREATE, "New Appointment", ["New Appointment"])

    if entry.last_sync_stamp == source.modification_stamp and not force_full:
        return Classification(SyncAction.SKIP)

    rebuild = (
        source.is_recurring
        or destination.is_recurring
        or source.is_all_day != destination.is_all_day
    )

    if force_full:
        action = SyncAction.DELETE_AND_RECREATE if rebuild else SyncAction.UPDATE_IN_PLACE
        return Classification(action, "Full resync requested", ["Full resync requested"])

    differences = diff_fields(
        source,
        destination,
        entry,
        zone,
        exceptions=exceptions,
        strict_recurring_times=strict_recurring_times,
    )
    if not differences:
        return Classification(SyncAction.SKIP, refresh_stamp=True)

    action = SyncAction.DELETE_AND_RECREATE if rebuild else SyncAction.UPDATE_IN_PLACE
    return Classification(action, differences[0], differences)
