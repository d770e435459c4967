"""
Stateless helpers shared by the classifier, reconciler and orchestrator.
"""

import os
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import httpx

from eds_graph_sync.models import DestinationItem
from eds_graph_sync.models import EventType
from eds_graph_sync.models import OrphanResolutionError
from eds_graph_sync.models import SourceException
from eds_graph_sync.models import SourceItem
from eds_graph_sync.models import SourceRecurrence
from eds_graph_sync.sync.patterns import get_free_busy_status
from eds_graph_sync.sync.patterns import translate


def _valid_zone_name(name: str) -> str | None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return name


def system_zone_name(localtime: Path = Path("/etc/localtime")) -> str | None:
    """IANA name of the host zone from $TZ or the /etc/localtime link."""
    env = os.environ.get("TZ", "").lstrip(":")
    if env:
        return _valid_zone_name(env)
    try:
        target = os.readlink(localtime)
    except OSError:
        return None
    _, sep, name = str(target).partition("zoneinfo/")
    return _valid_zone_name(name) if sep else None


def resolve_zone(name: str | None) -> tzinfo:
    """Return the configured IANA zone, or the system's local zone."""
    name = name or system_zone_name()
    if name:
        return ZoneInfo(name)
    # Unnamed host zone: a fixed offset is the best available.
    return datetime.now().astimezone().tzinfo or timezone.utc


def zone_name(zone: tzinfo) -> str:
    """Best-effort IANA name for a tzinfo (``UTC`` when unknown)."""
    return getattr(zone, "key", None) or "UTC"


def to_local(value: datetime, zone: tzinfo) -> datetime:
    """Express value in zone; naive values are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(zone)


def is_time_identical(a: datetime, b: datetime) -> bool:
    """Hour-and-minute comparison used for recurring series templates."""
    return a.hour == b.hour and a.minute == b.minute


def original_date_key(value: datetime | date, zone: tzinfo) -> str:
    """Calendar date (``YYYY-MM-DD``) of an occurrence's original start."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(zone)
        return value.date().isoformat()
    return value.isoformat()


def _as_date(value: datetime | date) -> date:
    return value.date() if isinstance(value, datetime) else value


def is_appointment_old(item: SourceItem, today: date, retention_days: int) -> bool:
    """True when the appointment (or its whole pattern) ended before the window."""
    if item.recurrence is not None:
        pattern = item.recurrence
        if pattern.no_end_date or pattern.pattern_end_date is None:
            return False
        return (today - pattern.pattern_end_date).days > retention_days
    return (today - _as_date(item.end)).days > retention_days


def is_exception_old(exception: SourceException, today: date, retention_days: int) -> bool:
    if exception.deleted or exception.item is None:
        return (today - _as_date(exception.original_date)).days > retention_days
    return (today - _as_date(exception.item.end)).days > retention_days


def relevant_exceptions(
    pattern: SourceRecurrence,
    skip_old: bool,
    today: date,
    retention_days: int,
) -> list[SourceException]:
    """Exceptions of a series that still fall inside the sync window."""
    if not skip_old:
        return list(pattern.exceptions)
    return [e for e in pattern.exceptions if not is_exception_old(e, today, retention_days)]


def is_not_found_error(e: Exception) -> bool:
    """Return True when the remote store reports that an event does not exist.

    This distinguishes an event deleted out-of-band (harmless, handled by
    treating the mapping as stale) from genuine failures.
    """
    if isinstance(e, OrphanResolutionError):
        return True
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code in (404, 410)
    return False


def _template_times(source: SourceItem, zone: tzinfo) -> tuple[datetime, datetime]:
    if source.is_all_day:
        start_day = to_local(source.start, zone).date()
        end_day = to_local(source.end, zone).date()
        if end_day <= start_day:
            end_day = start_day + timedelta(days=1)
        return (
            datetime.combine(start_day, time(), tzinfo=zone),
            datetime.combine(end_day, time(), tzinfo=zone),
        )
    return to_local(source.start, zone), to_local(source.end, zone)


def apply_source_fields(
    destination: DestinationItem,
    source: SourceItem,
    zone: tzinfo,
    operation_chain: list[str] | None = None,
):
    """Copy the synced attribute set of source onto destination."""
    chain = operation_chain if operation_chain is not None else []

    chain.append("Updating Subject")
    destination.subject = source.subject
    chain.append("Updating Location")
    destination.location = source.location or ""
    chain.append("Updating BusyStatus")
    destination.show_as = get_free_busy_status(source.busy_status)
    destination.is_reminder_on = source.reminder_set
    if source.reminder_set:
        destination.reminder_minutes = source.reminder_minutes

    chain.append("Updating Start and End")
    destination.is_all_day = source.is_all_day
    destination.start, destination.end = _template_times(source, zone)
    destination.time_zone = zone_name(zone)

    if source.recurrence is not None:
        chain.append("Updating Recurrence")
        destination.recurrence = translate(source.recurrence)
        destination.type = EventType.SERIES_MASTER
    else:
        destination.recurrence = None
        destination.type = EventType.SINGLE_INSTANCE


def build_destination_item(
    source: SourceItem,
    zone: tzinfo,
    operation_chain: list[str] | None = None,
) -> DestinationItem:
    """Create an unsaved destination item mirroring source."""
    destination = DestinationItem(subject=source.subject, start=source.start, end=source.end)
    apply_source_fields(destination, source, zone, operation_chain)
    return destination


def apply_exception_fields(
    destination: DestinationItem,
    override: SourceItem,
    series_id: str,
    zone: tzinfo,
):
    """Copy an occurrence override onto the remote occurrence instance."""
    destination.series_master_id = series_id
    destination.type = EventType.EXCEPTION
    destination.subject = override.subject
    destination.location = override.location or ""
    destination.start = to_local(override.start, zone)
    destination.end = to_local(override.end, zone)
    destination.time_zone = zone_name(zone)
    destination.is_reminder_on = override.reminder_set
    if override.reminder_set:
        destination.reminder_minutes = override.reminder_minutes
