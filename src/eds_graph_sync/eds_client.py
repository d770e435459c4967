"""
Evolution Data Server calendar connectivity wrapper (local source store).
"""

import logging
from contextlib import contextmanager
from datetime import tzinfo
from typing import Iterator

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib

from icalendar import Component

from eds_graph_sync.ical import ZoneResolver
from eds_graph_sync.ical import build_item
from eds_graph_sync.ical import build_source_item
from eds_graph_sync.ical import event_uid
from eds_graph_sync.ical import is_override
from eds_graph_sync.ical import parse_vevent
from eds_graph_sync.models import CollaboratorUnavailable
from eds_graph_sync.models import SourceItem
from eds_graph_sync.sync.utils import resolve_zone

logger = logging.getLogger(__name__)


def get_calendar_display_info(calendar_uid: str) -> tuple[str, str, str]:
    """
    Get human-readable information about a calendar.

    Returns:
        Tuple of (display_name, account_name, uid)
    """
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
        source = registry.ref_source(calendar_uid)
    except GLib.Error as e:
        return (f"Error: {e.message}", "", calendar_uid)

    if not source:
        return ("Unknown Calendar", "", calendar_uid)
    display_name = source.get_display_name() or "Unnamed Calendar"
    return (display_name, _parent_display_name(registry, source), calendar_uid)


def _parent_display_name(registry, source) -> str:
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


def list_local_calendars() -> list[tuple[str, str, str]]:
    """Return (display_name, account_name, uid) for every EDS calendar."""
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
    except GLib.Error as e:
        raise CollaboratorUnavailable(f"EDS registry unreachable: {e.message}") from e

    entries = []
    for source in registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR):
        entries.append(
            (
                source.get_display_name() or "(unnamed)",
                _parent_display_name(registry, source),
                source.get_uid() or "",
            )
        )
    return entries


def _ical_string(obj) -> str:
    if isinstance(obj, str):
        return obj
    return obj.as_ical_string() or ""


class EDSSourceSession:
    """Read access to one connected EDS calendar for the duration of a pass."""

    def __init__(self, client: ECal.Client, zone: tzinfo):
        self.client = client
        self.zones = ZoneResolver(zone, self._timezone_definition)

    def _timezone_definition(self, tzid: str) -> str | None:
        """VTIMEZONE text the calendar stores for tzid, if any."""
        try:
            _, ical_zone = self.client.get_timezone_sync(tzid, None)
        except GLib.Error as e:
            logger.debug(f"No VTIMEZONE for {tzid!r} in EDS: {e.message}")
            return None
        component = ical_zone.get_component() if ical_zone is not None else None
        return _ical_string(component) if component is not None else None

    def _components(self) -> list[Component]:
        try:
            # "#t" (boolean true) is the sexp for "all events".
            _, objects = self.client.get_object_list_sync("#t", None)
        except GLib.Error as e:
            raise CollaboratorUnavailable(f"Failed to fetch events: {e.message}") from e
        events = []
        for obj in objects or []:
            try:
                events.append(parse_vevent(_ical_string(obj)))
            except ValueError as e:
                logger.warning(f"    Skipping unreadable calendar component: {e}")
        return events

    def list_appointments(self) -> Iterator[SourceItem]:
        """Yield one SourceItem per UID; overrides are folded into their series."""
        masters: dict[str, Component] = {}
        overrides: dict[str, list[Component]] = {}
        anonymous: list[Component] = []

        for event in self._components():
            uid = event_uid(event)
            if uid is None:
                anonymous.append(event)
            elif is_override(event):
                overrides.setdefault(uid, []).append(event)
            else:
                masters[uid] = event

        for uid, master in masters.items():
            try:
                yield build_source_item(master, overrides.pop(uid, []), self.zones)
            except ValueError as e:
                subject = str(master.get("SUMMARY", "")) or uid
                logger.warning(f"    [{subject}] cannot be synced: {e}")

        for uid, orphaned in overrides.items():
            logger.debug(f"Ignoring {len(orphaned)} occurrence(s) of {uid} without a series")

        for event in anonymous:
            try:
                yield build_item(event, self.zones)
            except ValueError as e:
                logger.warning(f"    [{event.get('SUMMARY', '')}] cannot be synced: {e}")


class EDSSourceStore:
    """Factory for scoped EDS sessions on one calendar."""

    def __init__(self, calendar_uid: str, time_zone: str | None = None, timeout: int = 10):
        self.calendar_uid = calendar_uid
        self.zone = resolve_zone(time_zone)
        self.timeout = timeout

    @contextmanager
    def session(self) -> Iterator[EDSSourceSession]:
        """Connect to the calendar; the client is released on every exit path."""
        try:
            registry = EDataServer.SourceRegistry.new_sync(None)
        except GLib.Error as e:
            raise CollaboratorUnavailable(f"EDS registry unreachable: {e.message}") from e

        source = registry.ref_source(self.calendar_uid)
        if not source:
            raise CollaboratorUnavailable(
                f"Calendar with UID '{self.calendar_uid}' not found in EDS"
            )

        try:
            client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, self.timeout, None
            )
        except GLib.Error as e:
            raise CollaboratorUnavailable(
                f"Failed to connect to calendar {self.calendar_uid}: {e.message}"
            ) from e

        session = EDSSourceSession(client, self.zone)
        try:
            yield session
        finally:
            session.client = None
            del client
