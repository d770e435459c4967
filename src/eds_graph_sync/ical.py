"""
iCalendar helpers: EDS VEVENT components → SourceItem.

EDS hands out components whose ``as_ical_string()`` is RFC 5545 text; it is
parsed with icalendar so everything here can be exercised without a running
evolution-data-server.
"""

import logging
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from typing import Callable

from icalendar import Calendar
from icalendar import Component
from icalendar import Timezone
from icalendar import vRecur

from eds_graph_sync.models import BusyStatus
from eds_graph_sync.models import DayMask
from eds_graph_sync.models import SourceException
from eds_graph_sync.models import SourceItem
from eds_graph_sync.models import SourceRecurrence
from eds_graph_sync.models import SourceRecurrenceType
from eds_graph_sync.sync.utils import zone_name

logger = logging.getLogger(__name__)

_DAY_MASKS = {
    "SU": DayMask.SUNDAY,
    "MO": DayMask.MONDAY,
    "TU": DayMask.TUESDAY,
    "WE": DayMask.WEDNESDAY,
    "TH": DayMask.THURSDAY,
    "FR": DayMask.FRIDAY,
    "SA": DayMask.SATURDAY,
}
# datetime.weekday(): Monday == 0
_WEEKDAY_MASKS = [
    DayMask.MONDAY,
    DayMask.TUESDAY,
    DayMask.WEDNESDAY,
    DayMask.THURSDAY,
    DayMask.FRIDAY,
    DayMask.SATURDAY,
    DayMask.SUNDAY,
]
_CDO_BUSY = {
    "FREE": BusyStatus.FREE,
    "TENTATIVE": BusyStatus.TENTATIVE,
    "BUSY": BusyStatus.BUSY,
    "OOF": BusyStatus.OUT_OF_OFFICE,
    "WORKINGELSEWHERE": BusyStatus.WORKING_ELSEWHERE,
}
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ZoneResolver:
    """
    Zones for TZIDs that icalendar could not resolve on its own.

    icalendar already knows IANA names, Windows names, libical's
    ``/freeassociation.sourceforge.net/...`` ids and any VTIMEZONE that came
    with the parsed text. What is left is looked up through ``lookup``
    (TZID → VTIMEZONE text, e.g. from the EDS calendar) and finally read as
    local time, with a warning.
    """

    def __init__(self, local: tzinfo, lookup: Callable[[str], str | None] | None = None):
        self.local = local
        self.lookup = lookup
        self._known: dict[str, tzinfo] = {}

    def _from_definition(self, tzid: str) -> tzinfo | None:
        if self.lookup is None:
            return None
        definition = self.lookup(tzid)
        if not definition:
            return None
        try:
            return Timezone.from_ical(definition).to_tz()
        except ValueError as e:
            logger.warning(f"Unusable VTIMEZONE for {tzid!r}: {e}")
            return None

    def resolve(self, tzid: str | None) -> tzinfo:
        if not tzid:
            return self.local
        if tzid not in self._known:
            zone = self._from_definition(tzid)
            if zone is None:
                logger.warning(
                    f"Unknown TZID {tzid!r}, reading its times as {zone_name(self.local)}"
                )
                zone = self.local
            self._known[tzid] = zone
        return self._known[tzid]


# --------------------------------------------------------------------------- #
# Components                                                                   #
# --------------------------------------------------------------------------- #


def parse_vevent(text: str) -> Component:
    """Parse the first VEVENT in text (a bare VEVENT or a VCALENDAR wrapper)."""
    component = Calendar.from_ical(text)
    if component.name == "VEVENT":
        return component
    events = component.walk("VEVENT")
    if not events:
        raise ValueError(f"No VEVENT in {component.name}")
    return events[0]


def event_uid(event: Component) -> str | None:
    return str(event.get("UID", "")) or None


def is_override(event: Component) -> bool:
    return "RECURRENCE-ID" in event


def _text(event: Component, name: str) -> str:
    return str(event.get(name, ""))


def _moment(prop, zones: ZoneResolver) -> datetime | date:
    """Value of a DATE or DATE-TIME property; floating times get a zone."""
    value = prop.dt
    if isinstance(value, datetime):
        if str(prop.params.get("VALUE", "")).upper() == "DATE":
            return value.date()
        if value.tzinfo is None:
            return value.replace(tzinfo=zones.resolve(prop.params.get("TZID")))
    return value


def _as_start(value: datetime | date, zone: tzinfo) -> tuple[datetime, bool]:
    if isinstance(value, datetime):
        return value, False
    return datetime.combine(value, time(), tzinfo=zone), True


def busy_status(event: Component) -> BusyStatus:
    if _text(event, "TRANSP").upper() == "TRANSPARENT":
        return BusyStatus.FREE
    if _text(event, "STATUS").upper() == "TENTATIVE":
        return BusyStatus.TENTATIVE
    cdo = _text(event, "X-MICROSOFT-CDO-BUSYSTATUS").upper()
    return _CDO_BUSY.get(cdo, BusyStatus.BUSY)


def reminder(event: Component) -> tuple[bool, int]:
    """First VALARM with a relative TRIGGER at or before the start."""
    for alarm in event.walk("VALARM"):
        trigger = alarm.get("TRIGGER")
        if trigger is None:
            continue
        if str(trigger.params.get("RELATED", "START")).upper() != "START":
            continue
        try:
            offset = trigger.dt
        except ValueError:
            continue
        # Absolute triggers decode to a datetime.
        if not isinstance(offset, timedelta):
            continue
        if offset <= timedelta(0):
            return True, int(-offset.total_seconds() // 60)
    return False, 0


def last_modified(event: Component) -> datetime:
    for name in ("LAST-MODIFIED", "DTSTAMP", "CREATED"):
        prop = event.get(name)
        if prop is None:
            continue
        try:
            value = prop.dt
        except ValueError:
            continue
        if isinstance(value, datetime):
            return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        if isinstance(value, date):
            return datetime.combine(value, time(), tzinfo=timezone.utc)
    return _EPOCH


# --------------------------------------------------------------------------- #
# Recurrence                                                                   #
# --------------------------------------------------------------------------- #


def _first(rule: vRecur, name: str, default=None):
    values = rule.get(name)
    if values is None:
        return default
    if isinstance(values, list):
        return values[0] if values else default
    return values


def _all(rule: vRecur, name: str) -> list:
    values = rule.get(name) or []
    return values if isinstance(values, list) else [values]


def _instance(ordinal: int) -> int:
    """1..4 as-is; fifth and negative ordinals mean "last"."""
    if 1 <= ordinal <= 4:
        return ordinal
    return 5


def _mask(days) -> int:
    mask = 0
    for day in days:
        mask |= _DAY_MASKS[day.weekday]
    return int(mask)


def parse_rrule(rule: vRecur | str, dtstart: datetime) -> SourceRecurrence:
    """Map an RRULE onto a source recurrence; raises ValueError when unsupported."""
    rule = vRecur.from_ical(rule)
    freq = str(_first(rule, "FREQ", "")).upper()
    interval = max(int(_first(rule, "INTERVAL", 1)), 1)
    days = _all(rule, "BYDAY")
    ordinal_days = [day for day in days if day.relative]
    setpos = _all(rule, "BYSETPOS")
    day_of_month = int(_first(rule, "BYMONTHDAY", dtstart.day))
    if day_of_month < 0:
        day_of_month = 31
    month = int(_first(rule, "BYMONTH", dtstart.month))

    recurrence = SourceRecurrence(
        recurrence_type=SourceRecurrenceType.DAILY,
        interval=interval,
        pattern_start_date=dtstart.date(),
    )
    if freq == "DAILY" and not days:
        pass
    elif freq in ("DAILY", "WEEKLY"):
        recurrence.recurrence_type = SourceRecurrenceType.WEEKLY
        recurrence.day_of_week_mask = _mask(days) or int(_WEEKDAY_MASKS[dtstart.weekday()])
    elif freq in ("MONTHLY", "YEARLY"):
        nth = None
        if ordinal_days:
            nth = ordinal_days[0].relative
            recurrence.day_of_week_mask = _mask(ordinal_days)
        elif days and setpos:
            nth = int(setpos[0])
            recurrence.day_of_week_mask = _mask(days)
        if freq == "MONTHLY":
            if nth is not None:
                recurrence.recurrence_type = SourceRecurrenceType.MONTH_NTH
                recurrence.instance = _instance(nth)
            else:
                recurrence.recurrence_type = SourceRecurrenceType.MONTHLY
                recurrence.day_of_month = day_of_month
        else:
            recurrence.month_of_year = month
            if nth is not None:
                recurrence.recurrence_type = SourceRecurrenceType.YEAR_NTH
                recurrence.instance = _instance(nth)
            else:
                recurrence.recurrence_type = SourceRecurrenceType.YEARLY
                recurrence.day_of_month = day_of_month
    else:
        raise ValueError(f"Unsupported recurrence frequency {freq or '(none)'}")

    count = _first(rule, "COUNT")
    until = _first(rule, "UNTIL")
    if count is not None:
        recurrence.no_end_date = False
        recurrence.occurrences = int(count)
    elif until is not None:
        recurrence.no_end_date = False
        recurrence.pattern_end_date = until.date() if isinstance(until, datetime) else until
    return recurrence


# --------------------------------------------------------------------------- #
# Items                                                                        #
# --------------------------------------------------------------------------- #


def _times(event: Component, zones: ZoneResolver) -> tuple[datetime, datetime, bool]:
    start_prop = event.get("DTSTART")
    if start_prop is None:
        raise ValueError("VEVENT has no DTSTART")
    start, all_day = _as_start(_moment(start_prop, zones), zones.local)

    end_prop = event.get("DTEND")
    if end_prop is not None:
        end, _ = _as_start(_moment(end_prop, zones), zones.local)
    elif event.get("DURATION") is not None:
        end = start + event["DURATION"].dt
    else:
        end = start + timedelta(days=1) if all_day else start
    return start, end, all_day


def build_item(event: Component, zones: ZoneResolver) -> SourceItem:
    """Plain fields of one VEVENT, without recurrence."""
    start, end, all_day = _times(event, zones)
    reminder_set, reminder_minutes = reminder(event)
    return SourceItem(
        id=event_uid(event),
        subject=_text(event, "SUMMARY"),
        start=start,
        end=end,
        last_modified=last_modified(event),
        location=_text(event, "LOCATION"),
        is_all_day=all_day,
        busy_status=busy_status(event),
        reminder_set=reminder_set,
        reminder_minutes=reminder_minutes,
    )


def _exdates(master: Component, zones: ZoneResolver) -> list[datetime | date]:
    props = master.get("EXDATE") or []
    if not isinstance(props, list):
        props = [props]
    out = []
    for prop in props:
        for value in prop.dts:
            if isinstance(value.dt, datetime) and value.dt.tzinfo is None:
                out.append(value.dt.replace(tzinfo=zones.resolve(prop.params.get("TZID"))))
            else:
                out.append(value.dt)
    return out


def collect_exceptions(
    master: Component, overrides: list[Component], zones: ZoneResolver
) -> list[SourceException]:
    """EXDATEs become deleted exceptions, RECURRENCE-ID overrides modified ones."""
    by_key: dict[str, SourceException] = {}

    def key(value: datetime | date) -> str:
        if isinstance(value, datetime):
            return value.astimezone(zones.local).date().isoformat()
        return value.isoformat()

    for original in _exdates(master, zones):
        by_key[key(original)] = SourceException(original_date=original, deleted=True)

    for override in overrides:
        try:
            original = _moment(override["RECURRENCE-ID"], zones)
        except ValueError as e:
            logger.warning(f"Ignoring occurrence of {event_uid(master)}: bad RECURRENCE-ID ({e})")
            continue
        if _text(override, "STATUS").upper() == "CANCELLED":
            by_key[key(original)] = SourceException(original_date=original, deleted=True)
            continue
        try:
            item = build_item(override, zones)
        except ValueError as e:
            logger.warning(
                f"Ignoring malformed occurrence of {event_uid(master)} on {key(original)}: {e}"
            )
            continue
        by_key[key(original)] = SourceException(original_date=original, deleted=False, item=item)

    return [by_key[k] for k in sorted(by_key)]


def build_source_item(
    master: Component, overrides: list[Component], zones: ZoneResolver
) -> SourceItem:
    """Full SourceItem for a master VEVENT and the overrides sharing its UID."""
    item = build_item(master, zones)
    rrule = master.get("RRULE")
    if isinstance(rrule, list):
        rrule = rrule[0]
    if rrule is not None:
        item.recurrence = parse_rrule(rrule, item.start.astimezone(zones.local))
        item.recurrence.exceptions = collect_exceptions(master, overrides, zones)
    return item
