"""
Async Microsoft Graph calendar client (remote destination store).

Features:
- Connection pooling via httpx.AsyncClient
- Full drain of paged collections (@odata.nextLink)
- Retry-After aware retry on throttling, exponential backoff on 5xx
  (event creation is retried on throttling only)
- JSON <-> DestinationItem conversion
"""

import asyncio
import logging
import os
from datetime import date
from datetime import datetime
from datetime import timezone
from typing import Any
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import httpx

from eds_graph_sync.models import CalendarSyncError
from eds_graph_sync.models import CollaboratorUnavailable
from eds_graph_sync.models import DayOfWeek
from eds_graph_sync.models import DestinationItem
from eds_graph_sync.models import DestinationRecurrence
from eds_graph_sync.models import EventType
from eds_graph_sync.models import FreeBusyStatus
from eds_graph_sync.models import PatternType
from eds_graph_sync.models import RangeType
from eds_graph_sync.models import WeekIndex

logger = logging.getLogger(__name__)

GRAPH = "https://graph.microsoft.com/v1.0"
TOKEN_ENV = "EDS_GRAPH_SYNC_TOKEN"

_EVENT_FIELDS = (
    "id,subject,location,start,end,isAllDay,showAs,isReminderOn,"
    "reminderMinutesBeforeStart,recurrence,seriesMasterId,type"
)
_THROTTLED = (429, 503)


# --------------------------------------------------------------------------- #
# Serialization                                                                #
# --------------------------------------------------------------------------- #


def _zone(name: str | None):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown time zone {name!r}, assuming UTC")
        return timezone.utc


def format_date_time(value: datetime, time_zone: str, all_day: bool = False) -> dict[str, str]:
    """Render a datetime as a Graph dateTimeTimeZone object."""
    if all_day:
        local = datetime.combine(value.date(), datetime.min.time())
    elif value.tzinfo is None:
        local = value
    else:
        local = value.astimezone(_zone(time_zone)).replace(tzinfo=None)
    return {"dateTime": local.isoformat(timespec="seconds"), "timeZone": time_zone}


def parse_date_time(obj: dict[str, Any] | None) -> datetime:
    """Parse a Graph dateTimeTimeZone object into an aware datetime."""
    obj = obj or {}
    raw = (obj.get("dateTime") or "").split(".", 1)[0]
    if not raw:
        raise CalendarSyncError("Event without start/end time")
    return datetime.fromisoformat(raw).replace(tzinfo=_zone(obj.get("timeZone") or "UTC"))


def _parse_date(value: str | None) -> date | None:
    if not value or value.startswith("0001-01-01"):
        return None
    return date.fromisoformat(value[:10])


def recurrence_to_payload(recurrence: DestinationRecurrence) -> dict[str, Any]:
    pattern: dict[str, Any] = {
        "type": recurrence.type.value,
        "interval": recurrence.interval,
    }
    if recurrence.days_of_week:
        pattern["daysOfWeek"] = [d.value for d in recurrence.days_of_week]
    if recurrence.day_of_month:
        pattern["dayOfMonth"] = recurrence.day_of_month
    if recurrence.month:
        pattern["month"] = recurrence.month
    if recurrence.type in (PatternType.RELATIVE_MONTHLY, PatternType.RELATIVE_YEARLY):
        pattern["index"] = recurrence.index.value

    rng: dict[str, Any] = {"type": recurrence.range_type.value}
    if recurrence.start_date:
        rng["startDate"] = recurrence.start_date.isoformat()
    if recurrence.range_type == RangeType.END_DATE and recurrence.end_date:
        rng["endDate"] = recurrence.end_date.isoformat()
    elif recurrence.range_type == RangeType.NUMBERED:
        rng["numberOfOccurrences"] = recurrence.number_of_occurrences
    return {"pattern": pattern, "range": rng}


def recurrence_from_payload(data: dict[str, Any] | None) -> DestinationRecurrence | None:
    if not data:
        return None
    pattern = data.get("pattern") or {}
    rng = data.get("range") or {}
    range_type = RangeType(rng.get("type") or RangeType.NO_END.value)
    return DestinationRecurrence(
        type=PatternType(pattern.get("type") or PatternType.DAILY.value),
        interval=int(pattern.get("interval") or 1),
        days_of_week=[DayOfWeek(d) for d in pattern.get("daysOfWeek") or []],
        day_of_month=int(pattern.get("dayOfMonth") or 0),
        month=int(pattern.get("month") or 0),
        index=WeekIndex(pattern.get("index") or WeekIndex.FIRST.value),
        range_type=range_type,
        start_date=_parse_date(rng.get("startDate")),
        end_date=_parse_date(rng.get("endDate")) if range_type == RangeType.END_DATE else None,
        number_of_occurrences=int(rng.get("numberOfOccurrences") or 0),
    )


def event_from_payload(data: dict[str, Any]) -> DestinationItem:
    """Convert a Graph event resource to a DestinationItem."""
    location = data.get("location") or {}
    start = data.get("start") or {}
    try:
        show_as = FreeBusyStatus(data.get("showAs") or FreeBusyStatus.UNKNOWN.value)
    except ValueError:
        show_as = FreeBusyStatus.UNKNOWN
    try:
        event_type = EventType(data.get("type") or EventType.SINGLE_INSTANCE.value)
    except ValueError:
        event_type = EventType.SINGLE_INSTANCE
    return DestinationItem(
        id=data.get("id"),
        subject=data.get("subject") or "",
        location=location.get("displayName") or "",
        start=parse_date_time(start),
        end=parse_date_time(data.get("end")),
        time_zone=start.get("timeZone") or "UTC",
        is_all_day=bool(data.get("isAllDay")),
        show_as=show_as,
        is_reminder_on=bool(data.get("isReminderOn")),
        reminder_minutes=int(data.get("reminderMinutesBeforeStart") or 0),
        recurrence=recurrence_from_payload(data.get("recurrence")),
        series_master_id=data.get("seriesMasterId"),
        type=event_type,
    )


def event_to_payload(item: DestinationItem) -> dict[str, Any]:
    """Convert a DestinationItem to the JSON body of a create/update call."""
    payload: dict[str, Any] = {
        "subject": item.subject,
        "location": {"displayName": item.location or ""},
        "start": format_date_time(item.start, item.time_zone, item.is_all_day),
        "end": format_date_time(item.end, item.time_zone, item.is_all_day),
        "isAllDay": item.is_all_day,
        "showAs": item.show_as.value,
        "isReminderOn": item.is_reminder_on,
    }
    if item.is_reminder_on:
        payload["reminderMinutesBeforeStart"] = item.reminder_minutes
    if item.recurrence is not None and item.type == EventType.SERIES_MASTER:
        payload["recurrence"] = recurrence_to_payload(item.recurrence)
    return payload


# --------------------------------------------------------------------------- #
# Client                                                                       #
# --------------------------------------------------------------------------- #


class GraphCalendarClient:
    """Remote calendar store backed by the Microsoft Graph REST API."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str = GRAPH,
        timeout: float = 30.0,
        max_retries: int = 4,
        retry_backoff: float = 2.0,
        page_size: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.access_token = access_token or os.environ.get(TOKEN_ENV)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.page_size = page_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GraphCalendarClient":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {self.access_token or ''}",
                "Prefer": 'outlook.timezone="UTC"',
            },
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def _retry_delay(self, response: httpx.Response | None, attempt: int) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return max(float(retry_after), 0.0)
                except ValueError:
                    pass
        return self.retry_backoff**attempt if self.retry_backoff else 0.0

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request, retrying throttled, 5xx and transport failures.

        A POST may have created the event even when the reply is lost or
        is a 5xx, so it is only retried when the server refused it outright
        (429 or 503).
        """
        replayable = method != "POST"
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        for attempt in range(self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if last_attempt or not replayable:
                    raise
                logger.debug(f"{method} {url} failed ({e}), retrying")
                await asyncio.sleep(self._retry_delay(None, attempt))
                continue

            if response.status_code in (401, 403):
                raise CollaboratorUnavailable(
                    f"Remote authentication failed (HTTP {response.status_code})"
                )
            status = response.status_code
            retryable = status in _THROTTLED or (replayable and status >= 500)
            if retryable and not last_attempt:
                delay = self._retry_delay(response, attempt)
                logger.debug(f"{method} {url} returned {status}, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            response.raise_for_status()
            return response
        raise CalendarSyncError(f"{method} {url}: retries exhausted")

    async def _paginated_get(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Fetch all pages; nextLink URLs already carry the query string."""
        out: list[dict[str, Any]] = []
        next_url: str | None = url
        while next_url:
            response = await self._request("GET", next_url, params=params)
            data = response.json() or {}
            out.extend(data.get("value", []) or [])
            next_url = data.get("@odata.nextLink")
            params = None
        return out

    def _event_url(self, event_id: str) -> str:
        return f"{self.base_url}/me/events/{event_id}"

    async def list_calendars(self) -> list[dict[str, Any]]:
        return await self._paginated_get(f"{self.base_url}/me/calendars")

    async def list_events(self, calendar_id: str) -> list[DestinationItem]:
        """Every single instance and series master in the calendar."""
        raw = await self._paginated_get(
            f"{self.base_url}/me/calendars/{calendar_id}/events",
            params={"$top": self.page_size, "$select": _EVENT_FIELDS},
        )
        return [event_from_payload(e) for e in raw]

    async def get_event(self, event_id: str) -> DestinationItem:
        response = await self._request("GET", self._event_url(event_id))
        return event_from_payload(response.json())

    async def add_event(self, calendar_id: str, item: DestinationItem) -> DestinationItem:
        response = await self._request(
            "POST",
            f"{self.base_url}/me/calendars/{calendar_id}/events",
            json=event_to_payload(item),
        )
        item.id = response.json().get("id")
        return item

    async def update_event(self, item: DestinationItem) -> None:
        if not item.id:
            raise CalendarSyncError(f"Cannot update [{item.subject}]: it has no remote id")
        await self._request("PATCH", self._event_url(item.id), json=event_to_payload(item))

    async def delete_event(self, item: DestinationItem) -> None:
        if not item.id:
            raise CalendarSyncError(f"Cannot delete [{item.subject}]: it has no remote id")
        await self._request("DELETE", self._event_url(item.id))

    async def get_occurrence_instances(
        self, series_id: str, start: datetime, end: datetime
    ) -> list[DestinationItem]:
        """Expanded occurrences of a series between start and end."""
        raw = await self._paginated_get(
            f"{self._event_url(series_id)}/instances",
            params={
                "startDateTime": start.astimezone(timezone.utc).isoformat(timespec="seconds"),
                "endDateTime": end.astimezone(timezone.utc).isoformat(timespec="seconds"),
            },
        )
        return [event_from_payload(e) for e in raw]
