"""
Tests for GraphCalendarClient using httpx.MockTransport (no network access).
"""

import json
from datetime import date
from datetime import datetime
from datetime import timezone

import httpx
import pytest

from eds_graph_sync.graph_client import TOKEN_ENV
from eds_graph_sync.graph_client import GraphCalendarClient
from eds_graph_sync.graph_client import event_from_payload
from eds_graph_sync.graph_client import event_to_payload
from eds_graph_sync.models import CollaboratorUnavailable
from eds_graph_sync.models import DayOfWeek
from eds_graph_sync.models import EventType
from eds_graph_sync.models import FreeBusyStatus
from eds_graph_sync.models import PatternType
from eds_graph_sync.models import RangeType
from eds_graph_sync.sync.utils import build_destination_item
from eds_graph_sync.sync.utils import is_not_found_error
from eds_graph_sync.sync.utils import resolve_zone
from tests.conftest import make_item
from tests.conftest import make_weekly_series

BASE = "https://graph.test/v1.0"


def event_json(event_id: str, subject: str = "Meeting", **extra) -> dict:
    data = {
        "id": event_id,
        "subject": subject,
        "location": {"displayName": ""},
        "start": {"dateTime": "2026-03-12T10:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2026-03-12T11:00:00.0000000", "timeZone": "UTC"},
        "isAllDay": False,
        "showAs": "busy",
        "isReminderOn": False,
        "type": "singleInstance",
    }
    data.update(extra)
    return data


def client_for(handler, **kwargs) -> GraphCalendarClient:
    kwargs.setdefault("access_token", "token-123")
    return GraphCalendarClient(
        base_url=BASE,
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    def test_event_from_payload(self):
        item = event_from_payload(
            event_json(
                "e1",
                showAs="oof",
                isReminderOn=True,
                reminderMinutesBeforeStart=15,
                location={"displayName": "Room 1"},
            )
        )
        assert item.id == "e1"
        assert item.start == datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc)
        assert item.show_as == FreeBusyStatus.OOF
        assert item.is_reminder_on and item.reminder_minutes == 15
        assert item.location == "Room 1"
        assert item.type == EventType.SINGLE_INSTANCE

    def test_series_master_recurrence_parsed(self):
        item = event_from_payload(
            event_json(
                "s1",
                type="seriesMaster",
                recurrence={
                    "pattern": {"type": "weekly", "interval": 1, "daysOfWeek": ["monday"]},
                    "range": {
                        "type": "noEnd",
                        "startDate": "2026-03-02",
                        "endDate": "0001-01-01",
                    },
                },
            )
        )
        assert item.is_recurring
        assert item.recurrence.type == PatternType.WEEKLY
        assert item.recurrence.days_of_week == [DayOfWeek.MONDAY]
        assert item.recurrence.range_type == RangeType.NO_END
        assert item.recurrence.start_date == date(2026, 3, 2)
        assert item.recurrence.end_date is None

    def test_unknown_show_as_tolerated(self):
        assert event_from_payload(event_json("e1", showAs="other")).show_as == FreeBusyStatus.UNKNOWN

    def test_series_payload_carries_recurrence(self):
        item = build_destination_item(make_weekly_series(), resolve_zone("Europe/Berlin"))
        payload = event_to_payload(item)
        assert payload["recurrence"]["pattern"] == {
            "type": "weekly",
            "interval": 1,
            "daysOfWeek": ["monday"],
        }
        assert payload["recurrence"]["range"] == {"type": "noEnd", "startDate": "2026-03-02"}
        # 09:00 UTC is 10:00 in Berlin in early March
        assert payload["start"] == {"dateTime": "2026-03-02T10:00:00", "timeZone": "Europe/Berlin"}

    def test_all_day_payload_uses_dates(self):
        start = datetime(2026, 3, 12, tzinfo=timezone.utc)
        item = build_destination_item(
            make_item(start=start, is_all_day=True), resolve_zone("UTC")
        )
        payload = event_to_payload(item)
        assert payload["isAllDay"] is True
        assert payload["start"]["dateTime"] == "2026-03-12T00:00:00"
        assert payload["end"]["dateTime"] == "2026-03-13T00:00:00"
        assert "recurrence" not in payload


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_events_drains_all_pages():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "skip" in request.url.params:
            return httpx.Response(200, json={"value": [event_json("e3")]})
        return httpx.Response(
            200,
            json={
                "value": [event_json("e1"), event_json("e2")],
                "@odata.nextLink": f"{BASE}/me/calendars/cal/events?skip=2",
            },
        )

    async with client_for(handler) as client:
        events = await client.list_events("cal")

    assert [e.id for e in events] == ["e1", "e2", "e3"]
    assert seen[0].url.params["$top"] == "100"
    assert seen[0].headers["Authorization"] == "Bearer token-123"
    assert seen[0].headers["Prefer"] == 'outlook.timezone="UTC"'
    assert "$top" not in seen[1].url.params


@pytest.mark.asyncio
async def test_throttled_request_is_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json=event_json("e1"))

    async with client_for(handler) as client:
        item = await client.get_event("e1")

    assert item.id == "e1"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502)

    async with client_for(handler, max_retries=2) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await client.get_event("e1")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_unauthorized_is_collaborator_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}})

    async with client_for(handler) as client:
        with pytest.raises(CollaboratorUnavailable):
            await client.list_events("cal")


@pytest.mark.asyncio
async def test_missing_event_is_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound"}})

    async with client_for(handler) as client:
        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            await client.get_event("gone")

    assert is_not_found_error(exc_info.value)


@pytest.mark.asyncio
async def test_add_event_assigns_id():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/v1.0/me/calendars/cal/events"
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json=event_json("new-1"))

    item = build_destination_item(make_item(subject="Dentist"), resolve_zone("UTC"))
    async with client_for(handler) as client:
        await client.add_event("cal", item)

    assert item.id == "new-1"
    assert bodies[0]["subject"] == "Dentist"
    assert bodies[0]["showAs"] == "busy"


@pytest.mark.asyncio
async def test_add_event_is_not_resent_after_lost_reply():
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    item = build_destination_item(make_item(subject="Dentist"), resolve_zone("UTC"))
    async with client_for(handler) as client:
        with pytest.raises(httpx.ReadTimeout):
            await client.add_event("cal", item)

    assert len(posts) == 1
    assert item.id is None


@pytest.mark.asyncio
async def test_add_event_is_not_resent_after_server_error():
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request)
        return httpx.Response(502)

    item = build_destination_item(make_item(), resolve_zone("UTC"))
    async with client_for(handler) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await client.add_event("cal", item)

    assert len(posts) == 1


@pytest.mark.asyncio
async def test_throttled_add_event_is_retried():
    posts = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request)
        if len(posts) == 1:
            return httpx.Response(503, headers={"Retry-After": "0"})
        return httpx.Response(201, json=event_json("new-1"))

    item = build_destination_item(make_item(), resolve_zone("UTC"))
    async with client_for(handler) as client:
        await client.add_event("cal", item)

    assert len(posts) == 2
    assert item.id == "new-1"


@pytest.mark.asyncio
async def test_get_is_retried_after_transport_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json=event_json("e1"))

    async with client_for(handler) as client:
        item = await client.get_event("e1")

    assert item.id == "e1"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_update_and_delete_address_event():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        return httpx.Response(204) if request.method == "DELETE" else httpx.Response(200, json={})

    item = build_destination_item(make_item(), resolve_zone("UTC"))
    item.id = "e1"
    async with client_for(handler) as client:
        await client.update_event(item)
        await client.delete_event(item)

    assert requests == [("PATCH", "/v1.0/me/events/e1"), ("DELETE", "/v1.0/me/events/e1")]


@pytest.mark.asyncio
async def test_occurrence_instances_window():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"value": [event_json("occ-1", type="occurrence", seriesMasterId="s1")]},
        )

    start = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)
    end = datetime(2026, 3, 17, 9, 0, tzinfo=timezone.utc)
    async with client_for(handler) as client:
        instances = await client.get_occurrence_instances("s1", start, end)

    assert seen[0].url.path == "/v1.0/me/events/s1/instances"
    assert seen[0].url.params["startDateTime"] == "2026-03-15T09:00:00+00:00"
    assert instances[0].series_master_id == "s1"
    assert instances[0].type == EventType.OCCURRENCE


def test_token_from_environment(monkeypatch):
    monkeypatch.setenv(TOKEN_ENV, "env-token")
    assert GraphCalendarClient().access_token == "env-token"
    assert GraphCalendarClient().is_authenticated()


def test_no_token_is_not_authenticated(monkeypatch):
    monkeypatch.delenv(TOKEN_ENV, raising=False)
    assert not GraphCalendarClient().is_authenticated()


@pytest.mark.asyncio
async def test_request_outside_context_fails():
    with pytest.raises(RuntimeError):
        await GraphCalendarClient(access_token="t").get_event("e1")
