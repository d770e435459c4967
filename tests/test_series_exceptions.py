"""
Unit tests for reconcile_exceptions(): per-occurrence sync of a remote series.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from eds_graph_sync.db import IdentityMap
from eds_graph_sync.models import MappingConsistencyError
from eds_graph_sync.models import SourceException
from eds_graph_sync.sync.series_exceptions import find_occurrence
from eds_graph_sync.sync.series_exceptions import reconcile_exceptions
from eds_graph_sync.sync.utils import build_destination_item
from eds_graph_sync.sync.utils import resolve_zone
from tests.conftest import DEST_CAL_ID
from tests.conftest import deleted_on
from tests.conftest import make_item
from tests.conftest import make_weekly_series

ZONE = resolve_zone("UTC")
FIRST = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
MODIFIED = datetime(2026, 3, 5, 8, 0, tzinfo=timezone.utc)


async def push_series(destination, series):
    item = build_destination_item(series, ZONE)
    await destination.add_event(DEST_CAL_ID, item)
    identity_map = IdentityMap()
    identity_map.add(series.id, item.id, series.modification_stamp)
    return item.id, identity_map


def moved(day: datetime, subject: str = "Moved") -> SourceException:
    override = make_item("S1", subject, start=day + timedelta(hours=3), modified=MODIFIED)
    return SourceException(original_date=day, deleted=False, item=override)


@pytest.mark.asyncio
async def test_find_occurrence_by_local_date(destination):
    series_id, _ = await push_series(destination, make_weekly_series("S1", start=FIRST))

    found = await find_occurrence(destination, series_id, FIRST + timedelta(weeks=3), ZONE)
    missing = await find_occurrence(destination, series_id, FIRST + timedelta(days=1), ZONE)

    assert found.id == f"{series_id}-occ-20260323"
    assert missing is None


@pytest.mark.asyncio
async def test_unmapped_series_is_inconsistent(destination):
    series = make_weekly_series("S1", start=FIRST)
    with pytest.raises(MappingConsistencyError):
        await reconcile_exceptions(series, "dst-x", [], IdentityMap(), destination, ZONE)


@pytest.mark.asyncio
async def test_failures_are_isolated(destination):
    series = make_weekly_series("S1", start=FIRST)
    series_id, identity_map = await push_series(destination, series)
    exceptions = [
        deleted_on(FIRST + timedelta(days=2)),  # a Wednesday: no such occurrence
        deleted_on(FIRST + timedelta(weeks=1)),
        moved(FIRST + timedelta(weeks=2)),
    ]

    result = await reconcile_exceptions(
        series, series_id, exceptions, identity_map, destination, ZONE
    )

    assert (result.synced, result.unchanged, result.failed) == (2, 0, 1)
    recorded = identity_map.get("S1").exceptions
    assert set(recorded) == {"2026-03-09", "2026-03-16"}
    assert recorded["2026-03-09"].destination_id is None
    assert recorded["2026-03-16"].destination_id == f"{series_id}-occ-20260316"


@pytest.mark.asyncio
async def test_unchanged_exceptions_are_not_pushed(destination):
    series = make_weekly_series("S1", start=FIRST)
    series_id, identity_map = await push_series(destination, series)
    exceptions = [deleted_on(FIRST + timedelta(weeks=1)), moved(FIRST + timedelta(weeks=2))]
    await reconcile_exceptions(series, series_id, exceptions, identity_map, destination, ZONE)
    destination.reset_counters()

    result = await reconcile_exceptions(
        series, series_id, exceptions, identity_map, destination, ZONE
    )

    assert (result.synced, result.unchanged, result.failed) == (0, 2, 0)
    assert destination.updates == []
    assert destination.deletes == []


@pytest.mark.asyncio
async def test_changed_override_reuses_recorded_occurrence(destination):
    series = make_weekly_series("S1", start=FIRST)
    series_id, identity_map = await push_series(destination, series)
    day = FIRST + timedelta(weeks=2)
    await reconcile_exceptions(series, series_id, [moved(day)], identity_map, destination, ZONE)
    destination.reset_counters()

    changed = moved(day, "Moved again")
    changed.item.last_modified = MODIFIED + timedelta(days=1)
    result = await reconcile_exceptions(
        series, series_id, [changed], identity_map, destination, ZONE
    )

    occurrence_id = f"{series_id}-occ-20260316"
    assert result.synced == 1
    assert destination.updates == [occurrence_id]
    assert destination.occurrences[series_id][occurrence_id].subject == "Moved again"


@pytest.mark.asyncio
async def test_override_then_deleted(destination):
    series = make_weekly_series("S1", start=FIRST)
    series_id, identity_map = await push_series(destination, series)
    day = FIRST + timedelta(weeks=2)
    await reconcile_exceptions(series, series_id, [moved(day)], identity_map, destination, ZONE)

    result = await reconcile_exceptions(
        series, series_id, [deleted_on(day)], identity_map, destination, ZONE
    )

    assert result.synced == 1
    assert f"{series_id}-occ-20260316" not in destination.occurrence_ids(series_id)
    assert identity_map.get("S1").exceptions["2026-03-16"].destination_id is None
