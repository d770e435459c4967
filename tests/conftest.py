"""
Shared pytest fixtures and appointment factories.
"""

from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from eds_graph_sync.db import IdentityMapStore
from eds_graph_sync.models import DayMask
from eds_graph_sync.models import SourceException
from eds_graph_sync.models import SourceItem
from eds_graph_sync.models import SourceRecurrence
from eds_graph_sync.models import SourceRecurrenceType
from eds_graph_sync.models import SyncConfig
from eds_graph_sync.sync.orchestrator import SyncOrchestrator
from tests.fake_client import FakeDestinationStore
from tests.fake_client import FakeSourceStore

SOURCE_CAL_ID = "local-calendar-test"
DEST_CAL_ID = "remote-calendar-test"
USER = "someone@example.com"
TODAY = date(2026, 3, 10)
MODIFIED = datetime(2026, 2, 24, 8, 0, tzinfo=timezone.utc)


def make_item(
    item_id: str | None = "A1",
    subject: str = "Test Event",
    start: datetime = datetime(2026, 3, 12, 10, 0, tzinfo=timezone.utc),
    duration: timedelta = timedelta(hours=1),
    modified: datetime = MODIFIED,
    **kwargs,
) -> SourceItem:
    """Return a single (non-recurring) appointment."""
    return SourceItem(
        id=item_id,
        subject=subject,
        start=start,
        end=start + duration,
        last_modified=modified,
        **kwargs,
    )


def make_weekly_series(
    item_id: str = "S1",
    subject: str = "Weekly Sync",
    start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
    mask: int = int(DayMask.MONDAY),
    exceptions: list[SourceException] | None = None,
    modified: datetime = MODIFIED,
    **kwargs,
) -> SourceItem:
    """Return a weekly series starting on start's date, without an end."""
    item = make_item(item_id, subject, start, modified=modified, **kwargs)
    item.recurrence = SourceRecurrence(
        recurrence_type=SourceRecurrenceType.WEEKLY,
        day_of_week_mask=mask,
        pattern_start_date=start.date(),
        exceptions=list(exceptions or []),
    )
    return item


def deleted_on(day: datetime) -> SourceException:
    return SourceException(original_date=day, deleted=True)


@pytest.fixture
def sync_config(tmp_path):
    return SyncConfig(
        user=USER,
        source_calendar_id=SOURCE_CAL_ID,
        destination_calendar_id=DEST_CAL_ID,
        state_dir=tmp_path,
        time_zone="UTC",
    )


@pytest.fixture
def map_store(sync_config):
    with IdentityMapStore(sync_config.state_dir, USER, DEST_CAL_ID) as store:
        yield store


@pytest.fixture
def source_store():
    return FakeSourceStore()


@pytest.fixture
def destination():
    return FakeDestinationStore()


@pytest.fixture
def orchestrator(sync_config, source_store, destination):
    return SyncOrchestrator(sync_config, source_store, destination, today=lambda: TODAY)

