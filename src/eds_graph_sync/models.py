"""
Pure data models: no EDS, HTTP or sqlite imports.
"""

import enum
import time
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from pathlib import Path

DEFAULT_STATE_DIR = Path.home() / ".local/share/eds-graph-sync"
DEFAULT_CONFIG = Path.home() / ".config/eds-graph-sync.conf"

# Bump when the set of synced attributes changes; the next pass then ignores
# the "unchanged" fast path for every appointment.
CURRENT_DATA_VERSION = "2.15.0"


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ConfigurationError(CalendarSyncError):
    """No destination calendar selected or user not authenticated."""


class CollaboratorUnavailable(CalendarSyncError):
    """Source store not running or remote store unreachable."""


class ItemSyncError(CalendarSyncError):
    """Creating, updating or deleting one appointment or exception failed."""

    def __init__(self, message: str, operation_chain: list[str] | None = None):
        super().__init__(message)
        self.operation_chain = list(operation_chain or [])


class OrphanResolutionError(CalendarSyncError):
    """A mapped destination item no longer exists."""


class MappingConsistencyError(CalendarSyncError):
    """An exception update was requested for a source item with no map entry."""


# --------------------------------------------------------------------------- #
# Source vocabulary                                                            #
# --------------------------------------------------------------------------- #


class BusyStatus(enum.IntEnum):
    FREE = 0
    TENTATIVE = 1
    BUSY = 2
    OUT_OF_OFFICE = 3
    WORKING_ELSEWHERE = 4


class SourceRecurrenceType(enum.IntEnum):
    DAILY = 0
    WEEKLY = 1
    MONTHLY = 2
    MONTH_NTH = 3
    YEARLY = 5
    YEAR_NTH = 6


class DayMask(enum.IntFlag):
    """Day-of-week bitmask used by the source recurrence pattern."""

    SUNDAY = 1
    MONDAY = 2
    TUESDAY = 4
    WEDNESDAY = 8
    THURSDAY = 16
    FRIDAY = 32
    SATURDAY = 64


@dataclass
class SourceException:
    """One deviation from a recurring series, keyed by its original date."""

    original_date: datetime | date
    deleted: bool
    item: "SourceItem | None" = None


@dataclass
class SourceRecurrence:
    recurrence_type: SourceRecurrenceType
    interval: int = 1
    day_of_week_mask: int = 0
    day_of_month: int = 0
    month_of_year: int = 0
    instance: int = 0  # 1..4, 5 means "last"
    pattern_start_date: date | None = None
    pattern_end_date: date | None = None
    no_end_date: bool = True
    occurrences: int = -1  # >= 0 means count-bounded
    exceptions: list[SourceException] = field(default_factory=list)


@dataclass
class SourceItem:
    """Read-only view of one appointment in the local store."""

    id: str | None
    subject: str
    start: datetime
    end: datetime
    last_modified: datetime
    location: str = ""
    is_all_day: bool = False
    busy_status: BusyStatus = BusyStatus.BUSY
    reminder_set: bool = False
    reminder_minutes: int = 0
    recurrence: SourceRecurrence | None = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None

    @property
    def modification_stamp(self) -> str:
        """Last-modification time in the exact form stored in the identity map."""
        return self.last_modified.isoformat()


# --------------------------------------------------------------------------- #
# Destination vocabulary                                                       #
# --------------------------------------------------------------------------- #


class FreeBusyStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    FREE = "free"
    TENTATIVE = "tentative"
    BUSY = "busy"
    OOF = "oof"
    WORKING_ELSEWHERE = "workingElsewhere"


class PatternType(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    ABSOLUTE_MONTHLY = "absoluteMonthly"
    RELATIVE_MONTHLY = "relativeMonthly"
    ABSOLUTE_YEARLY = "absoluteYearly"
    RELATIVE_YEARLY = "relativeYearly"


class RangeType(str, enum.Enum):
    END_DATE = "endDate"
    NO_END = "noEnd"
    NUMBERED = "numbered"


class DayOfWeek(str, enum.Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


class WeekIndex(str, enum.Enum):
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FOURTH = "fourth"
    LAST = "last"


class EventType(str, enum.Enum):
    SINGLE_INSTANCE = "singleInstance"
    OCCURRENCE = "occurrence"
    EXCEPTION = "exception"
    SERIES_MASTER = "seriesMaster"


@dataclass
class DestinationRecurrence:
    type: PatternType
    interval: int = 1
    days_of_week: list[DayOfWeek] = field(default_factory=list)
    day_of_month: int = 0
    month: int = 0
    index: WeekIndex = WeekIndex.FIRST
    range_type: RangeType = RangeType.NO_END
    start_date: date | None = None
    end_date: date | None = None
    number_of_occurrences: int = 0


@dataclass
class DestinationItem:
    """Mutable representation of one appointment in the remote store."""

    subject: str
    start: datetime
    end: datetime
    id: str | None = None
    location: str | None = ""
    time_zone: str = "UTC"
    is_all_day: bool = False
    show_as: FreeBusyStatus = FreeBusyStatus.BUSY
    is_reminder_on: bool = False
    reminder_minutes: int = 0
    recurrence: DestinationRecurrence | None = None
    series_master_id: str | None = None
    type: EventType = EventType.SINGLE_INSTANCE

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None and self.type != EventType.SINGLE_INSTANCE


# --------------------------------------------------------------------------- #
# Configuration and run summary                                                #
# --------------------------------------------------------------------------- #


class PassState(str, enum.Enum):
    IDLE = "idle"
    LOADING_SNAPSHOT = "loading-snapshot"
    DIFFING = "diffing"
    APPLYING = "applying"
    RECONCILING_EXCEPTIONS = "reconciling-exceptions"
    PERSISTING = "persisting"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class SyncConfig:
    """Configuration for one synchronization pass."""

    user: str
    source_calendar_id: str
    destination_calendar_id: str | None
    state_dir: Path = DEFAULT_STATE_DIR
    destination_calendar_name: str | None = None
    data_version: str = CURRENT_DATA_VERSION
    force_full_resync: bool = False
    skip_old_appointments: bool = True
    retention_days: int = 30
    purge_aged_out: bool = False
    strict_recurring_times: bool = False
    time_zone: str | None = None  # IANA name; None = system zone
    sync_interval_minutes: int = 15
    access_token: str | None = None
    verbose: bool = False

    @property
    def mapping_calendar(self) -> str:
        """Calendar label the identity map file is keyed on."""
        return self.destination_calendar_name or self.destination_calendar_id or ""


@dataclass
class SyncStats:
    """Run summary produced at the end of every pass."""

    synced: int = 0
    deleted: int = 0
    errors: int = 0
    unchanged: int = 0
    skipped_old: int = 0
    exceptions_synced: int = 0
    exceptions_unchanged: int = 0
    state: PassState = PassState.IDLE
    started_at: float = field(default_factory=time.monotonic)
    elapsed: float = 0.0

    def finish(self, state: PassState):
        self.state = state
        self.elapsed = time.monotonic() - self.started_at

    def __str__(self) -> str:
        return (
            f"synced={self.synced} deleted={self.deleted} errors={self.errors} "
            f"unchanged={self.unchanged} skipped_old={self.skipped_old} "
            f"exceptions={self.exceptions_synced}/{self.exceptions_unchanged} "
            f"elapsed={self.elapsed:.1f}s"
        )
