"""
Translation between the local recurrence vocabulary and the remote one.

Everything here is pure: no I/O, no mutation of the arguments.
"""

from eds_graph_sync.models import BusyStatus
from eds_graph_sync.models import DayMask
from eds_graph_sync.models import DayOfWeek
from eds_graph_sync.models import DestinationRecurrence
from eds_graph_sync.models import FreeBusyStatus
from eds_graph_sync.models import PatternType
from eds_graph_sync.models import RangeType
from eds_graph_sync.models import SourceRecurrence
from eds_graph_sync.models import SourceRecurrenceType
from eds_graph_sync.models import WeekIndex

_PATTERN_TYPES = {
    SourceRecurrenceType.DAILY: PatternType.DAILY,
    SourceRecurrenceType.WEEKLY: PatternType.WEEKLY,
    SourceRecurrenceType.MONTHLY: PatternType.ABSOLUTE_MONTHLY,
    SourceRecurrenceType.MONTH_NTH: PatternType.RELATIVE_MONTHLY,
    SourceRecurrenceType.YEARLY: PatternType.ABSOLUTE_YEARLY,
    SourceRecurrenceType.YEAR_NTH: PatternType.RELATIVE_YEARLY,
}

# Decoding order of the day-of-week mask: Monday first.
_MASK_DAYS = (
    (DayMask.MONDAY, DayOfWeek.MONDAY),
    (DayMask.TUESDAY, DayOfWeek.TUESDAY),
    (DayMask.WEDNESDAY, DayOfWeek.WEDNESDAY),
    (DayMask.THURSDAY, DayOfWeek.THURSDAY),
    (DayMask.FRIDAY, DayOfWeek.FRIDAY),
    (DayMask.SATURDAY, DayOfWeek.SATURDAY),
    (DayMask.SUNDAY, DayOfWeek.SUNDAY),
)

_WEEK_INDEXES = list(WeekIndex)

_FREE_BUSY = {
    BusyStatus.FREE: FreeBusyStatus.FREE,
    BusyStatus.TENTATIVE: FreeBusyStatus.TENTATIVE,
    BusyStatus.BUSY: FreeBusyStatus.BUSY,
    BusyStatus.OUT_OF_OFFICE: FreeBusyStatus.OOF,
    BusyStatus.WORKING_ELSEWHERE: FreeBusyStatus.WORKING_ELSEWHERE,
}


def get_pattern_type(recurrence_type: SourceRecurrenceType) -> PatternType:
    """Map the local recurrence type; anything unknown is treated as daily."""
    return _PATTERN_TYPES.get(recurrence_type, PatternType.DAILY)


def days_of_week_from_mask(mask: int) -> list[DayOfWeek]:
    """Decode a day-of-week bitmask, Monday…Sunday, into an ordered list."""
    return [day for bit, day in _MASK_DAYS if mask & bit]


def get_week_index(instance: int) -> WeekIndex:
    """Convert a one-based instance (1st … 4th, 5 = last) to a zero-based index."""
    position = min(max(instance - 1, 0), len(_WEEK_INDEXES) - 1)
    return _WEEK_INDEXES[position]


def get_free_busy_status(busy_status: BusyStatus) -> FreeBusyStatus:
    return _FREE_BUSY.get(busy_status, FreeBusyStatus.UNKNOWN)


def translate(pattern: SourceRecurrence) -> DestinationRecurrence:
    """Build the remote recurrence equivalent to a local recurrence pattern."""
    pattern_type = get_pattern_type(pattern.recurrence_type)
    result = DestinationRecurrence(type=pattern_type)

    if pattern_type == PatternType.WEEKLY:
        result.days_of_week = days_of_week_from_mask(pattern.day_of_week_mask)
    elif pattern_type == PatternType.ABSOLUTE_MONTHLY:
        result.day_of_month = pattern.day_of_month
    elif pattern_type == PatternType.RELATIVE_MONTHLY:
        # every 2nd Tuesday: index=second, days_of_week=[tuesday]
        result.index = get_week_index(pattern.instance)
        result.days_of_week = days_of_week_from_mask(pattern.day_of_week_mask)
    elif pattern_type == PatternType.ABSOLUTE_YEARLY:
        result.day_of_month = pattern.day_of_month
        result.month = pattern.month_of_year
    elif pattern_type == PatternType.RELATIVE_YEARLY:
        result.index = get_week_index(pattern.instance)
        result.days_of_week = days_of_week_from_mask(pattern.day_of_week_mask)
        result.month = pattern.month_of_year

    result.start_date = pattern.pattern_start_date
    result.interval = pattern.interval if pattern.interval > 0 else 1

    if pattern.no_end_date:
        result.range_type = RangeType.NO_END
    elif pattern.occurrences >= 0:
        result.range_type = RangeType.NUMBERED
        result.number_of_occurrences = pattern.occurrences
    else:
        result.range_type = RangeType.END_DATE
        result.end_date = pattern.pattern_end_date
    return result


def diff_recurrence(
    expected: DestinationRecurrence, actual: DestinationRecurrence
) -> list[str]:
    """
    Compare a translated local pattern against the remote recurrence.

    Returns human-readable difference reasons in a fixed order; an empty list
    means the two describe the same series.
    """
    if actual.type != expected.type:
        return ["RecurrenceType changed"]

    reasons = []
    pattern_type = expected.type
    if pattern_type == PatternType.WEEKLY:
        if list(actual.days_of_week) != list(expected.days_of_week):
            reasons.append("Weekly DaysOfWeek changed")
    elif pattern_type == PatternType.ABSOLUTE_MONTHLY:
        if actual.day_of_month != expected.day_of_month:
            reasons.append("Monthly DayOfMonth changed")
    elif pattern_type == PatternType.RELATIVE_MONTHLY:
        if actual.index != expected.index:
            reasons.append("MonthNth Index changed")
        if list(actual.days_of_week) != list(expected.days_of_week):
            reasons.append("MonthlyNth DaysOfWeek changed")
    elif pattern_type == PatternType.ABSOLUTE_YEARLY:
        if actual.day_of_month != expected.day_of_month:
            reasons.append("Yearly DayOfMonth changed")
        if actual.month != expected.month:
            reasons.append("Yearly Month changed")
    elif pattern_type == PatternType.RELATIVE_YEARLY:
        if actual.index != expected.index:
            reasons.append("YearlyNth Index changed")
        if list(actual.days_of_week) != list(expected.days_of_week):
            reasons.append("YearlyNth DaysOfWeek changed")
        if actual.month != expected.month:
            reasons.append("YearlyNth Month changed")

    if actual.start_date != expected.start_date:
        reasons.append("Range StartDate changed")
    if actual.interval != expected.interval:
        reasons.append("Pattern Interval changed")

    if expected.range_type == RangeType.NO_END:
        if actual.range_type != RangeType.NO_END:
            reasons.append("Pattern NoEndDate changed")
    elif actual.range_type != expected.range_type:
        reasons.append("Range Type changed")
    elif expected.range_type == RangeType.NUMBERED:
        if actual.number_of_occurrences != expected.number_of_occurrences:
            reasons.append("Range NumberOfOccurrences changed")
    elif actual.end_date != expected.end_date:
        reasons.append("End Date changed")
    return reasons
