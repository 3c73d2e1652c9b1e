"""
Business Hours Calculator
=========================

Pure temporal engine converting wall-clock intervals into business minutes.

Working windows are built per calendar day in the schedule's own time zone,
then intersected in UTC so DST transitions are measured in real minutes.
Breaks, holidays (full or partial) and pause intervals are subtracted from
the working windows before anything is summed.

Weekdays use the stored convention 0 = Sunday ... 6 = Saturday.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.exceptions import ConfigurationException, ScheduleUnreachable
from src.sla.domain.entities import END_OF_DAY, BusinessHoursSchedule, HolidayCalendar
from src.sla.domain.value_objects import PauseInterval, format_duration


Segment = Tuple[datetime, datetime]

# Upper bound on days walked while searching for working time (~3 years).
MAX_SEARCH_DAYS = 1095

ONE_MINUTE = timedelta(minutes=1)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _zone(schedule: BusinessHoursSchedule) -> ZoneInfo:
    try:
        return ZoneInfo(schedule.timezone or "UTC")
    except ZoneInfoNotFoundError as e:
        raise ConfigurationException(
            f"Unknown time zone '{schedule.timezone}' on schedule {schedule.id}",
            {"schedule_id": schedule.id}
        ) from e


def _day_of_week(day: date) -> int:
    # Python: Monday=0; stored: Sunday=0
    return (day.weekday() + 1) % 7


def _at(day: date, clock: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, clock, tzinfo=tz).astimezone(timezone.utc)


def _end_at(day: date, clock: time, tz: ZoneInfo) -> datetime:
    """End bound on ``day``; END_OF_DAY is the next local midnight."""
    if clock == END_OF_DAY:
        return _at(day + timedelta(days=1), END_OF_DAY, tz)
    return _at(day, clock, tz)


def _subtract(segments: List[Segment], cuts: Iterable[Segment]) -> List[Segment]:
    """Remove every cut from every segment, keeping order."""
    result = list(segments)
    for cut_start, cut_end in cuts:
        if cut_end <= cut_start:
            continue
        remaining: List[Segment] = []
        for seg_start, seg_end in result:
            if cut_end <= seg_start or cut_start >= seg_end:
                remaining.append((seg_start, seg_end))
                continue
            if seg_start < cut_start:
                remaining.append((seg_start, cut_start))
            if cut_end < seg_end:
                remaining.append((cut_end, seg_end))
        result = remaining
    return result


def _day_segments(
    day: date,
    schedule: BusinessHoursSchedule,
    holidays: Optional[HolidayCalendar],
    tz: ZoneInfo
) -> List[Segment]:
    """UTC working segments for one local calendar day."""
    weekday = _day_of_week(day)
    detail = schedule.detail_for(weekday)
    if detail is None or not detail.has_working_window:
        return []

    day_holidays = holidays.holidays_on(day) if holidays else []
    cuts: List[Segment] = []
    for holiday in day_holidays:
        if holiday.is_full_day or holiday.start_time is None or holiday.end_time is None:
            return []
        cuts.append((_at(day, holiday.start_time, tz), _end_at(day, holiday.end_time, tz)))

    for brk in schedule.breaks_for(weekday):
        cuts.append((_at(day, brk.start_time, tz), _end_at(day, brk.end_time, tz)))

    window = [(_at(day, detail.start_time, tz), _end_at(day, detail.end_time, tz))]
    return _subtract(window, cuts)


def _working_segments(
    start: datetime,
    end: datetime,
    schedule: BusinessHoursSchedule,
    holidays: Optional[HolidayCalendar]
) -> List[Segment]:
    tz = _zone(schedule)
    day = start.astimezone(tz).date()
    last_day = end.astimezone(tz).date()

    segments: List[Segment] = []
    while day <= last_day:
        for seg_start, seg_end in _day_segments(day, schedule, holidays, tz):
            clipped = (max(seg_start, start), min(seg_end, end))
            if clipped[1] > clipped[0]:
                segments.append(clipped)
        day += timedelta(days=1)
    return segments


class BusinessHoursCalculator:
    """
    Pure functions for business-time arithmetic.

    Stateless; every method is deterministic given its inputs. A ``None``
    schedule behaves like a 24x7 schedule.
    """

    MAX_SEARCH_DAYS = MAX_SEARCH_DAYS

    @staticmethod
    def elapsed_business_minutes(
        start: datetime,
        end: datetime,
        schedule: Optional[BusinessHoursSchedule],
        holidays: Optional[HolidayCalendar] = None,
        pause_periods: Iterable[PauseInterval] = ()
    ) -> int:
        """
        Business minutes between ``start`` and ``end``.

        Working windows minus breaks, holidays and pause intervals; open
        pauses extend to ``end``. Returns 0 when ``end <= start``.
        """
        start, end = _as_utc(start), _as_utc(end)
        if end <= start:
            return 0

        if schedule is None or schedule.is_24x7:
            segments: List[Segment] = [(start, end)]
        else:
            segments = _working_segments(start, end, schedule, holidays)

        pauses = [
            (_as_utc(p.start), _as_utc(p.end) if p.end is not None else end)
            for p in pause_periods
        ]
        segments = _subtract(segments, pauses)

        total = sum((seg_end - seg_start for seg_start, seg_end in segments), timedelta())
        return total // ONE_MINUTE

    @staticmethod
    def add_business_minutes(
        start: datetime,
        minutes: int,
        schedule: Optional[BusinessHoursSchedule],
        holidays: Optional[HolidayCalendar] = None
    ) -> datetime:
        """
        Instant reached after consuming ``minutes`` of business time from ``start``.

        Raises:
            ScheduleUnreachable: schedule has no working time, or the search
                exceeded MAX_SEARCH_DAYS
        """
        start = _as_utc(start)
        if minutes <= 0:
            return start

        if schedule is None or schedule.is_24x7:
            return start + timedelta(minutes=minutes)

        if not schedule.has_any_working_time:
            raise ScheduleUnreachable(
                schedule.id,
                f"Schedule '{schedule.name}' has no working hours on any day"
            )

        tz = _zone(schedule)
        remaining = timedelta(minutes=minutes)
        day = start.astimezone(tz).date()

        for _ in range(MAX_SEARCH_DAYS):
            for seg_start, seg_end in _day_segments(day, schedule, holidays, tz):
                seg_start = max(seg_start, start)
                if seg_end <= seg_start:
                    continue
                available = seg_end - seg_start
                if remaining <= available:
                    return seg_start + remaining
                remaining -= available
            day += timedelta(days=1)

        raise ScheduleUnreachable(
            schedule.id,
            f"Could not place {minutes} business minutes within {MAX_SEARCH_DAYS} days "
            f"on schedule '{schedule.name}'",
            {"schedule_id": schedule.id, "minutes": minutes, "max_search_days": MAX_SEARCH_DAYS}
        )

    @staticmethod
    def next_working_moment(
        at: datetime,
        schedule: Optional[BusinessHoursSchedule],
        holidays: Optional[HolidayCalendar] = None
    ) -> datetime:
        """First instant >= ``at`` that falls inside a working window."""
        at = _as_utc(at)
        if schedule is None or schedule.is_24x7:
            return at

        tz = _zone(schedule)
        day = at.astimezone(tz).date()
        for _ in range(MAX_SEARCH_DAYS):
            for seg_start, seg_end in _day_segments(day, schedule, holidays, tz):
                if seg_end > at:
                    return max(seg_start, at)
            day += timedelta(days=1)

        raise ScheduleUnreachable(
            schedule.id,
            f"No working time within {MAX_SEARCH_DAYS} days on schedule '{schedule.name}'"
        )

    @staticmethod
    def is_business_time(
        at: Optional[datetime],
        schedule: Optional[BusinessHoursSchedule],
        holidays: Optional[HolidayCalendar] = None
    ) -> bool:
        """Whether ``at`` (default: now) is inside a working window."""
        at = _as_utc(at or datetime.now(timezone.utc))
        if schedule is None or schedule.is_24x7:
            return True

        tz = _zone(schedule)
        day = at.astimezone(tz).date()
        return any(
            seg_start <= at < seg_end
            for seg_start, seg_end in _day_segments(day, schedule, holidays, tz)
        )

    format_duration = staticmethod(format_duration)
