"""UTC query ranges for the calendar views."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import List

from .clock import as_utc, local_midnight, now_in_parish_time
from .config import DEFAULT_TIMEZONE
from .week import week_end, week_start_monday


@dataclass(frozen=True, slots=True)
class CalendarRange:
    """Half-open ``[start, end)`` interval of aware UTC datetimes."""

    start: datetime
    end: datetime

    def overlaps(self, starts_at: datetime, ends_at: datetime) -> bool:
        return as_utc(starts_at) < self.end and as_utc(ends_at) > self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= as_utc(instant) < self.end

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def week_range(now: datetime, tz: tzinfo = DEFAULT_TIMEZONE) -> CalendarRange:
    start = week_start_monday(now_in_parish_time(now, tz))
    return CalendarRange(start=as_utc(start), end=as_utc(week_end(start)))


def _add_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def month_range(now: datetime, tz: tzinfo = DEFAULT_TIMEZONE) -> CalendarRange:
    local = now_in_parish_time(now, tz)
    first = local.date().replace(day=1)
    return CalendarRange(
        start=as_utc(local_midnight(first, tz)),
        end=as_utc(local_midnight(_add_month(first), tz)),
    )


def week_days(start: datetime) -> List[datetime]:
    return [start + timedelta(days=offset) for offset in range(7)]


def month_grid_days(start: datetime, end: datetime) -> List[date]:
    """Local dates of the Monday-aligned grid covering ``[start, end)``.

    Both bounds are parish-local midnights (e.g. from month_range converted
    back with now_in_parish_time).
    """
    grid_end = week_start_monday(end)
    if grid_end != end:
        grid_end = week_end(grid_end)
    days: List[date] = []
    cursor = week_start_monday(start).date()
    while cursor < grid_end.date():
        days.append(cursor)
        cursor += timedelta(days=1)
    return days


def date_key(value: datetime | date, tz: tzinfo | None = None) -> str:
    if isinstance(value, datetime) and tz is not None:
        value = now_in_parish_time(value, tz)
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()
