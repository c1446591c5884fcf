"""Recurring event expansion.

An event row carries its own rule (``recurrence_freq``, ``recurrence_interval``,
``recurrence_by_weekday``, ``recurrence_until``). Expansion projects that rule
onto a query window and never persists anything. Per-occurrence edits live
in a sidecar mapping keyed by ``(event_id, original_start_millis)``: a
``None`` value cancels that occurrence, an event-like value replaces it.

Weekday indices are stored with 0 = Sunday.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from .clock import UTC, as_utc, now_in_parish_time, to_millis, to_storage
from .config import DEFAULT_TIMEZONE, MAX_RECURRENCE_OCCURRENCES, RECURRENCE_FREQUENCIES
from .errors import InvalidRecurrenceRule
from .ranges import CalendarRange

LOGGER = logging.getLogger(__name__)

OccurrenceKey = Tuple[str, int]
ExceptionMap = Mapping[OccurrenceKey, Optional[Any]]

SERIES_FIELDS = {
    "title",
    "location",
    "summary",
    "visibility",
    "starts_at",
    "ends_at",
    "recurrence_freq",
    "recurrence_interval",
    "recurrence_by_weekday",
    "recurrence_until",
}


@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    freq: str = "NONE"
    interval: int = 1
    by_weekday: Tuple[int, ...] = ()
    until: Optional[datetime] = None

    @classmethod
    def from_event(cls, event: Any) -> "RecurrenceRule":
        until = getattr(event, "recurrence_until", None)
        interval = getattr(event, "recurrence_interval", None)
        return cls(
            freq=(getattr(event, "recurrence_freq", None) or "NONE").upper(),
            interval=1 if interval is None else interval,
            by_weekday=tuple(getattr(event, "recurrence_by_weekday", None) or ()),
            until=as_utc(until) if until else None,
        )

    @property
    def repeats(self) -> bool:
        return self.freq != "NONE"


def validate_rule(rule: RecurrenceRule, starts_at: Optional[datetime] = None) -> RecurrenceRule:
    """Reject malformed rules. Called on write, never during expansion."""
    if rule.freq not in RECURRENCE_FREQUENCIES:
        raise InvalidRecurrenceRule(f"Unknown recurrence frequency: {rule.freq!r}")
    if isinstance(rule.interval, bool) or not isinstance(rule.interval, int) or rule.interval < 1:
        raise InvalidRecurrenceRule("Recurrence interval must be a positive integer")
    for weekday in rule.by_weekday:
        if isinstance(weekday, bool) or not isinstance(weekday, int) or not 0 <= weekday <= 6:
            raise InvalidRecurrenceRule(f"Weekday out of range: {weekday!r}")
    if rule.by_weekday and rule.freq != "WEEKLY":
        raise InvalidRecurrenceRule("Weekdays can only be set on weekly rules")
    if rule.until is not None and starts_at is not None and as_utc(rule.until) < as_utc(starts_at):
        raise InvalidRecurrenceRule("Recurrence end is before the first occurrence")
    return rule


def validate_event_times(starts_at: datetime, ends_at: datetime) -> None:
    if as_utc(ends_at) <= as_utc(starts_at):
        raise ValueError("Event must end after it starts")


def js_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def occurrence_key(event_id: str, starts_at: datetime) -> OccurrenceKey:
    return (event_id, to_millis(starts_at))


def from_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


@dataclass(frozen=True, slots=True)
class EventInstance:
    """One occurrence of an event. Unknown attributes read through to the source row."""

    instance_id: str
    event_id: str
    starts_at: datetime
    ends_at: datetime
    original_starts_at: datetime
    source: Any
    is_override: bool = False

    def __getattr__(self, name: str):
        if name == "source" or name.startswith("__"):
            raise AttributeError(name)
        return getattr(self.source, name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.instance_id,
            "event_id": self.event_id,
            "title": self.source.title,
            "location": getattr(self.source, "location", None),
            "starts_at": self.starts_at.isoformat(),
            "ends_at": self.ends_at.isoformat(),
            "visibility": getattr(self.source, "visibility", None),
            "recurring": RecurrenceRule.from_event(self.source).repeats or self.is_override,
            "is_override": self.is_override,
        }


def _instance(event: Any, starts_at: datetime, ends_at: datetime) -> EventInstance:
    return EventInstance(
        instance_id=f"{event.id}-{to_millis(starts_at)}",
        event_id=event.id,
        starts_at=starts_at,
        ends_at=ends_at,
        original_starts_at=starts_at,
        source=event,
    )


def _override_instance(event: Any, override: Any, original_start: datetime) -> EventInstance:
    return EventInstance(
        instance_id=f"{event.id}-{to_millis(original_start)}",
        event_id=event.id,
        starts_at=as_utc(override.starts_at),
        ends_at=as_utc(override.ends_at),
        original_starts_at=original_start,
        source=override,
        is_override=True,
    )


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def _candidate_days(rule: RecurrenceRule, base_day: date, earliest: date) -> Iterator[date]:
    """Occurrence dates from the first step that can reach ``earliest``, unbounded."""
    interval = max(rule.interval or 1, 1)

    if rule.freq == "DAILY":
        step = max(0, (earliest - base_day).days // interval)
        while True:
            yield base_day + timedelta(days=step * interval)
            step += 1

    elif rule.freq == "WEEKLY":
        allowed = set(rule.by_weekday) or {js_weekday(base_day)}
        block = 7 * interval
        step = max(0, (earliest - base_day).days // block)
        while True:
            block_start = base_day + timedelta(days=step * block)
            for offset in range(7):
                day = block_start + timedelta(days=offset)
                if js_weekday(day) in allowed:
                    yield day
            step += 1

    elif rule.freq == "MONTHLY":
        step = max(0, (_months_between(base_day, earliest) - 1) // interval)
        while True:
            yield _add_months(base_day, step * interval)
            step += 1


def occurrence_starts(
    event: Any,
    query_range: CalendarRange,
    tz: tzinfo = DEFAULT_TIMEZONE,
    limit: int = MAX_RECURRENCE_OCCURRENCES,
) -> Iterator[datetime]:
    """UTC start of every computed occurrence that could overlap the window."""
    rule = RecurrenceRule.from_event(event)
    starts_at = as_utc(event.starts_at)
    duration = as_utc(event.ends_at) - starts_at

    local = now_in_parish_time(starts_at, tz)
    wall_time = local.time()
    earliest = now_in_parish_time(query_range.start - duration, tz).date() - timedelta(days=1)

    emitted = 0
    for day in _candidate_days(rule, local.date(), earliest):
        start = as_utc(datetime.combine(day, wall_time, tzinfo=tz))
        if start < starts_at:
            continue
        if rule.until is not None and start > rule.until:
            return
        if start >= query_range.end:
            return
        emitted += 1
        if emitted > limit:
            LOGGER.warning("Recurrence for event %s truncated at %d occurrences", event.id, limit)
            return
        yield start


def expand_occurrences(
    event: Any,
    query_range: CalendarRange,
    exceptions: Optional[ExceptionMap] = None,
    tz: tzinfo = DEFAULT_TIMEZONE,
    limit: int = MAX_RECURRENCE_OCCURRENCES,
) -> Iterator[EventInstance]:
    """Yield the occurrences of ``event`` that overlap ``query_range``.

    A fresh generator is returned on every call; nothing is cached. Computed
    occurrences come out in chronological order, followed by any override
    that was moved into the window from a slot outside it.
    """
    starts_at = as_utc(event.starts_at)
    ends_at = as_utc(event.ends_at)

    if not RecurrenceRule.from_event(event).repeats:
        if query_range.overlaps(starts_at, ends_at):
            yield _instance(event, starts_at, ends_at)
        return

    exceptions = exceptions or {}
    duration = ends_at - starts_at
    handled = set()

    for start in occurrence_starts(event, query_range, tz, limit):
        key = occurrence_key(event.id, start)
        if key in exceptions:
            handled.add(key)
            override = exceptions[key]
            if override is not None and query_range.overlaps(override.starts_at, override.ends_at):
                yield _override_instance(event, override, start)
            continue
        if query_range.overlaps(start, start + duration):
            yield _instance(event, start, start + duration)

    for key, override in exceptions.items():
        if key[0] != event.id or key in handled or override is None:
            continue
        if query_range.overlaps(override.starts_at, override.ends_at):
            yield _override_instance(event, override, from_millis(key[1]))


def build_exception_map(cancelled: Iterable[Tuple[str, datetime]], overrides: Iterable[Any]) -> Dict[OccurrenceKey, Optional[Any]]:
    """Sidecar for expand_occurrences from stored exception and override rows."""
    mapping: Dict[OccurrenceKey, Optional[Any]] = {}
    for event_id, occurrence_start in cancelled:
        mapping[occurrence_key(event_id, occurrence_start)] = None
    for override in overrides:
        mapping[occurrence_key(override.recurrence_parent_id, override.recurrence_original_starts_at)] = override
    return mapping


def is_occurrence(event: Any, starts_at: datetime, tz: tzinfo = DEFAULT_TIMEZONE) -> bool:
    """True when ``starts_at`` is one of the computed occurrences of ``event``."""
    target = as_utc(starts_at)
    window = CalendarRange(start=target, end=target + timedelta(milliseconds=1))
    if not RecurrenceRule.from_event(event).repeats:
        return as_utc(event.starts_at) == target
    return any(start == target for start in occurrence_starts(event, window, tz))


def apply_series_edit(event: Any, changes: Mapping[str, Any]) -> Any:
    """Apply a "this series" edit to the base event in place.

    The merged rule is validated before anything is written. Stored
    per-occurrence exceptions are not touched here.
    """
    unknown = set(changes) - SERIES_FIELDS
    if unknown:
        raise ValueError(f"Cannot edit fields on a series: {', '.join(sorted(unknown))}")

    merged = {field: getattr(event, field, None) for field in SERIES_FIELDS}
    merged.update(changes)

    for field in ("starts_at", "ends_at", "recurrence_until"):
        if isinstance(merged.get(field), datetime):
            merged[field] = to_storage(merged[field])

    validate_event_times(merged["starts_at"], merged["ends_at"])
    rule = RecurrenceRule(
        freq=(merged["recurrence_freq"] or "NONE").upper(),
        interval=1 if merged["recurrence_interval"] is None else merged["recurrence_interval"],
        by_weekday=tuple(merged["recurrence_by_weekday"] or ()),
        until=as_utc(merged["recurrence_until"]) if merged["recurrence_until"] else None,
    )
    validate_rule(rule, merged["starts_at"])
    merged["recurrence_freq"] = rule.freq
    merged["recurrence_by_weekday"] = list(rule.by_weekday)

    for field in changes:
        setattr(event, field, merged[field])
    return event
