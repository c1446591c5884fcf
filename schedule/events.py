"""Event persistence and calendar queries.

Base events are fetched with a coarse window filter, expanded in memory by
``recurrence.expand_occurrences`` and then filtered per viewer. Per-occurrence
edits are stored as an ``EventRecurrenceException`` row plus, for edits that
are not cancellations, an override ``Event`` pointing back at its parent.
"""
from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from models import Event, EventRecurrenceException

from .clock import as_utc, now_in_parish_time, to_storage, utcnow
from .config import DEFAULT_TIMEZONE
from .errors import Forbidden, NotFound
from .ranges import CalendarRange
from .recurrence import (
    EventInstance,
    RecurrenceRule,
    apply_series_edit,
    build_exception_map,
    expand_occurrences,
    from_millis,
    is_occurrence,
    validate_event_times,
    validate_rule,
)
from .visibility import VisibilityContext, can_manage, can_view, require_coordinator_or_admin
from .week import ensure_week, week_start_monday

LOGGER = logging.getLogger(__name__)

OCCURRENCE_FIELDS = {"title", "location", "summary", "starts_at", "ends_at"}

# Series changes that move or remove occurrence slots.
SLOT_FIELDS = {"starts_at", "recurrence_freq", "recurrence_interval", "recurrence_by_weekday", "recurrence_until"}


def _week_for(session: Session, parish_id: str, starts_at: datetime, tz: tzinfo):
    week, _ = ensure_week(session, parish_id, week_start_monday(now_in_parish_time(starts_at, tz)))
    return week


def get_event(session: Session, parish_id: str, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if event is None or event.parish_id != parish_id or event.deleted_at is not None:
        raise NotFound("Event not found")
    return event


def load_exception_map(session: Session, event_ids: Iterable[str]) -> Dict:
    event_ids = list(event_ids)
    if not event_ids:
        return {}
    cancelled = session.execute(
        select(EventRecurrenceException.event_id, EventRecurrenceException.occurrence_starts_at).where(
            EventRecurrenceException.event_id.in_(event_ids)
        )
    ).all()
    overrides = session.execute(
        select(Event).where(
            Event.recurrence_parent_id.in_(event_ids),
            Event.recurrence_original_starts_at.is_not(None),
            Event.deleted_at.is_(None),
        )
    ).scalars().all()
    return build_exception_map(cancelled, overrides)


def _base_events(session: Session, parish_id: str, query_range: CalendarRange) -> List[Event]:
    start = to_storage(query_range.start)
    end = to_storage(query_range.end)
    single = and_(Event.recurrence_freq == "NONE", Event.starts_at < end, Event.ends_at > start)
    recurring = and_(
        Event.recurrence_freq != "NONE",
        Event.starts_at < end,
        or_(Event.recurrence_until.is_(None), Event.recurrence_until >= start),
    )
    stmt = (
        select(Event)
        .where(
            Event.parish_id == parish_id,
            Event.deleted_at.is_(None),
            Event.recurrence_parent_id.is_(None),
            or_(single, recurring),
        )
        .order_by(Event.starts_at, Event.id)
    )
    events = list(session.execute(stmt).scalars())

    # series whose own slots miss the window but which have an override moved into it
    moved_into = (
        select(Event.recurrence_parent_id)
        .where(
            Event.parish_id == parish_id,
            Event.deleted_at.is_(None),
            Event.recurrence_parent_id.is_not(None),
            Event.starts_at < end,
            Event.ends_at > start,
        )
    )
    missing = set(session.execute(moved_into).scalars()) - {event.id for event in events}
    if missing:
        parents = select(Event).where(Event.id.in_(missing), Event.deleted_at.is_(None))
        events.extend(session.execute(parents).scalars())
        events.sort(key=lambda event: (event.starts_at, event.id))
    return events


def list_events_by_range(
    session: Session,
    parish_id: str,
    query_range: CalendarRange,
    viewer: Optional[VisibilityContext] = None,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> List[EventInstance]:
    """Expanded occurrences overlapping ``query_range``, sorted by start then title.

    Without a viewer nothing is filtered (scheduled jobs use this).
    """
    events = _base_events(session, parish_id, query_range)
    exceptions = load_exception_map(session, [event.id for event in events if RecurrenceRule.from_event(event).repeats])

    instances: List[EventInstance] = []
    for event in events:
        for instance in expand_occurrences(event, query_range, exceptions, tz):
            if viewer is None or can_view(instance, viewer):
                instances.append(instance)
    instances.sort(key=lambda item: (item.starts_at, item.title or "", item.instance_id))
    return instances


def _rule_from_values(values: Mapping[str, Any]) -> RecurrenceRule:
    until = values.get("recurrence_until")
    interval = values.get("recurrence_interval")
    return RecurrenceRule(
        freq=(values.get("recurrence_freq") or "NONE").upper(),
        interval=1 if interval is None else interval,
        by_weekday=tuple(values.get("recurrence_by_weekday") or ()),
        until=as_utc(until) if until else None,
    )


def create_event(
    session: Session,
    parish_id: str,
    ctx: VisibilityContext,
    values: Mapping[str, Any],
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> Event:
    """Create a base event. Parish leaders, or coordinators for their group."""
    group_id = values.get("group_id")
    if not ctx.is_leader:
        if not group_id:
            raise Forbidden("Only parish leaders can create parish-wide events")
        require_coordinator_or_admin(ctx, group_id)

    title = (values.get("title") or "").strip()
    if not title:
        raise ValueError("Event title is required")
    starts_at = values.get("starts_at")
    ends_at = values.get("ends_at")
    if not isinstance(starts_at, datetime) or not isinstance(ends_at, datetime):
        raise ValueError("Event start and end times are required")
    validate_event_times(starts_at, ends_at)
    rule = validate_rule(_rule_from_values(values), starts_at)

    visibility = (values.get("visibility") or "PUBLIC").upper()
    if visibility not in {"PUBLIC", "GROUP", "PRIVATE"}:
        raise ValueError(f"Unknown event visibility: {visibility}")
    if visibility == "GROUP" and not group_id:
        raise ValueError("Group events need a group")

    event = Event(
        parish_id=parish_id,
        week_id=_week_for(session, parish_id, starts_at, tz).id,
        group_id=group_id,
        created_by_id=ctx.user_id,
        title=title,
        location=values.get("location"),
        summary=values.get("summary"),
        starts_at=to_storage(starts_at),
        ends_at=to_storage(ends_at),
        visibility=visibility,
        recurrence_freq=rule.freq,
        recurrence_interval=rule.interval,
        recurrence_by_weekday=list(rule.by_weekday),
        recurrence_until=to_storage(rule.until) if rule.until else None,
    )
    session.add(event)
    session.flush()
    LOGGER.info("Event %s created in parish %s (%s)", event.id, parish_id, rule.freq)
    return event


def _require_manage(event: Event, ctx: VisibilityContext) -> None:
    if not can_view(event, ctx):
        raise NotFound("Event not found")
    if not can_manage(event, ctx):
        raise Forbidden("You cannot change this event")


def _find_override(session: Session, event_id: str, original: datetime) -> Optional[Event]:
    stmt = select(Event).where(
        Event.recurrence_parent_id == event_id,
        Event.recurrence_original_starts_at == to_storage(original),
    )
    return session.execute(stmt).scalar_one_or_none()


def _find_exception(session: Session, event_id: str, original: datetime) -> Optional[EventRecurrenceException]:
    stmt = select(EventRecurrenceException).where(
        EventRecurrenceException.event_id == event_id,
        EventRecurrenceException.occurrence_starts_at == to_storage(original),
    )
    return session.execute(stmt).scalar_one_or_none()


def edit_occurrence(
    session: Session,
    parish_id: str,
    event_id: str,
    occurrence_millis: int,
    ctx: VisibilityContext,
    changes: Optional[Mapping[str, Any]] = None,
    cancel: bool = False,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> Optional[Event]:
    """"This event only": cancel one occurrence or replace it with an override.

    Returns the override row, or None for a cancellation.
    """
    event = get_event(session, parish_id, event_id)
    _require_manage(event, ctx)
    if not RecurrenceRule.from_event(event).repeats:
        raise ValueError("Only recurring events have occurrences")

    original = from_millis(occurrence_millis)
    if not is_occurrence(event, original, tz):
        raise NotFound("Occurrence not found")

    if _find_exception(session, event.id, original) is None:
        session.add(EventRecurrenceException(event_id=event.id, occurrence_starts_at=to_storage(original)))

    override = _find_override(session, event.id, original)
    if cancel:
        if override is not None:
            override.deleted_at = to_storage(utcnow())
        session.flush()
        LOGGER.info("Cancelled occurrence %s-%s", event.id, occurrence_millis)
        return None

    changes = dict(changes or {})
    unknown = set(changes) - OCCURRENCE_FIELDS
    if unknown:
        raise ValueError(f"Cannot edit fields on an occurrence: {', '.join(sorted(unknown))}")

    if override is None:
        duration = as_utc(event.ends_at) - as_utc(event.starts_at)
        override = Event(
            parish_id=parish_id,
            group_id=event.group_id,
            created_by_id=event.created_by_id,
            title=event.title,
            location=event.location,
            summary=event.summary,
            starts_at=to_storage(original),
            ends_at=to_storage(original + duration),
            visibility=event.visibility,
            recurrence_freq="NONE",
            recurrence_interval=1,
            recurrence_by_weekday=[],
            recurrence_parent_id=event.id,
            recurrence_original_starts_at=to_storage(original),
        )
        session.add(override)
    override.deleted_at = None

    starts_at = changes.pop("starts_at", None) or override.starts_at
    ends_at = changes.pop("ends_at", None) or override.ends_at
    validate_event_times(starts_at, ends_at)
    override.starts_at = to_storage(starts_at)
    override.ends_at = to_storage(ends_at)
    for field, value in changes.items():
        setattr(override, field, value)
    override.week_id = _week_for(session, parish_id, as_utc(override.starts_at), tz).id
    session.flush()
    LOGGER.info("Overrode occurrence %s-%s", event.id, occurrence_millis)
    return override


def _drop_orphaned_edits(session: Session, event: Event, tz: tzinfo) -> int:
    repeats = RecurrenceRule.from_event(event).repeats

    def still_a_slot(original: Optional[datetime]) -> bool:
        return repeats and original is not None and is_occurrence(event, as_utc(original), tz)

    exceptions = session.execute(
        select(EventRecurrenceException).where(EventRecurrenceException.event_id == event.id)
    ).scalars().all()
    overrides = session.execute(
        select(Event).where(Event.recurrence_parent_id == event.id, Event.deleted_at.is_(None))
    ).scalars().all()

    dropped = 0
    for row in exceptions:
        if not still_a_slot(row.occurrence_starts_at):
            session.delete(row)
            dropped += 1
    deleted_at = to_storage(utcnow())
    for override in overrides:
        if not still_a_slot(override.recurrence_original_starts_at):
            override.deleted_at = deleted_at
    if dropped:
        LOGGER.info("Dropped %d occurrence edits from series %s", dropped, event.id)
    return dropped


def edit_series(
    session: Session,
    parish_id: str,
    event_id: str,
    ctx: VisibilityContext,
    changes: Mapping[str, Any],
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> Event:
    """"This series": change the base event and its rule.

    Per-occurrence edits survive when their slot is still an occurrence of
    the edited series. When the start or the rule changes, edits whose slot
    no longer exists are dropped along with their override rows.
    """
    event = get_event(session, parish_id, event_id)
    _require_manage(event, ctx)
    if event.recurrence_parent_id is not None:
        raise ValueError("Edit the series through its base event")
    apply_series_edit(event, changes)
    if "starts_at" in changes:
        event.week_id = _week_for(session, parish_id, as_utc(event.starts_at), tz).id
    if SLOT_FIELDS & set(changes):
        _drop_orphaned_edits(session, event, tz)
    session.flush()
    LOGGER.info("Series %s updated (%s)", event.id, ", ".join(sorted(changes)))
    return event


def delete_series(session: Session, parish_id: str, event_id: str, ctx: VisibilityContext) -> int:
    """Soft-delete a base event and every override hanging off it."""
    event = get_event(session, parish_id, event_id)
    _require_manage(event, ctx)
    deleted_at = to_storage(utcnow())
    overrides = session.execute(
        select(Event).where(Event.recurrence_parent_id == event.id, Event.deleted_at.is_(None))
    ).scalars().all()
    event.deleted_at = deleted_at
    for override in overrides:
        override.deleted_at = deleted_at
    session.flush()
    LOGGER.info("Series %s deleted with %d overrides", event.id, len(overrides))
    return 1 + len(overrides)
