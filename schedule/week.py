"""Monday-start parish weeks.

The pure helpers work on aware parish-local datetimes. The persistence
helpers upsert ``Week`` rows keyed on ``(parish_id, starts_on)`` and rely on
that unique constraint, never on a read-then-insert, so two requests that
first touch a new week at the same time resolve to the same row.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Week, new_id

from .clock import as_utc, local_midnight, now_in_parish_time, to_storage, utcnow
from .config import DEFAULT_TIMEZONE, WEEK_SELECTIONS
from .errors import NotFound
from .tasks import rollover_open_tasks

LOGGER = logging.getLogger(__name__)


def week_start_monday(local: datetime) -> datetime:
    """Local midnight of the Monday at or before ``local``."""
    monday = local.date() - timedelta(days=local.weekday())
    return local_midnight(monday, local.tzinfo)


def week_end(start: datetime) -> datetime:
    # Wall-clock arithmetic: the next Monday midnight even across DST.
    return start + timedelta(days=7)


def week_label(start: datetime) -> str:
    iso = start.date().isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"


def parse_week_selection(value) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    text = (value or "").strip().lower() if isinstance(value, str) else ""
    return text if text in WEEK_SELECTIONS else "current"


# ------------------------------- Persistence -------------------------------


def find_week_by_start(session: Session, parish_id: str, start: datetime) -> Optional[Week]:
    stmt = select(Week).where(Week.parish_id == parish_id, Week.starts_on == to_storage(start))
    return session.execute(stmt).scalar_one_or_none()


def find_week(session: Session, parish_id: str, week_id: str) -> Week:
    week = session.get(Week, week_id)
    if week is None or week.parish_id != parish_id:
        raise NotFound("Week not found")
    return week


def _insert_week(session: Session, parish_id: str, start: datetime) -> bool:
    """Insert the week row unless it already exists. True when created."""
    values = {
        "id": new_id(),
        "parish_id": parish_id,
        "starts_on": to_storage(start),
        "ends_on": to_storage(week_end(start)),
        "label": week_label(start),
    }
    dialect = session.get_bind().dialect.name
    if dialect in {"postgresql", "sqlite"}:
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(Week).values(**values).on_conflict_do_nothing(
            index_elements=["parish_id", "starts_on"]
        )
        return session.execute(stmt).rowcount == 1

    try:
        with session.begin_nested():
            session.add(Week(**values))
        return True
    except IntegrityError:
        LOGGER.debug("Week %s for parish %s created concurrently", values["label"], parish_id)
        return False


def ensure_week(session: Session, parish_id: str, start: datetime) -> Tuple[Week, bool]:
    """Upsert the week starting at local midnight ``start``; return (row, created)."""
    created = _insert_week(session, parish_id, start)
    week = find_week_by_start(session, parish_id, start)
    if week is None:
        # only reachable if the row vanished between the upsert and the read
        raise NotFound(f"Week {week_label(start)} missing after upsert")
    if created:
        LOGGER.info("Created week %s for parish %s", week.label, parish_id)
    return week, created


def get_or_create_current_week(
    session: Session,
    parish_id: str,
    now: datetime,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> Week:
    """Return the week containing ``now``, creating it and the following week.

    The next week is always upserted as well so "next week" navigation never
    has to write on a read path. Open tasks from the previous week roll over
    the first time a week is served as the current one.
    """
    start = week_start_monday(now_in_parish_time(now, tz))
    current, _ = ensure_week(session, parish_id, start)
    if current.rolled_over_at is None:
        _roll_over_into(session, parish_id, current, start)
    ensure_week(session, parish_id, week_end(start))
    return current


def _claim_rollover(session: Session, week: Week) -> bool:
    stmt = (
        update(Week)
        .where(Week.id == week.id, Week.rolled_over_at.is_(None))
        .values(rolled_over_at=to_storage(utcnow()))
        .execution_options(synchronize_session=False)
    )
    claimed = session.execute(stmt).rowcount == 1
    session.refresh(week, ["rolled_over_at"])
    return claimed


def _roll_over_into(session: Session, parish_id: str, current: Week, start: datetime) -> int:
    if not _claim_rollover(session, current):
        return 0
    previous = find_week_by_start(session, parish_id, start - timedelta(days=7))
    if previous is None:
        return 0
    rolled = rollover_open_tasks(session, parish_id, previous.id, current.id)
    if rolled:
        LOGGER.info("Rolled %d open tasks from %s to %s", rolled, previous.label, current.label)
    return rolled


def get_week_for_selection(
    session: Session,
    parish_id: str,
    selection: str,
    now: datetime,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> Week:
    current = get_or_create_current_week(session, parish_id, now, tz)
    selection = parse_week_selection(selection)
    if selection == "current":
        return current

    current_start = week_start_monday(now_in_parish_time(as_utc(current.starts_on), tz))
    if selection == "next":
        target = week_end(current_start)
    else:
        target = current_start - timedelta(days=7)
    week, _ = ensure_week(session, parish_id, target)
    return week
