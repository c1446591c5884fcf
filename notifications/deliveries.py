"""Delivery log for digests and event reminders.

Collectors claim a row before a message is queued. The claim is an insert
guarded by a unique key, so overlapping scans, Celery retries and re-runs of
the weekly job never send the same thing twice.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import DigestDelivery, EventReminder, new_id
from schedule.clock import to_storage

LOGGER = logging.getLogger(__name__)


def _claim(session: Session, model, values: Dict[str, Any], keys: List[str]) -> bool:
    """Insert the log row unless it already exists. True when this call created it."""
    values = {"id": new_id(), **values}
    dialect = session.get_bind().dialect.name
    if dialect in {"postgresql", "sqlite"}:
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=keys)
        return session.execute(stmt).rowcount == 1

    try:
        with session.begin_nested():
            session.add(model(**values))
        return True
    except IntegrityError:
        LOGGER.debug("%s already logged for %s", model.__tablename__, values)
        return False


def claim_digest(session: Session, parish_id: str, week_id: str, user_id: str, now: datetime) -> bool:
    return _claim(
        session,
        DigestDelivery,
        {"parish_id": parish_id, "week_id": week_id, "user_id": user_id, "sent_at": to_storage(now)},
        ["parish_id", "week_id", "user_id"],
    )


def claim_reminder(session: Session, event_id: str, user_id: str, starts_at: datetime, now: datetime) -> bool:
    return _claim(
        session,
        EventReminder,
        {
            "event_id": event_id,
            "user_id": user_id,
            "occurrence_starts_at": to_storage(starts_at),
            "sent_at": to_storage(now),
        },
        ["event_id", "user_id", "occurrence_starts_at"],
    )
