"""Week summaries and the weekly digest.

``build_digest_content`` is deterministic for a given set of tasks and
events; it never reads the clock. Digest rows move DRAFT -> PUBLISHED only:
once published a digest can be republished with new content but not
reverted to a draft.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Announcement, Digest, Task, Week, new_id

from .clock import as_utc, now_in_parish_time, to_storage, utcnow
from .config import DEFAULT_TIMEZONE, WEEK_ANNOUNCEMENT_LIMIT
from .errors import Forbidden, InvalidTransition
from .events import list_events_by_range
from .feeds import list_visible_announcements
from .ranges import CalendarRange
from .recurrence import EventInstance
from .visibility import VisibilityContext, can_view
from .week import find_week, get_or_create_current_week

LOGGER = logging.getLogger(__name__)

DIGEST_STATUSES = ("DRAFT", "PUBLISHED")


@dataclass(frozen=True, slots=True)
class CompletionStats:
    done: int
    total: int
    pct: int

    def to_dict(self) -> Dict[str, int]:
        return {"done": self.done, "total": self.total, "pct": self.pct}


def completion_stats(tasks: Iterable[Any]) -> CompletionStats:
    tasks = list(tasks)
    total = len(tasks)
    done = sum(1 for task in tasks if task.status == "DONE")
    # half up, so 2/3 -> 67 and 1/8 -> 13
    pct = math.floor(100 * done / total + 0.5) if total else 0
    return CompletionStats(done=done, total=total, pct=pct)


@dataclass
class WeekSummary:
    week: Week
    tasks: List[Task] = field(default_factory=list)
    events: List[EventInstance] = field(default_factory=list)
    announcements: List[Announcement] = field(default_factory=list)
    stats: CompletionStats = CompletionStats(0, 0, 0)
    digest: Optional[Digest] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": {
                "id": self.week.id,
                "label": self.week.label,
                "starts_on": as_utc(self.week.starts_on).isoformat(),
                "ends_on": as_utc(self.week.ends_on).isoformat(),
            },
            "tasks": [
                {
                    "id": task.id,
                    "title": task.title,
                    "status": task.status,
                    "owner_id": task.owner_id,
                    "group_id": task.group_id,
                    "visibility": task.visibility,
                }
                for task in self.tasks
            ],
            "events": [instance.to_dict() for instance in self.events],
            "announcements": [
                {"id": row.id, "title": row.title, "published_at": row.published_at.isoformat() + "Z" if row.published_at else None}
                for row in self.announcements
            ],
            "stats": self.stats.to_dict(),
            "digest": {"status": self.digest.status, "content": self.digest.content} if self.digest else None,
        }


def _week_tasks(session: Session, parish_id: str, week_id: str) -> List[Task]:
    stmt = (
        select(Task)
        .where(Task.parish_id == parish_id, Task.week_id == week_id, Task.archived_at.is_(None))
        .order_by(Task.created_at, Task.id)
    )
    return list(session.execute(stmt).scalars())


def get_digest(session: Session, parish_id: str, week_id: str, lock: bool = False) -> Optional[Digest]:
    stmt = select(Digest).where(Digest.parish_id == parish_id, Digest.week_id == week_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return session.execute(stmt).scalar_one_or_none()


def build_week_summary(
    session: Session,
    parish_id: str,
    week_id: str,
    viewer: VisibilityContext,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> WeekSummary:
    """Everything the "This Week" view shows, filtered for ``viewer``."""
    week = find_week(session, parish_id, week_id)
    tasks = [task for task in _week_tasks(session, parish_id, week.id) if can_view(task, viewer)]
    week_window = CalendarRange(start=as_utc(week.starts_on), end=as_utc(week.ends_on))
    return WeekSummary(
        week=week,
        tasks=tasks,
        events=list_events_by_range(session, parish_id, week_window, viewer, tz),
        announcements=list_visible_announcements(
            session, parish_id, viewer, status="published", limit=WEEK_ANNOUNCEMENT_LIMIT
        ),
        stats=completion_stats(tasks),
        digest=get_digest(session, parish_id, week.id),
    )


def _clock(value: datetime, tz: tzinfo) -> str:
    return now_in_parish_time(value, tz).strftime("%H:%M")


def build_digest_content(tasks: Iterable[Any], events: Iterable[Any], tz: tzinfo = DEFAULT_TIMEZONE) -> str:
    lines = ["Tasks"]
    ordered_tasks = sorted(tasks, key=lambda task: task.title)
    for task in ordered_tasks:
        mark = "x" if task.status == "DONE" else " "
        lines.append(f"- [{mark}] {task.title}")
    if not ordered_tasks:
        lines.append("- No tasks this week.")

    lines.extend(["", "Events"])
    ordered_events = sorted(events, key=lambda event: (as_utc(event.starts_at), event.title))
    for event in ordered_events:
        line = f"- {event.title} ({_clock(event.starts_at, tz)}-{_clock(event.ends_at, tz)})"
        if getattr(event, "location", None):
            line += f" @ {event.location}"
        lines.append(line)
    if not ordered_events:
        lines.append("- No events this week.")
    return "\n".join(lines)


def assert_digest_transition(current: Optional[str], target: str) -> None:
    if target not in DIGEST_STATUSES:
        raise ValueError(f"Unknown digest status: {target}")
    if current == "PUBLISHED" and target == "DRAFT":
        raise InvalidTransition("Cannot revert a published digest")


def _ensure_digest_row(session: Session, parish_id: str, week_id: str, user_id: str) -> None:
    values = {
        "id": new_id(),
        "parish_id": parish_id,
        "week_id": week_id,
        "content": "",
        "status": "DRAFT",
        "created_by_id": user_id,
    }
    dialect = session.get_bind().dialect.name
    if dialect in {"postgresql", "sqlite"}:
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        session.execute(
            insert(Digest).values(**values).on_conflict_do_nothing(index_elements=["parish_id", "week_id"])
        )
        return
    try:
        with session.begin_nested():
            session.add(Digest(**values))
    except IntegrityError:
        LOGGER.debug("Digest for week %s created concurrently", week_id)


def _write_digest(
    session: Session,
    parish_id: str,
    week_id: str,
    ctx: VisibilityContext,
    content: str,
    target: str,
    now: Optional[datetime] = None,
) -> Digest:
    if not ctx.is_leader:
        raise Forbidden("Only parish leaders can edit the digest")
    find_week(session, parish_id, week_id)
    _ensure_digest_row(session, parish_id, week_id, ctx.user_id)
    # the status check and the write share one locked read
    digest = get_digest(session, parish_id, week_id, lock=True)
    assert_digest_transition(digest.status, target)

    digest.content = content
    digest.status = target
    if target == "PUBLISHED":
        digest.published_at = to_storage(now or utcnow())
    session.flush()
    LOGGER.info("Digest for week %s saved as %s by %s", week_id, target, ctx.user_id)
    return digest


def save_digest_draft(session, parish_id, week_id, ctx, content, now=None) -> Digest:
    return _write_digest(session, parish_id, week_id, ctx, content, "DRAFT", now)


def publish_digest(session, parish_id, week_id, ctx, content, now=None) -> Digest:
    return _write_digest(session, parish_id, week_id, ctx, content, "PUBLISHED", now)


def generate_digest_preview(
    session: Session,
    parish_id: str,
    ctx: VisibilityContext,
    now: Optional[datetime] = None,
    tz: tzinfo = DEFAULT_TIMEZONE,
) -> str:
    """Digest text for the current week, as the leader asking would see it."""
    if not ctx.is_leader:
        raise Forbidden("Only parish leaders can preview the digest")
    week = get_or_create_current_week(session, parish_id, now or utcnow(), tz)
    summary = build_week_summary(session, parish_id, week.id, ctx, tz)
    return build_digest_content(summary.tasks, summary.events, tz)
