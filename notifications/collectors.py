"""Build notification jobs from parish data.

Collectors read the database and return ``NotificationJob`` lists; they never
send anything. Parishes are walked one at a time.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Membership, Parish, User
from schedule.clock import as_utc, now_in_parish_time
from schedule.config import parish_timezone
from schedule.context import load_visibility_context
from schedule.digest import WeekSummary, build_week_summary
from schedule.events import list_events_by_range
from schedule.ranges import CalendarRange
from schedule.recurrence import EventInstance
from schedule.visibility import can_view
from schedule.week import get_or_create_current_week

from .config import APP_URL, DIGEST_SECTION_LIMIT, REMINDER_LEAD_MINUTES, REMINDER_WINDOW_MINUTES
from .deliveries import claim_digest, claim_reminder
from .models import NotificationJob, NotificationMessage
from .service import build_recipient, create_message, render_html

LOGGER = logging.getLogger(__name__)

EMPTY_SECTION = "None this week."


def active_parishes(session: Session) -> List[Parish]:
    stmt = select(Parish).where(Parish.deactivated_at.is_(None)).order_by(Parish.name, Parish.id)
    return list(session.execute(stmt).scalars())


def parish_members(session: Session, parish_id: str) -> List[User]:
    stmt = (
        select(User)
        .join(Membership, Membership.user_id == User.id)
        .where(Membership.parish_id == parish_id)
        .order_by(User.id)
    )
    return list(session.execute(stmt).scalars())


def _short_date(value: datetime, tz: tzinfo) -> str:
    local = now_in_parish_time(value, tz)
    return f"{local:%b} {local.day}"


def _short_datetime(value: datetime, tz: tzinfo) -> str:
    local = now_in_parish_time(value, tz)
    hour = local.hour % 12 or 12
    return f"{local:%b} {local.day}, {hour}:{local:%M %p}"


def _section(items: List[str]) -> List[str]:
    return [f"- {item}" for item in items] if items else [EMPTY_SECTION]


def render_weekly_digest(parish: Parish, summary: WeekSummary, tz: tzinfo, app_url: str = APP_URL) -> NotificationMessage:
    tasks = [
        f"{task.title} · {'done' if task.status == 'DONE' else 'open'}"
        for task in summary.tasks[:DIGEST_SECTION_LIMIT]
    ]
    events = [f"{event.title} · {_short_datetime(event.starts_at, tz)}" for event in summary.events[:DIGEST_SECTION_LIMIT]]
    announcements = [
        f"{row.title} · {_short_date(row.published_at or row.updated_at or row.created_at, tz)}"
        for row in summary.announcements[:DIGEST_SECTION_LIMIT]
    ]
    stats = (
        f"{summary.stats.done}/{summary.stats.total} tasks completed · "
        f"{len(summary.events)} events · {len(summary.announcements)} announcements"
    )
    title = f"Weekly digest · {parish.name}"
    week_of = f"Week of {_short_date(summary.week.starts_on, tz)}"
    link = f"{app_url}/this-week"

    lines = [title, week_of, stats, "", "Tasks:", *_section(tasks), "", "Events:", *_section(events)]
    lines += ["", "Announcements:", *_section(announcements), "", link]
    html = render_html(
        title,
        [(None, f"{week_of} · {stats}"), ("Tasks", tasks or EMPTY_SECTION), ("Events", events or EMPTY_SECTION), ("Announcements", announcements or EMPTY_SECTION)],
        footer=link,
    )
    message = create_message(f"Paxora weekly digest · {parish.name}", lines, category="digest", body_html=html)
    message.metadata = {"parish_id": parish.id, "week_id": summary.week.id}
    return message


def collect_weekly_digest_jobs(session: Session, parish: Parish, now: datetime) -> List[NotificationJob]:
    """One digest per opted-in member, built from what that member can see.

    Members already logged for this week are skipped.
    """
    tz = parish_timezone(parish)
    week = get_or_create_current_week(session, parish.id, now, tz)
    jobs: List[NotificationJob] = []
    for user in parish_members(session, parish.id):
        if not user.digest_enabled:
            continue
        recipient = build_recipient(user)
        if not recipient.reachable:
            continue
        if not claim_digest(session, parish.id, week.id, user.id, now):
            continue
        ctx = load_visibility_context(session, parish.id, user.id)
        summary = build_week_summary(session, parish.id, week.id, ctx, tz)
        job = NotificationJob(recipient=recipient, parish_id=parish.id)
        job.add(render_weekly_digest(parish, summary, tz))
        jobs.append(job)
    LOGGER.info("Prepared %d weekly digests for parish %s", len(jobs), parish.id)
    return jobs


def reminder_window(now: datetime) -> CalendarRange:
    lead = as_utc(now) + timedelta(minutes=REMINDER_LEAD_MINUTES)
    window = timedelta(minutes=REMINDER_WINDOW_MINUTES)
    return CalendarRange(start=lead - window, end=lead + window)


def upcoming_occurrences(session: Session, parish: Parish, now: datetime, tz: Optional[tzinfo] = None) -> List[EventInstance]:
    """Occurrences that start inside the reminder window."""
    window = reminder_window(now)
    tz = tz or parish_timezone(parish)
    return [
        instance
        for instance in list_events_by_range(session, parish.id, window, None, tz)
        if window.contains(instance.starts_at)
    ]


def render_event_reminder(instance: EventInstance, tz: tzinfo, app_url: str = APP_URL) -> NotificationMessage:
    when = _short_datetime(instance.starts_at, tz)
    lines = [f"{instance.title} starts at {when}."]
    if getattr(instance, "location", None):
        lines.append(f"Location: {instance.location}")
    lines += ["", f"{app_url}/calendar"]
    message = create_message(f"Reminder: {instance.title}", lines, category="event_reminder")
    message.metadata = {"event_id": instance.event_id, "instance_id": instance.instance_id}
    return message


def collect_event_reminder_jobs(
    session: Session,
    parish: Parish,
    now: datetime,
    occurrences: Optional[Iterable[EventInstance]] = None,
) -> List[NotificationJob]:
    """Reminders for occurrences starting about an hour from ``now``.

    Every reachable member who can view an occurrence gets one reminder for
    it, once.
    """
    tz = parish_timezone(parish)
    occurrences = list(upcoming_occurrences(session, parish, now, tz) if occurrences is None else occurrences)
    if not occurrences:
        return []

    jobs: List[NotificationJob] = []
    for user in parish_members(session, parish.id):
        recipient = build_recipient(user)
        if not recipient.reachable:
            continue
        ctx = load_visibility_context(session, parish.id, user.id)
        job = NotificationJob(recipient=recipient, parish_id=parish.id)
        for instance in occurrences:
            if can_view(instance, ctx) and claim_reminder(session, instance.event_id, user.id, instance.starts_at, now):
                job.add(render_event_reminder(instance, tz))
        if job.messages:
            jobs.append(job)
    LOGGER.info("Prepared %d event reminder jobs for parish %s", len(jobs), parish.id)
    return jobs
