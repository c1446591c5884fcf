from __future__ import annotations

import logging
from typing import Callable, List

from celery import shared_task

import database
from models import Parish
from schedule.clock import utcnow

from .channels import dispatch
from .collectors import active_parishes, collect_event_reminder_jobs, collect_weekly_digest_jobs
from .models import NotificationJob
from .service import deliver_jobs

LOGGER = logging.getLogger(__name__)


def _for_each_parish(collect: Callable[..., List[NotificationJob]], now) -> int:
    """Collect and deliver parish by parish, one transaction per parish."""
    with database.SessionLocal() as session:
        parish_ids = [parish.id for parish in active_parishes(session)]

    delivered = 0
    for parish_id in parish_ids:
        with database.SessionLocal.begin() as session:
            parish = session.get(Parish, parish_id)
            jobs = collect(session, parish, now)
        delivered += deliver_jobs(jobs, dispatch)
    return delivered


@shared_task(name="notifications.tasks.send_weekly_digests")
def send_weekly_digests() -> str:
    delivered = _for_each_parish(collect_weekly_digest_jobs, utcnow())
    LOGGER.info("Sent %d weekly digests", delivered)
    return str(delivered)


@shared_task(name="notifications.tasks.send_event_reminders")
def send_event_reminders() -> str:
    delivered = _for_each_parish(collect_event_reminder_jobs, utcnow())
    LOGGER.info("Sent %d event reminder batches", delivered)
    return str(delivered)
