"""Celery application factory for scheduled parish notifications."""
from __future__ import annotations

import os
from celery import Celery
from celery.schedules import crontab

from notifications.config import DIGEST_HOUR, DIGEST_WEEKDAY, REMINDER_SCAN_MINUTES
from schedule.clock import LEGACY_UTC_OFFSET
from schedule.config import PARISH_TIMEZONE

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def celery_timezone() -> str:
    # beat needs a zone name; fixed offsets fall back to UTC
    if os.getenv("CELERY_TIMEZONE"):
        return os.environ["CELERY_TIMEZONE"]
    return "UTC" if LEGACY_UTC_OFFSET.match(PARISH_TIMEZONE) else PARISH_TIMEZONE


def build_beat_schedule() -> dict:
    return {
        "send-weekly-digests": {
            "task": "notifications.tasks.send_weekly_digests",
            "schedule": crontab(day_of_week=DIGEST_WEEKDAY, hour=DIGEST_HOUR, minute=0),
        },
        "scan-event-reminders": {
            "task": "notifications.tasks.send_event_reminders",
            "schedule": crontab(minute=f"*/{REMINDER_SCAN_MINUTES}"),
        },
    }


def create_celery_app() -> Celery:
    celery_app = Celery(
        "paxora",
        broker=DEFAULT_BROKER_URL,
        backend=DEFAULT_BACKEND_URL,
        include=["notifications.tasks"],
    )

    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=celery_timezone(),
        enable_utc=True,
        beat_schedule=build_beat_schedule(),
    )

    return celery_app


celery_app = create_celery_app()
