from __future__ import annotations

import logging
from html import escape
from typing import Iterable, List, Sequence

from .config import DEFAULT_CHANNELS, VALID_CHANNELS
from .models import NotificationJob, NotificationMessage, Recipient

LOGGER = logging.getLogger(__name__)


def normalize_channels(raw) -> List[str]:
    if isinstance(raw, str):
        raw = [part.strip() for part in raw.split(",")]
    channels = [str(item).lower() for item in raw or () if str(item).lower() in VALID_CHANNELS]
    return channels or list(DEFAULT_CHANNELS)


def build_recipient(user) -> Recipient:
    return Recipient(
        user_id=user.id,
        name=user.name or user.email or user.id,
        email=user.email,
        discord_webhook=user.discord_webhook,
        channels=normalize_channels(user.notification_channels),
    )


def render_html(title: str, sections: Sequence[tuple], footer: str = "") -> str:
    parts = [f"<h1>{escape(title)}</h1>"]
    for heading, items in sections:
        if heading:
            parts.append(f"<h2>{escape(heading)}</h2>")
        if isinstance(items, str):
            parts.append(f"<p>{escape(items)}</p>")
        else:
            parts.append("<ul>" + "".join(f"<li>{escape(item)}</li>" for item in items) + "</ul>")
    if footer:
        parts.append(f'<p><a href="{escape(footer)}">{escape(footer)}</a></p>')
    return "\n".join(parts)


def create_message(subject: str, body_lines: Iterable[str], *, category: str = "general", body_html=None) -> NotificationMessage:
    body_text = "\n".join(body_lines)
    return NotificationMessage(subject=subject, body_text=body_text, body_html=body_html, category=category)


def deliver_jobs(jobs: Iterable[NotificationJob], dispatcher) -> int:
    delivered = 0
    for job in jobs:
        if not job.messages:
            continue
        try:
            dispatcher(job.recipient, job.messages)
            delivered += 1
        except Exception:  # pragma: no cover - fatal logging only
            LOGGER.exception(
                "Failed to dispatch %s for %s in parish %s",
                ", ".join(job.categories),
                job.recipient.user_id,
                job.parish_id,
            )
    return delivered
