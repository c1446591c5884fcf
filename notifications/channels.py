"""Delivery channels: SMTP email and Discord webhooks."""
from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Callable, Dict, Iterable

import requests

from .config import DISCORD_BOT_NAME, DISCORD_CONTENT_LIMIT
from .models import NotificationMessage, Recipient

LOGGER = logging.getLogger(__name__)

Sender = Callable[[Recipient, NotificationMessage], bool]


def _smtp_settings() -> Dict[str, object]:
    return {
        "host": os.getenv("SMTP_HOST"),
        "port": int(os.getenv("SMTP_PORT", "587")),
        "username": os.getenv("SMTP_USERNAME"),
        "password": os.getenv("SMTP_PASSWORD"),
        "use_tls": os.getenv("SMTP_USE_TLS", "1") not in {"0", "false", "False"},
    }


def _smtp_connection():
    settings = _smtp_settings()
    if not settings["host"]:
        return None
    server = smtplib.SMTP(settings["host"], settings["port"], timeout=10)
    try:
        if settings["use_tls"]:
            server.starttls()
        if settings["username"] and settings["password"]:
            server.login(settings["username"], settings["password"])
    except smtplib.SMTPException:
        server.quit()
        raise
    return server


def build_email(recipient: Recipient, message: NotificationMessage, sender: str) -> EmailMessage:
    email = EmailMessage()
    email["Subject"] = message.subject
    email["From"] = sender
    email["To"] = recipient.email
    email.set_content(message.body_text)
    if message.body_html:
        email.add_alternative(message.body_html, subtype="html")
    return email


def send_email(recipient: Recipient, message: NotificationMessage) -> bool:
    if not recipient.email:
        LOGGER.info("Skipping email for %s: no address", recipient.user_id)
        return False
    sender = os.getenv("NOTIFY_FROM_EMAIL") or os.getenv("SMTP_DEFAULT_SENDER")
    if not sender:
        LOGGER.warning("Skipping email: NOTIFY_FROM_EMAIL not configured")
        return False

    try:
        server = _smtp_connection()
        if server is None:
            LOGGER.warning("SMTP_HOST not configured; email suppressed")
            return False
        with server:
            server.send_message(build_email(recipient, message, sender))
    except (smtplib.SMTPException, OSError):  # pragma: no cover - network dependant
        LOGGER.exception("Failed to send %s email to %s", message.category, recipient.email)
        return False
    LOGGER.info("Sent %s email '%s' to %s", message.category, message.subject, recipient.email)
    return True


def discord_content(message: NotificationMessage, limit: int = DISCORD_CONTENT_LIMIT) -> str:
    content = f"**{message.subject}**\n{message.body_text}"
    if len(content) <= limit:
        return content
    return content[: limit - 1].rstrip() + "…"


def send_discord(recipient: Recipient, message: NotificationMessage) -> bool:
    webhook_url = recipient.discord_webhook or os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        LOGGER.info("Skipping discord for %s: no webhook", recipient.user_id)
        return False

    payload = {"username": DISCORD_BOT_NAME, "content": discord_content(message)}
    try:
        resp = requests.post(webhook_url, json=payload, timeout=5)
    except requests.RequestException:  # pragma: no cover - network dependant
        LOGGER.exception("Failed to post %s to discord", message.category)
        return False
    if resp.status_code >= 400:
        LOGGER.error("Discord webhook responded with %s: %s", resp.status_code, resp.text[:120])
        return False
    LOGGER.info("Sent %s discord message '%s' for %s", message.category, message.subject, recipient.user_id)
    return True


SENDERS: Dict[str, Sender] = {
    "email": send_email,
    "discord": send_discord,
}


def dispatch(recipient: Recipient, messages: Iterable[NotificationMessage]) -> None:
    """Send every message on each of the recipient's channels."""
    channels = [name for name in recipient.channels if name in SENDERS] or list(SENDERS)
    for msg in messages:
        delivered = False
        for name in channels:
            delivered |= SENDERS[name](recipient, msg)
        if not delivered:
            LOGGER.info("Notification '%s' was not delivered to %s", msg.subject, recipient.user_id)
