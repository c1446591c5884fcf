"""Shared configuration defaults for parish notifications."""
from __future__ import annotations

import os

APP_URL = os.getenv("APP_URL", "http://localhost:5000").rstrip("/")

VALID_CHANNELS = {"email", "discord"}
DEFAULT_CHANNELS = ["email"]

# Weekly digest: Celery crontab day_of_week uses 0 = Sunday.
DIGEST_WEEKDAY = int(os.getenv("DIGEST_WEEKDAY", "0"))
DIGEST_HOUR = int(os.getenv("DIGEST_HOUR", "16"))
DIGEST_SECTION_LIMIT = 6

REMINDER_LEAD_MINUTES = 60
REMINDER_WINDOW_MINUTES = 5
REMINDER_SCAN_MINUTES = int(os.getenv("REMINDER_SCAN_MINUTES", "10"))

DISCORD_BOT_NAME = os.getenv("DISCORD_BOT_NAME", "Paxora")
DISCORD_CONTENT_LIMIT = 2000
