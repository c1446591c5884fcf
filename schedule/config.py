"""Environment driven settings for the scheduling core.

Read once at import time. The parish timezone is validated here so an
unknown zone name stops the process at startup.
"""
from __future__ import annotations

import os

from .clock import resolve_timezone

PARISH_TIMEZONE = os.getenv("PARISH_TIMEZONE", "America/New_York").strip()
DEFAULT_TIMEZONE = resolve_timezone(PARISH_TIMEZONE)

# Guard for rules with no end date expanded over a huge window.
MAX_RECURRENCE_OCCURRENCES = int(os.getenv("MAX_RECURRENCE_OCCURRENCES", "2000"))

LEADER_ROLES = frozenset({"ADMIN", "SHEPHERD"})
CLERGY_ROLES = frozenset({"SHEPHERD"})

GROUP_MANAGER_ROLES = frozenset({"COORDINATOR", "LEAD"})

RECURRENCE_FREQUENCIES = ("NONE", "DAILY", "WEEKLY", "MONTHLY")

WEEK_SELECTIONS = ("previous", "current", "next")

# newest published announcements shown on a week summary
WEEK_ANNOUNCEMENT_LIMIT = 6


def parish_timezone(parish):
    """The parish's own zone when set, else the configured default."""
    name = getattr(parish, "timezone", None)
    return resolve_timezone(name) if name else DEFAULT_TIMEZONE
