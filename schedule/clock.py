"""Timezone resolution and the UTC <-> parish wall clock conversions."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigurationError

UTC = timezone.utc

LEGACY_UTC_OFFSET = re.compile(r"^UTC([+-])(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)

FRIENDLY_TIMEZONE_LABELS = {
    "America/New_York": "Eastern Time",
    "America/Chicago": "Central Time",
    "America/Denver": "Mountain Time",
    "America/Los_Angeles": "Pacific Time",
    "America/Phoenix": "Arizona Time",
    "America/Anchorage": "Alaska Time",
    "Pacific/Honolulu": "Hawaii Time",
}


def _legacy_offset(name: str) -> timezone | None:
    match = LEGACY_UTC_OFFSET.match(name)
    if not match:
        return None
    hours = int(match.group(2))
    minutes = int(match.group(3) or 0)
    if hours > 14 or minutes > 59:
        return None
    sign = 1 if match.group(1) == "+" else -1
    return timezone(sign * timedelta(hours=hours, minutes=minutes), name=name.upper())


@lru_cache(maxsize=64)
def resolve_timezone(name: str | None) -> tzinfo:
    """Return a tzinfo for an IANA zone id or a legacy ``UTC+H[:MM]`` string.

    Raises ConfigurationError for anything else, so a bad value stops the
    process at startup (or the write that tried to store it) instead of
    failing later inside a calculation.
    """
    text = (name or "").strip()
    if not text:
        raise ConfigurationError("Timezone name is empty")
    legacy = _legacy_offset(text)
    if legacy is not None:
        return legacy
    if LEGACY_UTC_OFFSET.match(text):
        raise ConfigurationError(f"UTC offset out of range: {text!r}")
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown timezone: {text!r}") from exc


def format_timezone_label(name: str) -> str:
    friendly = FRIENDLY_TIMEZONE_LABELS.get(name)
    return f"{name} ({friendly})" if friendly else name


def utcnow() -> datetime:
    """The only place the core reads the system clock."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_storage(value: datetime) -> datetime:
    """Naive UTC, the form every DateTime column holds."""
    return as_utc(value).replace(tzinfo=None)


def now_in_parish_time(instant: datetime, tz: tzinfo) -> datetime:
    return as_utc(instant).astimezone(tz)


def local_midnight(day, tz: tzinfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=tz)


def to_millis(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)
