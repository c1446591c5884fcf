"""Exception types raised by the scheduling core."""
from __future__ import annotations


class ScheduleError(Exception):
    """Base class for errors surfaced to request handlers."""


class ConfigurationError(ScheduleError, ValueError):
    """Bad timezone or other startup configuration."""


class InvalidRecurrenceRule(ScheduleError, ValueError):
    """Recurrence rule rejected at write time."""


class NotFound(ScheduleError):
    pass


class Forbidden(ScheduleError):
    pass


class InvalidTransition(ScheduleError):
    """A status change the entity does not allow (e.g. PUBLISHED -> DRAFT)."""
