from __future__ import annotations


class AlarmcalError(RuntimeError):
    """Base class for errors raised by alarmcal."""


class ConfigError(AlarmcalError, ValueError):
    """Raised when configuration values are missing or inconsistent."""


class SinkError(AlarmcalError):
    """Raised when an alarm sink cannot persist or remove an alarm."""
