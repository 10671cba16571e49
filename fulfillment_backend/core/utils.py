"""
Core Utilities

Shared helpers used across the application.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Return timezone-aware UTC datetime.

    Default clock for token expiry, claims and timeline timestamps.
    """
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """ISO-8601 string with a trailing Z for UTC values."""
    text = value.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")
