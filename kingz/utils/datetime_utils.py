"""
Datetime utility functions.
Provides replacements for deprecated datetime functions.
"""

from datetime import datetime
from typing import Optional
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime read back from the database to aware UTC.

    Some drivers (SQLite) drop tzinfo on the way back; those values were
    written as UTC, so they are simply tagged.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string for a datetime, or None."""
    value = ensure_utc(value)
    return value.isoformat() if value else None
