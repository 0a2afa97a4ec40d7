"""
Time utilities for TeamTrack.

This module provides a single source of truth for time operations,
so every timestamp written by the services shares one clock and one timezone.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns, so
    values read from the database are assumed to already be UTC.

    Args:
        value: datetime to normalize (may be None)

    Returns:
        timezone-aware datetime in UTC, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
