"""
Time utilities for the Kanban backend.

This module provides a single source of truth for time operations,
ensuring consistency across all endpoints and preventing clock drift issues.
"""

from datetime import datetime, timezone, timedelta
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
    Normalize a datetime loaded from the database to timezone-aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns; every
    timestamp we write is UTC, so a naive value is interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def invitation_expiry(days: int) -> datetime:
    """Expiry timestamp for an invitation issued now."""
    return utc_now() + timedelta(days=days)


def is_expired(expires_at: Optional[datetime]) -> bool:
    """
    Check if an expiry timestamp has passed.

    Args:
        expires_at: Expiry timestamp (naive values are treated as UTC)

    Returns:
        True if expires_at is in the past, False otherwise (or if unset)
    """
    if expires_at is None:
        return False
    return as_utc(expires_at) <= utc_now()
