# backend/classbook/core/timezone_utils.py
"""UTC helpers shared by services and repositories."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return an aware UTC datetime.

    SQLite drops tzinfo on round-trip; every stored timestamp is UTC, so a
    naive value read back is tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
