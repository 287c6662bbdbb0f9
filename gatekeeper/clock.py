"""
Time helpers.

Timestamps are stored as naive UTC so they compare cleanly after a
round-trip through SQLite or PostgreSQL `timestamp without time zone`.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
