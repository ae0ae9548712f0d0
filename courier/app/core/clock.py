"""
Time source for persisted timestamps.

All timestamps are stored as naive UTC so SQLite and PostgreSQL round-trip
the same values.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
