# app/utils/timeutils.py
"""Timestamps are stored as naive UTC — cameras and webhooks may send either."""

from datetime import datetime, timezone


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
