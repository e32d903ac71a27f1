from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo (SQLite)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hold_deadline(created_at: datetime, hold_seconds: int) -> datetime:
    return as_utc(created_at) + timedelta(seconds=hold_seconds)


def hold_lapsed(created_at: datetime, hold_seconds: int, now: Optional[datetime] = None) -> bool:
    return (now or utcnow()) >= hold_deadline(created_at, hold_seconds)
