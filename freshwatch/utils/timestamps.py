"""Timestamp helpers for SQLite storage"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_db_time(value: datetime | None) -> str | None:
    """
    Serialize a datetime for storage

    Fixed-width ISO 8601 in UTC so stored values compare correctly as text.
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware datetime"""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))
