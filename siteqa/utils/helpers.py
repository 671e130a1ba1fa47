"""Shared utility functions for services and blueprints.

utcnow:       single source of "now" for timestamp writes
ensure_utc:   normalise datetimes read back from SQLite (naive) to UTC
parse_date:   lenient date parsing (returns None on bad input)
parse_datetime_input: strict ISO datetime parsing (raises ValueError)
"""
import logging
from datetime import date, datetime, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime; convert aware ones to UTC.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns, so values
    read back need normalising before they are compared with ``utcnow()``.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value):
    return value.isoformat() if value else None


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime_input(value):
    """Parse an ISO-8601 datetime, raising ValueError on bad input.

    Naive values are taken as UTC. A trailing ``Z`` is accepted.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError("Invalid datetime format. Use ISO-8601, e.g. 2026-03-02T09:00:00Z.") from exc
