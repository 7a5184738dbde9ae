"""Billing period arithmetic."""

from __future__ import annotations

from datetime import UTC, datetime

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_month(start: datetime) -> datetime:
    """Return *start* plus one calendar month.

    The day of month is preserved where it exists and clamped to the last
    day otherwise (Jan 31 -> Feb 28/29).
    """
    return start + relativedelta(months=1)


def next_period(previous_end: datetime) -> tuple[datetime, datetime]:
    """Period that follows one ending at *previous_end*."""
    return previous_end, add_month(previous_end)


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600.0
