"""Utility helpers for CivicCal."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
import uuid


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def local_today() -> date:
    """Return today's date in the server's local timezone."""

    return date.today()


def new_id() -> str:
    return str(uuid.uuid4())


def add_years(value: date, years: int) -> date:
    """Shift ``value`` by whole years, clamping Feb 29 to Feb 28."""

    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)


def format_event_date(value: date | None) -> str:
    return value.isoformat() if value else ""


def format_event_time(value: time | None) -> str:
    return value.strftime("%H:%M") if value else ""
