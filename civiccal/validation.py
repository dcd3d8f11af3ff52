"""Input validation for event submissions and account data."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import date, datetime, time
from typing import Any
from urllib.parse import urlparse

from .models import CATEGORIES
from .utils import add_years, local_today

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 1000
LOCATION_MAX_LENGTH = 200
EMAIL_MAX_LENGTH = 254
MAX_FUTURE_YEARS = 2

_date_pattern = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
_time_pattern = re.compile(r"([01]?[0-9]|2[0-3]):([0-5][0-9])")
_email_pattern = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_event_date(raw: str) -> date | None:
    """Return the calendar date for a ``YYYY-MM-DD`` string or ``None``."""

    if not isinstance(raw, str) or not _date_pattern.fullmatch(raw):
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_event_time(raw: str) -> time | None:
    """Return the wall-clock time for an ``HH:MM`` string or ``None``."""

    if not isinstance(raw, str):
        return None
    match = _time_pattern.fullmatch(raw)
    if not match:
        return None
    return time(int(match.group(1)), int(match.group(2)))


def validate_email(email: str) -> bool:
    return (
        isinstance(email, str)
        and len(email) <= EMAIL_MAX_LENGTH
        and bool(_email_pattern.fullmatch(email))
    )


def validate_url(url: str) -> bool:
    """Accept absolute http(s) URLs only."""

    if not isinstance(url, str):
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_event(
    candidate: Mapping[str, Any],
    *,
    today: date | None = None,
    max_future_years: int = MAX_FUTURE_YEARS,
) -> list[str]:
    """Return every rule the candidate breaks; an empty list means acceptable."""

    errors: list[str] = []
    today = today or local_today()

    title = _text(candidate.get("title"))
    raw_date = _text(candidate.get("date"))
    raw_time = _text(candidate.get("time"))
    description = _text(candidate.get("description"))
    location = _text(candidate.get("location"))
    category = candidate.get("category")
    link = candidate.get("link")

    if not title or not title.strip():
        errors.append("Title is required")
    if not raw_date:
        errors.append("Date is required")
    if not raw_time:
        errors.append("Time is required")

    if title and len(title) > TITLE_MAX_LENGTH:
        errors.append(f"Title must be at most {TITLE_MAX_LENGTH} characters")
    if description and len(description) > DESCRIPTION_MAX_LENGTH:
        errors.append(
            f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters"
        )
    if location and len(location) > LOCATION_MAX_LENGTH:
        errors.append(f"Location must be at most {LOCATION_MAX_LENGTH} characters")

    if raw_date:
        if not _date_pattern.fullmatch(raw_date):
            errors.append("Date must be in YYYY-MM-DD format")
        else:
            event_date = parse_event_date(raw_date)
            if event_date is None:
                errors.append("Date must be a valid calendar date")
            elif event_date < today:
                errors.append("Event date cannot be in the past")
            elif event_date > add_years(today, max_future_years):
                errors.append(
                    f"Event date cannot be more than {max_future_years} years in the future"
                )

    if raw_time and parse_event_time(raw_time) is None:
        errors.append("Time must be in HH:MM format (24-hour)")

    if category and category not in CATEGORIES:
        errors.append("Invalid category selected")

    if link and not validate_url(link):
        errors.append("Link must be a valid http or https URL")

    return errors
