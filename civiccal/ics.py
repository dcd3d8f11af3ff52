"""iCalendar (.ics) export."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .config import settings

if TYPE_CHECKING:
    from civiccal.models import Event

PRODID = "-//CivicCal//Community Events//EN"
MAX_LINE_OCTETS = 75


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _format_local(event: Event) -> str:
    """Floating local start time; events carry no timezone."""

    return f"{event.date.strftime('%Y%m%d')}T{event.time.strftime('%H%M%S')}"


def escape_text(value: str | None) -> str:
    if not value:
        return ""
    normalized = value.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", r"\n")
    )


def fold_line(line: str) -> str:
    """Fold a content line into chunks of at most 75 octets."""

    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return line
    chunks: list[str] = []
    current = ""
    size = 0
    # Continuation lines lose one octet to the leading space.
    limit = MAX_LINE_OCTETS
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > limit:
            chunks.append(current)
            current, size = "", 0
            limit = MAX_LINE_OCTETS - 1
        current += char
        size += width
    chunks.append(current)
    return "\r\n ".join(chunks)


def _event_lines(event: Event, *, dtstamp: str, uid_domain: str) -> list[str]:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{event.id}@{uid_domain}",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{_format_local(event)}",
        f"SUMMARY:{escape_text(event.title)}",
        f"DESCRIPTION:{escape_text(event.description)}",
        f"LOCATION:{escape_text(event.location)}",
    ]
    if event.link:
        lines.append(f"URL:{event.link}")
    if event.category:
        lines.append(f"CATEGORIES:{escape_text(event.category)}")
    lines.append("END:VEVENT")
    return lines


def generate_calendar(
    events: Iterable[Event],
    *,
    name: str | None = None,
    uid_domain: str | None = None,
    now: datetime | None = None,
) -> str:
    """Return ICS text containing one VEVENT per event."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    uid_domain = uid_domain or settings.ics_uid_domain
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        f"X-WR-CALNAME:{escape_text(name or settings.calendar_name)}",
    ]
    for event in events:
        lines.extend(_event_lines(event, dtstamp=dtstamp, uid_domain=uid_domain))
    lines.append("END:VCALENDAR")
    return "\r\n".join(fold_line(line) for line in lines) + "\r\n"


def generate_event_ics(event: Event, *, now: datetime | None = None) -> str:
    return generate_calendar([event], name=event.title, now=now)
