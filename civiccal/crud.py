"""CRUD helpers for events, RSVPs, comments and users."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import Comment, Event, EVENT_STATUSES, RSVP, RSVP_STATUSES, User
from .utils import utcnow
from .validation import parse_event_date, parse_event_time

EVENT_FIELDS = {
    "title",
    "date",
    "time",
    "location",
    "description",
    "link",
    "category",
    "is_free",
    "is_accessible",
}


def _now() -> datetime:
    return utcnow()


def _normalize_status(status: str) -> str:
    normalized = (status or "").strip().lower()
    if normalized not in EVENT_STATUSES:
        raise ValueError("Invalid event status")
    return normalized


def _normalize_rsvp_status(status: str) -> str:
    normalized = (status or "").strip().lower()
    if normalized not in RSVP_STATUSES:
        raise ValueError("Invalid RSVP status")
    return normalized


def coerce_event_field(key: str, value: Any) -> Any:
    """Convert form-style values (date and time strings) into column values."""
    if key == "date" and isinstance(value, str):
        parsed = parse_event_date(value)
        if parsed is None:
            raise ValueError("Invalid event date")
        return parsed
    if key == "time" and isinstance(value, str):
        parsed = parse_event_time(value)
        if parsed is None:
            raise ValueError("Invalid event time")
        return parsed
    if key in {"is_free", "is_accessible"}:
        return bool(value)
    return value


def coerce_event_values(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: coerce_event_field(key, value)
        for key, value in data.items()
        if key in EVENT_FIELDS
    }


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def get_events_by_status(session: Session, status: str) -> Sequence[Event]:
    """Approved events come back soonest first, everything else newest first."""
    stmt = select(Event).where(Event.status == _normalize_status(status))
    if status == "approved":
        stmt = stmt.order_by(Event.date.asc(), Event.time.asc())
    else:
        stmt = stmt.order_by(Event.created_at.desc())
    return session.scalars(stmt).all()


def get_events_by_submitter(session: Session, user_id: str) -> Sequence[Event]:
    stmt = (
        select(Event)
        .where(Event.submitted_by == user_id)
        .order_by(Event.created_at.desc())
    )
    return session.scalars(stmt).all()


def create_event(session: Session, data: Mapping[str, Any]) -> Event:
    """Create and persist a new event from already-validated data."""
    values = coerce_event_values(data)
    event = Event(
        **values,
        submitted_by=data.get("submitted_by"),
        status=_normalize_status(data.get("status") or "pending"),
    )
    if data.get("id"):
        event.id = data["id"]
    if data.get("created_at"):
        event.created_at = data["created_at"]
    session.add(event)
    session.flush()
    return event


def update_event(session: Session, event: Event, changes: Mapping[str, Any]) -> Event:
    """Apply editable field changes; status is left untouched."""
    for key, value in changes.items():
        if key not in EVENT_FIELDS:
            continue
        setattr(event, key, coerce_event_field(key, value))
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def set_event_status(session: Session, event: Event, status: str) -> Event:
    event.status = _normalize_status(status)
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def get_rsvps(session: Session, event_id: str) -> Sequence[RSVP]:
    stmt = select(RSVP).where(RSVP.event_id == event_id).order_by(RSVP.created_at)
    return session.scalars(stmt).all()


def get_user_rsvp(session: Session, event_id: str, user_id: str) -> RSVP | None:
    stmt = select(RSVP).where(RSVP.event_id == event_id, RSVP.user_id == user_id)
    return session.scalars(stmt).first()


def upsert_rsvp(
    session: Session,
    *,
    event_id: str,
    user_id: str,
    user_email: str | None,
    status: str,
) -> RSVP:
    """Create the user's RSVP or overwrite its status."""
    normalized = _normalize_rsvp_status(status)
    rsvp = get_user_rsvp(session, event_id, user_id)
    if rsvp is None:
        rsvp = RSVP(
            event_id=event_id,
            user_id=user_id,
            user_email=user_email,
            status=normalized,
        )
    else:
        rsvp.status = normalized
        rsvp.user_email = user_email or rsvp.user_email
        rsvp.updated_at = _now()
    session.add(rsvp)
    session.flush()
    return rsvp


def get_rsvp_counts(session: Session, event_id: str) -> dict[str, int]:
    """Count RSVPs per attendance status for an event."""
    rows = (
        session.query(RSVP.status, func.count())
        .filter(RSVP.event_id == event_id)
        .group_by(RSVP.status)
        .all()
    )
    counts = {status: 0 for status in RSVP_STATUSES}
    for status, count in rows:
        if status in counts:
            counts[status] = count
    return counts


def get_comments(session: Session, event_id: str) -> Sequence[Comment]:
    stmt = (
        select(Comment)
        .where(Comment.event_id == event_id)
        .order_by(Comment.created_at.asc())
    )
    return session.scalars(stmt).all()


def create_comment(
    session: Session,
    *,
    event_id: str,
    author_id: str,
    author_name: str,
    text: str,
) -> Comment:
    comment = Comment(
        event_id=event_id,
        author_id=author_id,
        author_name=author_name,
        text=text,
        created_at=_now(),
    )
    session.add(comment)
    session.flush()
    return comment


def update_comment(session: Session, comment: Comment, text: str) -> Comment:
    comment.text = text
    comment.updated_at = _now()
    session.add(comment)
    session.flush()
    return comment


def get_user_by_email(session: Session, email: str) -> User | None:
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    return session.scalars(select(User).where(User.email == normalized)).first()


def get_or_create_user(
    session: Session,
    *,
    email: str,
    name: str | None = None,
    image: str | None = None,
    is_admin: bool = False,
) -> User:
    """Return the user for ``email``, creating it on first sight."""
    user = get_user_by_email(session, email)
    if user:
        return user
    user = User(
        email=email.strip().lower(),
        name=name,
        image=image,
        is_admin=is_admin,
    )
    session.add(user)
    session.flush()
    return user
