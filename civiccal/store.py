"""Event store service layer.

``EventStore`` wraps the SQLAlchemy CRUD helpers with per-call sessions, maps
database failures to :class:`StoreUnavailable` and publishes change
notifications after each committed write. A store built without a session
factory is "unconfigured": list reads return empty results and every other
call raises ``StoreUnavailable``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .changes import (
    EVENTS_TOPIC,
    Change,
    ChangeFeed,
    Subscription,
    comments_topic,
    rsvps_topic,
)
from .errors import StoreUnavailable
from .models import Comment, Event, RSVP, RSVP_STATUSES

logger = logging.getLogger("uvicorn.error")


def _event_row(event: Event) -> dict[str, Any]:
    return {"id": event.id, "status": event.status, "submitted_by": event.submitted_by}


def _child_row(row: RSVP | Comment) -> dict[str, Any]:
    payload = {"id": row.id, "event_id": row.event_id}
    if isinstance(row, RSVP):
        payload["status"] = row.status
    return payload


class EventStore:
    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()

    @property
    def configured(self) -> bool:
        return self._session_factory is not None

    @contextmanager
    def _session(self):
        if self._session_factory is None:
            raise StoreUnavailable("The event store is not configured.")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Event store error: %s", exc)
            raise StoreUnavailable() from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _read_list(self, label: str, query: Callable[[Session], Any]) -> list:
        if not self.configured:
            logger.info("Event store not configured; %s is empty", label)
            return []
        try:
            with self._session() as session:
                return list(query(session))
        except StoreUnavailable:
            logger.warning("Event store unavailable; returning no %s", label)
            return []

    # -------- events --------

    def get_approved(self) -> list[Event]:
        return self._read_list(
            "approved events", lambda s: crud.get_events_by_status(s, "approved")
        )

    def get_pending(self) -> list[Event]:
        return self._read_list(
            "pending events", lambda s: crud.get_events_by_status(s, "pending")
        )

    def get_by_user(self, user_id: str) -> list[Event]:
        return self._read_list(
            "user events", lambda s: crud.get_events_by_submitter(s, user_id)
        )

    def get(self, event_id: str) -> Event | None:
        with self._session() as session:
            return crud.get_event(session, event_id)

    def create(self, data: Mapping[str, Any]) -> Event:
        with self._session() as session:
            event = crud.create_event(session, data)
        self.feed.publish(EVENTS_TOPIC, {"eventType": "INSERT", "new": _event_row(event)})
        return event

    def update(self, event_id: str, changes: Mapping[str, Any]) -> Event | None:
        with self._session() as session:
            event = crud.get_event(session, event_id)
            if event is None:
                return None
            crud.update_event(session, event, changes)
        self.feed.publish(EVENTS_TOPIC, {"eventType": "UPDATE", "new": _event_row(event)})
        return event

    def update_status(self, event_id: str, status: str) -> Event | None:
        with self._session() as session:
            event = crud.get_event(session, event_id)
            if event is None:
                return None
            previous = _event_row(event)
            crud.set_event_status(session, event, status)
        self.feed.publish(
            EVENTS_TOPIC,
            {"eventType": "UPDATE", "new": _event_row(event), "old": previous},
        )
        return event

    def delete(self, event_id: str) -> bool:
        """Delete an event together with its RSVPs and comments."""
        with self._session() as session:
            event = crud.get_event(session, event_id)
            if event is None:
                return False
            row = _event_row(event)
            session.delete(event)
        self.feed.publish(EVENTS_TOPIC, {"eventType": "DELETE", "old": row})
        return True

    # -------- RSVPs --------

    def get_rsvps(self, event_id: str) -> list[RSVP]:
        return self._read_list("RSVPs", lambda s: crud.get_rsvps(s, event_id))

    def get_user_rsvp(self, event_id: str, user_id: str) -> RSVP | None:
        with self._session() as session:
            return crud.get_user_rsvp(session, event_id, user_id)

    def upsert_rsvp(
        self, event_id: str, user_id: str, email: str | None, status: str
    ) -> RSVP | None:
        with self._session() as session:
            existing = crud.get_user_rsvp(session, event_id, user_id)
            rsvp = crud.upsert_rsvp(
                session,
                event_id=event_id,
                user_id=user_id,
                user_email=email,
                status=status,
            )
        change_type = "UPDATE" if existing else "INSERT"
        self.feed.publish(
            rsvps_topic(event_id), {"eventType": change_type, "new": _child_row(rsvp)}
        )
        return rsvp

    def rsvp_counts(self, event_id: str) -> dict[str, int]:
        try:
            with self._session() as session:
                return crud.get_rsvp_counts(session, event_id)
        except StoreUnavailable:
            logger.warning("Event store unavailable; RSVP counts for %s are empty", event_id)
            return {status: 0 for status in RSVP_STATUSES}

    # -------- comments --------

    def get_comments(self, event_id: str) -> list[Comment]:
        return self._read_list("comments", lambda s: crud.get_comments(s, event_id))

    def create_comment(self, data: Mapping[str, Any]) -> Comment | None:
        with self._session() as session:
            if crud.get_event(session, data["event_id"]) is None:
                return None
            comment = crud.create_comment(
                session,
                event_id=data["event_id"],
                author_id=data["author_id"],
                author_name=data["author_name"],
                text=data["text"],
            )
        self.feed.publish(
            comments_topic(comment.event_id),
            {"eventType": "INSERT", "new": _child_row(comment)},
        )
        return comment

    def update_comment(self, comment_id: str, text: str) -> Comment | None:
        with self._session() as session:
            comment = session.get(Comment, comment_id)
            if comment is None:
                return None
            crud.update_comment(session, comment, text)
        self.feed.publish(
            comments_topic(comment.event_id),
            {"eventType": "UPDATE", "new": _child_row(comment)},
        )
        return comment

    def delete_comment(self, comment_id: str) -> bool:
        with self._session() as session:
            comment = session.get(Comment, comment_id)
            if comment is None:
                return False
            row = _child_row(comment)
            session.delete(comment)
        self.feed.publish(
            comments_topic(row["event_id"]), {"eventType": "DELETE", "old": row}
        )
        return True

    # -------- notifications --------

    def subscribe(self, topic: str, callback: Callable[[Change], None]) -> Subscription:
        return self.feed.subscribe(topic, callback)
