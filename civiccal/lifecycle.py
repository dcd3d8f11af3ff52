"""Event lifecycle: the moderation state machine and its input gate.

Every write goes through the same gate: rate limit, validate, sanitize,
persist, transition. Events start ``pending`` (``approved`` for admins) and
only admins move them between ``approved`` and ``rejected``; nothing ever
returns an event to ``pending``.

When the store is unavailable, submissions and status changes follow the
configured :class:`FallbackPolicy`. The resulting :class:`Outcome` always says
whether the value came from the store or from process-local state.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Generic, TypeVar

from .auth import ANONYMOUS_ID, Actor
from .changes import EVENTS_TOPIC
from .crud import EVENT_FIELDS, coerce_event_field, coerce_event_values
from .errors import (
    Forbidden,
    NotFound,
    RateLimitExceeded,
    StoreUnavailable,
    ValidationFailed,
)
from .models import Comment, Event, RSVP, RSVP_STATUSES
from .ratelimit import RateLimiter
from .sanitize import sanitize_input, sanitize_optional
from .store import EventStore
from .utils import format_event_date, format_event_time, local_today, new_id, utcnow
from .validation import MAX_FUTURE_YEARS, validate_event

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

STORE = "store"
LOCAL = "local"

TEXT_FIELDS = ("title", "description", "location")
OPTIONAL_FIELDS = ("link", "category")


class FallbackPolicy(str, Enum):
    FAIL = "fail"
    DEGRADE = "degrade"
    QUEUE = "queue"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a write that may have fallen back to local state."""

    value: T
    source: str = STORE
    error: StoreUnavailable | None = None

    @property
    def is_local(self) -> bool:
        return self.source == LOCAL


@dataclass
class LocalState:
    """Per-process mutable state handed to the lifecycle.

    ``events`` holds local-only copies created while the store was down.
    ``status_overrides`` holds moderation decisions on stored events that
    only this process knows about; ``queued`` and ``pending_status`` list what
    ``reconcile`` should replay. Request threads and scheduler jobs share one
    instance, so all access goes through ``lock``.
    """

    rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    events: dict[str, Event] = field(default_factory=dict)
    queued: list[str] = field(default_factory=list)
    pending_status: dict[str, str] = field(default_factory=dict)
    status_overrides: dict[str, str] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @classmethod
    def from_settings(cls, settings) -> LocalState:
        return cls(
            rate_limiter=RateLimiter(
                settings.rate_limit_max_attempts, settings.rate_limit_window_seconds
            )
        )


def _sort_by_date(events: Iterable[Event]) -> list[Event]:
    return sorted(events, key=lambda e: (e.date, e.time))


def _sort_newest_first(events: Iterable[Event]) -> list[Event]:
    return sorted(events, key=lambda e: e.created_at, reverse=True)


class EventLifecycle:
    def __init__(
        self,
        store: EventStore,
        state: LocalState | None = None,
        *,
        policy: FallbackPolicy | str = FallbackPolicy.DEGRADE,
        today: Callable[[], date] = local_today,
        max_future_years: int = MAX_FUTURE_YEARS,
    ) -> None:
        self.store = store
        self.state = state or LocalState()
        self.policy = FallbackPolicy(policy)
        self.today = today
        self.max_future_years = max_future_years

    # -------- helpers --------

    def _validate(self, candidate: Mapping[str, Any]) -> None:
        errors = validate_event(
            candidate, today=self.today(), max_future_years=self.max_future_years
        )
        if errors:
            raise ValidationFailed(errors)

    def _clean(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Keep editable fields only and sanitize the free-text ones."""
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if key not in EVENT_FIELDS:
                continue
            if key == "title":
                cleaned[key] = sanitize_input(value)
            elif key in TEXT_FIELDS:
                cleaned[key] = sanitize_optional(value)
            elif key in OPTIONAL_FIELDS:
                text = value.strip() if isinstance(value, str) else ""
                cleaned[key] = text or None
            elif key in {"is_free", "is_accessible"}:
                cleaned[key] = bool(value)
            else:
                cleaned[key] = value
        if "title" in cleaned and not cleaned["title"]:
            raise ValidationFailed(["Title is required"])
        return cleaned

    @staticmethod
    def _candidate(event: Event) -> dict[str, Any]:
        return {
            "title": event.title,
            "date": format_event_date(event.date),
            "time": format_event_time(event.time),
            "location": event.location,
            "description": event.description,
            "link": event.link,
            "category": event.category,
        }

    def _require_actor(self, actor: Actor | None, action: str) -> Actor:
        if actor is None:
            raise Forbidden(f"You must be signed in to {action}.")
        return actor

    def _require_admin(self, actor: Actor | None) -> Actor:
        if actor is None or not actor.is_admin:
            raise Forbidden("Only admins can do that.")
        return actor

    def _require_owner_or_admin(self, event: Event, actor: Actor | None) -> Actor:
        actor = self._require_actor(actor, "change events")
        if not actor.is_admin and actor.id != event.submitted_by:
            raise Forbidden("Only admins or the submitter can change this event.")
        return actor

    @staticmethod
    def can_view(event: Event, actor: Actor | None) -> bool:
        """Approved events are public; others only to admins and the submitter."""
        if event.status == "approved":
            return True
        return actor is not None and (actor.is_admin or actor.id == event.submitted_by)

    def _require_visible(self, event: Event, actor: Actor | None) -> None:
        if not self.can_view(event, actor):
            raise NotFound()

    def _local(self, event_id: str) -> Event | None:
        with self.state.lock:
            return self.state.events.get(event_id)

    def _local_events(self) -> list[Event]:
        with self.state.lock:
            return list(self.state.events.values())

    def _overrides(self) -> dict[str, str]:
        """Status decisions not yet visible in the store, queued ones last."""
        with self.state.lock:
            return {**self.state.status_overrides, **self.state.pending_status}

    def _forget_overrides(self, event_id: str) -> None:
        with self.state.lock:
            self.state.status_overrides.pop(event_id, None)
            self.state.pending_status.pop(event_id, None)

    @staticmethod
    def _apply(events: Iterable[Event], overrides: Mapping[str, str]) -> list[Event]:
        # Store reads hand back fresh detached rows, so this never reaches the database.
        events = list(events)
        for event in events:
            status = overrides.get(event.id)
            if status is not None:
                event.status = status
        return events

    def _store_events(self, status: str, rows: Iterable[Event]) -> list[Event]:
        """Stored events whose effective status is ``status``."""
        overrides = self._overrides()
        events = [e for e in self._apply(rows, overrides) if e.status == status]
        seen = {event.id for event in events}
        for event_id, override in overrides.items():
            if override != status or event_id in seen:
                continue
            try:
                event = self.store.get(event_id)
            except StoreUnavailable:
                continue
            if event is not None:
                events.extend(self._apply([event], overrides))
        return events

    def _find_event(self, event_id: str) -> Event:
        local = self._local(event_id)
        if local is not None:
            return local
        event = self.store.get(event_id)
        if event is None:
            raise NotFound()
        return self._apply([event], self._overrides())[0]

    def _notify_local(self, change_type: str, event_id: str, status: str) -> None:
        """Tell subscribers about a change that only exists in local state."""
        row = {"id": event_id, "status": status}
        key = "old" if change_type == "DELETE" else "new"
        self.store.feed.publish(EVENTS_TOPIC, {"eventType": change_type, key: row})

    def _local_event(self, data: Mapping[str, Any]) -> Event:
        now = utcnow()
        return Event(
            id=new_id(),
            **coerce_event_values(data),
            submitted_by=data.get("submitted_by"),
            status=data["status"],
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _replay_data(event: Event) -> dict[str, Any]:
        data = {key: getattr(event, key) for key in EVENT_FIELDS}
        data.update(
            id=event.id,
            submitted_by=event.submitted_by,
            status=event.status,
            created_at=event.created_at,
        )
        return data

    # -------- transitions --------

    def submit(self, candidate: Mapping[str, Any], actor: Actor | None) -> Outcome[Event]:
        """Gate and persist a new event submission."""
        identifier = actor.id if actor else ANONYMOUS_ID
        limiter = self.state.rate_limiter
        if not limiter.is_allowed(identifier):
            raise RateLimitExceeded(limiter.remaining_time(identifier))
        actor = self._require_actor(actor, "submit events")
        self._validate(candidate)

        data = self._clean(candidate)
        data["submitted_by"] = actor.id
        data["status"] = "approved" if actor.is_admin else "pending"
        try:
            event = self.store.create(data)
        except StoreUnavailable as exc:
            if self.policy is FallbackPolicy.FAIL:
                raise
            event = self._local_event(data)
            with self.state.lock:
                self.state.events[event.id] = event
                if self.policy is FallbackPolicy.QUEUE:
                    self.state.queued.append(event.id)
            logger.warning(
                "Event store unavailable; keeping submission %s locally (%s)",
                event.id,
                self.policy.value,
            )
            self._notify_local("INSERT", event.id, event.status)
            return Outcome(event, LOCAL, exc)
        logger.info("Event %s submitted by %s as %s", event.id, actor.id, event.status)
        return Outcome(event)

    def approve(self, event_id: str, actor: Actor | None) -> Outcome[Event | None]:
        return self._set_status(event_id, "approved", actor)

    def reject(self, event_id: str, actor: Actor | None) -> Outcome[Event | None]:
        return self._set_status(event_id, "rejected", actor)

    def _set_status(
        self, event_id: str, status: str, actor: Actor | None
    ) -> Outcome[Event | None]:
        actor = self._require_admin(actor)
        with self.state.lock:
            local = self.state.events.get(event_id)
            if local is not None:
                local.status = status
                local.updated_at = utcnow()
        if local is not None:
            self._notify_local("UPDATE", event_id, status)
            return Outcome(local, LOCAL)
        try:
            event = self.store.update_status(event_id, status)
        except StoreUnavailable as exc:
            if self.policy is FallbackPolicy.FAIL:
                raise
            with self.state.lock:
                if self.policy is FallbackPolicy.QUEUE:
                    self.state.pending_status[event_id] = status
                else:
                    self.state.status_overrides[event_id] = status
            logger.warning(
                "Event store unavailable; keeping %s for event %s locally (%s)",
                status,
                event_id,
                self.policy.value,
            )
            self._notify_local("UPDATE", event_id, status)
            return Outcome(None, LOCAL, exc)
        if event is None:
            raise NotFound()
        self._forget_overrides(event_id)
        logger.info("Event %s marked %s by %s", event_id, status, actor.id)
        return Outcome(event)

    def edit(self, event_id: str, updates: Mapping[str, Any], actor: Actor | None) -> Event:
        """Apply field updates after re-validating the merged event."""
        event = self._find_event(event_id)
        self._require_owner_or_admin(event, actor)
        changes = {key: value for key, value in updates.items() if key in EVENT_FIELDS}
        self._validate({**self._candidate(event), **changes})
        cleaned = self._clean(changes)

        with self.state.lock:
            is_local = event_id in self.state.events
            if is_local:
                for key, value in cleaned.items():
                    setattr(event, key, coerce_event_field(key, value))
                event.updated_at = utcnow()
        if is_local:
            self._notify_local("UPDATE", event_id, event.status)
            return event
        updated = self.store.update(event_id, cleaned)
        if updated is None:
            raise NotFound()
        return self._apply([updated], self._overrides())[0]

    def delete(self, event_id: str, actor: Actor | None) -> bool:
        event = self._find_event(event_id)
        self._require_owner_or_admin(event, actor)
        with self.state.lock:
            local = self.state.events.pop(event_id, None)
            if local is not None and event_id in self.state.queued:
                self.state.queued.remove(event_id)
        if local is not None:
            self._notify_local("DELETE", event_id, local.status)
            return True
        if not self.store.delete(event_id):
            raise NotFound()
        self._forget_overrides(event_id)
        logger.info("Event %s deleted by %s", event_id, actor.id if actor else None)
        return True

    def toggle_rsvp(
        self, event_id: str, actor: Actor | None, status: str
    ) -> dict[str, int]:
        """Record the actor's RSVP and return the event's RSVP counts."""
        actor = self._require_actor(actor, "RSVP")
        normalized = (status or "").strip().lower()
        if normalized not in RSVP_STATUSES:
            raise ValidationFailed(["Invalid RSVP status"])
        event = self._find_event(event_id)
        if self._local(event_id) is not None:
            raise StoreUnavailable("RSVPs open once the event reaches the event store.")
        self._require_visible(event, actor)
        self.store.upsert_rsvp(event_id, actor.id, actor.email, normalized)
        return self.store.rsvp_counts(event_id)

    def add_comment(self, event_id: str, actor: Actor | None, text: str) -> Comment:
        actor = self._require_actor(actor, "comment")
        if not isinstance(text, str) or not text.strip():
            raise ValidationFailed(["Comment text is required"])
        cleaned = sanitize_input(text)
        if not cleaned:
            raise ValidationFailed(["Comment text is required"])
        event = self._find_event(event_id)
        if self._local(event_id) is not None:
            raise StoreUnavailable("Comments open once the event reaches the event store.")
        self._require_visible(event, actor)
        comment = self.store.create_comment(
            {
                "event_id": event_id,
                "author_id": actor.id,
                "author_name": sanitize_input(actor.display_name) or "Anonymous User",
                "text": cleaned,
            }
        )
        if comment is None:
            raise NotFound()
        return comment

    def import_events(
        self, records: Iterable[Any], actor: Actor | None
    ) -> dict[str, int]:
        """Add approved system events from an external feed, skipping known ids."""
        self._require_admin(actor)
        stats = {"imported": 0, "skipped": 0}
        for record in records:
            if not isinstance(record, Mapping):
                logger.warning("Skipping feed entry that is not an object: %r", record)
                stats["skipped"] += 1
                continue
            record_id = record.get("id")
            if record_id and (
                self._local(record_id) is not None or self.store.get(record_id) is not None
            ):
                stats["skipped"] += 1
                continue
            errors = validate_event(
                record, today=self.today(), max_future_years=self.max_future_years
            )
            if errors:
                logger.warning(
                    "Skipping feed event %s: %s", record_id or record.get("title"), errors
                )
                stats["skipped"] += 1
                continue
            data = self._clean(record)
            data.update(id=record_id, submitted_by=None, status="approved")
            self.store.create(data)
            stats["imported"] += 1
        return stats

    def reconcile(self) -> int:
        """Replay queued local writes into the store; return how many landed.

        Each local copy leaves local state before its store write, so change
        subscribers never see the event twice.
        """
        applied = 0
        with self.state.lock:
            try:
                for event_id in list(self.state.queued):
                    event = self.state.events.pop(event_id, None)
                    if event is not None:
                        try:
                            self.store.create(self._replay_data(event))
                        except StoreUnavailable:
                            self.state.events[event_id] = event
                            raise
                        applied += 1
                    self.state.queued.remove(event_id)
                for event_id, status in list(self.state.pending_status.items()):
                    self.store.update_status(event_id, status)
                    del self.state.pending_status[event_id]
                    self.state.status_overrides.pop(event_id, None)
                    applied += 1
            except StoreUnavailable:
                logger.warning(
                    "Event store still unavailable; %d writes remain queued",
                    len(self.state.queued) + len(self.state.pending_status),
                )
        return applied

    # -------- read views --------

    def list_approved(self) -> list[Event]:
        stored = self._store_events("approved", self.store.get_approved())
        local = [e for e in self._local_events() if e.status == "approved"]
        return _sort_by_date([*stored, *local])

    def pending_events(self) -> list[Event]:
        stored = self._store_events("pending", self.store.get_pending())
        local = [e for e in self._local_events() if e.status == "pending"]
        return _sort_newest_first([*stored, *local])

    def list_pending(self, actor: Actor | None) -> list[Event]:
        self._require_admin(actor)
        return self.pending_events()

    def list_mine(self, actor: Actor | None) -> list[Event]:
        actor = self._require_actor(actor, "see your events")
        stored = self._apply(self.store.get_by_user(actor.id), self._overrides())
        local = [e for e in self._local_events() if e.submitted_by == actor.id]
        return _sort_newest_first([*stored, *local])

    def get_event(self, event_id: str) -> Event:
        return self._find_event(event_id)

    def rsvp_counts(self, event_id: str) -> dict[str, int]:
        if self._local(event_id) is not None:
            return {status: 0 for status in RSVP_STATUSES}
        return self.store.rsvp_counts(event_id)

    def user_rsvp(self, event_id: str, actor: Actor | None) -> RSVP | None:
        if actor is None or self._local(event_id) is not None:
            return None
        return self.store.get_user_rsvp(event_id, actor.id)

    def comments(self, event_id: str) -> list[Comment]:
        if self._local(event_id) is not None:
            return []
        return self.store.get_comments(event_id)
