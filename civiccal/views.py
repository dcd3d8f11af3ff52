"""Read-side helpers: the live calendar view, filtering and admin stats."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import date

from .changes import EVENTS_TOPIC, Change, Deleted, Subscription
from .models import Event
from .utils import local_today

logger = logging.getLogger("uvicorn.error")

SORT_KEYS: dict[str, Callable[[Event], object]] = {
    "date": lambda e: (e.date, e.time),
    "title": lambda e: (e.title or "").lower(),
    "location": lambda e: (e.location or "").lower(),
}

POPULAR_LIMIT = 5
UPCOMING_LIMIT = 3


class CalendarView:
    """Approved and pending lists kept current from the store's change feed.

    Notifications only say *that* something changed (type, id, status), so
    every relevant change triggers a fresh read of both lists. The feed only
    carries this process's writes; ``ensure_fresh`` re-reads lists older than
    ``max_age`` seconds so writes from other processes show up too.
    """

    def __init__(
        self,
        lifecycle,
        *,
        max_age: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lifecycle = lifecycle
        self.max_age = max_age
        self._clock = clock
        self._refreshed_at: float | None = None
        self.approved: list[Event] = []
        self.pending: list[Event] = []
        self.last_change: Change | None = None
        self._lock = threading.Lock()
        self._subscription: Subscription | None = None

    def start(self) -> CalendarView:
        if self._subscription is None:
            self._subscription = self.lifecycle.store.subscribe(
                EVENTS_TOPIC, self.handle_change
            )
        self.refresh()
        return self

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def refresh(self) -> None:
        approved = self.lifecycle.list_approved()
        pending = self.lifecycle.pending_events()
        with self._lock:
            self.approved = approved
            self.pending = pending
            self._refreshed_at = self._clock()

    def ensure_fresh(self) -> CalendarView:
        with self._lock:
            refreshed_at = self._refreshed_at
        if refreshed_at is None or self._clock() - refreshed_at >= self.max_age:
            self.refresh()
        return self

    def handle_change(self, change: Change) -> None:
        self.last_change = change
        if isinstance(change, Deleted):
            logger.info("Event %s removed; refreshing calendar", change.entity_id)
        self.refresh()


def _matches(event: Event, needle: str) -> bool:
    haystacks = (event.title, event.description, event.location)
    return any(needle in (value or "").lower() for value in haystacks)


def filter_events(
    events: Iterable[Event],
    *,
    q: str | None = None,
    category: str | None = None,
    free: bool | None = None,
    accessible: bool | None = None,
    sort: str = "date",
) -> list[Event]:
    """Search, filter and sort events the way the public listing does."""
    needle = (q or "").strip().lower()
    selected = [
        event
        for event in events
        if (not needle or _matches(event, needle))
        and (not category or event.category == category)
        and (free is None or bool(event.is_free) == free)
        and (accessible is None or bool(event.is_accessible) == accessible)
    ]
    key = SORT_KEYS.get(sort)
    if key is None:
        raise ValueError(f"Unknown sort key {sort!r}")
    return sorted(selected, key=key)


def upcoming(
    events: Iterable[Event], *, today: date | None = None, limit: int = UPCOMING_LIMIT
) -> list[Event]:
    today = today or local_today()
    future = [event for event in events if event.date >= today]
    return sorted(future, key=SORT_KEYS["date"])[:limit]


def calendar_stats(
    events: Iterable[Event], rsvp_totals: Mapping[str, int]
) -> dict[str, object]:
    """Totals, most popular events and per-category counts.

    ``rsvp_totals`` maps event id to its number of RSVP rows.
    """
    events = list(events)
    popular = sorted(
        (event for event in events if rsvp_totals.get(event.id, 0) > 0),
        key=lambda event: rsvp_totals[event.id],
        reverse=True,
    )[:POPULAR_LIMIT]
    categories: dict[str, int] = {}
    for event in events:
        if event.category:
            categories[event.category] = categories.get(event.category, 0) + 1
    return {
        "total_events": len(events),
        "total_rsvps": sum(rsvp_totals.get(event.id, 0) for event in events),
        "popular_events": [
            {"id": event.id, "title": event.title, "rsvps": rsvp_totals[event.id]}
            for event in popular
        ],
        "category_counts": categories,
    }
