"""Typed change notifications published by the event store."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger("uvicorn.error")

EVENTS_TOPIC = "events"


def comments_topic(event_id: str) -> str:
    return f"comments:{event_id}"


def rsvps_topic(event_id: str) -> str:
    return f"rsvps:{event_id}"


@dataclass(frozen=True)
class Inserted:
    table: str
    entity_id: str
    status: str | None = None


@dataclass(frozen=True)
class Updated:
    table: str
    entity_id: str
    status: str | None = None


@dataclass(frozen=True)
class Deleted:
    table: str
    entity_id: str
    status: str | None = None


Change = Union[Inserted, Updated, Deleted]

_CHANGE_TYPES: dict[str, type] = {
    "INSERT": Inserted,
    "UPDATE": Updated,
    "DELETE": Deleted,
}


def parse_change(table: str, payload: Any) -> Change:
    """Validate a raw ``{"eventType", "new", "old"}`` payload into a change.

    Only the change type, the row id and its status are read; the rest of the
    row is ignored.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Change payload must be a mapping")
    event_type = str(payload.get("eventType") or "").upper()
    change_cls = _CHANGE_TYPES.get(event_type)
    if change_cls is None:
        raise ValueError(f"Unknown change type {payload.get('eventType')!r}")
    row = payload.get("old") if event_type == "DELETE" else payload.get("new")
    if not isinstance(row, Mapping):
        row = payload.get("new") or payload.get("old")
    if not isinstance(row, Mapping) or not row.get("id"):
        raise ValueError("Change payload is missing the affected row id")
    status = row.get("status")
    return change_cls(
        table=table,
        entity_id=str(row["id"]),
        status=str(status) if status is not None else None,
    )


class Subscription:
    def __init__(self, feed: ChangeFeed, topic: str, callback: Callable[[Change], None]):
        self._feed = feed
        self.topic = topic
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._feed._remove(self)
            self.active = False


class ChangeFeed:
    """In-process fan-out of store changes to subscribers by topic."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str, callback: Callable[[Change], None]) -> Subscription:
        subscription = Subscription(self, topic, callback)
        self._subscribers[topic].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        listeners = self._subscribers.get(subscription.topic, [])
        if subscription in listeners:
            listeners.remove(subscription)

    def publish(self, topic: str, payload: Mapping[str, Any]) -> Change | None:
        """Validate ``payload`` and deliver it to the topic's subscribers."""
        table = topic.split(":", 1)[0]
        try:
            change = parse_change(table, payload)
        except ValueError as exc:
            logger.warning("Dropping malformed %s change: %s", topic, exc)
            return None
        for subscription in list(self._subscribers.get(topic, [])):
            try:
                subscription.callback(change)
            except Exception:
                logger.exception("Change subscriber for %s failed", topic)
        return change

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))
