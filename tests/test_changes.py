from __future__ import annotations

import pytest

from civiccal.changes import (
    EVENTS_TOPIC,
    ChangeFeed,
    Deleted,
    Inserted,
    Updated,
    comments_topic,
    parse_change,
)


def test_parse_change_reads_type_id_and_status():
    change = parse_change(
        "events", {"eventType": "UPDATE", "new": {"id": "e1", "status": "approved"}}
    )
    assert change == Updated(table="events", entity_id="e1", status="approved")


def test_parse_delete_uses_old_row():
    change = parse_change("events", {"eventType": "DELETE", "old": {"id": "e1"}})
    assert isinstance(change, Deleted)
    assert change.entity_id == "e1"
    assert change.status is None


@pytest.mark.parametrize(
    "payload",
    [
        None,
        "INSERT",
        {"eventType": "TRUNCATE", "new": {"id": "e1"}},
        {"eventType": "INSERT", "new": {"title": "no id"}},
        {"eventType": "INSERT"},
    ],
)
def test_parse_change_rejects_malformed_payloads(payload):
    with pytest.raises(ValueError):
        parse_change("events", payload)


def test_publish_delivers_typed_changes_to_topic_subscribers():
    feed = ChangeFeed()
    received = []
    feed.subscribe(EVENTS_TOPIC, received.append)
    feed.subscribe(comments_topic("e1"), lambda change: pytest.fail("wrong topic"))

    feed.publish(EVENTS_TOPIC, {"eventType": "INSERT", "new": {"id": "e1", "status": "pending"}})

    assert received == [Inserted(table="events", entity_id="e1", status="pending")]


def test_comment_topic_changes_carry_table_name():
    feed = ChangeFeed()
    received = []
    feed.subscribe(comments_topic("e1"), received.append)
    feed.publish(comments_topic("e1"), {"eventType": "INSERT", "new": {"id": "c1"}})
    assert received[0].table == "comments"


def test_malformed_payload_is_dropped():
    feed = ChangeFeed()
    received = []
    feed.subscribe(EVENTS_TOPIC, received.append)
    assert feed.publish(EVENTS_TOPIC, {"eventType": "INSERT", "new": {}}) is None
    assert received == []


def test_failing_subscriber_does_not_block_others():
    feed = ChangeFeed()
    received = []

    def broken(change):
        raise RuntimeError("boom")

    feed.subscribe(EVENTS_TOPIC, broken)
    feed.subscribe(EVENTS_TOPIC, received.append)
    feed.publish(EVENTS_TOPIC, {"eventType": "DELETE", "old": {"id": "e9"}})
    assert received == [Deleted(table="events", entity_id="e9")]


def test_unsubscribe_stops_delivery():
    feed = ChangeFeed()
    received = []
    subscription = feed.subscribe(EVENTS_TOPIC, received.append)
    assert feed.subscriber_count(EVENTS_TOPIC) == 1
    subscription.unsubscribe()
    subscription.unsubscribe()
    feed.publish(EVENTS_TOPIC, {"eventType": "INSERT", "new": {"id": "e1"}})
    assert received == []
    assert feed.subscriber_count(EVENTS_TOPIC) == 0
