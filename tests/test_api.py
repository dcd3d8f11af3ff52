from __future__ import annotations

import dataclasses
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import inspect

from civiccal import api, database
from civiccal.auth import issue_token
from civiccal.errors import StoreUnavailable
from civiccal.models import Base
from civiccal.store import EventStore


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda *args: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


@pytest.fixture()
def offline_client(monkeypatch):
    """Client whose event store is disabled and whose writes are queued."""

    monkeypatch.setattr(
        api,
        "settings",
        dataclasses.replace(api.settings, store_enabled=False, fallback_policy="queue"),
    )
    monkeypatch.setattr(api, "start_scheduler", lambda *args: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _token(email: str, *, admin: bool = False, name: str | None = None) -> str:
    session = database.SessionLocal()
    try:
        token = issue_token(session, email=email, name=name, is_admin=admin)
        session.commit()
    finally:
        session.close()
    return token


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def resident_headers():
    return _auth(_token("sam@example.com", name="Sam"))


@pytest.fixture()
def admin_headers():
    return _auth(_token("clerk@city.example", admin=True, name="Clerk"))


def _day(offset: int) -> str:
    return (date.today() + timedelta(days=offset)).isoformat()


def _payload(**overrides):
    payload = {
        "title": "Farmers Market",
        "date": _day(10),
        "time": "09:30",
        "location": "Civic Plaza",
        "description": "Fresh produce",
        "category": "Community",
        "is_free": True,
    }
    payload.update(overrides)
    return payload


def _submit(client, headers, **overrides) -> dict:
    response = client.post("/api/v1/events", json=_payload(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["event"]


def test_resident_submission_waits_for_moderation(client, resident_headers, admin_headers):
    event = _submit(client, resident_headers)
    assert event["status"] == "pending"
    assert event["time"] == "09:30"

    assert client.get("/api/v1/events").json()["events"] == []
    pending = client.get("/api/v1/events/pending", headers=admin_headers).json()
    assert [e["id"] for e in pending["events"]] == [event["id"]]

    response = client.post(f"/api/v1/events/{event['id']}/approve", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["event"]["status"] == "approved"
    assert response.json()["source"] == "store"

    listed = client.get("/api/v1/events").json()["events"]
    assert [e["id"] for e in listed] == [event["id"]]


def test_anonymous_submission_is_forbidden(client):
    response = client.post("/api/v1/events", json=_payload())
    assert response.status_code == 403


def test_validation_errors_are_listed(client, resident_headers):
    response = client.post(
        "/api/v1/events",
        json={"title": "", "date": _day(-1), "time": "7pm"},
        headers=resident_headers,
    )
    assert response.status_code == 422
    assert response.json()["errors"] == [
        "Title is required",
        "Event date cannot be in the past",
        "Time must be in HH:MM format (24-hour)",
    ]


def test_rate_limit_returns_retry_after(client, resident_headers):
    for _ in range(5):
        _submit(client, resident_headers)
    response = client.post("/api/v1/events", json=_payload(), headers=resident_headers)
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0
    assert "Please wait" in response.json()["detail"]


def test_pending_and_admin_routes_require_admin(client, resident_headers):
    assert client.get("/api/v1/events/pending", headers=resident_headers).status_code == 403
    assert client.get("/api/v1/events/pending").status_code == 403
    assert client.get("/api/v1/admin/stats", headers=resident_headers).status_code == 403


def test_pending_event_hidden_from_strangers(client, resident_headers, admin_headers):
    event = _submit(client, resident_headers)
    assert client.get(f"/api/v1/events/{event['id']}").status_code == 404
    assert client.get(f"/api/v1/events/{event['id']}", headers=resident_headers).status_code == 200
    assert client.get(f"/api/v1/events/{event['id']}", headers=admin_headers).status_code == 200


def test_unknown_event_is_404(client):
    response = client.get("/api/v1/events/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"] == "Event not found."


def test_edit_and_delete(client, resident_headers):
    event = _submit(client, resident_headers)
    response = client.patch(
        f"/api/v1/events/{event['id']}",
        json={"title": "Winter Market", "is_free": False},
        headers=resident_headers,
    )
    assert response.status_code == 200
    assert response.json()["event"]["title"] == "Winter Market"
    assert response.json()["event"]["is_free"] is False

    stranger = _auth(_token("alex@example.com"))
    assert (
        client.delete(f"/api/v1/events/{event['id']}", headers=stranger).status_code
        == 403
    )
    assert (
        client.delete(f"/api/v1/events/{event['id']}", headers=resident_headers).status_code
        == 204
    )
    assert client.get(f"/api/v1/events/{event['id']}", headers=resident_headers).status_code == 404


def test_rsvp_and_comments_flow(client, admin_headers, resident_headers):
    event = _submit(client, admin_headers)
    url = f"/api/v1/events/{event['id']}"

    response = client.put(f"{url}/rsvp", json={"status": "attending"}, headers=resident_headers)
    assert response.status_code == 200
    response = client.put(f"{url}/rsvp", json={"status": "maybe"}, headers=resident_headers)
    body = response.json()
    assert body["rsvp_counts"] == {"attending": 0, "not_attending": 0, "maybe": 1}
    assert body["my_rsvp"]["status"] == "maybe"

    assert client.put(f"{url}/rsvp", json={"status": "attending"}).status_code == 403
    assert (
        client.put(f"{url}/rsvp", json={"status": "nope"}, headers=resident_headers).status_code
        == 422
    )

    response = client.post(
        f"{url}/comments",
        json={"text": "<script>x</script>Can't wait"},
        headers=resident_headers,
    )
    assert response.status_code == 201
    assert response.json()["comment"]["text"] == "Can't wait"
    assert response.json()["comment"]["author_name"] == "Sam"
    assert client.post(f"{url}/comments", json={"text": "  "}, headers=resident_headers).status_code == 422

    detail = client.get(url, headers=resident_headers).json()
    assert detail["rsvp_counts"]["maybe"] == 1
    assert detail["my_rsvp"]["status"] == "maybe"
    assert [c["text"] for c in detail["comments"]] == ["Can't wait"]
    assert client.get(f"{url}/comments").json()["comments"][0]["author_name"] == "Sam"


def test_filters_upcoming_and_mine(client, admin_headers, resident_headers):
    _submit(client, admin_headers, title="Jazz Night", date=_day(5), category="Arts", is_free=False)
    _submit(client, admin_headers, title="Park Cleanup", date=_day(2), category="Community")
    mine = _submit(client, resident_headers, title="Bake Sale")

    events = client.get("/api/v1/events", params={"free": "true"}).json()["events"]
    assert [e["title"] for e in events] == ["Park Cleanup"]
    events = client.get("/api/v1/events", params={"q": "jazz"}).json()["events"]
    assert [e["title"] for e in events] == ["Jazz Night"]
    events = client.get("/api/v1/events", params={"sort": "title"}).json()["events"]
    assert [e["title"] for e in events] == ["Jazz Night", "Park Cleanup"]
    assert client.get("/api/v1/events", params={"sort": "nope"}).status_code == 422

    upcoming = client.get("/api/v1/events/upcoming").json()["events"]
    assert [e["title"] for e in upcoming] == ["Park Cleanup", "Jazz Night"]

    response = client.get("/api/v1/events/mine", headers=resident_headers)
    assert [e["id"] for e in response.json()["events"]] == [mine["id"]]
    assert client.get("/api/v1/events/mine").status_code == 403


def test_calendar_export(client, admin_headers):
    event = _submit(client, admin_headers, title="Concert, Outdoors")

    response = client.get("/api/v1/events.ics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/calendar")
    assert "SUMMARY:Concert\\, Outdoors" in response.text
    assert "\r\n" in response.text

    response = client.get(f"/api/v1/events/{event['id']}/event.ics")
    assert response.status_code == 200
    assert f'filename="event_{event["id"]}.ics"' in response.headers["content-disposition"]
    assert f"UID:{event['id']}@" in response.text


def test_admin_stats_and_import(client, admin_headers, resident_headers):
    event = _submit(client, admin_headers)
    _submit(client, resident_headers, category="Arts")
    client.put(
        f"/api/v1/events/{event['id']}/rsvp",
        json={"status": "attending"},
        headers=resident_headers,
    )

    stats = client.get("/api/v1/admin/stats", headers=admin_headers).json()
    assert stats["total_events"] == 2
    assert stats["pending_events"] == 1
    assert stats["total_rsvps"] == 1
    assert stats["category_counts"] == {"Community": 1, "Arts": 1}
    assert stats["popular_events"][0]["id"] == event["id"]

    feed = {
        "events": [
            {"id": "feed-1", "title": "Council Meeting", "date": _day(3), "time": "19:00"},
            {"id": "feed-2", "title": "Old", "date": _day(-3), "time": "19:00"},
        ]
    }
    response = client.post("/api/v1/admin/import", json=feed, headers=admin_headers)
    assert response.json() == {"imported": 1, "skipped": 1}
    assert client.get("/api/v1/events/feed-1").json()["event"]["submitted_by"] is None
    assert client.post("/api/v1/admin/import", json=feed, headers=resident_headers).status_code == 403


def test_store_outage_keeps_submissions_locally(offline_client, resident_headers, admin_headers):
    response = offline_client.post("/api/v1/events", json=_payload(), headers=resident_headers)
    assert response.status_code == 202
    body = response.json()
    assert body["source"] == "local"
    assert body["warning"]
    event_id = body["event"]["id"]

    pending = offline_client.get("/api/v1/events/pending", headers=admin_headers).json()
    assert [e["id"] for e in pending["events"]] == [event_id]

    response = offline_client.post(f"/api/v1/events/{event_id}/approve", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["source"] == "local"
    assert [e["id"] for e in offline_client.get("/api/v1/events").json()["events"]] == [event_id]

    response = offline_client.put(
        f"/api/v1/events/{event_id}/rsvp", json={"status": "attending"}, headers=resident_headers
    )
    assert response.status_code == 503
    assert offline_client.get("/api/v1/events/does-not-exist").status_code == 503


def _configured_client(monkeypatch, **overrides) -> TestClient:
    monkeypatch.setattr(api, "settings", dataclasses.replace(api.settings, **overrides))
    monkeypatch.setattr(api, "start_scheduler", lambda *args: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    return TestClient(api.app)


def test_store_disabled_on_empty_database(monkeypatch):
    Base.metadata.drop_all(bind=database.engine)

    overrides = {"store_enabled": False, "fallback_policy": "degrade"}
    with _configured_client(monkeypatch, **overrides) as offline:
        headers = _auth(_token("sam@example.com", name="Sam"))
        response = offline.post("/api/v1/events", json=_payload(), headers=headers)

    assert response.status_code == 202
    assert response.json()["source"] == "local"
    assert response.json()["event"]["submitted_by"] is not None
    assert not inspect(database.engine).has_table("events")


def test_listing_picks_up_writes_from_other_processes(monkeypatch, admin_headers):
    with _configured_client(monkeypatch, view_max_age_seconds=0) as live:
        assert live.get("/api/v1/events").json()["events"] == []
        elsewhere = EventStore(database.SessionLocal)
        created = elsewhere.create(
            {"title": "Imported Parade", "date": _day(4), "time": "11:00", "status": "approved"}
        )
        listed = live.get("/api/v1/events").json()["events"]
        assert [e["id"] for e in listed] == [created.id]
        upcoming = live.get("/api/v1/events/upcoming").json()["events"]
        assert [e["id"] for e in upcoming] == [created.id]


def test_rsvp_and_comment_on_hidden_event_is_404(client, resident_headers, admin_headers):
    event = _submit(client, resident_headers)
    url = f"/api/v1/events/{event['id']}"
    stranger = _auth(_token("alex@example.com"))

    rsvp = client.put(f"{url}/rsvp", json={"status": "attending"}, headers=stranger)
    assert rsvp.status_code == 404
    comment = client.post(f"{url}/comments", json={"text": "Hi"}, headers=stranger)
    assert comment.status_code == 404
    own = client.put(f"{url}/rsvp", json={"status": "maybe"}, headers=resident_headers)
    assert own.status_code == 200
    assert client.post(f"{url}/comments", json={"text": "Ok"}, headers=admin_headers).status_code == 201


def test_degraded_status_change_is_kept_locally(monkeypatch, resident_headers, admin_headers):
    def unavailable(self, event_id, status):
        raise StoreUnavailable()

    with _configured_client(monkeypatch, fallback_policy="degrade") as live:
        event = _submit(live, resident_headers)
        monkeypatch.setattr(EventStore, "update_status", unavailable)

        response = live.post(f"/api/v1/events/{event['id']}/approve", headers=admin_headers)

        assert response.status_code == 202
        body = response.json()
        assert body["source"] == "local"
        assert body["queued"] is False
        assert body["status"] == "approved"
        listed = live.get("/api/v1/events").json()["events"]
        assert [e["id"] for e in listed] == [event["id"]]
        assert live.get(f"/api/v1/events/{event['id']}").json()["event"]["status"] == "approved"
