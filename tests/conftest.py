"""Shared pytest fixtures for CivicCal."""

from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from civiccal import api, database, storage
from civiccal.auth import Actor
from civiccal.lifecycle import EventLifecycle, LocalState
from civiccal.models import Base
from civiccal.ratelimit import RateLimiter
from civiccal.store import EventStore

TODAY = date(2030, 3, 15)


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store():
    return EventStore(database.SessionLocal)


@pytest.fixture()
def offline_store():
    """A store with no backing database."""
    return EventStore(None)


@pytest.fixture()
def make_lifecycle(clock):
    def factory(store, *, policy="degrade", max_attempts=5):
        state = LocalState(rate_limiter=RateLimiter(max_attempts, 60.0, clock=clock))
        return EventLifecycle(store, state, policy=policy, today=lambda: TODAY)

    return factory


@pytest.fixture()
def lifecycle(store, make_lifecycle):
    return make_lifecycle(store)


@pytest.fixture()
def admin():
    return Actor(id="admin-1", email="clerk@city.example", name="City Clerk", is_admin=True)


@pytest.fixture()
def resident():
    return Actor(id="user-1", email="sam@example.com", name="Sam Rivera")


@pytest.fixture()
def neighbour():
    return Actor(id="user-2", email="alex@example.com", name="")


def event_form(**overrides):
    form = {
        "title": "Farmers Market",
        "date": "2030-04-01",
        "time": "09:30",
        "location": "Civic Plaza",
        "description": "Local produce and crafts.",
        "link": "https://city.example/market",
        "category": "Community",
        "is_free": True,
        "is_accessible": True,
    }
    form.update(overrides)
    return form
