"""SQLite engine and session helpers.

The same database file holds two things: accounts (users and their bearer
tokens) and, when ``store_enabled`` is on, the event store tables. Accounts are
always needed to resolve callers, so they can be created on their own.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings
from .models import Base, SessionToken, User

ACCOUNT_TABLES = (User.__table__, SessionToken.__table__)


def sqlite_url(path: Path | str) -> str:
    return f"sqlite:///{path}"


def build_engine(url: str) -> Engine:
    # Request threads and the scheduler share connections from one pool.
    return create_engine(url, connect_args={"check_same_thread": False}, future=True)


def build_session_factory(bind: Engine) -> scoped_session:
    return scoped_session(
        sessionmaker(
            bind=bind,
            autoflush=False,
            future=True,
            expire_on_commit=False,
        )
    )


DATABASE_URL = sqlite_url(settings.database_path)
engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


def ensure_account_tables() -> None:
    """Create the users and token tables if they are missing."""
    Base.metadata.create_all(bind=engine, tables=list(ACCOUNT_TABLES))


@contextmanager
def get_session():
    """Yield a session that commits on success and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
