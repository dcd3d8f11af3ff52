"""SQLAlchemy models for CivicCal."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import new_id, utcnow

Base = declarative_base()

EVENT_STATUSES = ("pending", "approved", "rejected")
RSVP_STATUSES = ("attending", "not_attending", "maybe")
CATEGORIES = ("Community", "Arts", "Sports", "Education", "Business", "Government")


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(254), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    image = Column(String(1024), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    tokens = relationship(
        "SessionToken", back_populates="user", cascade="all, delete-orphan"
    )


class SessionToken(Base):
    """Bearer token issued to a user; ``is_admin`` is fixed at issue time."""

    __tablename__ = "session_tokens"

    token = Column(String(128), primary_key=True)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    user = relationship("User", back_populates="tokens")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(100), nullable=False)
    date = Column(Date, nullable=False)
    time = Column(Time, nullable=False)
    location = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    link = Column(String(2048), nullable=True)
    category = Column(String(32), nullable=True)
    is_free = Column(Boolean, default=False, nullable=False)
    is_accessible = Column(Boolean, default=False, nullable=False)
    submitted_by = Column(String(255), nullable=True)
    status = Column(String(16), default="pending", nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    rsvps = relationship("RSVP", back_populates="event", cascade="all, delete-orphan")
    comments = relationship(
        "Comment",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Comment.created_at",
    )


class RSVP(Base):
    __tablename__ = "rsvps"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_rsvp_event_user"),)

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(255), nullable=False)
    user_email = Column(String(254), nullable=True)
    status = Column(String(16), nullable=False, default="attending")
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    author_id = Column(String(255), nullable=False)
    author_name = Column(String(255), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="comments")
