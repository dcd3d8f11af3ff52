"""Development helpers for populating fake users, events, RSVPs and comments."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_comment, create_event, get_or_create_user, upsert_rsvp
from .database import get_session
from .models import CATEGORIES, RSVP_STATUSES, Event, User
from .storage import init_db
from .utils import local_today

_event_types = [
    "Farmers Market",
    "Town Hall",
    "Workshop",
    "Park Cleanup",
    "Concert",
    "Library Talk",
    "Open House",
    "Youth League",
]
_event_statuses = ["approved", "approved", "approved", "pending", "rejected"]


def seed_fake_data(
    *,
    events: int = 12,
    max_rsvps_per_event: int = 5,
    max_comments_per_event: int = 3,
    user_count: int = 8,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic community events."""
    if events < 0:
        raise ValueError("events must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")
    if max_comments_per_event < 0:
        raise ValueError("max_comments_per_event must be >= 0")
    if user_count < 1:
        raise ValueError("user_count must be >= 1")

    init_db()
    fake = Faker()
    stats = {"users": 0, "events": 0, "rsvps": 0, "comments": 0}

    with get_session() as session:
        users = [_create_user(session, fake) for _ in range(user_count)]
        stats["users"] = len(users)
        for _ in range(events):
            event = _create_event(session, fake, submitter=random.choice(users))
            stats["events"] += 1
            stats["rsvps"] += _create_rsvps(session, event, users, max_rsvps_per_event)
            stats["comments"] += _create_comments(
                session, fake, event, users, max_comments_per_event
            )

    return stats


def _create_user(session: Session, fake: Faker) -> User:
    return get_or_create_user(session, email=fake.unique.email(), name=fake.name())


def _event_title(fake: Faker) -> str:
    return f"{fake.city()} {random.choice(_event_types)}"[:100]


def _create_event(session: Session, fake: Faker, *, submitter: User) -> Event:
    day = local_today() + timedelta(days=random.randint(0, 90))
    start = f"{random.randint(8, 20):02d}:{random.choice(['00', '15', '30', '45'])}"
    return create_event(
        session,
        {
            "title": _event_title(fake),
            "date": day.isoformat(),
            "time": start,
            "location": fake.address().replace("\n", ", ")[:200],
            "description": fake.paragraph(nb_sentences=4)[:1000],
            "link": fake.url() if random.random() < 0.4 else None,
            "category": random.choice(CATEGORIES),
            "is_free": random.random() < 0.6,
            "is_accessible": random.random() < 0.5,
            "submitted_by": submitter.id,
            "status": random.choice(_event_statuses),
        },
    )


def _create_rsvps(
    session: Session, event: Event, users: list[User], max_rsvps: int
) -> int:
    if max_rsvps <= 0 or event.status != "approved":
        return 0
    attendees = random.sample(users, k=min(len(users), random.randint(0, max_rsvps)))
    for user in attendees:
        upsert_rsvp(
            session,
            event_id=event.id,
            user_id=user.id,
            user_email=user.email,
            status=random.choice(RSVP_STATUSES),
        )
    return len(attendees)


def _create_comments(
    session: Session,
    fake: Faker,
    event: Event,
    users: list[User],
    max_comments: int,
) -> int:
    if max_comments <= 0 or event.status != "approved":
        return 0
    total = random.randint(0, max_comments)
    for _ in range(total):
        author = random.choice(users)
        create_comment(
            session,
            event_id=event.id,
            author_id=author.id,
            author_name=author.name or "Anonymous User",
            text=fake.sentence(),
        )
    return total
