"""Bearer-token authentication.

Tokens are issued out-of-band (``civiccal issue-token``) after the identity
provider has vouched for the user. The admin claim is decided once, when the
token is issued, and stored on the token itself.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .config import settings
from .crud import get_or_create_user
from .models import SessionToken, User
from .sanitize import sanitize_optional
from .validation import validate_email

ANONYMOUS_ID = "anonymous"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of a lifecycle operation."""

    id: str
    email: str = ""
    name: str = ""
    is_admin: bool = False

    @property
    def display_name(self) -> str:
        return self.name or "Anonymous User"


def email_in_admin_domain(email: str, domain: str | None = None) -> bool:
    domain = (domain if domain is not None else settings.admin_email_domain).strip()
    if not domain:
        return False
    return email.strip().lower().endswith("@" + domain.lstrip("@").lower())


def actor_from_user(user: User, *, is_admin: bool) -> Actor:
    return Actor(id=user.id, email=user.email, name=user.name or "", is_admin=is_admin)


def issue_token(
    session: Session,
    *,
    email: str,
    name: str | None = None,
    image: str | None = None,
    is_admin: bool | None = None,
) -> str:
    """Create a bearer token for ``email``, registering the user if needed.

    When ``is_admin`` is not given the claim falls back to the configured
    admin e-mail domain, if any.
    """
    if not validate_email(email):
        raise ValueError("Invalid email address")
    claim = email_in_admin_domain(email) if is_admin is None else bool(is_admin)
    user = get_or_create_user(
        session,
        email=email,
        name=sanitize_optional(name),
        image=image,
        is_admin=claim,
    )
    if claim and not user.is_admin:
        user.is_admin = True
    token = secrets.token_urlsafe(32)
    session.add(SessionToken(token=token, user_id=user.id, is_admin=claim))
    session.flush()
    return token


def resolve_actor(session: Session, token: str | None) -> Actor | None:
    """Return the actor a bearer token stands for, or ``None``."""
    if not token:
        return None
    record = session.get(SessionToken, token)
    if record is None or record.user is None:
        return None
    return actor_from_user(record.user, is_admin=record.is_admin)


def revoke_token(session: Session, token: str) -> bool:
    record = session.get(SessionToken, token)
    if record is None:
        return False
    session.delete(record)
    session.flush()
    return True
