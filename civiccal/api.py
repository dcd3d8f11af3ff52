"""FastAPI application for CivicCal."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .auth import Actor, resolve_actor
from .config import settings
from .database import SessionLocal, ensure_account_tables
from .errors import CalendarError, NotFound, RateLimitExceeded, ValidationFailed
from .ics import generate_calendar, generate_event_ics
from .lifecycle import EventLifecycle, FallbackPolicy, LocalState, Outcome
from .models import RSVP, Comment, Event
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .store import EventStore
from .utils import format_event_date, format_event_time
from .views import CalendarView, calendar_stats, filter_events, upcoming

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("civiccal")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


def build_lifecycle(store: EventStore) -> EventLifecycle:
    return EventLifecycle(
        store,
        LocalState.from_settings(settings),
        policy=settings.fallback_policy,
        max_future_years=settings.max_future_years,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.store_enabled:
        init_db()
    else:
        logger.warning("Event store disabled; running on local state only")
        ensure_account_tables()
    store = EventStore(SessionLocal if settings.store_enabled else None)
    lifecycle = build_lifecycle(store)
    view = CalendarView(lifecycle, max_age=settings.view_max_age_seconds).start()
    app.state.store = store
    app.state.lifecycle = lifecycle
    app.state.view = view
    if settings.enable_scheduler:
        start_scheduler(lifecycle)
    try:
        yield
    finally:
        view.stop()
        stop_scheduler()


app = FastAPI(title="CivicCal", version=APP_VERSION, lifespan=lifespan)


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_actor(request: Request) -> Actor | None:
    token = _get_bearer_token(request)
    if not token:
        return None
    db = SessionLocal()
    try:
        return resolve_actor(db, token)
    except SQLAlchemyError as exc:
        logger.warning("Could not resolve bearer token: %s", exc)
        return None
    finally:
        db.close()


def get_lifecycle(request: Request) -> EventLifecycle:
    return request.app.state.lifecycle


def get_view(request: Request) -> CalendarView:
    return request.app.state.view.ensure_fresh()


@app.exception_handler(CalendarError)
async def calendar_error_handler(request: Request, exc: CalendarError):
    body: dict[str, Any] = {"detail": exc.message}
    headers = None
    if isinstance(exc, ValidationFailed):
        body["errors"] = exc.errors
    if isinstance(exc, RateLimitExceeded):
        body["retry_after"] = exc.retry_after_seconds
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.status_code >= 500:
        logger.warning("%s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(body, status_code=exc.status_code, headers=headers)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- serializers --------


def _serialize_event(event: Event) -> dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "date": format_event_date(event.date),
        "time": format_event_time(event.time),
        "location": event.location,
        "description": event.description,
        "link": event.link,
        "category": event.category,
        "is_free": bool(event.is_free),
        "is_accessible": bool(event.is_accessible),
        "submitted_by": event.submitted_by,
        "status": event.status,
        "created_at": event.created_at.isoformat() if event.created_at else None,
        "updated_at": event.updated_at.isoformat() if event.updated_at else None,
        "links": {
            "self": f"/api/v1/events/{event.id}",
            "ics": f"/api/v1/events/{event.id}/event.ics",
        },
    }


def _serialize_rsvp(rsvp: RSVP | None) -> dict[str, Any] | None:
    if rsvp is None:
        return None
    return {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "user_id": rsvp.user_id,
        "status": rsvp.status,
        "updated_at": rsvp.updated_at.isoformat() if rsvp.updated_at else None,
    }


def _serialize_comment(comment: Comment) -> dict[str, Any]:
    return {
        "id": comment.id,
        "event_id": comment.event_id,
        "author_id": comment.author_id,
        "author_name": comment.author_name,
        "text": comment.text,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
    }


def _serialize_outcome(outcome: Outcome) -> dict[str, Any]:
    payload: dict[str, Any] = {"source": outcome.source}
    if outcome.value is not None:
        payload["event"] = _serialize_event(outcome.value)
    if outcome.error is not None:
        payload["warning"] = outcome.error.message
    return payload


# -------- payloads --------


class EventCreatePayload(BaseModel):
    title: str | None = None
    date: str | None = Field(None, description="YYYY-MM-DD")
    time: str | None = Field(None, description="24-hour HH:MM")
    location: str | None = None
    description: str | None = None
    link: str | None = None
    category: str | None = None
    is_free: bool = False
    is_accessible: bool = False


class EventUpdatePayload(BaseModel):
    title: str | None = None
    date: str | None = Field(None, description="YYYY-MM-DD")
    time: str | None = Field(None, description="24-hour HH:MM")
    location: str | None = None
    description: str | None = None
    link: str | None = None
    category: str | None = None
    is_free: bool | None = None
    is_accessible: bool | None = None


class RSVPPayload(BaseModel):
    status: str


class CommentPayload(BaseModel):
    text: str


class ImportPayload(BaseModel):
    events: list[dict[str, Any]]


# -------- events --------


def _filtered(
    view: CalendarView,
    q: str | None,
    category: str | None,
    free: bool | None,
    accessible: bool | None,
    sort: str,
) -> list[Event]:
    return filter_events(
        view.approved,
        q=q,
        category=category,
        free=free,
        accessible=accessible,
        sort=sort,
    )


@app.get("/api/v1/events")
def api_list_events(
    q: str | None = Query(None, max_length=200),
    category: str | None = Query(None),
    free: bool | None = Query(None),
    accessible: bool | None = Query(None),
    sort: str = Query("date", pattern="^(date|title|location)$"),
    view: CalendarView = Depends(get_view),
):
    events = _filtered(view, q, category, free, accessible, sort)
    return {
        "events": [_serialize_event(event) for event in events],
        "filters": {
            "q": q,
            "category": category,
            "free": free,
            "accessible": accessible,
            "sort": sort,
        },
    }


@app.get("/api/v1/events.ics")
def api_events_ics(
    q: str | None = Query(None, max_length=200),
    category: str | None = Query(None),
    free: bool | None = Query(None),
    accessible: bool | None = Query(None),
    sort: str = Query("date", pattern="^(date|title|location)$"),
    view: CalendarView = Depends(get_view),
):
    """Serve the filtered public calendar as a downloadable ICS file."""
    events = _filtered(view, q, category, free, accessible, sort)
    headers = {"Content-Disposition": 'attachment; filename="community-events.ics"'}
    return Response(
        content=generate_calendar(events), media_type="text/calendar", headers=headers
    )


@app.get("/api/v1/events/upcoming")
def api_upcoming_events(
    limit: int = Query(3, ge=1, le=20),
    view: CalendarView = Depends(get_view),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    events = upcoming(view.approved, today=lifecycle.today(), limit=limit)
    return {"events": [_serialize_event(event) for event in events]}


@app.get("/api/v1/events/pending")
def api_pending_events(
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    events = lifecycle.list_pending(actor)
    return {"events": [_serialize_event(event) for event in events]}


@app.get("/api/v1/events/mine")
def api_my_events(
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    events = lifecycle.list_mine(actor)
    return {"events": [_serialize_event(event) for event in events]}


@app.post("/api/v1/events", status_code=201)
def api_submit_event(
    payload: EventCreatePayload,
    response: Response,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    outcome = lifecycle.submit(payload.model_dump(), actor)
    if outcome.is_local:
        response.status_code = 202
    return _serialize_outcome(outcome)


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    event = lifecycle.get_event(event_id)
    if not lifecycle.can_view(event, actor):
        raise NotFound()
    return {
        "event": _serialize_event(event),
        "rsvp_counts": lifecycle.rsvp_counts(event_id),
        "my_rsvp": _serialize_rsvp(lifecycle.user_rsvp(event_id, actor)),
        "comments": [_serialize_comment(c) for c in lifecycle.comments(event_id)],
    }


@app.get("/api/v1/events/{event_id}/event.ics")
def api_get_event_ics(
    event_id: str,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    """Serve an event as a downloadable ICS file."""
    event = lifecycle.get_event(event_id)
    if not lifecycle.can_view(event, actor):
        raise NotFound()
    filename = f"event_{event_id}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(
        content=generate_event_ics(event), media_type="text/calendar", headers=headers
    )


@app.patch("/api/v1/events/{event_id}")
def api_edit_event(
    event_id: str,
    payload: EventUpdatePayload,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    event = lifecycle.edit(event_id, payload.model_dump(exclude_unset=True), actor)
    return {"event": _serialize_event(event)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    lifecycle.delete(event_id, actor)
    return Response(status_code=204)


def _status_response(
    outcome: Outcome,
    event_id: str,
    status: str,
    response: Response,
    lifecycle: EventLifecycle,
) -> dict[str, Any]:
    payload = _serialize_outcome(outcome)
    if outcome.value is None:
        # Store was down; the decision lives in local state until it is reachable.
        response.status_code = 202
        payload.update(
            queued=lifecycle.policy is FallbackPolicy.QUEUE,
            event_id=event_id,
            status=status,
        )
    return payload


@app.post("/api/v1/events/{event_id}/approve")
def api_approve_event(
    event_id: str,
    response: Response,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    outcome = lifecycle.approve(event_id, actor)
    return _status_response(outcome, event_id, "approved", response, lifecycle)


@app.post("/api/v1/events/{event_id}/reject")
def api_reject_event(
    event_id: str,
    response: Response,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    outcome = lifecycle.reject(event_id, actor)
    return _status_response(outcome, event_id, "rejected", response, lifecycle)


@app.put("/api/v1/events/{event_id}/rsvp")
def api_rsvp(
    event_id: str,
    payload: RSVPPayload,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    counts = lifecycle.toggle_rsvp(event_id, actor, payload.status)
    return {
        "rsvp_counts": counts,
        "my_rsvp": _serialize_rsvp(lifecycle.user_rsvp(event_id, actor)),
    }


@app.get("/api/v1/events/{event_id}/comments")
def api_list_comments(
    event_id: str,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    event = lifecycle.get_event(event_id)
    if not lifecycle.can_view(event, actor):
        raise NotFound()
    return {"comments": [_serialize_comment(c) for c in lifecycle.comments(event_id)]}


@app.post("/api/v1/events/{event_id}/comments", status_code=201)
def api_add_comment(
    event_id: str,
    payload: CommentPayload,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    comment = lifecycle.add_comment(event_id, actor, payload.text)
    return {"comment": _serialize_comment(comment)}


# -------- admin --------


@app.get("/api/v1/admin/stats")
def api_admin_stats(
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    pending = lifecycle.list_pending(actor)
    events = [*lifecycle.list_approved(), *pending]
    totals = {
        event.id: sum(lifecycle.rsvp_counts(event.id).values()) for event in events
    }
    stats = calendar_stats(events, totals)
    stats["pending_events"] = len(pending)
    return stats


@app.post("/api/v1/admin/import")
def api_admin_import(
    payload: ImportPayload,
    actor: Actor | None = Depends(get_actor),
    lifecycle: EventLifecycle = Depends(get_lifecycle),
):
    return lifecycle.import_events(payload.events, actor)
