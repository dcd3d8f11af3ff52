"""Typer CLI for CivicCal."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .auth import Actor, issue_token, revoke_token
from .config import (
    FALLBACK_POLICIES,
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .database import SessionLocal, get_session
from .errors import CalendarError
from .ics import generate_calendar
from .lifecycle import EventLifecycle, LocalState
from .seed import seed_fake_data
from .storage import init_db, upgrade_database
from .store import EventStore
from .views import filter_events

SYSTEM_ACTOR = Actor(id="system", name="City data feed", is_admin=True)

app = typer.Typer(help="CivicCal command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _lifecycle() -> EventLifecycle:
    init_db()
    return EventLifecycle(
        EventStore(SessionLocal),
        LocalState.from_settings(settings),
        policy="fail",
        max_future_years=settings.max_future_years,
    )


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; the scheduler runs inside its lifespan."""
    config = uvicorn.Config(
        "civiccal.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting CivicCal on {host}:{port}")
    server.run()


@app.command("issue-token")
def issue_token_command(
    email: str = typer.Argument(..., help="E-mail address vouched for by the identity provider"),
    name: str | None = typer.Option(None, "--name", help="Display name"),
    admin: bool | None = typer.Option(
        None,
        "--admin/--no-admin",
        help="Explicit admin claim (default: derived from admin_email_domain)",
    ),
) -> None:
    """Issue a bearer token for a user, registering them if needed."""
    init_db()
    try:
        with get_session() as session:
            token = issue_token(session, email=email, name=name, is_admin=admin)
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(token)


@app.command("revoke-token")
def revoke_token_command(token: str = typer.Argument(...)) -> None:
    """Revoke a previously issued bearer token."""
    init_db()
    with get_session() as session:
        removed = revoke_token(session, token)
    if not removed:
        typer.secho("Token not found.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("Token revoked.")


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_rsvps: int = typer.Option(
        settings.seed_rsvps_per_event,
        "--max-rsvps",
        min=0,
        help="Maximum RSVPs per approved event",
    ),
    max_comments: int = typer.Option(
        settings.seed_comments_per_event,
        "--max-comments",
        min=0,
        help="Maximum comments per approved event",
    ),
) -> None:
    """Populate the database with fake events for local development."""
    stats = seed_fake_data(
        events=events,
        max_rsvps_per_event=max_rsvps,
        max_comments_per_event=max_comments,
    )
    typer.echo(
        "Seed complete: "
        f"{stats['users']} users, {stats['events']} events, "
        f"{stats['rsvps']} RSVPs, {stats['comments']} comments"
    )


@app.command("import-feed")
def import_feed(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON feed file"),
) -> None:
    """Import approved events from a city data feed (JSON list or {"events": [...]})."""
    data = json.loads(path.read_text(encoding="utf-8"))
    records = data.get("events", []) if isinstance(data, dict) else data
    if not isinstance(records, list):
        typer.secho("Feed must contain a list of events.", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        stats = _lifecycle().import_events(records, SYSTEM_ACTOR)
    except CalendarError as exc:
        typer.secho(exc.message, err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Import complete: {stats['imported']} imported, {stats['skipped']} skipped")


@app.command("export-ics")
def export_ics(
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write to this file instead of stdout"
    ),
    category: str | None = typer.Option(None, "--category", help="Only this category"),
    free: bool | None = typer.Option(None, "--free/--paid", help="Filter on cost"),
) -> None:
    """Export approved events as an iCalendar file."""
    events = filter_events(
        _lifecycle().list_approved(), category=category, free=free
    )
    text = generate_calendar(events)
    if output is None:
        typer.echo(text, nl=False)
        return
    output.write_text(text, encoding="utf-8", newline="")
    typer.echo(f"Wrote {len(events)} events to {output}")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    rate_limit_max_attempts: int | None = typer.Option(
        None, "--rate-limit-max-attempts", min=1, help="Submissions allowed per window"
    ),
    rate_limit_window_seconds: float | None = typer.Option(
        None, "--rate-limit-window-seconds", min=1.0, help="Rate-limit window length"
    ),
    max_future_years: int | None = typer.Option(
        None, "--max-future-years", min=1, help="How far ahead events may be scheduled"
    ),
    store_enabled: bool | None = typer.Option(
        None,
        "--store-enabled/--store-disabled",
        help="Use the SQLite event store (disabled: local state only)",
    ),
    fallback_policy: str | None = typer.Option(
        None,
        "--fallback-policy",
        help=f"What to do when the store is down: {', '.join(sorted(FALLBACK_POLICIES))}",
    ),
    admin_email_domain: str | None = typer.Option(
        None,
        "--admin-email-domain",
        help="E-mail domain whose users get admin tokens by default",
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (prune/reconcile)",
    ),
    reconcile_interval_minutes: int | None = typer.Option(
        None, "--reconcile-interval-minutes", min=1, help="Minutes between reconcile runs"
    ),
    calendar_name: str | None = typer.Option(
        None, "--calendar-name", help="Name shown in exported calendars"
    ),
    view_max_age_seconds: float | None = typer.Option(
        None,
        "--view-max-age-seconds",
        min=0.0,
        help="Seconds before the cached public listing is re-read",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to civiccal.toml (default: ./civiccal.toml)"
    ),
):
    """View or update the persistent configuration file."""

    if fallback_policy is not None and fallback_policy not in FALLBACK_POLICIES:
        typer.secho(
            f"Unknown fallback policy {fallback_policy!r}", err=True, fg=typer.colors.RED
        )
        raise typer.Exit(code=1)

    updates = {
        "rate_limit_max_attempts": rate_limit_max_attempts,
        "rate_limit_window_seconds": rate_limit_window_seconds,
        "max_future_years": max_future_years,
        "store_enabled": store_enabled,
        "fallback_policy": fallback_policy,
        "admin_email_domain": admin_email_domain,
        "enable_scheduler": enable_scheduler,
        "reconcile_interval_minutes": reconcile_interval_minutes,
        "calendar_name": calendar_name,
        "view_max_age_seconds": view_max_age_seconds,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
