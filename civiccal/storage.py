"""Database initialization and schema upgrades."""

from __future__ import annotations

import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from .config import settings
from .database import engine
from .models import Base

# Columns added after the first public release; older SQLite files lack them.
LEGACY_EVENT_COLUMNS = {
    "link": "VARCHAR(2048)",
    "category": "VARCHAR(32)",
    "is_free": "BOOLEAN NOT NULL DEFAULT 0",
    "is_accessible": "BOOLEAN NOT NULL DEFAULT 0",
}


def init_db() -> None:
    upgrade_database(make_backup=False)


def ensure_schema_updates() -> list[str]:
    """Perform lightweight schema updates for existing SQLite deployments."""
    actions: list[str] = []
    if engine.dialect.name != "sqlite":
        return actions

    inspector = inspect(engine)
    if not inspector.has_table("events"):
        return actions

    columns = {col["name"] for col in inspector.get_columns("events")}
    missing = [name for name in LEGACY_EVENT_COLUMNS if name not in columns]
    if missing:
        with engine.begin() as conn:
            for name in missing:
                conn.exec_driver_sql(
                    f"ALTER TABLE events ADD COLUMN {name} {LEGACY_EVENT_COLUMNS[name]}"
                )
                actions.append(f"Added events.{name} column")
    return actions


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    # configparser treats "%" as interpolation; newer SQLAlchemy percent-escapes URLs.
    config.set_main_option("sqlalchemy.url", str(engine.url).replace("%", "%%"))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions; empty if already up-to-date.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    actions.extend(ensure_schema_updates())

    if not has_alembic and not has_events and inspector.has_table("users"):
        # Accounts were created while the event store was disabled.
        Base.metadata.create_all(bind=engine)
        command.stamp(config, "head")
        actions.append("Created event store tables and stamped database to Alembic head")
    elif not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Pre-Alembic database: bring it to the baseline without recreating tables.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions
