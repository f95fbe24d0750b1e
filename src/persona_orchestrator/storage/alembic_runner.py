"""Alembic entry points for the orchestrator database."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Engine

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Repository migrations bound to one SQLite file."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    command.upgrade(alembic_config(db_path), "head")


def head_revision(db_path: Path) -> str | None:
    return ScriptDirectory.from_config(alembic_config(db_path)).get_current_head()


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in the database, or None before the first upgrade."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
