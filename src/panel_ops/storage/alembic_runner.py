"""Programmatic Alembic upgrades for the operation store."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    """Apply migrations up to ``revision`` for the given SQLite database."""

    command.upgrade(_alembic_config(db_path), revision)


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``alembic_version``, or None for an unmigrated file."""

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    # Callers own logging; keep alembic.ini from reconfiguring it mid-process.
    config.attributes["configure_logger"] = False
    return config
