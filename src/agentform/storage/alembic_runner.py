"""Programmatic Alembic entrypoints used by repositories on startup."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from agentform.storage.common import sqlite_url

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the job database at `db_path` to the latest schema revision."""

    command.upgrade(_alembic_config(db_path), "head")
