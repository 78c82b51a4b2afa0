"""Common helpers for storage repositories."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def to_db_datetime(value: datetime) -> datetime:
    """Convert to naive UTC, the representation SQLite columns round-trip."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def load_json_object(raw: str | None) -> dict[str, Any]:
    """Decode a JSON column, tolerating empty and non-object payloads."""

    if not raw:
        return {}
    parsed = json.loads(raw)
    if isinstance(parsed, dict):
        return parsed
    return {}


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine shared by the queue, entity documents and the state store.

    Every worker process opens its own engine on the same file; WAL plus a
    busy timeout lets their short CAS transactions interleave.
    """

    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        for pragma in _sqlite_pragmas(busy_timeout_ms):
            dbapi_connection.execute(pragma)

    return engine


def _sqlite_pragmas(busy_timeout_ms: int) -> tuple[str, ...]:
    return (
        "PRAGMA journal_mode = WAL",
        f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}",
        "PRAGMA foreign_keys = ON",
        "PRAGMA synchronous = NORMAL",
    )
