"""Shared key/value state for rate windows, credits, circuits and markers.

Every mutation goes through `update`, which applies a pure `mutate`
function atomically: under a lock in memory, or as a compare-and-swap on a
version column in SQLite. An exception raised by `mutate` aborts the update
and propagates to the caller.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agentform.storage.common import (
    dump_json,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from agentform.storage.sqlmodel_models import StateEntryRow

StateValue = dict[str, Any]
Mutator = Callable[[StateValue | None], StateValue | None]
Clock = Callable[[], datetime]


class StateStore(Protocol):
    def now(self) -> datetime: ...

    def get(self, key: str) -> StateValue | None: ...

    def update(
        self,
        key: str,
        mutate: Mutator,
        *,
        ttl_seconds: float | None = None,
    ) -> StateValue | None: ...

    def delete(self, key: str) -> None: ...

    def purge_expired(self) -> int: ...


@dataclass(slots=True)
class _MemoryEntry:
    value: StateValue
    expires_at: datetime | None


class MemoryStateStore:
    """Process-local store; suitable for tests and single-process runs."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._entries: dict[str, _MemoryEntry] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def get(self, key: str) -> StateValue | None:
        with self._lock:
            entry = self._live_entry(key)
            return _copy(entry.value) if entry is not None else None

    def update(
        self,
        key: str,
        mutate: Mutator,
        *,
        ttl_seconds: float | None = None,
    ) -> StateValue | None:
        with self._lock:
            entry = self._live_entry(key)
            current = _copy(entry.value) if entry is not None else None
            updated = mutate(current)
            if updated is None:
                self._entries.pop(key, None)
                return None
            expires_at = entry.expires_at if entry is not None else None
            if ttl_seconds is not None:
                expires_at = self.now() + timedelta(seconds=ttl_seconds)
            self._entries[key] = _MemoryEntry(value=_copy(updated), expires_at=expires_at)
            return _copy(updated)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(
                key
                for key in list(self._entries)
                if key.startswith(prefix) and self._live_entry(key) is not None
            )

    def purge_expired(self) -> int:
        with self._lock:
            now = self.now()
            expired = [
                key
                for key, entry in self._entries.items()
                if entry.expires_at is not None and entry.expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def _live_entry(self, key: str) -> _MemoryEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.now():
            del self._entries[key]
            return None
        return entry


class SqliteStateStore:
    """Store shared by all worker processes using the same database file."""

    def __init__(self, engine: Engine, *, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def get(self, key: str) -> StateValue | None:
        with Session(self.engine) as session:
            row = session.exec(select(StateEntryRow).where(StateEntryRow.key == key)).one_or_none()
            if row is None or self._expired(row):
                return None
            return _decode(row.value_json)

    def update(
        self,
        key: str,
        mutate: Mutator,
        *,
        ttl_seconds: float | None = None,
    ) -> StateValue | None:
        while True:
            now = self.now()
            with Session(self.engine) as session:
                row = session.exec(
                    select(StateEntryRow).where(StateEntryRow.key == key),
                ).one_or_none()
                live = row is not None and not self._expired(row)
                current = _decode(row.value_json) if row is not None and live else None
                updated = mutate(current)

                expires_at = row.expires_at if row is not None and live else None
                if ttl_seconds is not None:
                    expires_at = to_db_datetime(now + timedelta(seconds=ttl_seconds))

                if row is None:
                    if updated is None:
                        return None
                    session.add(
                        StateEntryRow(
                            key=key,
                            value_json=dump_json(updated),
                            version=1,
                            expires_at=expires_at,
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    return updated

                if updated is None:
                    result = session.exec(
                        sa_delete(StateEntryRow).where(
                            col(StateEntryRow.key) == key,
                            col(StateEntryRow.version) == row.version,
                        ),
                    )
                else:
                    result = session.exec(
                        sa_update(StateEntryRow)
                        .where(
                            col(StateEntryRow.key) == key,
                            col(StateEntryRow.version) == row.version,
                        )
                        .values(
                            value_json=dump_json(updated),
                            version=row.version + 1,
                            expires_at=expires_at,
                            updated_at=to_db_datetime(now),
                        ),
                    )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return updated

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(StateEntryRow).where(col(StateEntryRow.key) == key))
            session.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(StateEntryRow)
                .where(col(StateEntryRow.key).startswith(prefix))
                .order_by(col(StateEntryRow.key).asc()),
            ).all()
            return [row.key for row in rows if not self._expired(row)]

    def purge_expired(self) -> int:
        """Delete expired rows; returns how many were removed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(StateEntryRow).where(
                    col(StateEntryRow.expires_at).is_not(None),
                    col(StateEntryRow.expires_at) <= to_db_datetime(self.now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _expired(self, row: StateEntryRow) -> bool:
        if row.expires_at is None:
            return False
        return to_utc_aware(row.expires_at) <= to_utc_aware(self.now())


def _decode(raw: str) -> StateValue:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"State entry is not a JSON object: {raw[:80]!r}")
    return parsed


def _copy(value: StateValue) -> StateValue:
    return json.loads(dump_json(value))
