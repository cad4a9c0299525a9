"""
SQLite record store.

One table holds every synchronized record, keyed by ``(kind, natural_id)``,
with the payload as JSON and ``applied_at`` as the version that last wrote
it. The connection follows the usual SQLite settings:

- WAL mode so readers are not blocked by the writer
- a busy timeout, after which "database is locked" surfaces as a transient
  :class:`StoreUnavailableError`
- one shared connection guarded by a lock, since workers run on threads
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from trainee_sync.core.config.models import StoreConfig
from trainee_sync.core.entities.models import EntityKey, EntityKind, Record

from .backend import (
    StoredRecord,
    StoreError,
    StoreUnavailableError,
    WriteOutcome,
    is_stale,
    register_store,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    kind TEXT NOT NULL,
    natural_id TEXT NOT NULL,
    data TEXT NOT NULL,
    schema_name TEXT,
    table_name TEXT,
    applied_at TEXT NOT NULL,
    PRIMARY KEY (kind, natural_id)
);
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER NOT NULL
);
"""


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Row factory that returns rows as dictionaries keyed by column name."""
    fields = [column[0] for column in cursor.description]
    return dict(zip(fields, row))


@register_store("sqlite")
class SqliteStore:
    """
    Record store persisted in a SQLite database file.

    Example:
        >>> store = SqliteStore(Path(".trainee-sync/records.db"))
        >>> store.exists(EntityKey.of(EntityKind.POST, 42))
        False
    """

    def __init__(self, db_path: Path | str, *, timeout: float = 5.0) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, timeout=timeout, check_same_thread=False)
        self._conn.row_factory = dict_factory
        with self._guard():
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            row = self._conn.execute("SELECT version FROM schema_info").fetchone()
            if row is None:
                self._conn.execute("INSERT INTO schema_info (version) VALUES (?)", (SCHEMA_VERSION,))
            self._conn.commit()

    @classmethod
    def from_config(cls, config: StoreConfig) -> SqliteStore:
        return cls(config.path)

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        """Serialize access to the connection and translate sqlite errors."""
        with self._lock:
            try:
                yield self._conn
            except sqlite3.OperationalError as e:
                self._rollback()
                raise StoreUnavailableError(f"SQLite store unavailable: {e}") from e
            except sqlite3.Error as e:
                self._rollback()
                raise StoreError(f"SQLite store error: {e}") from e

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error as e:
            logger.debug("Rollback failed: %s", e)

    def _load(self, conn: sqlite3.Connection, key: EntityKey) -> StoredRecord | None:
        row = conn.execute(
            "SELECT data, schema_name, table_name, applied_at FROM records "
            "WHERE kind = ? AND natural_id = ?",
            (key.kind.value, key.natural_id),
        ).fetchone()
        if row is None:
            return None
        return StoredRecord(
            record=Record(
                key=key,
                data=json.loads(row["data"]),
                schema_name=row["schema_name"],
                table=row["table_name"],
            ),
            applied_at=datetime.fromisoformat(row["applied_at"]),
        )

    def get(self, key: EntityKey) -> StoredRecord | None:
        with self._guard() as conn:
            return self._load(conn, key)

    def exists(self, key: EntityKey) -> bool:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT 1 AS present FROM records WHERE kind = ? AND natural_id = ?",
                (key.kind.value, key.natural_id),
            ).fetchone()
            return row is not None

    def upsert(self, key: EntityKey, record: Record, version: datetime) -> WriteOutcome:
        with self._guard() as conn:
            if is_stale(self._load(conn, key), version):
                return WriteOutcome.CONFLICT
            conn.execute(
                "INSERT INTO records (kind, natural_id, data, schema_name, table_name, applied_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (kind, natural_id) DO UPDATE SET "
                "data = excluded.data, schema_name = excluded.schema_name, "
                "table_name = excluded.table_name, applied_at = excluded.applied_at",
                (
                    key.kind.value,
                    key.natural_id,
                    json.dumps(record.data, sort_keys=True, default=str),
                    record.schema_name,
                    record.table,
                    version.isoformat(),
                ),
            )
            conn.commit()
            logger.debug("Upserted %s at %s", key, version.isoformat())
            return WriteOutcome.APPLIED

    def delete(self, key: EntityKey, version: datetime) -> WriteOutcome:
        with self._guard() as conn:
            stored = self._load(conn, key)
            if stored is None:
                return WriteOutcome.NOT_FOUND
            if is_stale(stored, version):
                return WriteOutcome.CONFLICT
            conn.execute(
                "DELETE FROM records WHERE kind = ? AND natural_id = ?",
                (key.kind.value, key.natural_id),
            )
            conn.commit()
            logger.debug("Deleted %s at %s", key, version.isoformat())
            return WriteOutcome.APPLIED

    def count(self, kind: EntityKind | None = None) -> int:
        with self._guard() as conn:
            if kind is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM records").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM records WHERE kind = ?", (kind.value,)
                ).fetchone()
            return int(row["n"])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
