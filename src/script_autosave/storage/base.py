"""Durable key-value backends and the SQLite connection wrapper."""

from __future__ import annotations

import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from script_autosave.storage.exceptions import DatabaseError, MigrationError
from script_autosave.storage.migrations import Migration, get_all_migrations

LOGGER = logging.getLogger(__name__)


def utcnow() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class KeyValueStore(ABC):
    """Device-scoped durable store addressed by string keys."""

    @abstractmethod
    def read_all(self, key: str) -> bytes | None:
        """Return the bytes stored under key, or None if absent."""
        ...

    @abstractmethod
    def write_all(self, key: str, data: bytes) -> None:
        """Replace the bytes stored under key."""
        ...

    def close(self) -> None:
        """Release backend resources."""


class MemoryKeyValueStore(KeyValueStore):
    """In-process store, for ephemeral sessions and tests."""

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self._data: dict[str, bytes] = dict(initial or {})

    def read_all(self, key: str) -> bytes | None:
        return self._data.get(key)

    def write_all(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    def keys(self) -> list[str]:
        return sorted(self._data)


class Database:
    """SQLite connection shared by revision history backends."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        """Open on first use. Autocommit; multi-statement work goes through transaction()."""
        if self._conn is None:
            self._conn = self._connect()
        return self._conn

    def _connect(self) -> sqlite3.Connection:
        try:
            # saves complete on executor threads; callers serialize access
            conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot open revision database {self.db_path}: {e}") from e
        LOGGER.debug("Opened revision database %s", self.db_path)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN/COMMIT around the block, ROLLBACK if it raises."""
        conn = self.conn
        conn.execute("BEGIN")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None

    def get_schema_version(self) -> int:
        """Highest applied SQL migration, 0 for a fresh file."""
        try:
            tracked = self.conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
            ).fetchone()
            if tracked is None:
                return 0
            (version,) = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Cannot read schema version of {self.db_path}: {e}") from e
        return version or 0

    def run_migrations(self, migrations: list[Migration]) -> int:
        """
        Bring the table layout up to date.

        Returns: Number of migrations applied.
        """
        current = self.get_schema_version()
        pending = [m for m in migrations if m.version > current]
        if not pending:
            LOGGER.debug("Revision database %s at schema %d", self.db_path, current)
            return 0

        for migration in pending:
            self._apply(migration)
        return len(pending)

    def _apply(self, migration: Migration) -> None:
        try:
            with self.transaction() as conn:
                for statement in migration.statements:
                    conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (migration.version, utcnow()),
                )
        except sqlite3.Error as e:
            LOGGER.error("Migration %d (%s) failed: %s", migration.version, migration.name, e)
            raise MigrationError(f"Migration {migration.version} ({migration.name}) failed: {e}") from e
        LOGGER.info("Applied migration %d: %s", migration.version, migration.name)


class SqliteKeyValueStore(KeyValueStore):
    """KeyValueStore persisted in a single SQLite table."""

    def __init__(self, db_path: Path | str) -> None:
        """Connect to or create the database. Runs migrations if needed."""
        self._db = Database(db_path)
        self._db.run_migrations(get_all_migrations())

    @property
    def conn(self) -> sqlite3.Connection:
        """Access underlying connection."""
        return self._db.conn

    def close(self) -> None:
        """Close the database connection."""
        self._db.close()

    def read_all(self, key: str) -> bytes | None:
        try:
            cursor = self.conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return bytes(row["value"])
        except sqlite3.Error as e:
            raise DatabaseError(f"Read of {key!r} failed: {e}") from e

    def write_all(self, key: str, data: bytes) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, sqlite3.Binary(data), utcnow()),
            )
        except sqlite3.Error as e:
            raise DatabaseError(f"Write of {key!r} failed: {e}") from e

    def keys(self) -> list[str]:
        """List stored keys in sorted order."""
        try:
            cursor = self.conn.execute("SELECT key FROM kv_store ORDER BY key")
            return [row["key"] for row in cursor]
        except sqlite3.Error as e:
            raise DatabaseError(f"List keys failed: {e}") from e
