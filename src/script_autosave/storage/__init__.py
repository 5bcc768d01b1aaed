"""Durable storage layer for revision history."""

from script_autosave.storage.base import (
    Database,
    KeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
    now_ms,
    utcnow,
)
from script_autosave.storage.exceptions import (
    DatabaseError,
    MigrationError,
    RevisionNotFoundError,
    StorageError,
)
from script_autosave.storage.migrations import (
    CURRENT_REVISIONS_KEY,
    Migration,
    SchemaMigration,
    get_all_migrations,
    get_schema_migrations,
)
from script_autosave.storage.revisions import (
    SINGLE_EPISODE,
    EpisodeKey,
    RevisionEntry,
    RevisionStore,
    normalize_episode_key,
)

__all__ = [
    # Base
    "Database",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "now_ms",
    "utcnow",
    # Exceptions
    "DatabaseError",
    "MigrationError",
    "RevisionNotFoundError",
    "StorageError",
    # Migrations
    "CURRENT_REVISIONS_KEY",
    "Migration",
    "SchemaMigration",
    "get_all_migrations",
    "get_schema_migrations",
    # Revisions
    "SINGLE_EPISODE",
    "EpisodeKey",
    "RevisionEntry",
    "RevisionStore",
    "normalize_episode_key",
]
