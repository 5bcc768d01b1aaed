"""Schema migrations for the key-value database and the revision history."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from script_autosave.hashing import content_hash

LOGGER = logging.getLogger(__name__)


@dataclass
class Migration:
    """A single SQL schema migration."""

    version: int
    name: str
    statements: list[str]


# Migration 001: key-value table backing SqliteKeyValueStore
MIGRATION_001_INITIAL = Migration(
    version=1,
    name="initial_schema",
    statements=[
        # Schema version tracking
        """
        CREATE TABLE schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE kv_store (
            key TEXT PRIMARY KEY,
            value BLOB NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
    ],
)

# All migrations in order
ALL_MIGRATIONS: list[Migration] = [
    MIGRATION_001_INITIAL,
]


def get_all_migrations() -> list[Migration]:
    """Return all migrations in version order."""
    return ALL_MIGRATIONS


# Revision history schema keys. Each schema version lives under its own key.
CURRENT_SCHEMA_VERSION = 2
CURRENT_REVISIONS_KEY = "pp_script_revisions_v2"

LEGACY_HASH_PREFIX = "legacy:"


@dataclass
class SchemaMigration:
    """Upgrade path from a prior revision-history key to the current one."""

    version: int
    key: str
    upgrade: Callable[[Any], list[dict]]


def upgrade_v1(payload: Any) -> list[dict]:
    """
    Convert a v1 history (JSON array of camelCase records) to v2 records.

    v1 records carried only a 140 character summary and a truncated base64
    digest. Full content is recovered when the summary covers all of it;
    otherwise content stays None and the old digest is kept, prefixed.
    """
    if not isinstance(payload, list):
        raise ValueError(f"v1 history must be a list, got {type(payload).__name__}")

    records = []
    for raw in payload:
        try:
            summary = str(raw.get("summary") or "")
            length = int(raw["length"])
            content = raw.get("content")
            if content is None and len(summary) == length:
                content = summary
            if content is not None:
                digest = content_hash(content)
                length = len(content)
            else:
                digest = LEGACY_HASH_PREFIX + str(raw["dataHash"])
            records.append(
                {
                    "id": str(raw["id"]),
                    "project_id": str(raw["projectId"]),
                    "episode_key": raw["episode"],
                    "created_at": int(raw["createdAt"]),
                    "content": content,
                    "summary": summary,
                    "length": length,
                    "content_hash": digest,
                }
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            LOGGER.warning("Skipping malformed v1 revision %r: %s", raw, e)
    return records


# Newest legacy schema first; the first key found wins.
SCHEMA_MIGRATIONS: list[SchemaMigration] = [
    SchemaMigration(version=1, key="pp_script_revisions_v1", upgrade=upgrade_v1),
]


def get_schema_migrations() -> list[SchemaMigration]:
    """Return revision-history migrations, newest legacy version first."""
    return SCHEMA_MIGRATIONS
