"""Content-addressed, capacity-bounded history of script snapshots."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Iterator, Union

from script_autosave.hashing import content_hash
from script_autosave.storage.base import KeyValueStore, now_ms
from script_autosave.storage.exceptions import RevisionNotFoundError, StorageError
from script_autosave.storage.migrations import (
    CURRENT_REVISIONS_KEY,
    CURRENT_SCHEMA_VERSION,
    get_schema_migrations,
)

LOGGER = logging.getLogger(__name__)

SINGLE_EPISODE = "single"
DEFAULT_CAPACITY = 200
SUMMARY_LENGTH = 140

EpisodeKey = Union[int, str]


def normalize_episode_key(value: object) -> EpisodeKey:
    """
    Validate an episode key.

    Returns the SINGLE_EPISODE sentinel or a positive episode number. Digit
    strings are accepted so keys read from JSON object keys or CLI flags
    compare equal to their int form.
    """
    if value == SINGLE_EPISODE:
        return SINGLE_EPISODE
    if isinstance(value, bool):
        raise ValueError(f"Invalid episode key: {value!r}")
    if isinstance(value, int) and value >= 1:
        return value
    if isinstance(value, str) and value.isdigit() and int(value) >= 1:
        return int(value)
    raise ValueError(f"Invalid episode key: {value!r}")


@dataclass(frozen=True)
class RevisionEntry:
    """An immutable historical snapshot of a script."""

    id: str
    project_id: str
    episode_key: EpisodeKey
    created_at: int
    content: str | None
    summary: str
    length: int
    content_hash: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> RevisionEntry:
        content = data.get("content")
        return cls(
            id=str(data["id"]),
            project_id=str(data["project_id"]),
            episode_key=normalize_episode_key(data["episode_key"]),
            created_at=int(data["created_at"]),
            content=None if content is None else str(content),
            summary=str(data["summary"]),
            length=int(data["length"]),
            content_hash=str(data["content_hash"]),
        )


class RevisionStore:
    """
    Deduplicated revision history persisted in a KeyValueStore.

    The store owns an in-memory copy of the history, kept sorted by
    created_at ascending, and writes the whole collection back under a
    single current-schema key after every change. Read failures of the
    backing store degrade to an empty history; write failures are logged and
    the in-memory history stays authoritative for this process.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        capacity: int = DEFAULT_CAPACITY,
        summary_length: int = SUMMARY_LENGTH,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._kv = kv
        self.capacity = capacity
        self.summary_length = summary_length
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: list[RevisionEntry] = []
        self._last_created_at = 0
        self.migrate()
        self.reload()

    def __len__(self) -> int:
        return len(self._entries)

    def migrate(self) -> bool:
        """
        Move a prior-schema history under the current key.

        Existing current-schema data always wins, so repeated calls are
        no-ops. Legacy keys are left untouched.

        Returns: True if a legacy history was migrated.
        """
        with self._lock:
            try:
                if self._kv.read_all(CURRENT_REVISIONS_KEY) is not None:
                    LOGGER.debug("Revision history already at schema v%d", CURRENT_SCHEMA_VERSION)
                    return False
                for migration in get_schema_migrations():
                    raw = self._kv.read_all(migration.key)
                    if raw is None:
                        continue
                    records = migration.upgrade(json.loads(raw.decode("utf-8")))
                    entries = self._decode_entries(records)
                    self._kv.write_all(CURRENT_REVISIONS_KEY, self._encode(entries))
                    LOGGER.info(
                        "Migrated %d revisions from %s (v%d) to %s",
                        len(entries),
                        migration.key,
                        migration.version,
                        CURRENT_REVISIONS_KEY,
                    )
                    return True
            except (StorageError, OSError, ValueError) as e:
                LOGGER.warning("Revision history migration failed, history unavailable: %s", e)
            return False

    def reload(self) -> None:
        """Re-read the durable history into memory."""
        with self._lock:
            entries = self._load()
            entries.sort(key=lambda entry: entry.created_at)
            if len(entries) > self.capacity:
                del entries[: len(entries) - self.capacity]
            self._entries = entries
            self._last_created_at = entries[-1].created_at if entries else 0

    def record(
        self, project_id: str, episode_key: EpisodeKey, content: str
    ) -> RevisionEntry | None:
        """
        Append a snapshot unless the partition already holds identical content.

        Returns: The new entry, or None for a duplicate.
        """
        episode_key = normalize_episode_key(episode_key)
        digest = content_hash(content)

        with self._lock:
            for existing in self._entries:
                if (
                    existing.content_hash == digest
                    and existing.project_id == project_id
                    and existing.episode_key == episode_key
                ):
                    LOGGER.debug(
                        "Skipping duplicate revision for %s/%s (matches %s)",
                        project_id,
                        episode_key,
                        existing.id,
                    )
                    return None

            created_at = max(self._clock(), self._last_created_at + 1)
            entry = RevisionEntry(
                id=uuid.uuid4().hex,
                project_id=project_id,
                episode_key=episode_key,
                created_at=created_at,
                content=content,
                summary=content[: self.summary_length],
                length=len(content),
                content_hash=digest,
            )
            self._entries.append(entry)
            self._last_created_at = created_at

            overflow = len(self._entries) - self.capacity
            if overflow > 0:
                del self._entries[:overflow]
                LOGGER.debug("Evicted %d oldest revisions", overflow)

            self._persist()
            return entry

    def list(self, project_id: str, episode_key: EpisodeKey) -> list[RevisionEntry]:
        """Entries for one partition, newest first."""
        episode_key = normalize_episode_key(episode_key)
        with self._lock:
            return [
                entry
                for entry in reversed(self._entries)
                if entry.project_id == project_id and entry.episode_key == episode_key
            ]

    def latest(self, project_id: str, episode_key: EpisodeKey) -> RevisionEntry | None:
        """Most recent entry for one partition, if any."""
        entries = self.list(project_id, episode_key)
        return entries[0] if entries else None

    def get(self, revision_id: str) -> RevisionEntry | None:
        """Fetch single entry by ID. Returns None if not found."""
        with self._lock:
            for entry in self._entries:
                if entry.id == revision_id:
                    return entry
        return None

    def require(self, revision_id: str) -> RevisionEntry:
        """Fetch single entry by ID, raising RevisionNotFoundError if missing."""
        entry = self.get(revision_id)
        if entry is None:
            raise RevisionNotFoundError(revision_id)
        return entry

    def all_entries(self) -> Iterator[RevisionEntry]:
        """Iterate every retained entry, newest first."""
        with self._lock:
            snapshot = self._entries[::-1]
        return iter(snapshot)

    def _load(self) -> list[RevisionEntry]:
        try:
            raw = self._kv.read_all(CURRENT_REVISIONS_KEY)
        except (StorageError, OSError) as e:
            LOGGER.warning("Revision history unreadable, starting empty: %s", e)
            return []
        if raw is None:
            return []
        try:
            payload = json.loads(raw.decode("utf-8"))
            if not isinstance(payload, dict) or not isinstance(payload.get("entries"), list):
                raise ValueError("expected an object with an 'entries' list")
            return self._decode_entries(payload["entries"])
        except ValueError as e:
            # UnicodeDecodeError and JSONDecodeError are both ValueErrors
            LOGGER.warning("Revision history corrupt, starting empty: %s", e)
            return []

    @staticmethod
    def _decode_entries(records: list) -> list[RevisionEntry]:
        entries = []
        for record in records:
            if not isinstance(record, dict):
                LOGGER.warning("Skipping malformed revision record: %r", record)
                continue
            try:
                entries.append(RevisionEntry.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                LOGGER.warning("Skipping malformed revision record: %s", e)
        return entries

    @staticmethod
    def _encode(entries: list[RevisionEntry]) -> bytes:
        payload = {
            "version": CURRENT_SCHEMA_VERSION,
            "entries": [entry.to_dict() for entry in entries],
        }
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    def _persist(self) -> None:
        try:
            self._kv.write_all(CURRENT_REVISIONS_KEY, self._encode(self._entries))
        except (StorageError, OSError) as e:
            LOGGER.warning("Failed to persist revision history: %s", e)
