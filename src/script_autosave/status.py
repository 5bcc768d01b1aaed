"""Save status values and the per-session save state."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from script_autosave.storage import RevisionEntry


class SaveStatus(str, Enum):
    """What the display layer should show for the current editing session."""

    IDLE = "idle"
    DIRTY = "dirty"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"
    CONFLICT = "conflict"
    DRAFT = "draft"

    def __str__(self) -> str:
        return self.value


@dataclass
class SaveState:
    """Mutable save state for one (project, episode) editing session."""

    status: SaveStatus = SaveStatus.IDLE
    pending_content: str = ""
    last_saved_content_hash: str | None = None
    last_remote_seen_at: int | None = None
    draft: RevisionEntry | None = None
    conflict_remote_content: str | None = None
    conflict_remote_hash: str | None = None
    attempts: int = 0
    last_error: str | None = None

    def copy(self) -> SaveState:
        return replace(self)
