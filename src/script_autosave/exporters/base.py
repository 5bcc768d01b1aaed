"""Base exporter interface for revision history export."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from script_autosave.storage import RevisionEntry


class Exporter(ABC):
    """Base class for revision history exporters."""

    def __init__(self, include_content: bool = True) -> None:
        self.include_content = include_content

    @property
    @abstractmethod
    def extension(self) -> str:
        """File extension without dot (e.g., 'json', 'yaml')."""
        ...

    @abstractmethod
    def export(self, entries: Iterable[RevisionEntry], output_path: Path) -> int:
        """Export entries to file.

        Args:
            entries: Revision entries to export.
            output_path: Path to output file.

        Returns:
            Number of entries exported.
        """
        ...

    def entry_to_dict(self, entry: RevisionEntry) -> dict:
        """Convert a revision entry to an exportable dictionary.

        Full content is left out when the exporter was built with
        include_content=False; the summary is always present.
        """
        data = {
            "id": entry.id,
            "project_id": entry.project_id,
            "episode": entry.episode_key,
            "created_at": entry.created_at,
            "length": entry.length,
            "content_hash": entry.content_hash,
            "summary": entry.summary,
        }
        if self.include_content:
            data["content"] = entry.content
        return data

    def build_document(self, entries: Iterable[RevisionEntry]) -> dict:
        data = [self.entry_to_dict(entry) for entry in entries]
        return {
            "revisions": data,
            "count": len(data),
        }
