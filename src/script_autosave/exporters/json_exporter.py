"""JSON exporter for revision history."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from script_autosave.exporters.base import Exporter

if TYPE_CHECKING:
    from script_autosave.storage import RevisionEntry


class JsonExporter(Exporter):
    """Export revisions to JSON format."""

    @property
    def extension(self) -> str:
        """Return json extension."""
        return "json"

    def export(self, entries: Iterable[RevisionEntry], output_path: Path) -> int:
        output = self.build_document(entries)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(output, f, indent=2, ensure_ascii=False)
        return output["count"]
