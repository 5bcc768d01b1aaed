"""YAML exporter for revision history."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import yaml

from script_autosave.exporters.base import Exporter

if TYPE_CHECKING:
    from script_autosave.storage import RevisionEntry


class YamlExporter(Exporter):
    """Export revisions to YAML format."""

    @property
    def extension(self) -> str:
        """Return yaml extension."""
        return "yaml"

    def export(self, entries: Iterable[RevisionEntry], output_path: Path) -> int:
        """Export entries to YAML file.

        Multi-line scripts are written as literal blocks so exported
        history stays readable.
        """
        output = self.build_document(entries)
        with open(output_path, "w", encoding="utf-8") as f:
            yaml.dump(
                output,
                f,
                Dumper=_ScriptDumper,
                allow_unicode=True,
                sort_keys=False,
            )
        return output["count"]


class _ScriptDumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, value: str) -> yaml.Node:
    style = "|" if "\n" in value else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", value, style=style)


_ScriptDumper.add_representer(str, _represent_str)
