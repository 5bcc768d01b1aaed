"""Revision history exporters for JSON and YAML formats."""

from script_autosave.exporters.base import Exporter
from script_autosave.exporters.json_exporter import JsonExporter
from script_autosave.exporters.yaml_exporter import YamlExporter

__all__ = [
    "Exporter",
    "JsonExporter",
    "YamlExporter",
    "get_exporter",
]


def get_exporter(fmt: str) -> Exporter:
    """Return the exporter for a format name ('json' or 'yaml')."""
    exporters = {"json": JsonExporter, "yaml": YamlExporter, "yml": YamlExporter}
    try:
        return exporters[fmt.lower()]()
    except KeyError:
        raise ValueError(f"Unknown export format: {fmt}") from None
