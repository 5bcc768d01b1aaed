"""Tests for the script-autosave command line."""

from __future__ import annotations

import json
from io import StringIO
from pathlib import Path
from unittest import mock

import pytest

from script_autosave import RemoteRecord, RemoteSaveResult, content_hash
from script_autosave.cli import main
from script_autosave.storage import RevisionEntry, RevisionStore, SqliteKeyValueStore


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "revisions.db"


def seed(db_path: Path, *revisions: tuple) -> list[RevisionEntry]:
    """Record (project, episode, content) revisions into the database."""
    kv = SqliteKeyValueStore(db_path)
    try:
        store = RevisionStore(kv)
        return [store.record(*revision) for revision in revisions]
    finally:
        kv.close()


def run_cli(*argv: str) -> tuple[int, str, str]:
    """Run main() and return (exit code, stdout, stderr)."""
    with mock.patch("sys.stdout", new_callable=StringIO) as out, mock.patch(
        "sys.stderr", new_callable=StringIO
    ) as err:
        code = main(list(argv))
    return code, out.getvalue(), err.getvalue()


@pytest.fixture
def api():
    """Patch the project API client used by check and restore."""
    with mock.patch("script_autosave.cli.ProjectApiClient") as client_cls:
        yield client_cls.return_value


class TestHistory:
    def test_list_newest_first(self, db_path: Path):
        first, second = seed(
            db_path,
            ("p1", "single", "First take"),
            ("p1", "single", "Second take"),
        )

        code, out, _ = run_cli("--db", str(db_path), "history", "list", "--project", "p1")

        assert code == 0
        lines = out.splitlines()
        assert len(lines) == 2
        assert lines[0].startswith(second.id)
        assert lines[1].startswith(first.id)
        assert "Second take" in lines[0]

    def test_list_filters_by_episode(self, db_path: Path):
        seed(db_path, ("p1", 1, "Episode one"), ("p1", 2, "Episode two"))

        _, out, _ = run_cli(
            "--db", str(db_path), "history", "list", "--project", "p1", "--episode", "2"
        )

        assert "Episode two" in out
        assert "Episode one" not in out

    def test_list_empty(self, db_path: Path):
        code, out, _ = run_cli("--db", str(db_path), "history", "list", "--project", "p1")
        assert code == 0
        assert "No revisions for p1/single" in out

    def test_show(self, db_path: Path):
        (entry,) = seed(db_path, ("p1", 3, "HOST: Line one\nGUEST: Line two"))

        code, out, _ = run_cli("--db", str(db_path), "history", "show", entry.id)

        assert code == 0
        assert out.startswith("# p1/3 at ")
        assert "HOST: Line one\nGUEST: Line two" in out

    def test_show_unknown_revision(self, db_path: Path):
        code, _, err = run_cli("--db", str(db_path), "history", "show", "nope")
        assert code == 2
        assert "Revision nope not found" in err

    def test_invalid_episode_rejected(self, db_path: Path):
        with pytest.raises(SystemExit):
            run_cli("--db", str(db_path), "history", "list", "--project", "p1", "--episode", "0")


class TestExport:
    def test_json_export_filtered(self, db_path: Path, tmp_path: Path):
        seed(db_path, ("p1", "single", "Keep me"), ("p2", "single", "Skip me"))
        output = tmp_path / "out.json"

        code, _, _ = run_cli(
            "--db",
            str(db_path),
            "export",
            "--output",
            str(output),
            "--project",
            "p1",
            "--no-content",
        )

        assert code == 0
        data = json.loads(output.read_text(encoding="utf-8"))
        assert data["count"] == 1
        assert data["revisions"][0]["summary"] == "Keep me"
        assert "content" not in data["revisions"][0]

    def test_yaml_export(self, db_path: Path, tmp_path: Path):
        seed(db_path, ("p1", 1, "Ep one"))
        output = tmp_path / "out.yaml"

        code, _, _ = run_cli(
            "--db", str(db_path), "export", "--format", "yaml", "--output", str(output)
        )

        assert code == 0
        assert "Ep one" in output.read_text(encoding="utf-8")


class TestMigrate:
    def test_upgrades_legacy_history(self, db_path: Path):
        kv = SqliteKeyValueStore(db_path)
        legacy = [
            {
                "id": "old-1",
                "projectId": "p1",
                "episode": "single",
                "createdAt": 1_600_000_000_000,
                "summary": "Short script",
                "length": 12,
                "dataHash": "c2hvcnQ",
            }
        ]
        kv.write_all("pp_script_revisions_v1", json.dumps(legacy).encode("utf-8"))
        kv.close()

        code, out, _ = run_cli("--db", str(db_path), "migrate")

        assert code == 0
        assert "1 revisions available" in out
        kv = SqliteKeyValueStore(db_path)
        assert kv.read_all("pp_script_revisions_v2") is not None
        kv.close()


class TestCheck:
    def test_reports_recoverable_draft(self, db_path: Path, api):
        (entry,) = seed(db_path, ("p1", "single", "Unsaved local work"))
        api.load.return_value = RemoteRecord(content="Older remote", updated_at=0)

        code, out, _ = run_cli(
            "--db", str(db_path), "check", "--project", "p1", "--api-url", "http://api.test"
        )

        assert code == 1
        assert f"Recoverable draft {entry.id}" in out
        api.load.assert_called_once_with("p1", "single")

    def test_up_to_date(self, db_path: Path, api):
        seed(db_path, ("p1", "single", "Same everywhere"))
        api.load.return_value = RemoteRecord(content="Same everywhere", updated_at=None)

        code, out, _ = run_cli("--db", str(db_path), "check", "--project", "p1")

        assert code == 0
        assert "p1/single is up to date" in out
        api.save.assert_not_called()


class TestRestore:
    def test_restores_revision(self, db_path: Path, api):
        (entry,) = seed(db_path, ("p1", 2, "Good version"))
        api.load.return_value = RemoteRecord(content="Bad version", updated_at=None)
        api.save.return_value = RemoteSaveResult.success(
            content_hash("Bad version"), "Bad version"
        )

        code, out, _ = run_cli("--db", str(db_path), "restore", entry.id)

        assert code == 0
        api.save.assert_called_once_with("p1", 2, "Good version")
        assert f"Restored revision {entry.id}" in out

    def test_conflict_needs_overwrite(self, db_path: Path, api):
        (entry,) = seed(db_path, ("p1", "single", "Good version"))
        api.load.return_value = RemoteRecord(content="Bad version", updated_at=None)
        api.save.return_value = RemoteSaveResult.success(
            content_hash("Edited elsewhere"), "Edited elsewhere"
        )

        code, out, _ = run_cli("--db", str(db_path), "restore", entry.id)

        assert code == 1
        assert "--overwrite" in out

    def test_overwrite_resolves_conflict(self, db_path: Path, api):
        (entry,) = seed(db_path, ("p1", "single", "Good version"))
        api.load.return_value = RemoteRecord(content="Bad version", updated_at=None)
        api.save.return_value = RemoteSaveResult.success(
            content_hash("Edited elsewhere"), "Edited elsewhere"
        )

        code, _, _ = run_cli("--db", str(db_path), "restore", entry.id, "--overwrite")

        assert code == 0
        assert api.save.call_count == 2

    def test_remote_failure(self, db_path: Path, api):
        (entry,) = seed(db_path, ("p1", "single", "Good version"))
        api.load.return_value = RemoteRecord(content="Bad version", updated_at=None)
        api.save.return_value = RemoteSaveResult.failure("Cannot connect")

        code, out, _ = run_cli("--db", str(db_path), "restore", entry.id)

        assert code == 1
        assert "Restore failed: Cannot connect" in out
