"""Command-line interface for inspecting and restoring script revisions."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .coordinator import CoordinatorConfig, SaveCoordinator
from .exporters import get_exporter
from .remote import ProjectApiClient, ProjectApiError
from .scheduler import InlineExecutor, ManualScheduler
from .status import SaveStatus
from .storage import (
    RevisionEntry,
    RevisionNotFoundError,
    RevisionStore,
    SqliteKeyValueStore,
    StorageError,
    normalize_episode_key,
)

LOGGER = logging.getLogger("script_autosave.cli")


def episode_arg(value: str):
    try:
        return normalize_episode_key(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Podcast script revision history")
    parser.add_argument("--db", default="data/revisions.db", help="Revision database path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    history = subparsers.add_parser("history", help="List or show stored revisions")
    history_sub = history.add_subparsers(dest="history_command", required=True)
    list_parser = history_sub.add_parser("list", help="List revisions for a project episode")
    list_parser.add_argument("--project", required=True, help="Project ID")
    list_parser.add_argument("--episode", type=episode_arg, default="single", help="Episode number or 'single'")
    show_parser = history_sub.add_parser("show", help="Print one revision")
    show_parser.add_argument("revision_id", help="Revision ID")

    export_parser = subparsers.add_parser("export", help="Export revision history")
    export_parser.add_argument("--format", choices=["json", "yaml"], default="json", help="Output format")
    export_parser.add_argument("--output", required=True, help="Output file path")
    export_parser.add_argument("--project", default=None, help="Only this project")
    export_parser.add_argument("--episode", type=episode_arg, default=None, help="Only this episode")
    export_parser.add_argument("--no-content", action="store_true", help="Summaries only")

    subparsers.add_parser("migrate", help="Upgrade legacy revision history in place")

    check_parser = subparsers.add_parser("check", help="Compare local history with the remote script")
    check_parser.add_argument("--project", required=True, help="Project ID")
    check_parser.add_argument("--episode", type=episode_arg, default="single", help="Episode number or 'single'")
    check_parser.add_argument("--api-url", default="http://localhost:5000", help="Project API base URL")

    restore_parser = subparsers.add_parser("restore", help="Write a stored revision back to the project")
    restore_parser.add_argument("revision_id", help="Revision ID")
    restore_parser.add_argument("--api-url", default="http://localhost:5000", help="Project API base URL")
    restore_parser.add_argument("--overwrite", action="store_true", help="Overwrite even if the remote changed")

    return parser


def format_timestamp(created_at: int) -> str:
    return datetime.fromtimestamp(created_at / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def format_entry_line(entry: RevisionEntry) -> str:
    preview = entry.summary.replace("\n", " ")
    if len(preview) > 60:
        preview = preview[:57] + "..."
    return f"{entry.id}  {format_timestamp(entry.created_at)}  {entry.length:>7}  {preview}"


def history_list(store: RevisionStore, args: argparse.Namespace) -> int:
    entries = store.list(args.project, args.episode)
    if not entries:
        print(f"No revisions for {args.project}/{args.episode}")
        return 0
    for entry in entries:
        print(format_entry_line(entry))
    return 0


def history_show(store: RevisionStore, args: argparse.Namespace) -> int:
    entry = store.require(args.revision_id)
    print(f"# {entry.project_id}/{entry.episode_key} at {format_timestamp(entry.created_at)}")
    print(entry.content if entry.content is not None else entry.summary)
    return 0


def export(store: RevisionStore, args: argparse.Namespace) -> int:
    entries = store.all_entries()
    if args.project is not None:
        entries = (e for e in entries if e.project_id == args.project)
    if args.episode is not None:
        entries = (e for e in entries if e.episode_key == args.episode)
    exporter = get_exporter(args.format)
    exporter.include_content = not args.no_content
    count = exporter.export(entries, Path(args.output))
    LOGGER.info("Exported %d revisions to %s", count, args.output)
    return 0


def check(store: RevisionStore, args: argparse.Namespace) -> int:
    client = ProjectApiClient(base_url=args.api_url)
    remote = client.load(args.project, args.episode)
    with open_session(store, client, args.project, args.episode) as session:
        status = session.open(remote.content, remote.updated_at)
        if status == SaveStatus.DRAFT:
            draft = session.draft
            print(f"Recoverable draft {draft.id} ({draft.length} chars, {format_timestamp(draft.created_at)})")
            return 1
    print(f"{args.project}/{args.episode} is up to date")
    return 0


def restore(store: RevisionStore, args: argparse.Namespace) -> int:
    entry = store.require(args.revision_id)
    if entry.content is None:
        LOGGER.error("Revision %s predates full-content history and cannot be restored", entry.id)
        return 2
    client = ProjectApiClient(base_url=args.api_url)
    remote = client.load(entry.project_id, entry.episode_key)
    with open_session(store, client, entry.project_id, entry.episode_key) as session:
        session.open(remote.content, remote.updated_at)
        session.edit(entry.content)
        session.force_save()
        if session.status == SaveStatus.CONFLICT and args.overwrite:
            session.force_save()
        status = session.status
    if status == SaveStatus.SAVED:
        print(f"Restored revision {entry.id} to {entry.project_id}/{entry.episode_key}")
        return 0
    if status == SaveStatus.CONFLICT:
        print("Remote script changed since it was last saved here; rerun with --overwrite")
    else:
        print(f"Restore failed: {session.state.last_error}")
    return 1


def open_session(store: RevisionStore, client: ProjectApiClient, project_id: str, episode_key) -> SaveCoordinator:
    """Synchronous session for one-shot CLI commands (no retries, no timers)."""
    return SaveCoordinator(
        project_id,
        episode_key,
        remote_save=client.save,
        revisions=store,
        config=CoordinatorConfig(retry_backoff=(), snapshot_on_error=False, snapshot_on_close=False),
        scheduler=ManualScheduler(),
        executor=InlineExecutor(),
    )


def run(args: argparse.Namespace) -> int:
    kv = SqliteKeyValueStore(Path(args.db))
    try:
        store = RevisionStore(kv)
        if args.command == "history":
            if args.history_command == "list":
                return history_list(store, args)
            return history_show(store, args)
        if args.command == "export":
            return export(store, args)
        if args.command == "migrate":
            # RevisionStore migrates on construction; report what is now readable
            print(f"{len(store)} revisions available under the current schema")
            return 0
        if args.command == "check":
            return check(store, args)
        if args.command == "restore":
            return restore(store, args)
        raise ValueError(f"Unknown command {args.command}")
    finally:
        kv.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        return run(args)
    except RevisionNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except (ProjectApiError, StorageError) as exc:
        LOGGER.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
