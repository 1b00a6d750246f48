"""SafeShell CLI.

Checkpoint files before a destructive command, and undo it afterwards:

    safeshell checkpoint -c "rm -rf build" build/
    safeshell diff --last
    safeshell rollback --last
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

from .. import __version__
from ..core.checkpoint_store import Checkpoint, SearchOptions
from ..core.controller import SafeShellController
from ..core.diff import DELETED, MODIFIED, UNCHANGED, UNREADABLE, content_diff, preview
from ..core.errors import SafeShellError
from ..utils.format import format_bytes, format_time_ago, parse_duration
from ..utils.logging import setup_logging


DEFAULT_LIST_LIMIT = 10
MAX_DIFF_CHANGES = 30


def _duration(value: str):
    try:
        return parse_duration(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date: {value!r} (expected YYYY-MM-DD)") from e


def _add_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("checkpoint_id", nargs="?", help="Checkpoint id")
    parser.add_argument("--last", "-l", action="store_true", help="Use the most recent checkpoint")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safeshell",
        description="SafeShell - checkpoints and undo for destructive shell commands",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )

    subparsers = parser.add_subparsers(dest="command")

    checkpoint = subparsers.add_parser("checkpoint", help="Back up paths before running a command")
    checkpoint.add_argument("paths", nargs="+", help="Files or directories to back up")
    checkpoint.add_argument("--command", "-c", dest="description", default="manual checkpoint",
                            help="The command about to run")
    checkpoint.add_argument("--tag", "-t", action="append", default=[], help="Tag the new checkpoint")

    list_cmd = subparsers.add_parser("list", help="List checkpoints")
    list_cmd.add_argument("--limit", "-n", type=int, default=DEFAULT_LIST_LIMIT, help="Number of checkpoints to show")
    list_cmd.add_argument("--all", "-a", action="store_true", help="Show all checkpoints")
    list_cmd.add_argument("--session", "-s", action="store_true", help="Only the current session's checkpoints")
    list_cmd.add_argument("--grouped", action="store_true", help="Group checkpoints by session")

    show = subparsers.add_parser("show", help="Show a checkpoint's details")
    _add_target(show)

    rollback = subparsers.add_parser("rollback", help="Restore files from a checkpoint")
    _add_target(rollback)
    rollback.add_argument("--files", "-f", default="", help="Restore only these files (comma-separated)")
    rollback.add_argument("--to", "-t", default=None, help="Restore into a different directory")

    diff = subparsers.add_parser("diff", help="Show what a rollback would restore")
    _add_target(diff)
    diff.add_argument("--content", "-c", action="store_true", help="Show content differences")
    diff.add_argument("--file", "-f", default="", help="Only this file")
    diff.add_argument("--fast", action="store_true", help="Compare sizes only")

    tag = subparsers.add_parser("tag", help="Add or remove tags")
    _add_target(tag)
    tag.add_argument("--add", "-a", dest="tags", action="append", default=[], help="Tag to add (repeatable)")
    tag.add_argument("--remove", "-r", dest="untags", action="append", default=[], help="Tag to remove (repeatable)")

    note = subparsers.add_parser("note", help="Set a checkpoint's note")
    _add_target(note)
    note.add_argument("--text", "-m", required=True, help="Note text (empty clears it)")

    search = subparsers.add_parser("search", help="Search checkpoints")
    search.add_argument("query", nargs="?", help="Matches command text or file path")
    search.add_argument("--file", "-f", default=None, help="Search by file name/path")
    search.add_argument("--tag", "-t", default=None, help="Search by tag")
    search.add_argument("--command", "-c", dest="cmd", default=None, help="Search by command")
    search.add_argument("--after", type=_date, default=None, help="Created at or after (YYYY-MM-DD)")
    search.add_argument("--before", type=_date, default=None, help="Created at or before (YYYY-MM-DD)")

    clean = subparsers.add_parser("clean", help="Delete or compress old checkpoints")
    clean.add_argument("--older-than", "-o", type=_duration, default=None, help="Age such as 7d, 24h, 30m")
    clean.add_argument("--keep", "-k", type=int, default=None, help="Keep the N most recent checkpoints")
    clean.add_argument("--compress", "-c", action="store_true", help="Compress instead of deleting")
    clean.add_argument("--dry-run", "-d", action="store_true", help="Show what would be done")

    compress = subparsers.add_parser("compress", help="Compress checkpoints")
    _add_target(compress)
    compress.add_argument("--all", "-a", action="store_true", help="Compress every uncompressed checkpoint")
    compress.add_argument("--older-than", type=_duration, default=None, help="Compress checkpoints older than this")

    decompress = subparsers.add_parser("decompress", help="Decompress a checkpoint")
    _add_target(decompress)

    subparsers.add_parser("status", help="Show storage status")

    config = subparsers.add_parser("config", help="Show or change configuration")
    config.add_argument("key", nargs="?", help="Configuration key")
    config.add_argument("value", nargs="?", help="New value")

    return parser


def main(args: list[str] | None = None) -> int:
    parser = create_parser()
    parsed = parser.parse_args(args)

    setup_logging("DEBUG" if parsed.debug else None)

    if not parsed.command:
        parser.print_help()
        return 1

    handler = COMMANDS.get(parsed.command)
    if handler is None:
        parser.print_help()
        return 1

    controller = SafeShellController()
    try:
        return handler(parsed, controller)
    except (SafeShellError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _resolve(args: argparse.Namespace, controller: SafeShellController) -> Checkpoint:
    if not args.checkpoint_id and not args.last:
        raise SafeShellError("Please specify a checkpoint id or use --last")
    return controller.resolve(None if args.last else args.checkpoint_id)


def _display_path(path: str) -> str:
    try:
        rel = os.path.relpath(path)
    except ValueError:
        return path
    return path if rel.startswith("..") else rel


def _print_row(cp: Checkpoint) -> None:
    m = cp.manifest
    flags = ""
    if m.rolled_back:
        flags += " [rolled back]"
    if cp.compressed:
        flags += " [compressed]"
    tags = f" #{' #'.join(m.tags)}" if m.tags else ""
    print(f"{cp.id}  {format_time_ago(m.timestamp):<16} {m.file_count:>5} files  {m.command}{tags}{flags}")


def cmd_checkpoint(args: argparse.Namespace, controller: SafeShellController) -> int:
    cp = controller.create_checkpoint(args.description, args.paths, working_dir=Path.cwd())
    for tag in args.tag:
        controller.store.add_tag(cp.id, tag)

    print(f"Checkpoint: {cp.id}  ({cp.manifest.file_count} files, {format_bytes(cp.manifest.total_size)})")
    for warning in cp.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    return 0


def cmd_list(args: argparse.Namespace, controller: SafeShellController) -> int:
    store = controller.store

    if args.grouped:
        sessions = store.list_by_session()
        if not sessions:
            print("No checkpoints found.")
            return 0
        current = store.current_session()
        for session_id, checkpoints in sessions.items():
            marker = " (current)" if session_id == current else ""
            print(f"Session {session_id}{marker}:")
            for cp in checkpoints:
                print("  ", end="")
                _print_row(cp)
        return 0

    checkpoints = store.list()
    if args.session:
        current = store.current_session()
        checkpoints = [cp for cp in checkpoints if cp.manifest.session_id == current]

    if not checkpoints:
        print("No checkpoints found.")
        return 0

    shown = checkpoints if args.all else checkpoints[:args.limit]
    for cp in shown:
        _print_row(cp)

    if len(checkpoints) > len(shown):
        print(f"\nShowing {len(shown)} of {len(checkpoints)}. Use --all to see every checkpoint.")
    return 0


def cmd_show(args: argparse.Namespace, controller: SafeShellController) -> int:
    cp = _resolve(args, controller)
    m = cp.manifest

    print(f"Checkpoint: {cp.id}")
    print(f"Command:    {m.command}")
    print(f"Time:       {m.timestamp.strftime('%Y-%m-%d %H:%M:%S')} ({format_time_ago(m.timestamp)})")
    print(f"Directory:  {m.working_dir}")
    print(f"Session:    {m.session_id or 'default'}")
    print(f"Files:      {m.file_count} ({format_bytes(m.total_size)})")
    if m.tags:
        print(f"Tags:       {', '.join(m.tags)}")
    if m.note:
        print(f"Note:       {m.note}")
    if m.rolled_back:
        print("Status:     rolled back")
    if cp.compressed:
        print(f"Compressed: {format_bytes(m.compressed_size)}")

    print()
    for entry in m.files:
        suffix = "/" if entry.is_dir else f"  ({format_bytes(entry.size)})"
        print(f"  {_display_path(entry.original_path)}{suffix}")
    return 0


def cmd_rollback(args: argparse.Namespace, controller: SafeShellController) -> int:
    cp = _resolve(args, controller)
    files = [f.strip() for f in args.files.split(",") if f.strip()] if args.files else None

    result = controller.rollback(cp.id, files=files, to=args.to)

    if files and result.restored + result.failed == 0:
        print("None of the given files are in this checkpoint.", file=sys.stderr)
        return 1

    where = f" to {result.destination}" if result.destination else ""
    print(f"Rolled back {cp.id}{where}: {result.summary}")
    for failure in result.failures:
        print(f"  failed: {failure.path}: {failure.error}", file=sys.stderr)
    return 0 if result.success else 1


def _print_content_diff(backup_path: str, current_path: str) -> None:
    try:
        diff = content_diff(backup_path, current_path)
    except OSError as e:
        print(f"    (unable to read files for diff: {e})")
        return

    if diff.binary:
        print("    (binary file - content diff not available)")
        return

    label = "approximate content diff" if diff.approximate else "content diff"
    print(f"    --- {label} (current -> backup) ---")
    for shown, line in enumerate(diff.lines):
        if shown >= MAX_DIFF_CHANGES:
            print("    ... (diff truncated)")
            break
        sign = "-" if line.op == "delete" else "+"
        print(f"    {sign}{line.line_number:3d}: {line.text[:70]}")
    if not diff.lines:
        print("    (no differences)")


def cmd_diff(args: argparse.Namespace, controller: SafeShellController) -> int:
    target = _resolve(args, controller)
    cp, report = controller.diff(target.id, accurate=not args.fast)

    print(f"Checkpoint: {cp.id}")
    print(f"Command:    {cp.manifest.command}")
    print(f"Time:       {cp.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if cp.manifest.rolled_back:
        print("Warning: this checkpoint has already been rolled back")
    print()

    print("Summary:")
    if report.deleted:
        print(f"  {report.deleted} file(s) deleted - will be restored")
    if report.modified:
        print(f"  {report.modified} file(s) modified - will be reverted")
    if report.unchanged:
        print(f"  {report.unchanged} file(s) unchanged - no action needed")
    if report.unreadable:
        print(f"  {report.unreadable} file(s) could not be inspected")
    print(f"  Total restore size: {format_bytes(report.restore_bytes)}")
    print()

    files = report.files
    if args.file:
        files = report.filter(args.file)
        if not files:
            print(f"Error: file '{args.file}' not found in checkpoint", file=sys.stderr)
            return 1

    changed = [f for f in files if f.status != UNCHANGED]
    if not changed:
        print("All files are in sync with the checkpoint.")
        return 0

    print("Files to restore:")
    for f in changed:
        path = _display_path(f.path)
        if f.status == DELETED:
            print(f"  + {path} ({format_bytes(f.backup_size)})")
            if args.content:
                lines = preview(f.backup_path)
                if lines is None:
                    print("    (binary file)")
                else:
                    for i, line in enumerate(lines, 1):
                        print(f"    {i:3d}: {line[:80]}")
        elif f.status == MODIFIED:
            print(f"  ~ {path} ({format_bytes(f.current_size)} -> {format_bytes(f.backup_size)})")
            if args.content:
                _print_content_diff(f.backup_path, f.path)
        elif f.status == UNREADABLE:
            print(f"  ? {path} ({f.error})")

    print(f"\nTo restore these files, run:\n  safeshell rollback {cp.id}")
    return 0


def cmd_tag(args: argparse.Namespace, controller: SafeShellController) -> int:
    cp = _resolve(args, controller)
    if not args.tags and not args.untags:
        print(", ".join(cp.manifest.tags) or "(no tags)")
        return 0

    for tag in args.tags:
        controller.store.add_tag(cp.id, tag)
    for tag in args.untags:
        if not controller.store.remove_tag(cp.id, tag):
            print(f"Tag not present: {tag}", file=sys.stderr)

    tags = controller.store.get(cp.id).manifest.tags
    print(f"{cp.id}: {', '.join(tags) or '(no tags)'}")
    return 0


def cmd_note(args: argparse.Namespace, controller: SafeShellController) -> int:
    cp = _resolve(args, controller)
    controller.store.set_note(cp.id, args.text)
    print(f"Note updated for {cp.id}")
    return 0


def cmd_search(args: argparse.Namespace, controller: SafeShellController) -> int:
    options = SearchOptions(
        file_name=args.file,
        tag=args.tag,
        command=args.cmd,
        before=args.before,
        after=args.after,
    )
    results = controller.store.search(options)

    if args.query:
        needle = args.query.lower()
        results = [
            cp for cp in results
            if needle in cp.manifest.command.lower()
            or any(needle in f.original_path.lower() for f in cp.manifest.files)
        ]

    if not results:
        print("No matching checkpoints.")
        return 0

    for cp in results:
        _print_row(cp)
    return 0


def cmd_clean(args: argparse.Namespace, controller: SafeShellController) -> int:
    store = controller.store

    if args.dry_run:
        if args.older_than is None and args.keep is None and not args.compress:
            candidates = store.limit_candidates()
        else:
            candidates = store.cleanup_candidates(args.older_than, args.keep)
        verb = "compress" if args.compress else "delete"
        if not candidates:
            print(f"Nothing to {verb}.")
        for cp in candidates:
            print(f"Would {verb}: {cp.id}  {cp.manifest.command}")
        return 0

    if args.compress:
        count, saved = 0, 0
        if args.older_than is not None:
            count, saved = store.compress_older_than(args.older_than)
        if args.keep is not None:
            count += store.prune(args.keep, compress=True)
        print(f"Compressed {count} checkpoints (saved {format_bytes(saved)}).")
        return 0

    deleted = controller.clean(older_than=args.older_than, keep=args.keep)
    print(f"Deleted {deleted} checkpoints.")
    return 0


def cmd_compress(args: argparse.Namespace, controller: SafeShellController) -> int:
    store = controller.store

    if args.all or args.older_than is not None:
        count, saved = store.compress_older_than(args.older_than or timedelta(0))
        print(f"Compressed {count} checkpoints (saved {format_bytes(saved)}).")
        return 0

    cp = _resolve(args, controller)
    original, compressed = store.compress(cp.id)
    print(f"Compressed {cp.id}: {format_bytes(original)} -> {format_bytes(compressed)}")
    return 0


def cmd_decompress(args: argparse.Namespace, controller: SafeShellController) -> int:
    cp = _resolve(args, controller)
    if not cp.compressed:
        print(f"{cp.id} is not compressed.")
        return 0
    controller.store.decompress(cp.id)
    print(f"Decompressed {cp.id}")
    return 0


def cmd_status(args: argparse.Namespace, controller: SafeShellController) -> int:
    status = controller.get_status()
    limit = f"{status.max_storage_mb} MB" if status.max_storage_mb else "unlimited"

    print(f"State directory: {status.safeshell_dir}")
    print(f"Checkpoints:     {status.checkpoint_count} ({status.compressed_count} compressed)")
    print(f"Latest:          {status.latest_checkpoint or '(none)'}")
    print(f"Storage:         {format_bytes(status.storage_bytes)} of {limit}")
    print(f"Session:         {status.session_id}")
    if status.storage_exceeded:
        print("Warning: storage limit exceeded; run `safeshell clean`", file=sys.stderr)
    return 0


def cmd_config(args: argparse.Namespace, controller: SafeShellController) -> int:
    loader = controller.config_loader
    current = loader.config.to_dict()

    if not args.key:
        for key, value in current.items():
            print(f"{key} = {value}")
        return 0

    if args.key not in current:
        print(f"Error: unknown config key: {args.key}", file=sys.stderr)
        return 1

    if args.value is None:
        print(current[args.key])
        return 0

    value = _coerce(args.value, current[args.key])
    updated = loader.set_value(args.key, value)
    print(f"{args.key} = {updated.to_dict()[args.key]}")
    return 0


def _coerce(raw: str, existing):
    """Parse ``raw`` as the type of the key's current value.

    Raises:
        ValueError: if ``raw`` is not a valid boolean or integer
    """
    if isinstance(existing, bool):
        flag = raw.strip().lower()
        if flag in ("1", "true", "yes", "on"):
            return True
        if flag in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"expected true or false, got {raw!r}")
    if isinstance(existing, int):
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"expected an integer, got {raw!r}") from None
    if isinstance(existing, list):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw


COMMANDS = {
    "checkpoint": cmd_checkpoint,
    "list": cmd_list,
    "show": cmd_show,
    "rollback": cmd_rollback,
    "diff": cmd_diff,
    "tag": cmd_tag,
    "note": cmd_note,
    "search": cmd_search,
    "clean": cmd_clean,
    "compress": cmd_compress,
    "decompress": cmd_decompress,
    "status": cmd_status,
    "config": cmd_config,
}


if __name__ == "__main__":
    sys.exit(main())
