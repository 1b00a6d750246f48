"""Diff engine.

Compares a checkpoint's recorded files with what is on disk now, and
optionally diffs the content of individual text files. Read-only.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ..utils.fs import file_digest
from ..utils.logging import get_logger
from .checkpoint_store import Checkpoint, CheckpointStore

logger = get_logger(__name__)


DELETED = "deleted"
MODIFIED = "modified"
UNCHANGED = "unchanged"
UNREADABLE = "unreadable"

BINARY_SNIFF_BYTES = 512
DEFAULT_MAX_DIFF_LINES = 500


@dataclass(frozen=True, slots=True)
class FileDiff:
    """State of one backed-up file relative to the live filesystem."""
    path: str
    status: str
    backup_size: int
    current_size: int
    backup_path: str
    error: str = ""


@dataclass
class DiffReport:
    """Aggregate comparison of a checkpoint against the filesystem."""
    checkpoint_id: str
    files: list[FileDiff] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for f in self.files if f.status == status)

    @property
    def deleted(self) -> int:
        return self._count(DELETED)

    @property
    def modified(self) -> int:
        return self._count(MODIFIED)

    @property
    def unchanged(self) -> int:
        return self._count(UNCHANGED)

    @property
    def unreadable(self) -> int:
        return self._count(UNREADABLE)

    @property
    def restore_bytes(self) -> int:
        """Bytes a rollback would write."""
        return sum(f.backup_size for f in self.files if f.status in (DELETED, MODIFIED))

    @property
    def has_changes(self) -> bool:
        return any(f.status in (DELETED, MODIFIED) for f in self.files)

    def filter(self, file: str) -> list[FileDiff]:
        """Entries for ``file`` given as recorded, absolute, or as a path suffix."""
        absolute = os.path.abspath(file)
        suffix = "/" + file.lstrip("/")
        return [
            f for f in self.files
            if f.path == file or f.path == absolute or f.path.endswith(suffix)
        ]


@dataclass(frozen=True, slots=True)
class DiffLine:
    """One changed line. ``delete`` lines exist only in the current file,
    ``insert`` lines only in the backup."""
    op: str
    text: str
    line_number: int


@dataclass
class ContentDiff:
    binary: bool = False
    approximate: bool = False
    lines: list[DiffLine] = field(default_factory=list)


def is_text_file(path: Path | str) -> bool:
    """False for unreadable files and files with a NUL byte near the start."""
    try:
        with open(path, "rb") as f:
            head = f.read(BINARY_SNIFF_BYTES)
    except OSError:
        return False
    return b"\0" not in head


def read_lines(path: Path | str, max_lines: int | None = None) -> list[str]:
    lines = []
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            if max_lines is not None and len(lines) >= max_lines:
                break
            lines.append(line.rstrip("\r\n"))
    return lines


def preview(path: Path | str, max_lines: int = 20) -> list[str] | None:
    """First lines of a text file; None for binary files."""
    if not is_text_file(path):
        return None
    return read_lines(path, max_lines)


def _lcs_diff(a: list[str], b: list[str]) -> list[DiffLine]:
    m, n = len(a), len(b)
    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        for j in range(1, n + 1):
            if a[i - 1] == b[j - 1]:
                dp[i][j] = dp[i - 1][j - 1] + 1
            else:
                dp[i][j] = max(dp[i - 1][j], dp[i][j - 1])

    result = []
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0 and a[i - 1] == b[j - 1]:
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or dp[i][j - 1] >= dp[i - 1][j]):
            result.append(DiffLine("insert", b[j - 1], j))
            j -= 1
        else:
            result.append(DiffLine("delete", a[i - 1], i))
            i -= 1

    result.reverse()
    return result


def _set_diff(a: list[str], b: list[str]) -> list[DiffLine]:
    a_set, b_set = set(a), set(b)
    result = [DiffLine("delete", line, i) for i, line in enumerate(a, 1) if line not in b_set]
    result.extend(DiffLine("insert", line, i) for i, line in enumerate(b, 1) if line not in a_set)
    return result


def content_diff(
    backup_path: Path | str,
    current_path: Path | str,
    max_lines: int = DEFAULT_MAX_DIFF_LINES,
) -> ContentDiff:
    """Line diff from the current file to its backup.

    Uses an exact LCS diff while both sides fit in ``max_lines``; larger
    files get an unordered set difference flagged as ``approximate``.

    Raises:
        OSError: if either file cannot be read
    """
    if not is_text_file(backup_path) or not is_text_file(current_path):
        return ContentDiff(binary=True)

    current = read_lines(current_path)
    backup = read_lines(backup_path)

    if len(current) > max_lines or len(backup) > max_lines:
        return ContentDiff(approximate=True, lines=_set_diff(current, backup))
    return ContentDiff(lines=_lcs_diff(current, backup))


def _same_content(a: str, b: str) -> bool:
    try:
        return file_digest(a) == file_digest(b)
    except OSError:
        return False


class DiffEngine:
    """Compares checkpoints with the live filesystem."""

    def __init__(self, store: CheckpointStore):
        self.store = store

    def analyze(self, checkpoint: Checkpoint, accurate: bool = True) -> DiffReport:
        """Classify every backed-up file against the filesystem.

        Files that are gone are ``deleted``; files that cannot be inspected
        (permission denied on a parent, for instance) are ``unreadable`` and
        carry the error text.

        Args:
            checkpoint: Checkpoint to compare (decompressed if needed)
            accurate: Compare content digests when sizes match; without it
                equal size counts as unchanged

        Returns:
            DiffReport over the checkpoint's regular files
        """
        checkpoint = self.store.ensure_decompressed(checkpoint)
        report = DiffReport(checkpoint_id=checkpoint.id)

        for entry in checkpoint.manifest.regular_files():
            error = ""
            try:
                current_size = os.stat(entry.original_path).st_size
            except (FileNotFoundError, NotADirectoryError):
                status, current_size = DELETED, 0
            except OSError as e:
                status, current_size, error = UNREADABLE, 0, str(e)
                logger.warning("diff_stat_failed", checkpoint=checkpoint.id, path=entry.original_path, error=error)
            else:
                if current_size != entry.size:
                    status = MODIFIED
                elif accurate and not _same_content(entry.backup_path, entry.original_path):
                    status = MODIFIED
                else:
                    status = UNCHANGED

            report.files.append(FileDiff(
                path=entry.original_path,
                status=status,
                backup_size=entry.size,
                current_size=current_size,
                backup_path=entry.backup_path,
                error=error,
            ))

        logger.debug(
            "diff_analyzed",
            checkpoint=checkpoint.id,
            deleted=report.deleted,
            modified=report.modified,
            unchanged=report.unchanged,
            unreadable=report.unreadable,
        )
        return report
