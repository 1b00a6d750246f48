"""Rollback engine.

Copies backed-up content back to its original location or to an alternate
root. Failures are counted per file; a batch is never aborted part way and
files restored before a failure are kept.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from ..utils.fs import is_within
from ..utils.logging import get_logger
from .backup import restore_file
from .checkpoint_store import Checkpoint, CheckpointStore
from .errors import AlreadyRolledBackError
from .manifest import FileEntry

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class RestoreFailure:
    """One file that could not be restored."""
    path: str
    error: str


@dataclass
class RollbackResult:
    """Result of a rollback operation."""
    checkpoint_id: str
    restored: int = 0
    failed: int = 0
    failures: list[RestoreFailure] = field(default_factory=list)
    restored_paths: list[str] = field(default_factory=list)
    destination: str | None = None

    @property
    def success(self) -> bool:
        return self.failed == 0

    @property
    def summary(self) -> str:
        return f"{self.restored} restored, {self.failed} failed"


class RollbackEngine:
    """Restores checkpoints."""

    def __init__(self, store: CheckpointStore):
        self.store = store

    def rollback(self, checkpoint: Checkpoint) -> RollbackResult:
        """Restore every file in the checkpoint to its original path.

        The checkpoint is marked rolled back after the pass, even when some
        files failed; the failures are reported in the result.

        Raises:
            AlreadyRolledBackError: if the checkpoint was already rolled back
        """
        if checkpoint.manifest.rolled_back:
            raise AlreadyRolledBackError(checkpoint.id)

        checkpoint = self.store.ensure_decompressed(checkpoint)
        result = self._restore(checkpoint, checkpoint.manifest.regular_files(), lambda entry: entry.original_path)

        self.store.mark_rolled_back(checkpoint)
        logger.info("rollback_complete", checkpoint=checkpoint.id, restored=result.restored, failed=result.failed)
        return result

    def rollback_selective(self, checkpoint: Checkpoint, paths: Iterable[Path | str]) -> RollbackResult:
        """Restore only the given original paths; never marks rolled back.

        Raises:
            AlreadyRolledBackError: if the checkpoint was already rolled back
        """
        if checkpoint.manifest.rolled_back:
            raise AlreadyRolledBackError(checkpoint.id)

        checkpoint = self.store.ensure_decompressed(checkpoint)
        entries = self._select(checkpoint, paths)
        result = self._restore(checkpoint, entries, lambda entry: entry.original_path)
        logger.info("selective_rollback_complete", checkpoint=checkpoint.id, restored=result.restored, failed=result.failed)
        return result

    def rollback_to_path(self, checkpoint: Checkpoint, dest_root: Path | str) -> RollbackResult:
        """Restore every file under ``dest_root`` instead of in place."""
        checkpoint = self.store.ensure_decompressed(checkpoint)
        return self._restore_to(checkpoint, checkpoint.manifest.regular_files(), dest_root)

    def rollback_selective_to_path(
        self,
        checkpoint: Checkpoint,
        paths: Iterable[Path | str],
        dest_root: Path | str,
    ) -> RollbackResult:
        """Restore the given original paths under ``dest_root``."""
        checkpoint = self.store.ensure_decompressed(checkpoint)
        return self._restore_to(checkpoint, self._select(checkpoint, paths), dest_root)

    def rollback_by_id(self, checkpoint_id: str) -> RollbackResult:
        return self.rollback(self.store.get(checkpoint_id))

    def rollback_latest(self) -> RollbackResult:
        return self.rollback(self.store.get_latest())

    @staticmethod
    def relocate(entry: FileEntry, working_dir: str, dest_root: Path | str) -> str:
        """Target path for ``entry`` when restoring under ``dest_root``.

        Paths inside the checkpoint's working directory keep their relative
        layout; anything else lands directly under ``dest_root`` by name.
        """
        original = entry.original_path
        if working_dir and is_within(original, working_dir) and os.path.normpath(original) != os.path.normpath(working_dir):
            rel = os.path.relpath(original, working_dir)
        else:
            rel = os.path.basename(original)
        return os.path.join(os.path.abspath(dest_root), rel)

    def _restore_to(self, checkpoint: Checkpoint, entries: list[FileEntry], dest_root: Path | str) -> RollbackResult:
        working_dir = checkpoint.manifest.working_dir
        result = self._restore(checkpoint, entries, lambda entry: self.relocate(entry, working_dir, dest_root))
        result.destination = os.path.abspath(dest_root)
        logger.info(
            "rollback_to_path_complete",
            checkpoint=checkpoint.id,
            destination=result.destination,
            restored=result.restored,
            failed=result.failed,
        )
        return result

    @staticmethod
    def _select(checkpoint: Checkpoint, paths: Iterable[Path | str]) -> list[FileEntry]:
        wanted = {os.path.normpath(os.path.abspath(p)) for p in paths}
        return [
            entry for entry in checkpoint.manifest.regular_files()
            if os.path.normpath(entry.original_path) in wanted
        ]

    @staticmethod
    def _restore(
        checkpoint: Checkpoint,
        entries: list[FileEntry],
        target_for: Callable[[FileEntry], str],
    ) -> RollbackResult:
        result = RollbackResult(checkpoint_id=checkpoint.id)

        for entry in entries:
            target = target_for(entry)

            if not os.path.exists(entry.backup_path):
                result.failed += 1
                result.failures.append(RestoreFailure(target, "backup file not found"))
                logger.warning("backup_missing", checkpoint=checkpoint.id, path=entry.backup_path)
                continue

            try:
                restore_file(entry.backup_path, target)
                os.chmod(target, entry.mode)
            except OSError as e:
                result.failed += 1
                result.failures.append(RestoreFailure(target, str(e)))
                logger.warning("restore_failed", checkpoint=checkpoint.id, path=target, error=str(e))
                continue

            result.restored += 1
            result.restored_paths.append(target)

        return result
