"""Checkpoint storage for SafeShell.

Creates checkpoints by hard-linking (or copying) the files a command is
about to touch into a private tree, and manages their lifecycle: lookup,
tagging, search, retention and compression.
"""

from __future__ import annotations

import os
import secrets
import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

from ..config.types import SafeShellConfig
from ..utils.env import get_session_id
from ..utils.fs import is_within
from ..utils.format import format_bytes
from ..utils.logging import get_logger
from .backup import backup_dir, backup_file, disk_usage
from .classifier import PathClassifier
from .compression import archive_path, compress_dir, decompress_dir, files_dir, is_compressed
from .errors import (
    AlreadyCompressedError,
    CheckpointNotFoundError,
    CorruptStateError,
    SafeShellError,
    StorageError,
)
from .index import CheckpointIndex
from .manifest import MANIFEST_NAME, Manifest

logger = get_logger(__name__)


ID_TIME_FORMAT = "%Y-%m-%dT%H%M%S"
DEFAULT_SESSION = "default"


def _now() -> datetime:
    return datetime.now()


def generate_checkpoint_id(when: datetime) -> str:
    """Build an id like ``2024-05-01T142233-1a2b3c4d``."""
    return f"{when.strftime(ID_TIME_FORMAT)}-{secrets.token_hex(4)}"


@dataclass
class Checkpoint:
    """Runtime handle for one checkpoint on disk."""
    id: str
    dir: Path
    files_dir: Path
    manifest: Manifest
    warnings: list[str] = field(default_factory=list)

    @property
    def created_at(self) -> datetime:
        return self.manifest.timestamp

    @property
    def compressed(self) -> bool:
        return self.manifest.compressed or is_compressed(self.dir)


@dataclass
class SearchOptions:
    """Criteria for ``CheckpointStore.search``; unset fields match anything."""
    file_name: str | None = None
    tag: str | None = None
    command: str | None = None
    before: datetime | None = None
    after: datetime | None = None


class CheckpointStore:
    """Manages checkpoint storage and retrieval."""

    def __init__(
        self,
        checkpoints_dir: Path | str,
        config: SafeShellConfig | None = None,
        index: CheckpointIndex | None = None,
        classifier: PathClassifier | None = None,
    ):
        """Initialize checkpoint store.

        Args:
            checkpoints_dir: Directory holding one subdirectory per checkpoint
            config: Resolved configuration (defaults apply when omitted)
            index: Index to keep in sync (a fresh one is loaded when omitted)
            classifier: Backup filter (built from ``config`` when omitted)

        Raises:
            StorageError: if the checkpoints directory cannot be created
        """
        self.checkpoints_dir = Path(checkpoints_dir)
        self.config = config or SafeShellConfig()
        self.classifier = classifier or PathClassifier.from_config(self.config)

        try:
            self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create checkpoints directory {self.checkpoints_dir}: {e}") from e

        if index is None:
            index = CheckpointIndex(self.checkpoints_dir)
            index.load()
        self.index = index

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        command: str,
        target_paths: Iterable[Path | str],
        working_dir: Path | str | None = None,
        session_id: str | None = None,
    ) -> Checkpoint:
        """Snapshot ``target_paths`` before ``command`` runs.

        Per-target problems (missing paths, unreadable files, oversized
        files, sensitive matches) never abort creation; they are logged and
        collected in ``Checkpoint.warnings``.

        Args:
            command: The command about to run
            target_paths: Files and directories it may touch; relative paths
                are resolved against ``working_dir``
            working_dir: Directory the command runs in (defaults to cwd)
            session_id: Session to file the checkpoint under

        Returns:
            The new Checkpoint

        Raises:
            CheckpointValidationError: if a target is a system path; raised
                before anything is written
            StorageError: if the checkpoint itself cannot be written
        """
        work_dir = os.path.abspath(working_dir or os.getcwd())

        targets = []
        for target in target_paths:
            path = os.fspath(target)
            if not os.path.isabs(path):
                path = os.path.join(work_dir, path)
            path = os.path.normpath(path)
            if self.config.validate_paths:
                self.classifier.validate_path(path)
            targets.append(path)
        targets = self._distinct_targets(targets)

        now = _now()
        checkpoint_id = self._new_id(now)
        checkpoint_dir = self.checkpoints_dir / checkpoint_id
        tree = files_dir(checkpoint_dir)

        try:
            tree.mkdir(parents=True)
        except OSError as e:
            shutil.rmtree(checkpoint_dir, ignore_errors=True)
            raise StorageError(f"Cannot create checkpoint directory {checkpoint_dir}: {e}") from e

        manifest = Manifest(
            id=checkpoint_id,
            timestamp=now,
            command=command,
            working_dir=work_dir,
            session_id=session_id or get_session_id(),
        )
        warnings: list[str] = []

        for path in targets:
            self._backup_target(path, tree, manifest, warnings)

        if self.config.max_storage_mb > 0:
            exceeds, current_mb, limit_mb = self.check_total_storage()
            if exceeds:
                warnings.append(f"Checkpoint storage is {current_mb:.1f} MB, over the {limit_mb} MB limit")
                logger.warning("storage_limit_exceeded", current_mb=round(current_mb, 1), limit_mb=limit_mb)

        try:
            manifest.save(checkpoint_dir)
        except OSError as e:
            shutil.rmtree(checkpoint_dir, ignore_errors=True)
            raise StorageError(f"Cannot write manifest for {checkpoint_id}: {e}") from e

        self.index.add(manifest)
        logger.info(
            "checkpoint_created",
            checkpoint=checkpoint_id,
            files=manifest.file_count,
            size=manifest.total_size,
            warnings=len(warnings),
        )
        return Checkpoint(checkpoint_id, checkpoint_dir, tree, manifest, warnings)

    def _new_id(self, when: datetime) -> str:
        while True:
            checkpoint_id = generate_checkpoint_id(when)
            if not (self.checkpoints_dir / checkpoint_id).exists():
                return checkpoint_id

    def _distinct_targets(self, paths: list[str]) -> list[str]:
        """Drop repeated paths and paths another directory target already covers.

        Every file is backed up at most once per checkpoint, whatever the
        order the targets were given in.
        """
        unique = list(dict.fromkeys(paths))
        dirs = [p for p in unique if os.path.isdir(p) and not os.path.islink(p)]
        return [p for p in unique if not any(d != p and self._covered_by(p, d) for d in dirs)]

    def _covered_by(self, path: str, directory: str) -> bool:
        """True when walking ``directory`` reaches ``path``."""
        if not is_within(path, directory):
            return False
        current = directory
        for part in os.path.relpath(path, directory).split(os.sep):
            current = os.path.join(current, part)
            is_dir = os.path.isdir(current) and not os.path.islink(current)
            if self.classifier.should_skip(current, is_dir=is_dir)[0]:
                return False
        return True

    @staticmethod
    def backup_path_for(tree: Path, original_path: str) -> Path:
        """Location of ``original_path``'s copy inside a checkpoint tree."""
        return tree / original_path.lstrip(os.sep)

    def _warn_sensitive(self, path: str, warnings: list[str]) -> None:
        sensitive, pattern = self.classifier.is_sensitive(path)
        if sensitive:
            warnings.append(f"Sensitive file backed up: {path} (matches {pattern})")
            logger.warning("sensitive_file_backed_up", path=path, pattern=pattern)

    def _backup_target(self, path: str, tree: Path, manifest: Manifest, warnings: list[str]) -> None:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            logger.debug("target_missing", path=path)
            return
        except OSError as e:
            warnings.append(f"Cannot access {path}: {e}")
            logger.warning("target_inaccessible", path=path, error=str(e))
            return

        dest = self.backup_path_for(tree, path)

        if stat.S_ISLNK(st.st_mode):
            warnings.append(f"Skipped symlink: {path}")
            logger.warning("symlink_skipped", path=path)
            return

        if stat.S_ISDIR(st.st_mode):
            try:
                result = backup_dir(path, dest, self.classifier)
            except OSError as e:
                warnings.append(f"Failed to back up {path}: {e}")
                logger.warning("backup_target_failed", path=path, error=str(e))
                return

            manifest.add_file(path, str(dest), stat.S_IMODE(st.st_mode), 0, True)
            for item in result.files:
                manifest.add_file(item.source, item.destination, item.mode, item.size, False)
                self._warn_sensitive(item.source, warnings)
            for skipped in result.oversized:
                warnings.append(f"Skipped file over size limit: {skipped}")
            for failed in result.errors:
                warnings.append(f"Could not back up: {failed}")
            return

        if not stat.S_ISREG(st.st_mode):
            logger.debug("special_file_skipped", path=path)
            return

        if self.classifier.exceeds_size_limit(st.st_size):
            warnings.append(
                f"Skipped file over size limit: {path} "
                f"({format_bytes(st.st_size)} > {format_bytes(self.classifier.max_file_size)})"
            )
            logger.warning("file_exceeds_size_limit", path=path, size=st.st_size, limit=self.classifier.max_file_size)
            return

        try:
            item = backup_file(path, dest)
        except OSError as e:
            warnings.append(f"Failed to back up {path}: {e}")
            logger.warning("backup_target_failed", path=path, error=str(e))
            return

        manifest.add_file(path, str(dest), item.mode, item.size, False)
        self._warn_sensitive(path, warnings)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _dir_for(self, checkpoint_id: str) -> Path:
        if not checkpoint_id or os.sep in checkpoint_id or checkpoint_id in (".", ".."):
            raise CheckpointNotFoundError(checkpoint_id)
        return self.checkpoints_dir / checkpoint_id

    def _load(self, checkpoint_dir: Path) -> Checkpoint:
        manifest = Manifest.load(checkpoint_dir)
        return Checkpoint(manifest.id, checkpoint_dir, files_dir(checkpoint_dir), manifest)

    def get(self, checkpoint_id: str) -> Checkpoint:
        """Load a checkpoint by id.

        Raises:
            CheckpointNotFoundError: if no such checkpoint exists
            CorruptStateError: if its manifest cannot be read
        """
        checkpoint_dir = self._dir_for(checkpoint_id)
        if not (checkpoint_dir / MANIFEST_NAME).exists():
            raise CheckpointNotFoundError(checkpoint_id)
        return self._load(checkpoint_dir)

    def list(self) -> list[Checkpoint]:
        """List all readable checkpoints, newest first."""
        checkpoints = []

        for entry in sorted(self.checkpoints_dir.iterdir()):
            if not entry.is_dir() or not (entry / MANIFEST_NAME).exists():
                continue
            try:
                checkpoints.append(self._load(entry))
            except CorruptStateError as e:
                logger.warning("skipping_unreadable_checkpoint", checkpoint=entry.name, error=str(e))

        def _order(cp: Checkpoint) -> tuple[datetime, int]:
            entry = self.index.get_entry(cp.id)
            return cp.created_at, entry.sequence if entry else -1

        checkpoints.sort(key=_order, reverse=True)
        return checkpoints

    def get_latest(self) -> Checkpoint:
        """Most recently created checkpoint.

        Raises:
            CheckpointNotFoundError: if there are no checkpoints
        """
        # Reloading rebuilds the index if other processes changed the set.
        self.index.load()
        entries = self.index.list_entries()
        if not entries:
            raise CheckpointNotFoundError("latest", "No checkpoints found")
        return self.get(entries[0].id)

    # ------------------------------------------------------------------
    # Deletion and retention
    # ------------------------------------------------------------------

    def delete(self, checkpoint_id: str) -> None:
        """Delete a checkpoint and its backups.

        Raises:
            CheckpointNotFoundError: if no such checkpoint exists
            StorageError: if the directory cannot be removed
        """
        checkpoint_dir = self._dir_for(checkpoint_id)
        if not checkpoint_dir.is_dir():
            raise CheckpointNotFoundError(checkpoint_id)

        try:
            shutil.rmtree(checkpoint_dir)
        except OSError as e:
            raise StorageError(f"Cannot delete checkpoint {checkpoint_id}: {e}") from e
        finally:
            if not checkpoint_dir.exists():
                self.index.remove(checkpoint_id)

        logger.info("checkpoint_deleted", checkpoint=checkpoint_id)

    def clean(self, older_than: timedelta) -> int:
        """Delete checkpoints created before ``now - older_than``.

        Returns:
            Number of checkpoints deleted
        """
        cutoff = _now() - older_than
        deleted = 0
        for cp in self.list():
            if cp.created_at >= cutoff:
                continue
            try:
                self.delete(cp.id)
                deleted += 1
            except SafeShellError as e:
                logger.warning("clean_failed", checkpoint=cp.id, error=str(e))
        return deleted

    def prune(self, keep: int, compress: bool = False) -> int:
        """Keep the ``keep`` newest checkpoints; delete or compress the rest.

        Returns:
            Number of checkpoints deleted or compressed
        """
        affected = 0
        for cp in self.list()[max(keep, 0):]:
            try:
                if compress:
                    if cp.compressed:
                        continue
                    self.compress(cp.id)
                else:
                    self.delete(cp.id)
                affected += 1
            except SafeShellError as e:
                logger.warning("prune_failed", checkpoint=cp.id, error=str(e))
        return affected

    def cleanup_candidates(self, older_than: timedelta | None = None, keep: int | None = None) -> list[Checkpoint]:
        """Checkpoints ``clean(older_than)`` followed by ``prune(keep)`` would remove.

        Either criterion may be None to leave it out. Newest first.
        """
        checkpoints = self.list()
        doomed: set[str] = set()
        if older_than is not None:
            cutoff = _now() - older_than
            doomed.update(cp.id for cp in checkpoints if cp.created_at < cutoff)
        if keep is not None:
            doomed.update(cp.id for cp in checkpoints[max(keep, 0):])
        return [cp for cp in checkpoints if cp.id in doomed]

    def limit_candidates(self) -> list[Checkpoint]:
        """Checkpoints ``enforce_limits()`` would delete."""
        retention = self.config.retention_days
        limit = self.config.max_checkpoints
        return self.cleanup_candidates(
            timedelta(days=retention) if retention > 0 else None,
            limit if limit > 0 else None,
        )

    def enforce_limits(self) -> int:
        """Apply ``retention_days`` and ``max_checkpoints`` from config.

        Returns:
            Number of checkpoints deleted
        """
        deleted = 0
        if self.config.retention_days > 0:
            deleted += self.clean(timedelta(days=self.config.retention_days))
        if self.config.max_checkpoints > 0:
            deleted += self.prune(self.config.max_checkpoints)
        return deleted

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _save(self, checkpoint: Checkpoint) -> None:
        try:
            checkpoint.manifest.save(checkpoint.dir)
        except OSError as e:
            raise StorageError(f"Cannot write manifest for {checkpoint.id}: {e}") from e
        self.index.update(checkpoint.manifest)

    def add_tag(self, checkpoint_id: str, tag: str) -> Checkpoint:
        """Attach a tag; adding an existing tag is a no-op.

        Raises:
            ValueError: if the tag is blank
        """
        tag = tag.strip()
        if not tag:
            raise ValueError("tag must not be empty")

        cp = self.get(checkpoint_id)
        if tag not in cp.manifest.tags:
            cp.manifest.tags.append(tag)
            self._save(cp)
        return cp

    def remove_tag(self, checkpoint_id: str, tag: str) -> bool:
        """Detach a tag.

        Returns:
            True if the tag was present
        """
        cp = self.get(checkpoint_id)
        if tag not in cp.manifest.tags:
            return False
        cp.manifest.tags = [t for t in cp.manifest.tags if t != tag]
        self._save(cp)
        return True

    def set_note(self, checkpoint_id: str, note: str) -> Checkpoint:
        cp = self.get(checkpoint_id)
        cp.manifest.note = note
        self._save(cp)
        return cp

    def mark_rolled_back(self, checkpoint: Checkpoint) -> None:
        checkpoint.manifest.rolled_back = True
        self._save(checkpoint)

    def list_by_tag(self, tag: str) -> list[Checkpoint]:
        wanted = tag.lower()
        return [cp for cp in self.list() if any(t.lower() == wanted for t in cp.manifest.tags)]

    def search(self, options: SearchOptions) -> list[Checkpoint]:
        """Checkpoints matching every criterion set in ``options``.

        Tags match exactly (ignoring case); command and file name match as
        case-insensitive substrings; the time range is inclusive.
        """
        tag = options.tag.lower() if options.tag else None
        command = options.command.lower() if options.command else None
        file_name = options.file_name.lower() if options.file_name else None

        results = []
        for cp in self.list():
            m = cp.manifest
            if tag and not any(t.lower() == tag for t in m.tags):
                continue
            if command and command not in m.command.lower():
                continue
            if file_name and not any(file_name in f.original_path.lower() for f in m.files):
                continue
            if options.after and m.timestamp < options.after:
                continue
            if options.before and m.timestamp > options.before:
                continue
            results.append(cp)
        return results

    def list_by_session(self) -> dict[str, list[Checkpoint]]:
        """Group checkpoints by session, each group newest first."""
        sessions: dict[str, list[Checkpoint]] = {}
        for cp in self.list():
            sessions.setdefault(cp.manifest.session_id or DEFAULT_SESSION, []).append(cp)
        return sessions

    def current_session(self) -> str:
        return get_session_id()

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def compress(self, checkpoint_id: str) -> tuple[int, int]:
        """Archive a checkpoint's file tree.

        Returns:
            (original_size, compressed_size) in bytes

        Raises:
            AlreadyCompressedError: if the checkpoint is already archived
            StorageError: if the archive cannot be written
        """
        cp = self.get(checkpoint_id)
        if cp.compressed:
            raise AlreadyCompressedError(checkpoint_id)

        cp.files_dir.mkdir(exist_ok=True)
        original_size = disk_usage(cp.files_dir)

        try:
            compressed_size = compress_dir(cp.files_dir, archive_path(cp.dir))
        except OSError as e:
            raise StorageError(f"Cannot compress checkpoint {checkpoint_id}: {e}") from e

        cp.manifest.compressed = True
        cp.manifest.compressed_size = compressed_size
        cp.manifest.compressed_at = _now()
        self._save(cp)

        logger.info(
            "checkpoint_compressed",
            checkpoint=checkpoint_id,
            original_size=original_size,
            compressed_size=compressed_size,
        )
        return original_size, compressed_size

    def decompress(self, checkpoint_id: str) -> Checkpoint:
        """Restore a compressed checkpoint's file tree; no-op otherwise.

        Raises:
            CorruptStateError: if the archive is missing or unreadable
        """
        cp = self.get(checkpoint_id)
        if not cp.compressed:
            return cp

        archive = archive_path(cp.dir)
        if not archive.is_file():
            raise CorruptStateError(f"Checkpoint {checkpoint_id} is marked compressed but has no archive")

        decompress_dir(archive, cp.files_dir)
        try:
            archive.unlink()
        except OSError as e:
            raise StorageError(f"Cannot remove archive for {checkpoint_id}: {e}") from e

        cp.manifest.compressed = False
        cp.manifest.compressed_size = 0
        cp.manifest.compressed_at = None
        self._save(cp)

        logger.info("checkpoint_decompressed", checkpoint=checkpoint_id)
        return cp

    def ensure_decompressed(self, checkpoint: Checkpoint) -> Checkpoint:
        """Return a handle whose file tree is present on disk."""
        if checkpoint.compressed:
            return self.decompress(checkpoint.id)
        return checkpoint

    def compress_older_than(self, older_than: timedelta) -> tuple[int, int]:
        """Compress every uncompressed checkpoint created before the cutoff.

        Returns:
            (checkpoints compressed, bytes saved)
        """
        cutoff = _now() - older_than
        count = 0
        saved = 0
        for cp in self.list():
            if cp.compressed or cp.created_at >= cutoff:
                continue
            try:
                original_size, compressed_size = self.compress(cp.id)
            except SafeShellError as e:
                logger.warning("compress_failed", checkpoint=cp.id, error=str(e))
                continue
            count += 1
            saved += max(original_size - compressed_size, 0)
        return count, saved

    # ------------------------------------------------------------------
    # Storage accounting
    # ------------------------------------------------------------------

    def storage_usage(self) -> int:
        """Bytes used by all checkpoints (archives and trees)."""
        if not self.checkpoints_dir.exists():
            return 0
        return disk_usage(self.checkpoints_dir)

    def check_total_storage(self) -> tuple[bool, float, int]:
        """Compare usage with ``max_storage_mb``.

        Returns:
            (exceeds, current_mb, limit_mb); never exceeds when the limit is 0
        """
        limit_mb = self.config.max_storage_mb
        current_mb = self.storage_usage() / (1024 * 1024)
        return limit_mb > 0 and current_mb > limit_mb, current_mb, limit_mb
