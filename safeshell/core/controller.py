"""SafeShell controller - main orchestrator.

Wires configuration, checkpoint store, rollback and diff engines together
for the command-line front end.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

from ..config import ConfigLoader, SafeShellConfig
from ..utils.env import get_session_id
from .checkpoint_store import Checkpoint, CheckpointStore
from .compression import archive_path, files_dir
from .diff import DiffEngine, DiffReport
from .errors import CorruptStateError, SafeShellError
from .rollback import RollbackEngine, RollbackResult


@dataclass
class SafeShellStatus:
    """Status of the SafeShell state directory."""
    safeshell_dir: str
    checkpoints_dir: str
    checkpoint_count: int
    compressed_count: int
    latest_checkpoint: str | None
    storage_bytes: int
    max_storage_mb: int
    storage_exceeded: bool
    session_id: str


class SafeShellController:
    """Main controller for SafeShell operations."""

    def __init__(self, safeshell_dir: Path | str | None = None):
        """Initialize controller.

        Args:
            safeshell_dir: State directory (defaults to SAFESHELL_DIR or ~/.safeshell)
        """
        self._config_loader = ConfigLoader(Path(safeshell_dir) if safeshell_dir else None)
        self._store: CheckpointStore | None = None
        self._rollback: RollbackEngine | None = None
        self._diff: DiffEngine | None = None

    @property
    def config(self) -> SafeShellConfig:
        """Get current configuration."""
        return self._config_loader.config

    @property
    def config_loader(self) -> ConfigLoader:
        return self._config_loader

    @property
    def store(self) -> CheckpointStore:
        """Get checkpoint store (lazy init)."""
        if self._store is None:
            self._store = CheckpointStore(self.config.checkpoints_dir, config=self.config)
        return self._store

    @property
    def rollback_engine(self) -> RollbackEngine:
        if self._rollback is None:
            self._rollback = RollbackEngine(self.store)
        return self._rollback

    @property
    def diff_engine(self) -> DiffEngine:
        if self._diff is None:
            self._diff = DiffEngine(self.store)
        return self._diff

    def resolve(self, checkpoint_id: str | None = None) -> Checkpoint:
        """Look up a checkpoint by id, or the latest one when id is None."""
        if checkpoint_id:
            return self.store.get(checkpoint_id)
        return self.store.get_latest()

    def create_checkpoint(
        self,
        command: str,
        paths: Iterable[Path | str],
        working_dir: Path | str | None = None,
        session_id: str | None = None,
    ) -> Checkpoint:
        return self.store.create(command, paths, working_dir=working_dir, session_id=session_id)

    def rollback(
        self,
        checkpoint_id: str | None = None,
        files: list[str] | None = None,
        to: Path | str | None = None,
    ) -> RollbackResult:
        """Restore a checkpoint (the latest when no id is given).

        Args:
            checkpoint_id: Checkpoint to restore
            files: Restrict the restore to these original paths
            to: Restore under this directory instead of in place
        """
        checkpoint = self.resolve(checkpoint_id)
        engine = self.rollback_engine

        if to is not None:
            if files:
                return engine.rollback_selective_to_path(checkpoint, files, to)
            return engine.rollback_to_path(checkpoint, to)
        if files:
            return engine.rollback_selective(checkpoint, files)
        return engine.rollback(checkpoint)

    def diff(self, checkpoint_id: str | None = None, accurate: bool = True) -> tuple[Checkpoint, DiffReport]:
        checkpoint = self.resolve(checkpoint_id)
        report = self.diff_engine.analyze(checkpoint, accurate=accurate)
        return self.store.get(checkpoint.id), report

    def clean(self, older_than: timedelta | None = None, keep: int | None = None) -> int:
        """Delete old checkpoints.

        With neither argument the configured retention limits apply.

        Returns:
            Number of checkpoints deleted
        """
        if older_than is None and keep is None:
            return self.store.enforce_limits()

        deleted = 0
        if older_than is not None:
            deleted += self.store.clean(older_than)
        if keep is not None:
            deleted += self.store.prune(keep)
        return deleted

    def get_status(self) -> SafeShellStatus:
        """Get system status."""
        checkpoints = self.store.list()
        exceeds, _, limit_mb = self.store.check_total_storage()

        return SafeShellStatus(
            safeshell_dir=str(self.config.safeshell_dir),
            checkpoints_dir=str(self.config.checkpoints_dir),
            checkpoint_count=len(checkpoints),
            compressed_count=sum(1 for cp in checkpoints if cp.compressed),
            latest_checkpoint=checkpoints[0].id if checkpoints else None,
            storage_bytes=self.store.storage_usage(),
            max_storage_mb=limit_mb,
            storage_exceeded=exceeds,
            session_id=get_session_id(),
        )

    def validate_system(self) -> dict[str, Any]:
        """Check every checkpoint for a readable manifest and backing data.

        Returns:
            Validation result with any issues found
        """
        issues = []
        checkpoints_dir = self.config.checkpoints_dir

        if not checkpoints_dir.exists():
            return {"valid": False, "issues": ["Checkpoints directory missing"]}

        for entry in sorted(checkpoints_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                cp = self.store.get(entry.name)
            except CorruptStateError as e:
                issues.append(f"Checkpoint {entry.name} has an unreadable manifest: {e}")
                continue
            except SafeShellError as e:
                issues.append(f"Checkpoint {entry.name}: {e}")
                continue

            if cp.manifest.compressed and not archive_path(cp.dir).exists():
                issues.append(f"Checkpoint {cp.id} is marked compressed but its archive is missing")
            elif not cp.manifest.compressed and not files_dir(cp.dir).exists():
                issues.append(f"Checkpoint {cp.id} is missing its files directory")

        return {
            "valid": len(issues) == 0,
            "issues": issues,
        }
