"""Checkpoint index.

A derived, persisted summary of every checkpoint so that "latest" and
listing queries do not have to parse each manifest. The index can always be
rebuilt from the manifests on disk, and it is whenever it disagrees with
them.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ..utils.fs import atomic_write
from ..utils.logging import get_logger
from .errors import CorruptStateError
from .manifest import MANIFEST_NAME, Manifest, _parse_time

logger = get_logger(__name__)


INDEX_NAME = ".index.json"


@dataclass
class IndexEntry:
    """Lightweight projection of a manifest."""
    id: str
    timestamp: datetime
    sequence: int
    command: str = ""
    file_count: int = 0
    total_size: int = 0
    session_id: str = ""
    tags: list[str] = field(default_factory=list)
    rolled_back: bool = False
    compressed: bool = False
    compressed_size: int = 0

    @classmethod
    def from_manifest(cls, manifest: Manifest, sequence: int) -> IndexEntry:
        return cls(
            id=manifest.id,
            timestamp=manifest.timestamp,
            sequence=sequence,
            command=manifest.command,
            file_count=manifest.file_count,
            total_size=manifest.total_size,
            session_id=manifest.session_id,
            tags=list(manifest.tags),
            rolled_back=manifest.rolled_back,
            compressed=manifest.compressed,
            compressed_size=manifest.compressed_size,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "command": self.command,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "session_id": self.session_id,
            "tags": list(self.tags),
            "rolled_back": self.rolled_back,
            "compressed": self.compressed,
            "compressed_size": self.compressed_size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> IndexEntry:
        timestamp = _parse_time(data.get("timestamp"))
        if not isinstance(data.get("id"), str) or timestamp is None:
            raise CorruptStateError("Index entry is missing id or timestamp")
        return cls(
            id=data["id"],
            timestamp=timestamp,
            sequence=int(data.get("sequence", 0)),
            command=str(data.get("command", "")),
            file_count=int(data.get("file_count", 0)),
            total_size=int(data.get("total_size", 0)),
            session_id=str(data.get("session_id") or ""),
            tags=list(data.get("tags") or []),
            rolled_back=bool(data.get("rolled_back", False)),
            compressed=bool(data.get("compressed", False)),
            compressed_size=int(data.get("compressed_size") or 0),
        )


class CheckpointIndex:
    """Persisted, lock-guarded cache of checkpoint summaries.

    Every mutation writes through to ``<checkpoints>/.index.json``
    immediately.
    """

    def __init__(self, checkpoints_dir: Path | str):
        """Initialize index.

        Args:
            checkpoints_dir: Directory holding one subdirectory per checkpoint
        """
        self.checkpoints_dir = Path(checkpoints_dir)
        self.entries: dict[str, IndexEntry] = {}
        self.next_sequence = 0
        self.updated_at: datetime | None = None
        # Directories whose manifest could not be read, by manifest mtime_ns
        self.invalid: dict[str, int] = {}
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self.checkpoints_dir / INDEX_NAME

    def load(self) -> None:
        """Read the index from disk, rebuilding it when missing or stale."""
        with self._lock:
            try:
                with open(self.path) as f:
                    data = json.load(f)
                self._apply(data)
            except FileNotFoundError:
                logger.debug("index_missing", path=str(self.path))
                self._rebuild_locked()
                return
            except (OSError, json.JSONDecodeError, CorruptStateError, TypeError, ValueError) as e:
                logger.warning("index_corrupt_rebuilding", path=str(self.path), error=str(e))
                self._rebuild_locked()
                return

            if self._is_stale_locked():
                logger.debug("index_stale_rebuilding", path=str(self.path))
                self._rebuild_locked()

    def _apply(self, data: Any) -> None:
        if not isinstance(data, dict) or not isinstance(data.get("entries"), dict):
            raise CorruptStateError("Index document is malformed")

        entries = {}
        for key, raw in data["entries"].items():
            if not isinstance(raw, dict):
                raise CorruptStateError(f"Index entry {key} is malformed")
            entry = IndexEntry.from_dict(raw)
            entries[entry.id] = entry

        self.entries = entries
        self.next_sequence = int(data.get("next_sequence", 0))
        invalid = data.get("invalid") or {}
        if not isinstance(invalid, dict):
            raise CorruptStateError("Index invalid-checkpoint list is malformed")

        self.updated_at = _parse_time(data.get("updated_at"))
        self.invalid = {str(name): int(mtime) for name, mtime in invalid.items()}

        # Guard against a hand-edited counter that would reuse sequences.
        if self.entries:
            self.next_sequence = max(self.next_sequence, max(e.sequence for e in self.entries.values()) + 1)

    def _checkpoint_dir_names(self) -> set[str]:
        try:
            names = os.listdir(self.checkpoints_dir)
        except FileNotFoundError:
            return set()
        return {
            name for name in names
            if (self.checkpoints_dir / name).is_dir() and (self.checkpoints_dir / name / MANIFEST_NAME).exists()
        }

    def _manifest_mtime(self, name: str) -> int | None:
        try:
            return os.stat(self.checkpoints_dir / name / MANIFEST_NAME).st_mtime_ns
        except OSError:
            return None

    def _is_stale_locked(self) -> bool:
        # Comparing ID sets also catches a delete+create pair that a plain
        # count comparison would miss.
        try:
            on_disk = self._checkpoint_dir_names()
        except OSError:
            return True
        if on_disk != set(self.entries) | set(self.invalid):
            return True
        # A repaired manifest has to be indexed.
        return any(self._manifest_mtime(name) != mtime for name, mtime in self.invalid.items())

    def is_stale(self) -> bool:
        with self._lock:
            return self._is_stale_locked()

    def _rebuild_locked(self) -> None:
        self.entries = {}
        self.next_sequence = 0
        self.invalid = {}

        manifests: list[Manifest] = []
        for name in sorted(self._checkpoint_dir_names()):
            try:
                manifest = Manifest.load(self.checkpoints_dir / name)
            except CorruptStateError as e:
                logger.warning("skipping_invalid_checkpoint", checkpoint=name, error=str(e))
                mtime = self._manifest_mtime(name)
                if mtime is not None:
                    self.invalid[name] = mtime
                continue
            if manifest.id != name:
                logger.warning("manifest_id_mismatch", checkpoint=name, manifest_id=manifest.id)
                manifest.id = name
            manifests.append(manifest)

        # Oldest first, id breaks timestamp ties.
        manifests.sort(key=lambda m: (m.timestamp, m.id))
        for manifest in manifests:
            self.entries[manifest.id] = IndexEntry.from_manifest(manifest, self.next_sequence)
            self.next_sequence += 1

        self.updated_at = datetime.now()
        self._save_locked()

    def rebuild(self) -> None:
        """Force a full rebuild from the manifests on disk."""
        with self._lock:
            self._rebuild_locked()

    def _save_locked(self) -> None:
        data = {
            "entries": {key: entry.to_dict() for key, entry in self.entries.items()},
            "next_sequence": self.next_sequence,
            "invalid": dict(self.invalid),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        try:
            atomic_write(self.path, json.dumps(data, indent=2), mode="w")
        except OSError as e:
            # The index is derived state; the next load rebuilds it.
            logger.warning("index_save_failed", path=str(self.path), error=str(e))

    def save(self) -> None:
        with self._lock:
            self._save_locked()

    def add(self, manifest: Manifest) -> IndexEntry:
        """Register a new checkpoint with the next sequence number."""
        with self._lock:
            entry = IndexEntry.from_manifest(manifest, self.next_sequence)
            self.next_sequence += 1
            self.invalid.pop(manifest.id, None)
            self.entries[manifest.id] = entry
            self.updated_at = datetime.now()
            self._save_locked()
            return entry

    def update(self, manifest: Manifest) -> IndexEntry:
        """Refresh a checkpoint's projection, keeping its sequence."""
        with self._lock:
            existing = self.entries.get(manifest.id)
            if existing is None:
                return self.add(manifest)
            entry = IndexEntry.from_manifest(manifest, existing.sequence)
            self.entries[manifest.id] = entry
            self.updated_at = datetime.now()
            self._save_locked()
            return entry

    def remove(self, checkpoint_id: str) -> None:
        with self._lock:
            self.entries.pop(checkpoint_id, None)
            self.invalid.pop(checkpoint_id, None)
            self.updated_at = datetime.now()
            self._save_locked()

    def get_entry(self, checkpoint_id: str) -> IndexEntry | None:
        with self._lock:
            return self.entries.get(checkpoint_id)

    def list_entries(self) -> list[IndexEntry]:
        """All entries, newest first; sequence breaks timestamp ties."""
        with self._lock:
            entries = list(self.entries.values())
        entries.sort(key=lambda e: (e.timestamp, e.sequence), reverse=True)
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self.entries)
