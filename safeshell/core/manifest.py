"""Checkpoint manifest.

The manifest is the durable record of one checkpoint: what was backed up,
where the copies live, and the state flags later operations mutate.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ..utils.fs import atomic_write
from .errors import CorruptStateError


MANIFEST_NAME = "manifest.json"


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        # Stored local-naive; convert anything zoned to local time.
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


@dataclass
class FileEntry:
    """One backed-up path."""
    original_path: str
    backup_path: str
    mode: int
    size: int = 0
    is_dir: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_path": self.original_path,
            "backup_path": self.backup_path,
            "mode": self.mode,
            "size": self.size,
            "is_dir": self.is_dir,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FileEntry:
        return cls(
            original_path=str(data.get("original_path", "")),
            backup_path=str(data.get("backup_path", "")),
            mode=int(data.get("mode", 0o644)),
            size=int(data.get("size", 0)),
            is_dir=bool(data.get("is_dir", False)),
        )


@dataclass
class Manifest:
    """Metadata record for a checkpoint."""
    id: str
    timestamp: datetime
    command: str
    working_dir: str
    session_id: str = ""
    files: list[FileEntry] = field(default_factory=list)
    rolled_back: bool = False
    tags: list[str] = field(default_factory=list)
    note: str = ""
    compressed: bool = False
    compressed_size: int = 0
    compressed_at: datetime | None = None

    def add_file(self, original_path: str, backup_path: str, mode: int, size: int, is_dir: bool) -> FileEntry:
        """Append a file entry and return it."""
        entry = FileEntry(
            original_path=original_path,
            backup_path=backup_path,
            mode=mode,
            size=size,
            is_dir=is_dir,
        )
        self.files.append(entry)
        return entry

    def regular_files(self) -> list[FileEntry]:
        """Entries that are not directories."""
        return [f for f in self.files if not f.is_dir]

    @property
    def file_count(self) -> int:
        return sum(1 for f in self.files if not f.is_dir)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files if not f.is_dir)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "command": self.command,
            "working_dir": self.working_dir,
            "files": [f.to_dict() for f in self.files],
            "rolled_back": self.rolled_back,
            "tags": list(self.tags),
            "note": self.note,
            "compressed": self.compressed,
            "compressed_size": self.compressed_size,
            "compressed_at": self.compressed_at.isoformat() if self.compressed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Manifest:
        """Create from dictionary.

        Raises:
            CorruptStateError: if required fields are missing or malformed
        """
        checkpoint_id = data.get("id")
        timestamp = _parse_time(data.get("timestamp"))
        if not isinstance(checkpoint_id, str) or not checkpoint_id or timestamp is None:
            raise CorruptStateError("Manifest is missing id or timestamp")

        files_data = data.get("files") or []
        if not isinstance(files_data, list):
            raise CorruptStateError(f"Manifest {checkpoint_id} has malformed files list")

        try:
            files = [FileEntry.from_dict(f) for f in files_data if isinstance(f, dict)]
        except (TypeError, ValueError) as e:
            raise CorruptStateError(f"Manifest {checkpoint_id} has malformed file entry: {e}") from e

        tags = data.get("tags") or []

        return cls(
            id=checkpoint_id,
            timestamp=timestamp,
            command=str(data.get("command", "")),
            working_dir=str(data.get("working_dir", "")),
            session_id=str(data.get("session_id") or ""),
            files=files,
            rolled_back=bool(data.get("rolled_back", False)),
            tags=[str(t) for t in tags] if isinstance(tags, list) else [],
            note=str(data.get("note") or ""),
            compressed=bool(data.get("compressed", False)),
            compressed_size=int(data.get("compressed_size") or 0),
            compressed_at=_parse_time(data.get("compressed_at")),
        )

    def save(self, checkpoint_dir: Path | str) -> Path:
        """Write the manifest atomically into ``checkpoint_dir``."""
        path = Path(checkpoint_dir) / MANIFEST_NAME
        atomic_write(path, json.dumps(self.to_dict(), indent=2), mode="w")
        return path

    @classmethod
    def load(cls, checkpoint_dir: Path | str) -> Manifest:
        """Read the manifest stored in ``checkpoint_dir``.

        Raises:
            CorruptStateError: if the manifest is missing, unreadable or invalid
        """
        path = Path(checkpoint_dir) / MANIFEST_NAME
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CorruptStateError(f"Unable to read manifest {path}: {e}") from e

        if not isinstance(data, dict):
            raise CorruptStateError(f"Manifest {path} is not an object")
        return cls.from_dict(data)
