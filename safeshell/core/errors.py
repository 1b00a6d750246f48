"""Exceptions raised by the checkpoint engine."""

from __future__ import annotations


class SafeShellError(Exception):
    """Base exception for all SafeShell errors."""


class CheckpointNotFoundError(SafeShellError):
    """Raised when a checkpoint id is unknown."""

    def __init__(self, checkpoint_id: str, message: str | None = None):
        self.checkpoint_id = checkpoint_id
        super().__init__(message or f"Checkpoint not found: {checkpoint_id}")


class AlreadyRolledBackError(SafeShellError):
    """Raised on a second full rollback of the same checkpoint."""

    def __init__(self, checkpoint_id: str):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint {checkpoint_id} has already been rolled back")


class AlreadyCompressedError(SafeShellError):
    """Raised when compressing a checkpoint that is already archived."""

    def __init__(self, checkpoint_id: str):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Checkpoint {checkpoint_id} is already compressed")


class StorageError(SafeShellError):
    """Raised when checkpoint state cannot be written (setup-level I/O failure)."""


class CorruptStateError(SafeShellError):
    """Raised when a manifest, index or archive cannot be read or parsed."""


class CheckpointValidationError(SafeShellError):
    """Raised when asked to checkpoint a disallowed path."""

    def __init__(self, path: str, message: str | None = None):
        self.path = path
        super().__init__(message or f"Cannot back up system directory: {path}")
