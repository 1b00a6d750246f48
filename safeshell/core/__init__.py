"""Core modules for SafeShell."""

from .checkpoint_store import Checkpoint, CheckpointStore, SearchOptions
from .controller import SafeShellController, SafeShellStatus
from .diff import DiffEngine, DiffReport
from .errors import (
    AlreadyCompressedError,
    AlreadyRolledBackError,
    CheckpointNotFoundError,
    CheckpointValidationError,
    CorruptStateError,
    SafeShellError,
    StorageError,
)
from .index import CheckpointIndex
from .rollback import RollbackEngine, RollbackResult

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "SearchOptions",
    "SafeShellController",
    "SafeShellStatus",
    "DiffEngine",
    "DiffReport",
    "AlreadyCompressedError",
    "AlreadyRolledBackError",
    "CheckpointNotFoundError",
    "CheckpointValidationError",
    "CorruptStateError",
    "SafeShellError",
    "StorageError",
    "CheckpointIndex",
    "RollbackEngine",
    "RollbackResult",
]
