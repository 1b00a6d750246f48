"""Path classification for backups.

Decides which paths are eligible for backup: exclusion list, symlink rule,
sensitive-file detection, the per-file size ceiling and the system-path
guard.
"""

from __future__ import annotations

import fnmatch
import os
import stat
import tempfile
from pathlib import Path
from typing import Iterable

from ..config.types import SafeShellConfig
from .errors import CheckpointValidationError


# Generated or cached directories (and OS litter) that can be regenerated.
DEFAULT_EXCLUSIONS: tuple[str, ...] = (
    # Build outputs
    ".build",
    "build",
    "dist",
    "out",
    "target",
    # Dependencies
    "node_modules",
    "vendor",
    ".venv",
    "venv",
    "__pycache__",
    ".pytest_cache",
    # IDE/Editor
    ".idea",
    ".vscode",
    # Version control
    ".git",
    ".svn",
    ".hg",
    # OS files
    ".DS_Store",
    "Thumbs.db",
    # Caches
    ".cache",
    ".npm",
    ".yarn",
    ".cargo",
    "DerivedData",
    # Our own state directory
    ".safeshell",
)

BUNDLE_SUFFIXES: tuple[str, ...] = (".framework",)

TEMP_DIRS: tuple[str, ...] = (
    "/tmp",
    "/var/folders",
    "/private/tmp",
)

SYSTEM_DIRS: tuple[str, ...] = (
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/lib",
    "/var",
    "/root",
    "/System",
    "/Library",
    "/Applications",
    "/private/etc",
    "/private/var",
)


def is_symlink(path: Path | str) -> bool:
    try:
        return stat.S_ISLNK(os.lstat(path).st_mode)
    except OSError:
        return False


class PathClassifier:
    """Decides whether paths are backed up, pruned, or flagged."""

    def __init__(
        self,
        exclusions: Iterable[str] = DEFAULT_EXCLUSIONS,
        exclude_patterns: Iterable[str] = (),
        sensitive_patterns: Iterable[str] = (),
        warn_sensitive: bool = True,
        max_file_size: int = 0,
    ):
        """Initialize classifier.

        Args:
            exclusions: Basenames that are never backed up
            exclude_patterns: Extra glob patterns; matched against the full
                path when they contain "/", otherwise against the basename
            sensitive_patterns: Patterns that flag a file as sensitive
            warn_sensitive: Whether sensitive detection is active
            max_file_size: Size ceiling in bytes (0 disables the gate)
        """
        self.exclusions = frozenset(exclusions)
        self.exclude_patterns = tuple(exclude_patterns)
        self.sensitive_patterns = tuple(sensitive_patterns)
        self.warn_sensitive = warn_sensitive
        self.max_file_size = max(max_file_size, 0)

    @classmethod
    def from_config(cls, config: SafeShellConfig) -> PathClassifier:
        return cls(
            exclude_patterns=config.exclude_paths,
            sensitive_patterns=config.sensitive_patterns,
            warn_sensitive=config.warn_sensitive_files,
            max_file_size=config.max_file_size_bytes,
        )

    def should_skip(self, path: Path | str, is_dir: bool) -> tuple[bool, bool]:
        """Check whether a path is skipped during backup.

        Args:
            path: Path being visited
            is_dir: Whether the path is a directory

        Returns:
            (skip, skip_subtree); skip_subtree is only ever True for
            directories and means nothing beneath them is visited
        """
        if is_symlink(path):
            return True, False

        if self.is_excluded(path):
            return True, is_dir

        if is_dir and str(path).endswith(BUNDLE_SUFFIXES):
            return True, True

        return False, False

    def is_excluded(self, path: Path | str) -> bool:
        """Check the exclusion list and the configured exclude patterns."""
        path_str = str(path)
        base = os.path.basename(path_str.rstrip(os.sep))
        if base in self.exclusions:
            return True

        for pattern in self.exclude_patterns:
            if "/" in pattern:
                if fnmatch.fnmatch(path_str, f"*/{pattern}") or fnmatch.fnmatch(path_str, pattern):
                    return True
            elif fnmatch.fnmatch(base, pattern):
                return True

        return False

    def is_sensitive(self, path: Path | str) -> tuple[bool, str]:
        """Check if a file matches a sensitive pattern.

        Advisory only: callers warn about matches but still back them up.

        Returns:
            (matched, pattern) with pattern empty when nothing matched
        """
        if not self.warn_sensitive:
            return False, ""

        path_lower = str(path).lower()
        base_lower = os.path.basename(path_lower)

        for pattern in self.sensitive_patterns:
            pattern_lower = pattern.lower()

            if base_lower == pattern_lower:
                return True, pattern

            if fnmatch.fnmatchcase(base_lower, pattern_lower):
                return True, pattern

            # Patterns like ".aws/credentials" match anywhere in the path
            if "/" in pattern_lower and pattern_lower in path_lower:
                return True, pattern

        return False, ""

    def exceeds_size_limit(self, size: int) -> bool:
        """Check a file size in bytes against the ceiling."""
        return self.max_file_size > 0 and size > self.max_file_size

    @staticmethod
    def validate_path(path: Path | str) -> None:
        """Reject paths inside system directories.

        Temp directories are always allowed, even where they sit inside a
        system directory (``/var/folders`` on macOS).

        Raises:
            CheckpointValidationError: if the path is a system directory
                or lies beneath one
        """
        abs_path = os.path.normpath(os.path.abspath(path))

        allowed = TEMP_DIRS + (os.path.normpath(tempfile.gettempdir()),)
        for temp_dir in allowed:
            if abs_path == temp_dir or abs_path.startswith(temp_dir.rstrip(os.sep) + os.sep):
                return

        for sys_dir in SYSTEM_DIRS:
            if abs_path == sys_dir or abs_path.startswith(sys_dir + os.sep):
                raise CheckpointValidationError(abs_path)
