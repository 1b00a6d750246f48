"""Configuration schemas for SafeShell.

Defines the resolved configuration the checkpoint engine reads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..utils.env import get_safeshell_dir


def _default_exclude_paths() -> list[str]:
    return [
        "*.tmp",
        "*.swp",
        "*~",
        ".git/objects/*",
        "node_modules/*",
    ]


def _default_sensitive_patterns() -> list[str]:
    return [
        ".env",
        ".env.*",
        "*.pem",
        "*.key",
        "*.p12",
        "*.pfx",
        "id_rsa",
        "id_ed25519",
        "id_ecdsa",
        "*.keystore",
        "credentials.json",
        "service-account*.json",
        "*secret*",
        "*password*",
        ".netrc",
        ".npmrc",
        ".pypirc",
        "aws_credentials",
        ".aws/credentials",
    ]


@dataclass
class SafeShellConfig:
    """Main SafeShell configuration."""
    safeshell_dir: Path = field(default_factory=get_safeshell_dir)
    retention_days: int = 7
    max_checkpoints: int = 100
    max_storage_mb: int = 5000  # 0 disables the check
    max_file_size_mb: int = 100  # 0 disables the gate
    warn_sensitive_files: bool = True
    validate_paths: bool = True
    exclude_paths: list[str] = field(default_factory=_default_exclude_paths)
    sensitive_patterns: list[str] = field(default_factory=_default_sensitive_patterns)

    @property
    def checkpoints_dir(self) -> Path:
        return Path(self.safeshell_dir) / "checkpoints"

    @property
    def max_file_size_bytes(self) -> int:
        return max(self.max_file_size_mb, 0) * 1024 * 1024

    @classmethod
    def from_dict(cls, data: dict) -> SafeShellConfig:
        """Create SafeShellConfig from dictionary.

        Unknown keys are ignored and wrongly-typed values fall back to
        their defaults.
        """
        defaults = cls()

        def _int(key: str, default: int) -> int:
            val = data.get(key, default)
            return val if isinstance(val, int) and not isinstance(val, bool) else default

        def _list(key: str, default: list[str]) -> list[str]:
            val = data.get(key)
            if isinstance(val, list) and all(isinstance(v, str) for v in val):
                return list(val)
            return default

        dir_val = data.get("safeshell_dir")
        safeshell_dir = Path(dir_val).expanduser() if isinstance(dir_val, str) and dir_val else defaults.safeshell_dir

        warn = data.get("warn_sensitive_files", True)
        validate = data.get("validate_paths", True)

        return cls(
            safeshell_dir=safeshell_dir,
            retention_days=_int("retention_days", defaults.retention_days),
            max_checkpoints=_int("max_checkpoints", defaults.max_checkpoints),
            max_storage_mb=_int("max_storage_mb", defaults.max_storage_mb),
            max_file_size_mb=_int("max_file_size_mb", defaults.max_file_size_mb),
            warn_sensitive_files=warn if isinstance(warn, bool) else True,
            validate_paths=validate if isinstance(validate, bool) else True,
            exclude_paths=_list("exclude_paths", defaults.exclude_paths),
            sensitive_patterns=_list("sensitive_patterns", defaults.sensitive_patterns),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "safeshell_dir": str(self.safeshell_dir),
            "retention_days": self.retention_days,
            "max_checkpoints": self.max_checkpoints,
            "max_storage_mb": self.max_storage_mb,
            "max_file_size_mb": self.max_file_size_mb,
            "warn_sensitive_files": self.warn_sensitive_files,
            "validate_paths": self.validate_paths,
            "exclude_paths": list(self.exclude_paths),
            "sensitive_patterns": list(self.sensitive_patterns),
        }
