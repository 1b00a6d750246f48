"""Configuration loader for SafeShell.

Handles loading and merging configuration from the state directory.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from ..utils.env import get_safeshell_dir
from ..utils.fs import atomic_write, safe_json_load
from .types import SafeShellConfig


CONFIG_FILE_NAME = "config.json"


class ConfigLoader:
    """Loads and manages SafeShell configuration."""

    def __init__(self, safeshell_dir: Path | None = None):
        """Initialize config loader.

        Args:
            safeshell_dir: State directory holding config.json
                (defaults to SAFESHELL_DIR or ~/.safeshell)
        """
        self.safeshell_dir = Path(safeshell_dir) if safeshell_dir else get_safeshell_dir()
        self._config: SafeShellConfig | None = None

    @property
    def config_path(self) -> Path:
        return self.safeshell_dir / CONFIG_FILE_NAME

    @property
    def config(self) -> SafeShellConfig:
        """Get loaded configuration, loading if necessary."""
        if self._config is None:
            self._config = self.load()
        return self._config

    def load(self) -> SafeShellConfig:
        """Load configuration.

        Priority (highest to lowest):
        1. <state dir>/config.json
        2. Default values

        Returns:
            Resolved SafeShellConfig
        """
        merged: dict[str, Any] = SafeShellConfig(safeshell_dir=self.safeshell_dir).to_dict()

        if self.config_path.exists():
            data = safe_json_load(self.config_path, {})
            if isinstance(data, dict):
                merged = self._deep_merge(merged, data)

        return SafeShellConfig.from_dict(merged)

    def reload(self) -> SafeShellConfig:
        """Force reload configuration."""
        self._config = None
        return self.config

    def save_config(self, config: SafeShellConfig) -> Path:
        """Save configuration to file.

        Args:
            config: Configuration to save

        Returns:
            Path where config was saved
        """
        atomic_write(self.config_path, json.dumps(config.to_dict(), indent=2), mode="w")
        self._config = config
        return self.config_path

    def set_value(self, key: str, value: Any) -> SafeShellConfig:
        """Update one key and persist.

        Raises:
            KeyError: if ``key`` is not a configuration field
        """
        current = self.config.to_dict()
        if key not in current:
            raise KeyError(key)
        current[key] = value
        updated = SafeShellConfig.from_dict(current)
        self.save_config(updated)
        return updated

    @staticmethod
    def _deep_merge(base: dict, override: dict) -> dict:
        """Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Dictionary to merge (takes precedence)

        Returns:
            Merged dictionary
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigLoader._deep_merge(result[key], value)
            else:
                result[key] = value
        return result
