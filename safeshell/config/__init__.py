"""Configuration management for SafeShell."""

from .types import SafeShellConfig
from .loader import ConfigLoader

__all__ = [
    "SafeShellConfig",
    "ConfigLoader",
]
