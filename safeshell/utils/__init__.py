"""Utility modules for SafeShell."""

from .fs import atomic_write, file_digest, is_within, safe_json_load
from .env import get_checkpoints_dir, get_home_dir, get_safeshell_dir, get_session_id, is_debug_mode
from .format import format_bytes, format_time_ago, parse_duration
from .logging import get_logger, setup_logging

__all__ = [
    "atomic_write",
    "file_digest",
    "is_within",
    "safe_json_load",
    "get_checkpoints_dir",
    "get_home_dir",
    "get_safeshell_dir",
    "get_session_id",
    "is_debug_mode",
    "format_bytes",
    "format_time_ago",
    "parse_duration",
    "get_logger",
    "setup_logging",
]
