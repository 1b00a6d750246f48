"""Environment utilities for SafeShell."""

from __future__ import annotations

import hashlib
import os
from datetime import date
from pathlib import Path


def is_debug_mode() -> bool:
    """Check if debug mode is enabled.

    Returns:
        True if SAFESHELL_DEBUG is set to a truthy value
    """
    val = os.environ.get("SAFESHELL_DEBUG", "").lower()
    return val in ("1", "true", "yes", "on")


def get_home_dir() -> Path:
    """Get user home directory.

    Returns:
        Path to home directory
    """
    return Path.home()


def get_safeshell_dir() -> Path:
    """Get the SafeShell state directory.

    SAFESHELL_DIR overrides the default of ~/.safeshell.

    Returns:
        Path to the state directory
    """
    override = os.environ.get("SAFESHELL_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return get_home_dir() / ".safeshell"


def get_checkpoints_dir(safeshell_dir: Path | str | None = None) -> Path:
    """Get checkpoint storage directory (<state dir>/checkpoints).

    Returns:
        Path to checkpoint storage
    """
    base = Path(safeshell_dir) if safeshell_dir else get_safeshell_dir()
    return base / "checkpoints"


def get_session_id() -> str:
    """Return an identifier grouping checkpoints from one terminal session.

    SAFESHELL_SESSION wins when set. Otherwise the id is derived from the
    current date and the parent process id, so every command run from the
    same shell on the same day shares it.
    """
    explicit = os.environ.get("SAFESHELL_SESSION", "").strip()
    if explicit:
        return explicit

    seed = f"{date.today().isoformat()}{os.getppid()}".encode()
    return hashlib.md5(seed).hexdigest()[:8]
