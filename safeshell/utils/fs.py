"""File system helpers shared by the checkpoint engine.

Manifests, the index and the config file are all written through
``atomic_write`` so a crash never leaves a half-written JSON document.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write(file_path: Path | str, content: str | bytes, mode: str = "w") -> None:
    """Replace ``file_path`` with ``content`` in one rename.

    The parent directory is created when missing. Readers see either the
    previous document or the new one.

    Args:
        file_path: Destination file
        content: Text or bytes to store
        mode: 'w' for text, 'wb' for bytes

    Raises:
        OSError: if the temporary file cannot be written or renamed
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target, otherwise os.replace may cross devices
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")

    try:
        with os.fdopen(fd, mode) as f:
            f.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_json_load(file_path: Path | str, default: Any = None) -> Any:
    """Parsed JSON from ``file_path``, or ``default`` ({} when None) if unreadable."""
    try:
        with open(file_path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return default if default is not None else {}


def file_digest(file_path: Path | str, chunk_size: int = 64 * 1024) -> str:
    """SHA-256 hex digest of a file's content."""
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def is_within(path: Path | str, root: Path | str) -> bool:
    """True if ``path`` is ``root`` or lies beneath it (lexically)."""
    p = os.path.normpath(os.path.abspath(path))
    r = os.path.normpath(os.path.abspath(root))
    return p == r or p.startswith(r.rstrip(os.sep) + os.sep)
