"""Backup engine.

Duplicates files into a checkpoint's private tree. A hard link is tried
first (zero copy); anything that prevents it (another volume, a filesystem
without link support, permissions) falls back to a buffered copy that keeps
the source's permission bits.
"""

from __future__ import annotations

import errno
import os
import secrets
import stat
import threading
from dataclasses import dataclass, field
from pathlib import Path

from ..utils.logging import get_logger
from .classifier import PathClassifier

logger = get_logger(__name__)


COPY_BUFFER_SIZE = 32 * 1024
COPY_POOL_SIZE = 4


class BufferPool:
    """Small pool of reusable copy buffers.

    The pool is advisory: an empty pool allocates a fresh buffer and a full
    pool drops returned buffers.
    """

    def __init__(self, size: int = COPY_POOL_SIZE, buffer_size: int = COPY_BUFFER_SIZE):
        self.size = size
        self.buffer_size = buffer_size
        self._free: list[bytearray] = []
        self._lock = threading.Lock()

    def acquire(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
        return bytearray(self.buffer_size)

    def release(self, buf: bytearray) -> None:
        if len(buf) != self.buffer_size:
            return
        with self._lock:
            if len(self._free) < self.size:
                self._free.append(buf)

    def __len__(self) -> int:
        return len(self._free)


_buffer_pool = BufferPool()


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of backing up one file."""
    source: str
    destination: str
    linked: bool  # True: hard link, False: copy fallback
    size: int
    mode: int


@dataclass
class DirBackupResult:
    """Outcome of backing up a directory tree."""
    files: list[BackupResult] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    oversized: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)


def copy_file(src: Path | str, dst: Path | str, pool: BufferPool | None = None) -> None:
    """Copy file content byte for byte, preserving the source permission bits.

    Raises:
        OSError: if the source cannot be read or the destination written
    """
    pool = pool or _buffer_pool
    buf = pool.acquire()
    try:
        with open(src, "rb") as fsrc:
            src_mode = stat.S_IMODE(os.fstat(fsrc.fileno()).st_mode)
            fd = os.open(dst, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, src_mode)
            with os.fdopen(fd, "wb") as fdst:
                view = memoryview(buf)
                while True:
                    n = fsrc.readinto(buf)
                    if not n:
                        break
                    fdst.write(view[:n])
        # os.open honours the umask; set the bits explicitly
        os.chmod(dst, src_mode)
    finally:
        pool.release(buf)


def backup_file(src: Path | str, dst: Path | str) -> BackupResult:
    """Back up a single file.

    The link or copy is made under a temporary name and renamed over
    ``dst``. An existing ``dst`` may share its inode with ``src`` and is
    never opened for writing.

    Args:
        src: File to back up
        dst: Destination inside the checkpoint tree

    Returns:
        BackupResult recording whether a link or a copy was made

    Raises:
        OSError: if neither a link nor a copy could be made
    """
    src_str, dst_str = os.fspath(src), os.fspath(dst)
    os.makedirs(os.path.dirname(dst_str), exist_ok=True)

    st = os.stat(src_str)
    size = st.st_size
    mode = stat.S_IMODE(st.st_mode)

    tmp_str = f"{dst_str}.{secrets.token_hex(4)}.tmp"
    try:
        try:
            os.link(src_str, tmp_str)
            linked = True
        except OSError as e:
            logger.debug("hard_link_failed", source=src_str, error=str(e))
            copy_file(src_str, tmp_str)
            linked = False
        os.replace(tmp_str, dst_str)
    finally:
        # rename() is a no-op when both names already point at one inode
        if os.path.lexists(tmp_str):
            try:
                os.unlink(tmp_str)
            except OSError:
                pass

    return BackupResult(src_str, dst_str, linked=linked, size=size, mode=mode)


def backup_dir(src: Path | str, dst: Path | str, classifier: PathClassifier) -> DirBackupResult:
    """Recursively back up a directory.

    Excluded directories are pruned with their whole subtree, symlinks are
    never followed, files over the size ceiling are skipped with a warning,
    and per-entry permission errors are recorded without aborting the walk.

    Args:
        src: Directory to back up
        dst: Mirror directory inside the checkpoint tree
        classifier: Decides what is skipped

    Returns:
        DirBackupResult listing every backed-up file
    """
    src_str, dst_str = os.fspath(src), os.fspath(dst)
    result = DirBackupResult()

    root_mode = stat.S_IMODE(os.stat(src_str).st_mode)
    os.makedirs(dst_str, exist_ok=True)
    os.chmod(dst_str, root_mode | stat.S_IRWXU)
    result.directories.append(src_str)

    def _on_error(err: OSError) -> None:
        if err.errno in (errno.EACCES, errno.EPERM):
            result.errors.append(str(err.filename or err))
            logger.warning("backup_permission_denied", path=err.filename)
            return
        raise err

    for root, dirs, files in os.walk(src_str, topdown=True, onerror=_on_error, followlinks=False):
        rel_root = os.path.relpath(root, src_str)
        target_root = dst_str if rel_root == "." else os.path.join(dst_str, rel_root)

        kept_dirs = []
        for name in dirs:
            path = os.path.join(root, name)
            skip, _ = classifier.should_skip(path, is_dir=True)
            if skip:
                result.skipped.append(path)
                continue
            try:
                mode = stat.S_IMODE(os.stat(path).st_mode)
                target = os.path.join(target_root, name)
                os.makedirs(target, exist_ok=True)
                os.chmod(target, mode | stat.S_IRWXU)
            except PermissionError as e:
                result.errors.append(path)
                logger.warning("backup_permission_denied", path=path, error=str(e))
                continue
            result.directories.append(path)
            kept_dirs.append(name)
        dirs[:] = kept_dirs

        for name in files:
            path = os.path.join(root, name)
            skip, _ = classifier.should_skip(path, is_dir=False)
            if skip:
                result.skipped.append(path)
                continue

            try:
                size = os.stat(path).st_size
                if classifier.exceeds_size_limit(size):
                    result.oversized.append(path)
                    logger.warning("file_exceeds_size_limit", path=path, size=size, limit=classifier.max_file_size)
                    continue
                result.files.append(backup_file(path, os.path.join(target_root, name)))
            except PermissionError as e:
                result.errors.append(path)
                logger.warning("backup_permission_denied", path=path, error=str(e))
            except OSError as e:
                result.errors.append(path)
                logger.warning("backup_file_failed", path=path, error=str(e))

    return result


def restore_file(backup_path: Path | str, original_path: Path | str) -> None:
    """Copy a backup over its destination.

    Any existing file at the destination is unlinked first, so a backup
    that still shares data with the destination through a hard link is
    never written through.

    Raises:
        OSError: if the destination cannot be replaced
    """
    original = os.fspath(original_path)
    os.makedirs(os.path.dirname(original) or ".", exist_ok=True)

    if os.path.lexists(original):
        if os.path.isdir(original) and not os.path.islink(original):
            raise IsADirectoryError(errno.EISDIR, "Destination is a directory", original)
        os.remove(original)

    copy_file(backup_path, original)


def disk_usage(path: Path | str) -> int:
    """Total size in bytes of all regular files under ``path``."""
    root = os.fspath(path)
    if os.path.isfile(root):
        return os.path.getsize(root)

    total = 0
    for dirpath, _, files in os.walk(root):
        for name in files:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total
