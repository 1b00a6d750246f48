"""Archive a checkpoint's file tree to reclaim space, and bring it back.

A compressed checkpoint keeps its manifest on disk but replaces the
``files/`` tree with a single ``files.tar.gz``.
"""

from __future__ import annotations

import os
import shutil
import stat
import tarfile
from pathlib import Path

from ..utils.logging import get_logger
from .errors import CorruptStateError

logger = get_logger(__name__)


FILES_DIR_NAME = "files"
ARCHIVE_NAME = "files.tar.gz"


def files_dir(checkpoint_dir: Path | str) -> Path:
    return Path(checkpoint_dir) / FILES_DIR_NAME


def archive_path(checkpoint_dir: Path | str) -> Path:
    return Path(checkpoint_dir) / ARCHIVE_NAME


def is_compressed(checkpoint_dir: Path | str) -> bool:
    """True when the checkpoint's archive exists on disk."""
    return archive_path(checkpoint_dir).is_file()


def compress_dir(src_dir: Path | str, dest_archive: Path | str) -> int:
    """Pack ``src_dir`` into a gzip tar and remove the tree.

    The archive is written to a temporary sibling and renamed into place
    once complete; the source tree is only removed after that rename.

    Args:
        src_dir: Tree to archive
        dest_archive: Final archive path

    Returns:
        Size of the archive in bytes

    Raises:
        OSError: if the archive cannot be written; the tree is left intact
    """
    src = Path(src_dir)
    dest = Path(dest_archive)
    tmp = dest.with_name(f".{dest.name}.tmp")

    try:
        with tarfile.open(tmp, "w:gz") as tar:
            for root, dirs, files in os.walk(src, followlinks=False):
                dirs.sort()
                for name in dirs + sorted(files):
                    path = Path(root) / name
                    info = tar.gettarinfo(path, arcname=path.relative_to(src).as_posix())
                    if info.isdir():
                        tar.addfile(info)
                    elif info.isreg() or info.islnk():
                        # Files sharing an inode are stored as independent copies.
                        info.type = tarfile.REGTYPE
                        info.linkname = ""
                        info.size = path.stat().st_size
                        with open(path, "rb") as f:
                            tar.addfile(info, f)
        os.replace(tmp, dest)
    except (OSError, tarfile.TarError):
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise

    size = dest.stat().st_size
    shutil.rmtree(src)
    logger.debug("compressed_tree", source=str(src), archive=str(dest), size=size)
    return size


def _safe_target(root: Path, name: str) -> Path:
    if os.path.isabs(name):
        raise CorruptStateError(f"Archive member has absolute path: {name}")
    target = (root / name).resolve()
    root_resolved = root.resolve()
    if target != root_resolved and root_resolved not in target.parents:
        raise CorruptStateError(f"Archive member escapes destination: {name}")
    return target


def decompress_dir(src_archive: Path | str, dest_dir: Path | str) -> int:
    """Unpack an archive written by ``compress_dir``.

    Directories are created first, then regular files are written; both get
    their archived mode bits back. Other member types are ignored.

    Args:
        src_archive: Archive to read
        dest_dir: Directory to unpack into (created if missing)

    Returns:
        Number of regular files restored

    Raises:
        CorruptStateError: if the archive cannot be read or a member name
            would land outside ``dest_dir``
    """
    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    restored = 0

    try:
        with tarfile.open(src_archive, "r:gz") as tar:
            members = tar.getmembers()

            for member in members:
                if not member.isdir():
                    continue
                target = _safe_target(dest, member.name)
                target.mkdir(parents=True, exist_ok=True)
                os.chmod(target, stat.S_IMODE(member.mode) | stat.S_IRWXU)

            for member in members:
                if not member.isreg():
                    continue
                target = _safe_target(dest, member.name)
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    continue
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                os.chmod(target, stat.S_IMODE(member.mode))
                restored += 1
    except (tarfile.TarError, EOFError) as e:
        raise CorruptStateError(f"Unable to read archive {src_archive}: {e}") from e

    return restored
