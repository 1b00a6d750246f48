"""Tests for checkpoint compression."""

import os
import stat
import tarfile
from datetime import timedelta

import pytest

from safeshell.core import checkpoint_store
from safeshell.core.compression import archive_path, compress_dir, decompress_dir, files_dir, is_compressed
from safeshell.core.errors import AlreadyCompressedError, CorruptStateError


def _snapshot(root):
    """(relative path, size, mode) for every entry under root."""
    entries = []
    for dirpath, dirs, files in os.walk(root):
        for name in dirs + files:
            path = os.path.join(dirpath, name)
            st = os.stat(path)
            size = 0 if stat.S_ISDIR(st.st_mode) else st.st_size
            entries.append((os.path.relpath(path, root), size, stat.S_IMODE(st.st_mode)))
    return sorted(entries)


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "tree"
    (root / "sub" / "deeper").mkdir(parents=True)
    (root / "a.txt").write_text("hello\n" * 100)
    (root / "sub" / "b.sh").write_text("#!/bin/sh\n")
    os.chmod(root / "sub" / "b.sh", 0o755)
    (root / "sub" / "deeper" / "c.dat").write_bytes(b"\x00\x01" * 1000)
    os.chmod(root / "sub" / "deeper", 0o750)
    return root


class TestArchive:
    def test_round_trip(self, tree, tmp_path):
        before = _snapshot(tree)
        archive = tmp_path / "files.tar.gz"

        size = compress_dir(tree, archive)

        assert size == archive.stat().st_size
        assert not tree.exists()

        restored = decompress_dir(archive, tree)

        assert restored == 3
        assert _snapshot(tree) == before

    def test_shared_inodes_archived_as_copies(self, tree, tmp_path):
        os.link(tree / "a.txt", tree / "sub" / "a-link.txt")
        archive = tmp_path / "files.tar.gz"

        compress_dir(tree, archive)
        decompress_dir(archive, tree)

        assert (tree / "sub" / "a-link.txt").read_text() == "hello\n" * 100

    def test_failed_write_keeps_tree(self, tree, tmp_path):
        missing_parent = tmp_path / "no" / "such" / "files.tar.gz"

        with pytest.raises(OSError):
            compress_dir(tree, missing_parent)

        assert (tree / "a.txt").exists()
        assert not missing_parent.exists()

    def test_member_escaping_destination_rejected(self, tmp_path):
        evil = tmp_path / "evil.txt"
        evil.write_text("x")
        archive = tmp_path / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(evil, arcname="../escaped.txt")

        with pytest.raises(CorruptStateError):
            decompress_dir(archive, tmp_path / "dest")
        assert not (tmp_path / "escaped.txt").exists()

    def test_unreadable_archive(self, tmp_path):
        archive = tmp_path / "files.tar.gz"
        archive.write_bytes(b"not a tarball")
        with pytest.raises(CorruptStateError):
            decompress_dir(archive, tmp_path / "dest")


class TestStoreCompression:
    def test_compress_500kb_checkpoint(self, store, workspace):
        data = workspace / "data"
        data.mkdir()
        for i in range(5):
            (data / f"part{i}.log").write_text(("log line %d\n" % i) * (100 * 1024 // 11) + "x" * (100 * 1024 % 11))
        total = sum((data / f"part{i}.log").stat().st_size for i in range(5))
        assert total == 500 * 1024
        cp = store.create("rm -rf data", [data])

        original_size, compressed_size = store.compress(cp.id)

        assert original_size == total
        assert compressed_size < original_size
        assert is_compressed(cp.dir)
        assert not files_dir(cp.dir).exists()

        loaded = store.get(cp.id)
        assert loaded.manifest.compressed
        assert loaded.manifest.compressed_size == compressed_size
        assert loaded.manifest.compressed_at is not None
        assert store.index.get_entry(cp.id).compressed

        decompressed = store.decompress(cp.id)

        assert not decompressed.manifest.compressed
        assert not archive_path(cp.dir).exists()
        restored = sum(os.path.getsize(f.backup_path) for f in decompressed.manifest.regular_files())
        assert restored == 500 * 1024

    def test_compress_twice_rejected(self, store, workspace):
        f = workspace / "a.txt"
        f.write_text("a")
        cp = store.create("rm", [f])
        store.compress(cp.id)

        with pytest.raises(AlreadyCompressedError):
            store.compress(cp.id)

    def test_decompress_uncompressed_is_noop(self, store, workspace):
        f = workspace / "a.txt"
        f.write_text("a")
        cp = store.create("rm", [f])
        assert store.decompress(cp.id).manifest == cp.manifest

    def test_ensure_decompressed(self, store, workspace):
        f = workspace / "a.txt"
        f.write_text("a")
        cp = store.create("rm", [f])
        store.compress(cp.id)

        handle = store.ensure_decompressed(store.get(cp.id))

        assert not handle.compressed
        assert os.path.exists(handle.manifest.files[0].backup_path)

    def test_compress_older_than(self, store, workspace, monkeypatch):
        f = workspace / "a.txt"
        f.write_text("compress me " * 1000)
        cp = store.create("rm", [f])
        fresh = store.create("rm", [f])

        later = cp.created_at + timedelta(days=2)
        monkeypatch.setattr(checkpoint_store, "_now", lambda: later)
        # Only the first is old enough once its timestamp is pushed back.
        fresh.manifest.timestamp = later
        fresh.manifest.save(fresh.dir)

        count, saved = store.compress_older_than(timedelta(days=1))

        assert count == 1
        assert saved > 0
        assert store.get(cp.id).compressed
        assert not store.get(fresh.id).compressed
