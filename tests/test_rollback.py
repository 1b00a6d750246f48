"""Tests for the rollback engine."""

import os
import shutil
import stat

import pytest

from safeshell.core.errors import AlreadyRolledBackError, CheckpointNotFoundError
from safeshell.core.rollback import RollbackEngine


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def _replace(path, content):
    """Write new content under a new inode, leaving any hard-linked backup alone."""
    path.unlink()
    path.write_text(content)


@pytest.fixture
def engine(store):
    return RollbackEngine(store)


@pytest.fixture
def data_dir(workspace):
    d = workspace / "data"
    d.mkdir()
    (d / "a.txt").write_bytes(b"a" * 100)
    (d / "b.txt").write_bytes(b"b" * 50)
    (d / "c.txt").write_bytes(b"c" * 30)
    return d


class TestFullRollback:
    def test_restores_deleted_directory(self, store, engine, data_dir, workspace):
        cp = store.create("rm -rf data", [data_dir], working_dir=workspace)
        shutil.rmtree(data_dir)

        result = engine.rollback(cp)

        assert result.success
        assert result.restored == 3
        assert result.failed == 0
        assert (data_dir / "a.txt").read_bytes() == b"a" * 100
        assert (data_dir / "b.txt").read_bytes() == b"b" * 50
        assert (data_dir / "c.txt").read_bytes() == b"c" * 30

    def test_restores_content_and_mode(self, store, engine, workspace):
        script = workspace / "run.sh"
        script.write_text("#!/bin/sh\necho original\n")
        os.chmod(script, 0o751)
        cp = store.create("edit run.sh", [script])

        _replace(script, "echo changed\n")
        os.chmod(script, 0o600)

        engine.rollback(cp)

        assert script.read_text() == "#!/bin/sh\necho original\n"
        assert _mode(script) == 0o751

    def test_restored_file_is_independent_of_backup(self, store, engine, workspace):
        f = workspace / "a.txt"
        f.write_text("v1")
        cp = store.create("rm a.txt", [f])
        f.unlink()

        engine.rollback(cp)
        backup_path = cp.manifest.files[0].backup_path

        assert not os.path.samefile(f, backup_path)

    def test_marks_rolled_back(self, store, engine, data_dir):
        cp = store.create("rm", [data_dir])
        engine.rollback(cp)

        assert store.get(cp.id).manifest.rolled_back
        assert store.index.get_entry(cp.id).rolled_back

    def test_second_rollback_rejected(self, store, engine, data_dir):
        cp = store.create("rm", [data_dir])
        engine.rollback(cp)

        with pytest.raises(AlreadyRolledBackError):
            engine.rollback(store.get(cp.id))

    def test_missing_backup_counts_as_failure(self, store, engine, data_dir):
        cp = store.create("rm", [data_dir])
        shutil.rmtree(data_dir)
        missing = next(f for f in cp.manifest.files if f.original_path.endswith("b.txt"))
        os.unlink(missing.backup_path)

        result = engine.rollback(cp)

        assert not result.success
        assert result.restored == 2
        assert result.failed == 1
        assert result.failures[0].path == missing.original_path
        assert result.summary == "2 restored, 1 failed"
        # Partial success is kept and the checkpoint is still discharged.
        assert (data_dir / "a.txt").exists()
        assert store.get(cp.id).manifest.rolled_back

    def test_compressed_checkpoint_is_decompressed_first(self, store, engine, data_dir):
        cp = store.create("rm", [data_dir])
        store.compress(cp.id)
        shutil.rmtree(data_dir)

        result = engine.rollback(store.get(cp.id))

        assert result.restored == 3
        assert (data_dir / "c.txt").read_bytes() == b"c" * 30
        assert not store.get(cp.id).compressed

    def test_rollback_latest_and_by_id(self, store, engine, workspace):
        f = workspace / "x.txt"
        f.write_text("x")
        cp = store.create("rm x", [f])
        f.unlink()

        assert engine.rollback_latest().checkpoint_id == cp.id
        assert f.read_text() == "x"
        with pytest.raises(CheckpointNotFoundError):
            engine.rollback_by_id("missing")


class TestSelectiveRollback:
    def test_only_given_paths(self, store, engine, data_dir):
        cp = store.create("rm", [data_dir])
        shutil.rmtree(data_dir)

        result = engine.rollback_selective(cp, [data_dir / "a.txt"])

        assert result.restored == 1
        assert (data_dir / "a.txt").exists()
        assert not (data_dir / "b.txt").exists()
        assert not store.get(cp.id).manifest.rolled_back

    def test_relative_paths_are_normalized(self, store, engine, data_dir, monkeypatch):
        cp = store.create("rm", [data_dir])
        shutil.rmtree(data_dir)
        monkeypatch.chdir(data_dir.parent)

        result = engine.rollback_selective(cp, ["data/b.txt"])

        assert result.restored == 1
        assert (data_dir / "b.txt").read_bytes() == b"b" * 50

    def test_full_rollback_still_allowed_after_selective(self, store, engine, data_dir):
        cp = store.create("rm", [data_dir])
        shutil.rmtree(data_dir)
        engine.rollback_selective(cp, [data_dir / "a.txt"])

        result = engine.rollback(store.get(cp.id))
        assert result.restored == 3


class TestRollbackToPath:
    def test_relative_layout_under_destination(self, store, engine, data_dir, workspace, tmp_path):
        cp = store.create("rm", [data_dir], working_dir=workspace)
        dest = tmp_path / "restored"

        result = engine.rollback_to_path(cp, dest)

        assert result.restored == 3
        assert result.destination == str(dest)
        assert (dest / "data" / "a.txt").read_bytes() == b"a" * 100
        # Originals untouched, checkpoint still active.
        assert (data_dir / "a.txt").exists()
        assert not store.get(cp.id).manifest.rolled_back

    def test_outside_working_dir_uses_basename(self, store, engine, tmp_path, workspace):
        outside = tmp_path / "elsewhere" / "notes.txt"
        outside.parent.mkdir()
        outside.write_text("notes")
        cp = store.create("rm", [outside], working_dir=workspace)
        dest = tmp_path / "restored"

        engine.rollback_to_path(cp, dest)

        assert (dest / "notes.txt").read_text() == "notes"

    def test_selective_to_path(self, store, engine, data_dir, workspace, tmp_path):
        cp = store.create("rm", [data_dir], working_dir=workspace)
        dest = tmp_path / "restored"

        result = engine.rollback_selective_to_path(cp, [data_dir / "c.txt"], dest)

        assert result.restored == 1
        assert sorted(os.listdir(dest / "data")) == ["c.txt"]

    def test_allowed_after_full_rollback(self, store, engine, data_dir, workspace, tmp_path):
        cp = store.create("rm", [data_dir], working_dir=workspace)
        engine.rollback(cp)

        result = engine.rollback_to_path(store.get(cp.id), tmp_path / "copy")
        assert result.restored == 3
