"""Tests for SafeShellController."""

import shutil
from datetime import timedelta

import pytest

from safeshell.core.controller import SafeShellController
from safeshell.core.errors import CheckpointNotFoundError


@pytest.fixture
def controller(tmp_path):
    return SafeShellController(tmp_path / ".safeshell")


@pytest.fixture
def files(workspace):
    (workspace / "a.txt").write_text("alpha")
    (workspace / "b.txt").write_text("beta")
    return workspace


class TestSafeShellController:
    def test_uses_state_dir(self, controller, tmp_path):
        assert controller.config.safeshell_dir == tmp_path / ".safeshell"
        assert controller.store.checkpoints_dir == tmp_path / ".safeshell" / "checkpoints"

    def test_reads_config_file(self, tmp_path):
        state = tmp_path / ".safeshell"
        state.mkdir()
        (state / "config.json").write_text('{"max_checkpoints": 3}')

        controller = SafeShellController(state)

        assert controller.store.config.max_checkpoints == 3

    def test_resolve_latest(self, controller, files):
        cp = controller.create_checkpoint("rm a.txt", ["a.txt"], working_dir=files)
        assert controller.resolve().id == cp.id
        assert controller.resolve(cp.id).id == cp.id

    def test_resolve_empty(self, controller):
        with pytest.raises(CheckpointNotFoundError):
            controller.resolve()

    def test_rollback_variants(self, controller, files, tmp_path):
        cp = controller.create_checkpoint("rm *.txt", [files / "a.txt", files / "b.txt"], working_dir=files)
        (files / "a.txt").unlink()
        (files / "b.txt").unlink()

        copied = controller.rollback(cp.id, to=tmp_path / "out")
        assert copied.restored == 2
        assert (tmp_path / "out" / "a.txt").read_text() == "alpha"

        one = controller.rollback(cp.id, files=[str(files / "b.txt")])
        assert one.restored == 1
        assert not (files / "a.txt").exists()

        full = controller.rollback(cp.id)
        assert full.restored == 2
        assert (files / "a.txt").read_text() == "alpha"

    def test_diff(self, controller, files):
        cp = controller.create_checkpoint("rm a.txt", [files / "a.txt"])
        (files / "a.txt").unlink()

        checkpoint, report = controller.diff()

        assert checkpoint.id == cp.id
        assert report.deleted == 1

    def test_clean_defaults_to_configured_limits(self, tmp_path, files):
        state = tmp_path / ".safeshell"
        state.mkdir()
        (state / "config.json").write_text('{"max_checkpoints": 1}')
        controller = SafeShellController(state)
        controller.create_checkpoint("one", [files / "a.txt"])
        controller.create_checkpoint("two", [files / "a.txt"])

        assert controller.clean() == 1
        assert len(controller.store.list()) == 1

    def test_clean_explicit(self, controller, files):
        controller.create_checkpoint("one", [files / "a.txt"])
        assert controller.clean(older_than=timedelta(days=1)) == 0
        assert controller.clean(keep=0) == 1

    def test_status(self, controller, files):
        empty = controller.get_status()
        assert empty.checkpoint_count == 0
        assert empty.latest_checkpoint is None

        cp = controller.create_checkpoint("rm", [files / "a.txt"])
        controller.store.compress(cp.id)
        status = controller.get_status()

        assert status.checkpoint_count == 1
        assert status.compressed_count == 1
        assert status.latest_checkpoint == cp.id
        assert status.storage_bytes > 0
        assert status.max_storage_mb == 5000
        assert not status.storage_exceeded
        assert status.session_id == "test-session"

    def test_validate_system(self, controller, files):
        cp = controller.create_checkpoint("rm", [files / "a.txt"])
        assert controller.validate_system() == {"valid": True, "issues": []}

        shutil.rmtree(cp.files_dir)
        result = controller.validate_system()
        assert not result["valid"]
        assert cp.id in result["issues"][0]
