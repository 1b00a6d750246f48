from __future__ import annotations

import pytest

from safeshell.config import SafeShellConfig
from safeshell.core.checkpoint_store import CheckpointStore
from safeshell.utils.logging import setup_logging


@pytest.fixture(autouse=True)
def _isolate_home(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Prevent developer machine `~/.safeshell` state from influencing tests."""

    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("SAFESHELL_DIR", str(tmp_path / ".safeshell"))
    monkeypatch.setenv("SAFESHELL_SESSION", "test-session")
    monkeypatch.delenv("SAFESHELL_DEBUG", raising=False)


@pytest.fixture
def workspace(tmp_path):
    """A directory holding files to checkpoint."""
    work = tmp_path / "work"
    work.mkdir()
    return work


@pytest.fixture
def config(tmp_path):
    return SafeShellConfig(safeshell_dir=tmp_path / ".safeshell")


@pytest.fixture
def store(config):
    return CheckpointStore(config.checkpoints_dir, config=config)


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    # Rebind the handler to the real stderr once capture fixtures are gone.
    setup_logging("WARNING")
