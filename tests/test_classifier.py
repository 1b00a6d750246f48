"""Tests for path classification."""

import os

import pytest

from safeshell.config import SafeShellConfig
from safeshell.core.classifier import DEFAULT_EXCLUSIONS, PathClassifier, is_symlink
from safeshell.core.errors import CheckpointValidationError


@pytest.fixture
def classifier():
    config = SafeShellConfig()
    return PathClassifier.from_config(config)


class TestShouldSkip:
    def test_regular_file_is_kept(self, classifier, tmp_path):
        f = tmp_path / "app.py"
        f.write_text("x")
        assert classifier.should_skip(f, is_dir=False) == (False, False)

    @pytest.mark.parametrize("name", ["node_modules", ".git", "__pycache__", "build", ".safeshell"])
    def test_excluded_directory_prunes_subtree(self, classifier, tmp_path, name):
        d = tmp_path / name
        d.mkdir()
        assert classifier.should_skip(d, is_dir=True) == (True, True)

    def test_excluded_file_does_not_prune(self, classifier, tmp_path):
        f = tmp_path / ".DS_Store"
        f.write_text("")
        assert classifier.should_skip(f, is_dir=False) == (True, False)

    def test_framework_bundle_prunes(self, classifier, tmp_path):
        d = tmp_path / "Foo.framework"
        d.mkdir()
        assert classifier.should_skip(d, is_dir=True) == (True, True)

    def test_symlink_is_skipped(self, classifier, tmp_path):
        target = tmp_path / "real.txt"
        target.write_text("data")
        link = tmp_path / "link.txt"
        link.symlink_to(target)

        assert is_symlink(link)
        assert not is_symlink(target)
        assert classifier.should_skip(link, is_dir=False) == (True, False)

    def test_configured_glob_matches_basename(self, classifier, tmp_path):
        f = tmp_path / "notes.swp"
        f.write_text("")
        assert classifier.should_skip(f, is_dir=False)[0]

    def test_pattern_with_slash_matches_full_path(self, tmp_path):
        classifier = PathClassifier(exclude_patterns=["cache/*.bin"])
        assert classifier.is_excluded(tmp_path / "cache" / "blob.bin")
        assert not classifier.is_excluded(tmp_path / "other" / "blob.bin")

    def test_default_exclusions_cover_vcs_and_deps(self):
        for name in (".git", "node_modules", ".venv", "target", "DerivedData"):
            assert name in DEFAULT_EXCLUSIONS


class TestSensitive:
    @pytest.mark.parametrize("path", [
        "/work/.env",
        "/work/.env.production",
        "/work/server.PEM",
        "/home/u/.ssh/id_rsa",
        "/home/u/.aws/credentials",
        "/work/my_secret_notes.txt",
    ])
    def test_matches(self, classifier, path):
        matched, pattern = classifier.is_sensitive(path)
        assert matched
        assert pattern

    def test_plain_file_not_sensitive(self, classifier):
        assert classifier.is_sensitive("/work/main.py") == (False, "")

    def test_disabled(self):
        classifier = PathClassifier(sensitive_patterns=[".env"], warn_sensitive=False)
        assert classifier.is_sensitive("/work/.env") == (False, "")


class TestSizeLimit:
    def test_limit(self):
        classifier = PathClassifier(max_file_size=100)
        assert not classifier.exceeds_size_limit(100)
        assert classifier.exceeds_size_limit(101)

    def test_zero_disables(self):
        classifier = PathClassifier(max_file_size=0)
        assert not classifier.exceeds_size_limit(10 ** 12)

    def test_from_config_uses_megabytes(self):
        classifier = PathClassifier.from_config(SafeShellConfig(max_file_size_mb=2))
        assert classifier.max_file_size == 2 * 1024 * 1024


class TestValidatePath:
    @pytest.mark.parametrize("path", ["/etc", "/etc/passwd", "/usr/bin/ls", "/var/log", "/root/.bashrc"])
    def test_system_paths_rejected(self, path):
        with pytest.raises(CheckpointValidationError) as exc:
            PathClassifier.validate_path(path)
        assert exc.value.path == os.path.normpath(path)

    def test_temp_dirs_allowed(self, tmp_path):
        PathClassifier.validate_path("/tmp/something")
        PathClassifier.validate_path(tmp_path / "file.txt")

    def test_lookalike_prefix_allowed(self):
        PathClassifier.validate_path("/etcetera/file")
        PathClassifier.validate_path("/usrdata/file")
