"""Tests for utility helpers."""

import hashlib
import logging
import os
from datetime import date, datetime, timedelta

import pytest

from safeshell.utils import env
from safeshell.utils.format import format_bytes, format_time_ago, parse_duration
from safeshell.utils.fs import atomic_write, file_digest, is_within
from safeshell.utils.logging import get_logger, setup_logging


class TestFormatBytes:
    @pytest.mark.parametrize("size, expected", [
        (0, "0 B"),
        (1023, "1023 B"),
        (1024, "1.0 KB"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5.0 MB"),
        (3 * 1024 ** 3, "3.0 GB"),
    ])
    def test_units(self, size, expected):
        assert format_bytes(size) == expected


class TestTimeAgo:
    NOW = datetime(2024, 5, 10, 12, 0, 0)

    @pytest.mark.parametrize("delta, expected", [
        (timedelta(seconds=30), "just now"),
        (timedelta(minutes=1), "1 minute ago"),
        (timedelta(minutes=5), "5 minutes ago"),
        (timedelta(hours=2), "2 hours ago"),
        (timedelta(days=1), "1 day ago"),
        (timedelta(days=3), "3 days ago"),
    ])
    def test_relative(self, delta, expected):
        assert format_time_ago(self.NOW - delta, now=self.NOW) == expected

    def test_old_dates_are_absolute(self):
        assert format_time_ago(datetime(2024, 1, 2), now=self.NOW) == "2024-01-02"


class TestParseDuration:
    @pytest.mark.parametrize("text, expected", [
        ("30s", timedelta(seconds=30)),
        ("30m", timedelta(minutes=30)),
        ("12h", timedelta(hours=12)),
        ("7d", timedelta(days=7)),
        ("2w", timedelta(weeks=2)),
        (" 3D ", timedelta(days=3)),
    ])
    def test_valid(self, text, expected):
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "  ", "7", "d", "1.5h", "-1d", "7y"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


class TestEnv:
    def test_explicit_session(self):
        assert env.get_session_id() == "test-session"

    def test_derived_session_is_stable(self, monkeypatch):
        monkeypatch.delenv("SAFESHELL_SESSION")
        expected = hashlib.md5(f"{date.today().isoformat()}{os.getppid()}".encode()).hexdigest()[:8]

        assert env.get_session_id() == expected
        assert env.get_session_id() == expected

    @pytest.mark.parametrize("value, expected", [("1", True), ("true", True), ("0", False), ("", False)])
    def test_debug_mode(self, monkeypatch, value, expected):
        monkeypatch.setenv("SAFESHELL_DEBUG", value)
        assert env.is_debug_mode() is expected

    def test_checkpoints_dir(self, tmp_path):
        assert env.get_checkpoints_dir() == tmp_path / ".safeshell" / "checkpoints"
        assert env.get_checkpoints_dir(tmp_path / "x") == tmp_path / "x" / "checkpoints"


class TestFs:
    def test_atomic_write_replaces(self, tmp_path):
        target = tmp_path / "nested" / "file.json"
        atomic_write(target, "one")
        atomic_write(target, "two")

        assert target.read_text() == "two"
        assert [p.name for p in target.parent.iterdir()] == ["file.json"]

    def test_file_digest(self, tmp_path):
        f = tmp_path / "f"
        f.write_bytes(b"abc")
        assert file_digest(f) == hashlib.sha256(b"abc").hexdigest()

    def test_is_within(self, tmp_path):
        assert is_within(tmp_path / "a" / "b", tmp_path)
        assert is_within(tmp_path, tmp_path)
        assert not is_within(str(tmp_path) + "-other", tmp_path)


class TestLogging:
    def test_setup_default_level(self):
        setup_logging()
        assert logging.getLogger("safeshell").level == logging.WARNING

    def test_debug_env_lowers_level(self, monkeypatch):
        monkeypatch.setenv("SAFESHELL_DEBUG", "1")
        setup_logging()
        assert logging.getLogger("safeshell").level == logging.DEBUG

    def test_events_go_to_stderr(self, capsys):
        setup_logging("INFO")
        get_logger("safeshell.test").info("hello_event", answer=42)

        captured = capsys.readouterr()
        assert "hello_event" in captured.err
        assert "answer=42" in captured.err
        assert captured.out == ""
