"""Unit tests for system.py - shell, git and formatting helpers."""

from datetime import datetime
from pathlib import Path

import pytest

from conductor import system
from conductor.errors import ProcessError
from conductor.system import (
    command_exists,
    expand_home,
    format_cost,
    format_duration,
    git_current_branch,
    git_toplevel,
    is_git_repository,
    parse_session_id,
    run_command,
)


class TestHome:
    def test_environment_override(self, conductor_home):
        assert system.conductor_home() == conductor_home

    def test_default(self, monkeypatch):
        monkeypatch.delenv("CONDUCTOR_HOME", raising=False)

        assert system.conductor_home() == Path.home() / ".conductor"


class TestRunCommand:
    """Test shell command execution."""

    def test_returns_stripped_stdout(self, tmp_path):
        assert run_command("echo hello", cwd=tmp_path) == "hello"

    def test_runs_in_directory(self, tmp_path):
        run_command("touch marker", cwd=tmp_path)

        assert (tmp_path / "marker").exists()

    def test_failure_raises(self, tmp_path):
        with pytest.raises(ProcessError) as exc_info:
            run_command("echo oops >&2; exit 2", cwd=tmp_path)

        assert exc_info.value.exit_code == 2
        assert "oops" in exc_info.value.stderr

    def test_command_exists(self):
        assert command_exists("sh")
        assert not command_exists("definitely-not-a-command-xyz")


class TestGit:
    """Test git helpers."""

    def test_repository_detection(self, git_repo, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()

        assert is_git_repository(git_repo)
        assert not is_git_repository(plain)
        assert not is_git_repository(tmp_path / "missing")

    def test_toplevel_from_subdirectory(self, git_repo):
        assert git_toplevel(git_repo / "src" / "pkg") == git_repo

    def test_current_branch(self, git_repo):
        assert git_current_branch(git_repo) == "main"


class TestFormatting:
    """Test display helpers."""

    @pytest.mark.parametrize(
        "seconds,expected",
        [(3, "3s"), (59.9, "59s"), (65, "1m 5s"), (3600, "1h 0m"), (3725, "1h 2m")],
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_format_cost(self):
        assert format_cost(0.5) == "$0.5000"

    def test_parse_session_id(self):
        assert parse_session_id("20250102_030405") == datetime(2025, 1, 2, 3, 4, 5)
        assert parse_session_id("not-a-session") is None

    def test_expand_home(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/dev")

        assert expand_home("~/work") == "/home/dev/work"
        assert expand_home("/abs") == "/abs"
