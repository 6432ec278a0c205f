"""Shared fixtures for the Conductor test suite."""

import shutil
import subprocess
from pathlib import Path

import pytest
import yaml


@pytest.fixture
def conductor_home(tmp_path, monkeypatch):
    """Point ``CONDUCTOR_HOME`` at a temporary directory."""
    home = tmp_path / "conductor-home"
    home.mkdir()
    monkeypatch.setenv("CONDUCTOR_HOME", str(home))
    return home


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True, text=True)


@pytest.fixture
def git_repo(tmp_path):
    """A git repository with one commit on branch ``main`` and a ``src`` directory."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    repo = tmp_path / "project"
    (repo / "src" / "pkg").mkdir(parents=True)
    (repo / "README.md").write_text("# project\n")
    (repo / "src" / "pkg" / "module.py").write_text("VALUE = 1\n")

    _git(repo, "init", "-q")
    _git(repo, "checkout", "-q", "-b", "main")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _git(repo, "config", "commit.gpgsign", "false")
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo.resolve()


@pytest.fixture
def team_config(tmp_path):
    """Write a three-instance team file and return its path."""

    def write(data: dict | None = None) -> Path:
        root = tmp_path / "team"
        for name in ("lead", "backend", "frontend"):
            (root / name).mkdir(parents=True, exist_ok=True)
        if data is None:
            data = {
                "version": 1,
                "team": {
                    "name": "dev-team",
                    "main": "lead",
                    "instances": {
                        "lead": {
                            "description": "Team lead",
                            "directory": "lead",
                            "connections": ["backend", "frontend"],
                            "allowed_tools": ["Read", "Edit"],
                            "prompt": "You coordinate the team",
                        },
                        "backend": {
                            "description": "Backend developer",
                            "directory": "backend",
                            "model": "sonnet",
                            "connections": ["frontend"],
                        },
                        "frontend": {
                            "description": "Frontend developer",
                            "directory": "frontend",
                            "model": "haiku",
                        },
                    },
                },
            }
        path = root / "conductor.yml"
        path.write_text(yaml.safe_dump(data))
        return path

    return write
