"""Unit tests for cli.py - argument parsing and the offline commands."""

import json
from unittest.mock import patch

import pytest
import yaml

from conductor import __version__
from conductor.cli import DEFAULT_CONFIG, build_parser, main, running_sessions
from conductor.context_store import ContextStore
from conductor.session_store import InstanceRecord, InstanceStatus, SessionMetadata, SessionPaths


@pytest.fixture
def workdir(tmp_path, monkeypatch, conductor_home):
    """Run commands from an empty project directory with an isolated home."""
    directory = tmp_path / "my-app"
    directory.mkdir()
    monkeypatch.chdir(directory)
    return directory


def _save_session(root, session_id, project="my-app", status=InstanceStatus.RUNNING, cost=None):
    paths = SessionPaths(session_id, project, root=root)
    paths.ensure_directories()
    paths.save_metadata(
        SessionMetadata(
            session_id=session_id,
            team_name="dev-team",
            main_instance="lead",
            config_path="/work/conductor.yml",
            start_time="2025-01-01T12:00:00",
            start_directory="/work",
            instances={
                "lead": InstanceRecord(
                    id="lead_1", name="lead", directory="/work/lead", status=status
                ),
                "backend": InstanceRecord(
                    id="backend_1", name="backend", directory="/work/backend", cost=cost
                ),
            },
        )
    )
    return paths


class TestParser:
    """Test argument parsing."""

    def test_start_defaults(self):
        args = build_parser().parse_args(["start"])

        assert args.config == "conductor.yml"
        assert args.worktree is None
        assert args.prompt is None
        assert not args.interactive

    def test_worktree_flag_without_tag(self):
        args = build_parser().parse_args(["start", "team.yml", "-w"])

        assert args.worktree is True

    def test_worktree_flag_with_tag(self):
        args = build_parser().parse_args(["start", "team.yml", "--worktree", "feature-x"])

        assert args.worktree == "feature-x"

    def test_mcp_serve_requires_paths(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["mcp-serve", "backend"])

    def test_context_level_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["context", "get", "key", "--level", "swarm"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestInit:
    def test_creates_sample_config(self, workdir, capsys):
        assert main(["init"]) == 0

        data = yaml.safe_load((workdir / "conductor.yml").read_text())
        assert data["version"] == 1
        assert data["team"]["main"] == "lead"
        assert "Created conductor.yml" in capsys.readouterr().out

    def test_refuses_to_overwrite(self, workdir, capsys):
        (workdir / "conductor.yml").write_text("keep me")

        assert main(["init"]) == 1
        assert (workdir / "conductor.yml").read_text() == "keep me"
        assert "--force" in capsys.readouterr().err

    def test_force_overwrites(self, workdir):
        (workdir / "conductor.yml").write_text("old")

        assert main(["init", "--force"]) == 0
        assert (workdir / "conductor.yml").read_text() == DEFAULT_CONFIG


class TestSessionsCommands:
    """Test list-sessions and ps."""

    def test_list_sessions_empty(self, workdir, capsys):
        assert main(["list-sessions"]) == 0

        assert "No sessions found" in capsys.readouterr().out

    def test_list_sessions_table(self, workdir, conductor_home, capsys):
        _save_session(conductor_home, "20250101_120000")
        _save_session(conductor_home, "20250102_120000")

        assert main(["list-sessions", "--limit", "1"]) == 0

        out = capsys.readouterr().out
        assert "20250102_120000" in out
        assert "20250101_120000" not in out
        assert "2025-01-02 12:00:00" in out
        assert "Showing 1 of 2 sessions" in out

    def test_running_sessions_filters_on_main_status(self, conductor_home):
        _save_session(conductor_home, "20250101_120000", status=InstanceStatus.COMPLETED)
        _save_session(conductor_home, "20250102_120000")
        _save_session(conductor_home, "20250103_120000", project="other")

        sessions = running_sessions(conductor_home)

        assert [s.session_id for s in sessions] == ["20250103_120000", "20250102_120000"]

    def test_ps(self, workdir, conductor_home, capsys):
        _save_session(conductor_home, "20250102_120000", cost=0.125)

        assert main(["ps"]) == 0

        out = capsys.readouterr().out
        assert "20250102_120000" in out
        assert "$0.1250" in out
        assert "/work/backend, /work/lead" in out

    def test_ps_nothing_running(self, workdir, capsys):
        assert main(["ps"]) == 0

        assert "No running sessions found" in capsys.readouterr().out


class TestContextCommand:
    """Test context get/set/delete."""

    @pytest.fixture
    def team_dir(self, workdir):
        (workdir / "conductor.yml").write_text(DEFAULT_CONFIG)
        return workdir

    def test_set_and_get(self, team_dir, conductor_home, capsys):
        assert main(["context", "set", "db", '{"host": "localhost"}']) == 0
        capsys.readouterr()

        assert main(["context", "get", "db", "--json"]) == 0

        assert json.loads(capsys.readouterr().out) == {"host": "localhost"}
        assert ContextStore("my-dev-team", root=conductor_home).get("team", "db") == {
            "host": "localhost"
        }

    def test_plain_string_value(self, team_dir, conductor_home):
        main(["context", "set", "owner", "alice"])

        assert ContextStore("my-dev-team", root=conductor_home).get("team", "owner") == "alice"

    def test_instance_level(self, team_dir, conductor_home):
        main(["context", "set", "focus", '"auth"', "--level", "instance", "-i", "backend"])

        store = ContextStore("my-dev-team", root=conductor_home)
        assert store.get("instance", "focus", "backend") == "auth"

    def test_get_missing_key(self, team_dir, capsys):
        assert main(["context", "get", "missing"]) == 0

        assert "No context found for key 'missing'" in capsys.readouterr().out

    def test_delete(self, team_dir, capsys):
        main(["context", "set", "a", "1"])
        capsys.readouterr()

        assert main(["context", "delete", "a"]) == 0

        assert "Deleted key 'a' from team context" in capsys.readouterr().out

    def test_team_level_without_team_fails(self, workdir, capsys):
        assert main(["context", "get", "a"]) == 1

        assert "No team context found" in capsys.readouterr().err

    def test_global_level_without_team(self, workdir, conductor_home):
        assert main(["context", "set", "editor", "vim", "--level", "global"]) == 0

        assert ContextStore("default", root=conductor_home).get("global", "editor") == "vim"

    def test_explicit_config(self, workdir, tmp_path, conductor_home):
        config = tmp_path / "team.yml"
        config.write_text(yaml.safe_dump({"version": 1, "team": {"name": "ops"}}))

        main(["context", "set", "region", "eu", "--config", str(config)])

        assert ContextStore("ops", root=conductor_home).get("team", "region") == "eu"


class TestStartCommand:
    def test_configuration_error_reported(self, workdir, capsys):
        assert main(["start", "missing.yml"]) == 1

        assert "Configuration file not found" in capsys.readouterr().err

    def test_runs_orchestrator(self, workdir, team_config):
        path = team_config()

        with patch("conductor.cli.Orchestrator") as orchestrator_cls, patch(
            "conductor.cli.asyncio.run", return_value=0
        ) as run:
            assert main(["start", str(path), "-p", "hello", "-w", "tag"]) == 0

        options = orchestrator_cls.call_args.args[1]
        assert options.prompt == "hello"
        assert options.worktree == "tag"
        assert options.config_path == path.resolve()
        run.assert_called_once()

    def test_keyboard_interrupt(self, workdir, team_config):
        with patch("conductor.cli.Orchestrator"), patch(
            "conductor.cli.asyncio.run", side_effect=KeyboardInterrupt
        ):
            assert main(["start", str(team_config())]) == 130


def test_version(capsys):
    assert main(["version"]) == 0

    assert capsys.readouterr().out.strip() == f"conductor {__version__}"
