"""Unit tests for config.py - team configuration validation."""

from pathlib import Path

import pytest

from conductor.config import Configuration
from conductor.errors import ConfigurationError


def _team(instances, main="lead", **extra):
    team = {"name": "dev-team", "main": main, "instances": instances, **extra}
    return {"version": 1, "team": team}


class TestLoad:
    """Test loading team files."""

    def test_load_valid_file(self, team_config):
        configuration = Configuration.load(team_config())

        assert configuration.team_name == "dev-team"
        assert configuration.main_name == "lead"
        assert set(configuration.instances) == {"lead", "backend", "frontend"}
        assert configuration.main_instance.description == "Team lead"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            Configuration.load(tmp_path / "missing.yml")

    def test_unparsable_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("team: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Failed to parse"):
            Configuration.load(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError, match="expected a mapping"):
            Configuration.load(path)


class TestValidation:
    """Test schema and graph validation."""

    def test_unsupported_version(self, tmp_path):
        data = _team({"lead": {"description": "Lead"}})
        data["version"] = 2

        with pytest.raises(ConfigurationError, match="version"):
            Configuration(data, tmp_path / "c.yml")

    def test_main_must_exist(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Main instance 'boss' not found"):
            Configuration(_team({"lead": {"description": "Lead"}}, main="boss"), tmp_path / "c.yml")

    def test_instances_required(self, tmp_path):
        with pytest.raises(ConfigurationError, match="No instances defined"):
            Configuration(_team({}), tmp_path / "c.yml")

    def test_description_required(self, tmp_path):
        with pytest.raises(ConfigurationError, match="description"):
            Configuration(_team({"lead": {"model": "opus"}}), tmp_path / "c.yml")

    def test_unknown_model_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            Configuration(
                _team({"lead": {"description": "Lead", "model": "gpt-99"}}), tmp_path / "c.yml"
            )

    def test_missing_directory_rejected(self, tmp_path):
        data = _team({"lead": {"description": "Lead", "directory": "nowhere"}})

        with pytest.raises(ConfigurationError, match="Directory not found for instance 'lead'"):
            Configuration(data, tmp_path / "c.yml")

    def test_file_as_directory_rejected(self, tmp_path):
        (tmp_path / "afile").write_text("x")
        data = _team({"lead": {"description": "Lead", "directory": "afile"}})

        with pytest.raises(ConfigurationError, match="not a directory"):
            Configuration(data, tmp_path / "c.yml")

    def test_cycle_rejected(self, tmp_path):
        data = _team(
            {
                "lead": {"description": "Lead", "connections": ["helper"]},
                "helper": {"description": "Helper", "connections": ["lead"]},
            }
        )

        with pytest.raises(ConfigurationError, match="Circular dependency"):
            Configuration(data, tmp_path / "c.yml")

    def test_stdio_mcp_requires_command(self, tmp_path):
        data = _team(
            {"lead": {"description": "Lead", "mcps": [{"name": "tool", "type": "stdio"}]}}
        )

        with pytest.raises(ConfigurationError, match="missing command"):
            Configuration(data, tmp_path / "c.yml")

    def test_sse_mcp_requires_url(self, tmp_path):
        data = _team({"lead": {"description": "Lead", "mcps": [{"name": "tool", "type": "sse"}]}})

        with pytest.raises(ConfigurationError, match="missing url"):
            Configuration(data, tmp_path / "c.yml")


class TestHelpers:
    """Test derived values."""

    def test_relative_directories_resolve_against_config(self, team_config):
        path = team_config()
        configuration = Configuration.load(path)

        assert configuration.instance_directory("backend") == (path.parent / "backend").resolve()

    def test_directory_list(self, tmp_path):
        for name in ("main", "extra"):
            (tmp_path / name).mkdir()
        configuration = Configuration(
            _team({"lead": {"description": "Lead", "directory": ["main", "extra"]}}),
            tmp_path / "c.yml",
        )

        assert configuration.instance_directory("lead") == (tmp_path / "main").resolve()
        assert configuration.additional_directories("lead") == [(tmp_path / "extra").resolve()]

    def test_unset_directory_defaults_to_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        configuration = Configuration(_team({"lead": {"description": "Lead"}}), tmp_path / "c.yml")

        assert configuration.instance_directory("lead") == Path.cwd().resolve()
        assert configuration.additional_directories("lead") == []

    def test_tilde_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        configuration = Configuration(_team({"lead": {"description": "Lead"}}), tmp_path / "c.yml")

        assert configuration.expand_path("~/work") == (tmp_path / "work").resolve()

    def test_default_model(self, team_config):
        configuration = Configuration.load(team_config())

        assert configuration.model_for("lead") == "opus"
        assert configuration.model_for("backend") == "sonnet"

    def test_allowed_tools_include_connections(self, team_config):
        configuration = Configuration.load(team_config())

        assert configuration.allowed_tools("lead") == [
            "Read",
            "Edit",
            "mcp__backend",
            "mcp__frontend",
        ]
        assert configuration.allowed_tools("frontend") == []

    def test_vibe_instance_has_no_tool_list(self, tmp_path):
        configuration = Configuration(
            _team({"lead": {"description": "Lead", "vibe": True, "allowed_tools": ["Read"]}}),
            tmp_path / "c.yml",
        )

        assert configuration.allowed_tools("lead") == []

    def test_require_unknown_instance(self, team_config):
        configuration = Configuration.load(team_config())

        with pytest.raises(ConfigurationError, match="not found"):
            configuration.require_instance("ghost")

    @pytest.mark.parametrize(
        "setting,expected",
        [(None, "session-tag"), (True, "session-tag"), (False, None), ("own", "own")],
    )
    def test_worktree_tag(self, tmp_path, setting, expected):
        configuration = Configuration(
            _team({"lead": {"description": "Lead", "worktree": setting}}), tmp_path / "c.yml"
        )

        assert configuration.worktree_tag("lead", "session-tag") == expected

    def test_before_commands(self, tmp_path):
        configuration = Configuration(
            _team({"lead": {"description": "Lead"}}, before=["make setup"]), tmp_path / "c.yml"
        )

        assert configuration.before_commands == ["make setup"]
