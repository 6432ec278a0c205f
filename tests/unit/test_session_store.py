"""Unit tests for session_store.py - session layout and metadata."""

import json
import stat
import subprocess
import threading
from datetime import datetime

import pytest

from conductor.session_store import (
    InstanceRecord,
    InstanceStatus,
    SessionMetadata,
    SessionPaths,
    find_session,
    generate_session_id,
    list_sessions,
    project_name,
)


@pytest.fixture
def paths(tmp_path):
    return SessionPaths("20250102_030405", "project", root=tmp_path)


def _metadata():
    return SessionMetadata(
        session_id="20250102_030405",
        team_name="dev-team",
        main_instance="lead",
        config_path="/work/conductor.yml",
        start_time="2025-01-02T03:04:05",
        start_directory="/work",
        instances={
            "lead": InstanceRecord(id="lead_0123abcd", name="lead", directory="/work/lead"),
        },
    )


class TestSessionId:
    def test_generate_session_id_format(self):
        assert generate_session_id(datetime(2025, 1, 2, 3, 4, 5)) == "20250102_030405"


class TestProjectName:
    """Test project name derivation."""

    def test_plain_directory_uses_name(self, tmp_path):
        directory = tmp_path / "my-app"
        directory.mkdir()

        assert project_name(directory) == "my-app"

    @pytest.mark.parametrize(
        "remote",
        [
            "git@github.com:acme/widgets.git",
            "https://github.com/acme/widgets.git",
            "https://github.com/acme/widgets",
            "https://github.com/acme/widgets/",
        ],
    )
    def test_git_remote_name_preferred(self, git_repo, remote):
        subprocess.run(["git", "remote", "add", "origin", remote], cwd=git_repo, check=True)

        assert project_name(git_repo) == "widgets"


class TestSessionPaths:
    """Test layout paths and files."""

    def test_layout(self, paths, tmp_path):
        session = tmp_path / "sessions" / "project" / "20250102_030405"

        assert paths.session_path == session
        assert paths.config_path == session / "config.yml"
        assert paths.metadata_path == session / "session_metadata.json"
        assert paths.mcp_config_path("lead") == session / "lead.mcp.json"
        assert paths.instance_state_path("lead_1") == session / "state" / "lead_1.json"
        assert paths.current_link == tmp_path / "sessions" / "project" / "current"

    def test_default_root_from_environment(self, conductor_home):
        paths = SessionPaths("20250102_030405", "project")

        assert paths.root == conductor_home

    def test_from_session_path(self, paths):
        paths.ensure_directories()

        rebuilt = SessionPaths.from_session_path(paths.session_path)

        assert rebuilt.session_id == "20250102_030405"
        assert rebuilt.project == "project"
        assert rebuilt.session_path == paths.session_path.resolve()

    def test_start_directory_round_trip(self, paths, tmp_path):
        paths.ensure_directories()
        assert paths.load_start_directory() is None

        paths.save_start_directory(tmp_path)

        assert paths.load_start_directory() == str(tmp_path.resolve())

    def test_current_link_replaced_and_removed(self, tmp_path):
        older = SessionPaths("20250101_000000", "project", root=tmp_path)
        newer = SessionPaths("20250102_000000", "project", root=tmp_path)
        older.ensure_directories()
        newer.ensure_directories()

        older.create_current_link()
        newer.create_current_link()
        assert newer.current_link.resolve() == newer.session_path.resolve()

        older.remove_current_link()
        assert newer.current_link.is_symlink()

        newer.remove_current_link()
        assert not newer.current_link.is_symlink()


class TestMetadata:
    """Test metadata persistence."""

    def test_round_trip(self, paths):
        paths.ensure_directories()
        metadata = _metadata()

        paths.save_metadata(metadata)
        loaded = paths.load_metadata()

        assert loaded == metadata
        assert loaded.instances["lead"].status is InstanceStatus.PENDING

    def test_status_serialized_as_string(self, paths):
        paths.ensure_directories()
        metadata = _metadata()
        metadata.set_status("lead", InstanceStatus.COMPLETED, duration_ms=1500, cost=0.25)

        paths.save_metadata(metadata)

        record = json.loads(paths.metadata_path.read_text())["instances"]["lead"]
        assert record["status"] == "completed"
        assert record["duration_ms"] == 1500
        assert record["cost"] == 0.25

    def test_missing_metadata_is_none(self, paths):
        assert paths.load_metadata() is None

    def test_unreadable_metadata_is_none(self, paths):
        paths.ensure_directories()
        paths.metadata_path.write_text("{broken")

        assert paths.load_metadata() is None

    def test_unknown_record_fields_ignored(self):
        record = InstanceRecord.from_dict(
            {"id": "a_1", "name": "a", "directory": "/a", "status": "running", "extra": 1}
        )

        assert record.status is InstanceStatus.RUNNING

    def test_saved_atomically_with_private_mode(self, paths):
        paths.ensure_directories()

        paths.save_metadata(_metadata())

        assert stat.S_IMODE(paths.metadata_path.stat().st_mode) == 0o600
        assert not list(paths.session_path.glob("*.tmp"))


class TestUpdateInstance:
    """Test locked per-record updates."""

    @pytest.fixture
    def saved(self, paths):
        paths.ensure_directories()
        metadata = _metadata()
        metadata.instances["backend"] = InstanceRecord(
            id="backend_89abcdef", name="backend", directory="/work/backend"
        )
        paths.save_metadata(metadata)
        return paths

    def test_only_named_record_changes(self, saved):
        saved.update_instance("backend", session_id="sub-1", cost=0.5)
        saved.update_instance("lead", status=InstanceStatus.COMPLETED, duration_ms=10)

        loaded = saved.load_metadata()
        assert loaded.instances["backend"].session_id == "sub-1"
        assert loaded.instances["backend"].cost == 0.5
        assert loaded.instances["backend"].status is InstanceStatus.PENDING
        assert loaded.instances["lead"].status is InstanceStatus.COMPLETED
        assert loaded.instances["lead"].session_id is None

    def test_mutate_sees_current_record(self, saved):
        def add_cost(record):
            record.cost = (record.cost or 0.0) + 0.25

        saved.update_instance("backend", add_cost)
        record = saved.update_instance("backend", add_cost)

        assert record.cost == 0.5
        assert saved.load_metadata().instances["backend"].cost == 0.5

    def test_unknown_instance_or_missing_file(self, saved, tmp_path):
        before = saved.metadata_path.read_text()

        assert saved.update_instance("ghost", cost=1.0) is None
        assert saved.metadata_path.read_text() == before
        assert SessionPaths("20250101_000000", "p", tmp_path).update_instance("lead") is None

    def test_concurrent_updates_not_lost(self, saved):
        def add_cost(record):
            record.cost = (record.cost or 0.0) + 1.0

        threads = [
            threading.Thread(target=saved.update_instance, args=("backend", add_cost))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert saved.load_metadata().instances["backend"].cost == 8.0


class TestDiscovery:
    """Test listing and finding sessions."""

    def test_list_sessions_newest_first(self, tmp_path):
        for session_id in ("20250101_000000", "20250103_000000", "20250102_000000"):
            SessionPaths(session_id, "project", root=tmp_path).ensure_directories()
        (tmp_path / "sessions" / "project" / "not-a-session").mkdir()
        SessionPaths("20250103_000000", "project", root=tmp_path).create_current_link()

        sessions = list_sessions("project", root=tmp_path)

        assert [s.session_id for s in sessions] == [
            "20250103_000000",
            "20250102_000000",
            "20250101_000000",
        ]

    def test_list_sessions_unknown_project(self, tmp_path):
        assert list_sessions("ghost", root=tmp_path) == []

    def test_find_by_id_and_path(self, paths, tmp_path):
        paths.ensure_directories()

        assert find_session("20250102_030405", "project", root=tmp_path).session_path == (
            paths.session_path
        )
        assert find_session(str(paths.session_path), "other", root=tmp_path) is not None
        assert find_session("20990101_000000", "project", root=tmp_path) is None
        assert find_session(str(tmp_path / "missing"), "project", root=tmp_path) is None
