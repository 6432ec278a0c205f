"""Session directory layout and metadata persistence.

A session lives at ``<root>/sessions/<project>/<session-id>/``::

    config.yml               snapshot of the team configuration
    session_metadata.json    SessionMetadata
    session.log              human-readable log
    session.log.json         JSON lines log
    start_directory          directory the session was started from
    <instance>.mcp.json      tool-server config for each instance
    state/<id>.json          per-instance state

``<root>/sessions/<project>/current`` points at the most recently started
session of that project.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from .file_lock import atomic_write_json, update_json
from .system import SESSION_ID_PATTERN, conductor_home, git_remote_url

logger = logging.getLogger(__name__)

REMOTE_NAME_PATTERN = re.compile(r"/([^/]+?)(\.git)?$")

# Several mcp-serve processes may contend for the metadata lock.
METADATA_LOCK_RETRIES = 20


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class InstanceRecord:
    """Per-instance entry of the session metadata."""

    id: str
    name: str
    directory: str
    model: str = "opus"
    provider: str = "claude"
    status: InstanceStatus = InstanceStatus.PENDING
    session_id: str | None = None
    """Resumable agent session token."""

    worktree: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    cost: float | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstanceRecord":
        known = {name for name in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = InstanceStatus(values.get("status", InstanceStatus.PENDING))
        return cls(**values)


@dataclass
class SessionMetadata:
    """Persisted description of one orchestration run."""

    session_id: str
    team_name: str
    main_instance: str
    config_path: str
    start_time: str
    start_directory: str
    worktree: str | None = None
    instances: dict[str, InstanceRecord] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "team_name": self.team_name,
            "main_instance": self.main_instance,
            "config_path": self.config_path,
            "start_time": self.start_time,
            "start_directory": self.start_directory,
            "worktree": self.worktree,
            "instances": {name: rec.to_dict() for name, rec in self.instances.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionMetadata":
        return cls(
            session_id=data["session_id"],
            team_name=data["team_name"],
            main_instance=data["main_instance"],
            config_path=data["config_path"],
            start_time=data["start_time"],
            start_directory=data["start_directory"],
            worktree=data.get("worktree"),
            instances={
                name: InstanceRecord.from_dict(rec)
                for name, rec in (data.get("instances") or {}).items()
            },
        )

    def set_status(self, name: str, status: InstanceStatus, **counters: Any) -> None:
        """Update an instance's status and any timing/cost counters."""
        record = self.instances[name]
        record.status = status
        for key, value in counters.items():
            setattr(record, key, value)


def generate_session_id(now: datetime | None = None) -> str:
    """Timestamp session id in ``YYYYMMDD_HHMMSS`` form."""
    return (now or datetime.now()).strftime("%Y%m%d_%H%M%S")


def project_name(directory: str | Path) -> str:
    """Derive the project name from the git origin URL or the directory name."""
    directory = Path(directory).resolve()
    try:
        remote = git_remote_url(directory)
    except (FileNotFoundError, NotADirectoryError):
        remote = None
    if remote:
        match = REMOTE_NAME_PATTERN.search(remote.rstrip("/"))
        if match:
            return match.group(1)
    return directory.name or "root"


class SessionPaths:
    """Filesystem layout of one session."""

    def __init__(
        self,
        session_id: str,
        project: str,
        root: str | Path | None = None,
    ):
        self.session_id = session_id
        self.project = project
        self.root = Path(root) if root is not None else conductor_home()
        self.project_dir = self.root / "sessions" / project
        self.session_path = self.project_dir / session_id

    @classmethod
    def from_session_path(cls, session_path: str | Path) -> "SessionPaths":
        """Rebuild the layout from an existing session directory."""
        path = Path(session_path).resolve()
        return cls(path.name, path.parent.name, path.parent.parent.parent)

    @property
    def state_dir(self) -> Path:
        return self.session_path / "state"

    @property
    def config_path(self) -> Path:
        return self.session_path / "config.yml"

    @property
    def metadata_path(self) -> Path:
        return self.session_path / "session_metadata.json"

    @property
    def log_path(self) -> Path:
        return self.session_path / "session.log"

    @property
    def json_log_path(self) -> Path:
        return self.session_path / "session.log.json"

    @property
    def start_directory_path(self) -> Path:
        return self.session_path / "start_directory"

    @property
    def current_link(self) -> Path:
        return self.project_dir / "current"

    def mcp_config_path(self, instance_name: str) -> Path:
        return self.session_path / f"{instance_name}.mcp.json"

    def instance_state_path(self, instance_id: str) -> Path:
        return self.state_dir / f"{instance_id}.json"

    def ensure_directories(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def save_start_directory(self, directory: str | Path) -> None:
        self.start_directory_path.write_text(str(Path(directory).resolve()))

    def load_start_directory(self) -> str | None:
        if not self.start_directory_path.exists():
            return None
        return self.start_directory_path.read_text().strip() or None

    def save_metadata(self, metadata: SessionMetadata) -> None:
        atomic_write_json(self.metadata_path, metadata.to_dict(), retries=METADATA_LOCK_RETRIES)

    def update_instance(
        self,
        name: str,
        mutate: Callable[[InstanceRecord], None] | None = None,
        **fields: Any,
    ) -> InstanceRecord | None:
        """Change one instance record in place under the metadata lock.

        The orchestrator and every ``mcp-serve`` process write to the same
        metadata file, so each of them updates only the record it owns.

        Args:
            name: Instance whose record is updated
            mutate: Optional callable applied to the record after ``fields``
            **fields: Record attributes to overwrite

        Returns:
            The updated record, or None if there is no metadata or no such
            instance
        """
        if not self.metadata_path.exists():
            return None
        updated: list[InstanceRecord] = []

        def apply(data: dict[str, Any]) -> dict[str, Any]:
            instances = (data or {}).get("instances") or {}
            if name not in instances:
                return data
            record = InstanceRecord.from_dict(instances[name])
            for key, value in fields.items():
                setattr(record, key, value)
            if mutate is not None:
                mutate(record)
            instances[name] = record.to_dict()
            updated.append(record)
            return data

        update_json(self.metadata_path, apply, default={}, retries=METADATA_LOCK_RETRIES)
        return updated[0] if updated else None

    def load_metadata(self) -> SessionMetadata | None:
        """Load metadata, returning None if missing or unreadable."""
        if not self.metadata_path.exists():
            return None
        try:
            return SessionMetadata.from_dict(json.loads(self.metadata_path.read_text()))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to parse session metadata {self.metadata_path}: {e}")
            return None

    def create_current_link(self) -> None:
        """Point ``current`` at this session, replacing any previous link."""
        link = self.current_link
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(self.session_path, target_is_directory=True)

    def remove_current_link(self) -> None:
        """Remove ``current`` if it still points at this session."""
        link = self.current_link
        if link.is_symlink() and link.resolve() == self.session_path.resolve():
            link.unlink()


def list_sessions(project: str, root: str | Path | None = None) -> list[SessionPaths]:
    """Sessions of a project, newest first."""
    base = (Path(root) if root is not None else conductor_home()) / "sessions" / project
    if not base.is_dir():
        return []
    ids = [
        entry.name
        for entry in base.iterdir()
        if entry.is_dir() and not entry.is_symlink() and SESSION_ID_PATTERN.match(entry.name)
    ]
    return [SessionPaths(session_id, project, root) for session_id in sorted(ids, reverse=True)]


def find_session(
    identifier: str, project: str, root: str | Path | None = None
) -> SessionPaths | None:
    """Locate a session by absolute path or by session id."""
    candidate = Path(identifier)
    if candidate.is_absolute():
        if candidate.is_dir():
            return SessionPaths.from_session_path(candidate)
        return None

    paths = SessionPaths(identifier, project, root)
    if paths.session_path.is_dir():
        return paths
    return None
