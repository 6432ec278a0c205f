"""Hardened per-project context store with a shared findings ledger.

Layout under ``<project>/.analysis``::

    context/<agent>.json          per-agent context
    context/repo-state.json       shared repository understanding
    sessions/<agent>-<ts>.json    session audit trail
    shared/critical-issues.json   findings ledger (most recent 1000)

Directories are created ``0o700`` and files written ``0o600``. Every name that
becomes a path component is validated and every resolved path is checked to
stay inside its base directory.
"""

import hashlib
import logging
import os
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .context_store import CONTEXT_VERSION, validate_name
from .errors import SecurityError, ValidationError
from .file_lock import atomic_write_json, read_json, update_json
from .merge import strip_dangerous_keys

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_FINDINGS = 1000
FINDINGS_FILE = "critical-issues.json"
REPO_STATE_FILE = "repo-state.json"
ANALYSIS_HASH_KEY = "analysis_hash"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class FindingType(str, Enum):
    VULNERABILITY = "vulnerability"
    PERFORMANCE = "performance"
    TEST_GAP = "test-gap"
    ARCHITECTURE = "architecture"


def compute_paths_hash(paths: list[str]) -> str:
    """SHA-256 of the sorted path list joined by newlines."""
    return hashlib.sha256("\n".join(sorted(paths)).encode("utf-8")).hexdigest()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SecureContextStore:
    """Context persistence for analysis agents working on one project.

    All writes are atomic and locked; reads reject files larger than
    ``max_file_size`` before parsing and drop dangerous keys while decoding.
    """

    def __init__(
        self,
        project_path: str | Path,
        max_file_size: int = MAX_FILE_SIZE,
        max_findings: int = MAX_FINDINGS,
    ):
        """Initialize the store and create its directories.

        Args:
            project_path: Project root; data lives in ``<project>/.analysis``
            max_file_size: Size ceiling in bytes for any file read
            max_findings: Ledger capacity; oldest findings are evicted first
        """
        self.project_path = Path(project_path).resolve()
        self.analysis_root = self.project_path / ".analysis"
        self.context_dir = self.analysis_root / "context"
        self.sessions_dir = self.analysis_root / "sessions"
        self.shared_dir = self.analysis_root / "shared"
        self.max_file_size = max_file_size
        self.max_findings = max_findings

        for directory in (self.analysis_root, self.context_dir, self.sessions_dir, self.shared_dir):
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _resolve(self, file_name: str, base_dir: Path) -> Path:
        """Resolve ``file_name`` under ``base_dir``, rejecting traversal.

        Raises:
            SecurityError: If the resolved path leaves ``base_dir``
        """
        base = base_dir.resolve()
        resolved = (base / os.path.normpath(file_name)).resolve()
        if not resolved.is_relative_to(base) or resolved == base:
            raise SecurityError(
                "Path traversal attempt detected",
                details={"attempted": file_name, "base_dir": str(base)},
            )
        return resolved

    def _read(self, path: Path) -> Any:
        return read_json(path, max_size=self.max_file_size)

    # Agent context

    def get_context(self, agent_name: str) -> dict[str, Any] | None:
        """Load an agent's context envelope, or None if never saved.

        Raises:
            ValidationError: If the name is invalid or the stored envelope is
                malformed
        """
        validate_name(agent_name, "agent name")
        path = self._resolve(f"{agent_name}.json", self.context_dir)
        document = self._read(path)
        if document is None:
            return None

        required = ("version", "timestamp", "agent", "data")
        if not isinstance(document, dict) or any(key not in document for key in required):
            raise ValidationError("Invalid context structure", {"agent": agent_name})
        return document

    def save_context(self, agent_name: str, data: dict[str, Any], merge: bool = True) -> None:
        """Save an agent's context.

        Args:
            agent_name: Agent the context belongs to
            data: Context payload
            merge: Shallow-merge over the existing payload instead of
                replacing it
        """
        validate_name(agent_name, "agent name")
        if not isinstance(data, dict):
            raise ValidationError("Context data must be an object")
        path = self._resolve(f"{agent_name}.json", self.context_dir)

        def rewrite(existing: Any) -> dict[str, Any]:
            payload = dict(data)
            if merge and isinstance(existing, dict) and isinstance(existing.get("data"), dict):
                payload = {**existing["data"], **data}
            return {
                "version": CONTEXT_VERSION,
                "timestamp": _now(),
                "agent": agent_name,
                "data": payload,
            }

        update_json(path, rewrite, max_size=self.max_file_size)
        logger.debug(f"Saved context for agent {agent_name}")

    # Shared findings

    def share_finding(
        self,
        source: str,
        severity: Severity | str,
        type: FindingType | str,
        summary: str,
        affected: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append a finding to the shared ledger.

        Returns:
            The stored finding including its generated id and timestamp

        Raises:
            ValidationError: On a bad source name, severity, type or summary
        """
        validate_name(source, "source")
        try:
            severity = Severity(severity)
            finding_type = FindingType(type)
        except ValueError as e:
            raise ValidationError(f"Invalid finding structure: {e}") from None
        if not isinstance(summary, str) or not summary.strip():
            raise ValidationError("Invalid finding structure: summary is required")

        finding: dict[str, Any] = {
            "id": self._generate_id(),
            "source": source,
            "severity": severity.value,
            "type": finding_type.value,
            "affected": list(affected or []),
            "summary": summary,
            "timestamp": _now(),
        }
        if details is not None:
            finding["details"] = strip_dangerous_keys(details)

        path = self._resolve(FINDINGS_FILE, self.shared_dir)

        def append(existing: Any) -> list[dict[str, Any]]:
            findings = existing if isinstance(existing, list) else []
            findings.append(finding)
            return findings[-self.max_findings :]

        update_json(path, append, default=[], max_size=self.max_file_size)
        logger.info(
            f"Finding shared by {source}: [{severity.value}] {summary}",
            extra={"finding_id": finding["id"], "finding_type": finding_type.value},
        )
        return finding

    def get_shared_findings(
        self,
        severity: str | None = None,
        type: str | None = None,
        source: str | None = None,
        since: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return ledger entries matching every given filter.

        ``since`` is an ISO-8601 timestamp compared lexically against each
        finding's timestamp.
        """
        findings = self._read(self._resolve(FINDINGS_FILE, self.shared_dir)) or []
        result = []
        for finding in findings:
            if severity and finding.get("severity") != severity:
                continue
            if type and finding.get("type") != type:
                continue
            if source and finding.get("source") != source:
                continue
            if since and finding.get("timestamp", "") < since:
                continue
            result.append(finding)
        return result

    def needs_reanalysis(
        self, paths: list[str], last_hash: str | None = None, agent_name: str | None = None
    ) -> bool:
        """True unless the hash of ``paths`` matches the previous analysis.

        The previous hash is ``last_hash`` when given, otherwise the one
        recorded for ``agent_name`` by :meth:`record_analysis`.
        """
        if last_hash is None and agent_name is not None:
            document = self.get_context(agent_name)
            if document is not None:
                last_hash = document["data"].get(ANALYSIS_HASH_KEY)
        if not last_hash:
            return True
        return compute_paths_hash(paths) != last_hash

    def record_analysis(self, agent_name: str, paths: list[str]) -> str:
        """Store the hash of ``paths`` in the agent's context and return it."""
        paths_hash = compute_paths_hash(paths)
        self.save_context(agent_name, {ANALYSIS_HASH_KEY: paths_hash}, merge=True)
        return paths_hash

    # Audit and repository state

    def log_session(self, agent_name: str, session_data: dict[str, Any]) -> Path:
        validate_name(agent_name, "agent name")
        stamp = _now().replace(":", "-").replace(".", "-").replace("+", "-")
        path = self._resolve(f"{agent_name}-{stamp}.json", self.sessions_dir)
        atomic_write_json(
            path,
            {
                "version": CONTEXT_VERSION,
                "agent": agent_name,
                "timestamp": _now(),
                "data": session_data,
            },
        )
        return path

    def get_repo_state(self) -> dict[str, Any] | None:
        return self._read(self._resolve(REPO_STATE_FILE, self.context_dir))

    def save_repo_state(self, state: dict[str, Any]) -> None:
        if not isinstance(state, dict):
            raise ValidationError("Repository state must be an object")
        atomic_write_json(
            self._resolve(REPO_STATE_FILE, self.context_dir),
            {"version": CONTEXT_VERSION, "timestamp": _now(), "data": state},
        )

    @staticmethod
    def _generate_id() -> str:
        seed = f"{time.time_ns()}:{secrets.token_hex(8)}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]
