"""System, git and formatting helpers."""

import logging
import os
import re
import shutil
import subprocess
from datetime import datetime
from pathlib import Path

from .errors import ProcessError

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})$")


def conductor_home() -> Path:
    """Program root: ``$CONDUCTOR_HOME`` or ``~/.conductor``."""
    override = os.environ.get("CONDUCTOR_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".conductor"


def command_exists(command: str) -> bool:
    return shutil.which(command) is not None


def run_command(command: str, cwd: str | Path | None = None) -> str:
    """Run a shell command and return its stripped stdout.

    Raises:
        ProcessError: If the command exits non-zero
    """
    result = subprocess.run(
        command, shell=True, cwd=cwd, capture_output=True, text=True, check=False
    )
    if result.returncode != 0:
        raise ProcessError(
            f"Command failed: {command}\n{result.stderr.strip()}",
            exit_code=result.returncode,
            stderr=result.stderr,
        )
    return result.stdout.strip()


def git(args: list[str], cwd: str | Path) -> subprocess.CompletedProcess:
    """Run ``git`` with list arguments; never raises on a non-zero exit."""
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=False
    )


def is_git_repository(path: str | Path) -> bool:
    try:
        return git(["rev-parse", "--git-dir"], path).returncode == 0
    except (FileNotFoundError, NotADirectoryError):
        return False


def git_toplevel(path: str | Path) -> Path | None:
    result = git(["rev-parse", "--show-toplevel"], path)
    if result.returncode != 0:
        return None
    return Path(result.stdout.strip()).resolve()


def git_remote_url(path: str | Path) -> str | None:
    result = git(["config", "--get", "remote.origin.url"], path)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def git_current_branch(path: str | Path) -> str | None:
    result = git(["rev-parse", "--abbrev-ref", "HEAD"], path)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def format_duration(seconds: float) -> str:
    """Format seconds as ``1h 5m``, ``5m 3s`` or ``3s``."""
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_cost(cost: float) -> str:
    return f"${cost:.4f}"


def parse_session_id(session_id: str) -> datetime | None:
    """Parse a ``YYYYMMDD_HHMMSS`` session id, or return None."""
    match = SESSION_ID_PATTERN.match(session_id)
    if not match:
        return None
    return datetime(*(int(part) for part in match.groups()))


def expand_home(path: str) -> str:
    if path.startswith("~"):
        return os.path.expanduser(path)
    return path
