"""Conductor: multi-instance agent team orchestrator."""

__version__ = "0.1.0"

from .context_store import ContextLevel, ContextStore  # noqa: E402
from .errors import ConductorError  # noqa: E402
from .process_tracker import ProcessTracker, Supervisor  # noqa: E402
from .secure_context import SecureContextStore  # noqa: E402
from .server import ToolProtocolServer  # noqa: E402
from .worktree import WorktreeManager  # noqa: E402

__all__ = [
    "ConductorError",
    "ContextLevel",
    "ContextStore",
    "ProcessTracker",
    "SecureContextStore",
    "Supervisor",
    "ToolProtocolServer",
    "WorktreeManager",
    "__version__",
]
