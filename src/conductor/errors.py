"""Exception hierarchy for Conductor."""

from typing import Any


class ConductorError(Exception):
    """Base class for all Conductor errors."""


class ConfigurationError(ConductorError):
    """Raised when a team configuration file is missing or invalid."""


class ContextError(ConductorError):
    """Error raised by the context stores.

    Attributes:
        code: Machine-readable error code (e.g. ``READ_ERROR``)
        details: Optional structured details for the caller
    """

    def __init__(self, message: str, code: str = "CONTEXT_ERROR", details: Any = None):
        super().__init__(message)
        self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for tool responses."""
        result: dict[str, Any] = {"error": str(self), "code": self.code}
        if self.details is not None:
            result["details"] = self.details
        return result


class ValidationError(ContextError):
    """Malformed input such as a bad agent name or a non-object payload."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class SecurityError(ContextError):
    """A path escaped its sandbox or a file exceeded the size ceiling."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, "SECURITY_ERROR", details)


class ContextReadError(ContextError):
    def __init__(self, message: str, details: Any = None):
        super().__init__(message, "READ_ERROR", details)


class ContextWriteError(ContextError):
    def __init__(self, message: str, details: Any = None):
        super().__init__(message, "WRITE_ERROR", details)


class LockAcquisitionError(ContextWriteError):
    """Exclusive lock could not be obtained within the retry budget."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, details)
        self.code = "LOCK_ERROR"


class ProtocolError(ConductorError):
    """Error carrying a JSON-RPC error code."""

    def __init__(self, message: str, code: int, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ProcessError(ConductorError):
    """Spawn failure, non-zero exit, or an unexpected stream error."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class WorktreeError(ConductorError):
    """A git worktree could not be created."""


class WorktreeCleanupError(WorktreeError):
    """One or more worktrees failed to clean up.

    All cleanups are attempted before this is raised; ``errors`` holds one
    message per failure.
    """

    def __init__(self, errors: list[str]):
        super().__init__("Worktree cleanup failed:\n" + "\n".join(errors))
        self.errors = errors


class ExecutorError(ConductorError):
    """An executor back-end failed to produce a response."""
