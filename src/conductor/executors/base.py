"""Executor capability interface."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class ExecutorStats:
    total_calls: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionResult:
    """Outcome of one executor call."""

    text: str
    session_id: str | None = None
    cost: float = 0.0
    tokens: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Executor(ABC):
    """Runs prompts against one agent back-end and keeps its conversation."""

    def __init__(self, instance_name: str, session_id: str | None = None):
        self.instance_name = instance_name
        self._session_id = session_id
        self.stats = ExecutorStats()

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @abstractmethod
    async def execute(self, prompt: str, system_prompt: str | None = None) -> ExecutionResult:
        """Send ``prompt`` and return the response.

        Raises:
            ProcessError: If a process-backed executor fails
            ExecutorError: If an API-backed executor fails
        """

    async def reset_session(self) -> str | None:
        """Start a fresh conversation; returns the previous session id."""
        previous, self._session_id = self._session_id, None
        return previous

    async def close(self) -> None:
        """Release resources held by the executor."""
