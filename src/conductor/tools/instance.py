"""Tools that drive the connected instance's executor."""

import logging
import os
import time
from pathlib import Path
from typing import Any

from ..errors import ConductorError, ContextError
from ..executors import Executor
from ..logging_manager import LoggingManager
from ..protocol import ToolDefinition, ToolHandler
from ..session_store import InstanceRecord, SessionPaths

logger = logging.getLogger(__name__)


class InstanceToolset:
    """``task``, ``session_info`` and ``reset_session`` for one instance."""

    def __init__(
        self,
        instance_name: str,
        instance_id: str,
        description: str,
        executor: Executor,
        directory: str | Path,
        session_paths: SessionPaths | None = None,
        logging_manager: LoggingManager | None = None,
    ):
        self.instance_name = instance_name
        self.instance_id = instance_id
        self.description = description
        self.executor = executor
        self.directory = Path(directory)
        self.session_paths = session_paths
        self.logging_manager = logging_manager
        self.started_at = time.monotonic()

    def definitions(self) -> list[tuple[ToolDefinition, ToolHandler]]:
        return [
            (
                ToolDefinition(
                    name="task",
                    description=(
                        f"Execute a task using agent {self.instance_name}. {self.description}"
                    ),
                    input_schema={
                        "type": "object",
                        "properties": {
                            "prompt": {
                                "type": "string",
                                "description": "The task or question for the agent",
                            },
                            "system_prompt": {
                                "type": "string",
                                "description": "Override the system prompt for this request",
                            },
                            "new_session": {
                                "type": "boolean",
                                "description": "Start a new session (default: false)",
                            },
                        },
                        "required": ["prompt"],
                    },
                ),
                self.task,
            ),
            (
                ToolDefinition(
                    name="session_info",
                    description="Get information about the current session of this agent",
                ),
                self.session_info,
            ),
            (
                ToolDefinition(
                    name="reset_session",
                    description="Reset the session of this agent, starting fresh on the next task",
                ),
                self.reset_session,
            ),
        ]

    async def task(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run a prompt on the executor.

        Raises:
            ValueError: If ``prompt`` is missing or not a string
        """
        prompt = arguments.get("prompt")
        if not isinstance(prompt, str) or not prompt:
            raise ValueError("Missing or invalid prompt parameter")

        if self.logging_manager is not None:
            self.logging_manager.log_request(self.instance_name, {"prompt": prompt})

        try:
            if arguments.get("new_session"):
                await self.executor.reset_session()
            result = await self.executor.execute(prompt, arguments.get("system_prompt"))
        except ConductorError as e:
            logger.error(f"Task failed on {self.instance_name}: {e}")
            if self.logging_manager is not None:
                self.logging_manager.log_error(self.instance_name, {"error": str(e)})
            return {"success": False, "error": str(e), "instance": self.instance_name}

        if self.logging_manager is not None:
            self.logging_manager.log_response(self.instance_name, result.to_dict())
        self._record_session(result.session_id, result.cost)

        return {
            "success": True,
            "result": result.text,
            "instance": self.instance_name,
            "session_id": self.executor.session_id,
            "cost": result.cost,
            "duration_ms": result.duration_ms,
        }

    async def session_info(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return {
            "instance": self.instance_name,
            "instance_id": self.instance_id,
            "session_id": self.executor.session_id,
            "directory": str(self.directory),
            "session_path": str(self.session_paths.session_path) if self.session_paths else None,
            "pid": os.getpid(),
            "uptime": round(time.monotonic() - self.started_at, 3),
            "stats": self.executor.stats.to_dict(),
        }

    async def reset_session(self, arguments: dict[str, Any]) -> dict[str, Any]:
        previous = await self.executor.reset_session()
        logger.info(f"Session reset for {self.instance_name}")
        return {
            "success": True,
            "instance": self.instance_name,
            "old_session_id": previous,
            "new_session_id": self.executor.session_id,
            "message": "Session reset successfully",
        }

    def _record_session(self, session_id: str | None, cost: float) -> None:
        """Persist the latest session id and cost so a later run can resume."""
        if self.session_paths is None:
            return

        def add_cost(record: InstanceRecord) -> None:
            record.cost = (record.cost or 0.0) + cost

        try:
            self.session_paths.update_instance(
                self.instance_name, add_cost, session_id=session_id
            )
        except ContextError as e:
            logger.error(f"Failed to record session of {self.instance_name}: {e}")
