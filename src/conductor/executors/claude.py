"""Executor backed by the agent CLI in single-prompt mode."""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..errors import ProcessError
from ..launch import AGENT_BINARY, LaunchOptions, build_launch_args, build_system_prompt
from ..process_tracker import ProcessTracker
from .base import ExecutionResult, Executor

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


class StreamParser:
    """Accumulates the line-delimited JSON events of one agent run."""

    def __init__(self):
        self.session_id: str | None = None
        self.text_parts: list[str] = []
        self.result: str | None = None
        self.error: str | None = None
        self.cost = 0.0
        self.tokens = 0
        self.events = 0

    def feed(self, line: str) -> dict[str, Any] | None:
        """Parse one stdout line; non-JSON lines are kept as plain text."""
        line = line.strip()
        if not line:
            return None
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            self.text_parts.append(line)
            return None
        if not isinstance(event, dict):
            return None

        self.events += 1
        session_id = event.get("session_id") or event.get("id")
        if session_id and self.session_id is None:
            self.session_id = session_id

        event_type = event.get("type")
        if event_type == "assistant":
            for block in (event.get("message") or {}).get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    self.text_parts.append(block.get("text", ""))
        elif event_type == "text":
            self.text_parts.append(str(event.get("data") or ""))
        elif event_type == "result":
            if event.get("session_id"):
                self.session_id = event["session_id"]
            if event.get("is_error"):
                self.error = str(event.get("result") or event.get("subtype") or "Agent error")
            else:
                self.result = event.get("result")
            self.cost += float(event.get("total_cost_usd") or 0)
            usage = event.get("usage") or {}
            self.tokens += int(usage.get("input_tokens") or 0)
            self.tokens += int(usage.get("output_tokens") or 0)
        elif event_type == "error" or event.get("error"):
            self.error = str(event.get("error") or event.get("message") or "Unknown error")

        if event_type != "result" and event.get("cost"):
            self.cost += float(event["cost"])
        return event

    @property
    def text(self) -> str:
        if self.result is not None:
            return self.result
        return "".join(self.text_parts)


class ClaudeExecutor(Executor):
    """Runs each prompt as one ``claude -p`` invocation, resuming its session."""

    def __init__(
        self,
        instance_name: str,
        directory: str | Path,
        options: LaunchOptions,
        session_id: str | None = None,
        context_provider: Callable[[], dict[str, Any]] | None = None,
        tracker: ProcessTracker | None = None,
        binary: str = AGENT_BINARY,
    ):
        """Initialize the executor.

        Args:
            instance_name: Instance this executor serves
            directory: Working directory of the agent process
            options: Launch flags (the session id and prompt are filled per call)
            session_id: Agent session to resume on the first call
            context_provider: Returns persisted context injected into the
                system prompt on every call
            tracker: Tracks spawned processes so shutdown can terminate them
            binary: Agent executable
        """
        super().__init__(instance_name, session_id)
        self.directory = Path(directory)
        self.options = options
        self.context_provider = context_provider
        self.tracker = tracker
        self.binary = binary

    def build_command(self, prompt: str, system_prompt: str | None = None) -> list[str]:
        context = None
        if self.context_provider is not None:
            try:
                context = self.context_provider()
            except Exception as e:
                logger.warning(f"Failed to load context for {self.instance_name}: {e}")

        options = LaunchOptions(
            model=self.options.model,
            additional_directories=self.options.additional_directories,
            mcp_config_path=self.options.mcp_config_path,
            resume_session_id=self._session_id,
            vibe=self.options.vibe,
            allowed_tools=self.options.allowed_tools,
            disallowed_tools=self.options.disallowed_tools,
            system_prompt=build_system_prompt(
                system_prompt or self.options.system_prompt, context
            )
            or None,
        )
        return [
            self.binary,
            *build_launch_args(options),
            "--output-format",
            "stream-json",
            "--verbose",
            "-p",
            prompt,
        ]

    async def _abort(
        self, process: asyncio.subprocess.Process, stderr_task: asyncio.Future
    ) -> None:
        """Stop a run whose output could not be read and reap the child."""
        stderr_task.cancel()
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        logger.warning(f"Aborted {self.binary} run for {self.instance_name}")

    async def execute(self, prompt: str, system_prompt: str | None = None) -> ExecutionResult:
        command = self.build_command(prompt, system_prompt)
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.directory,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {self.binary}: {e}") from e

        if self.tracker is not None:
            self.tracker.track(process, self.instance_name, command[:1])

        parser = StreamParser()

        async def read_stdout() -> None:
            async for raw in process.stdout:
                event = parser.feed(raw.decode("utf-8", errors="replace"))
                if event is not None:
                    logger.debug(
                        f"{self.instance_name} event {event.get('type')}",
                        extra={"instance": self.instance_name},
                    )

        stdout_task = asyncio.ensure_future(read_stdout())
        stderr_task = asyncio.ensure_future(process.stderr.read())
        try:
            await stdout_task
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        except ValueError as e:
            await self._abort(process, stderr_task)
            raise ProcessError(
                f"{self.binary} output line exceeds {STREAM_LIMIT} bytes",
                exit_code=process.returncode,
            ) from e
        except BaseException:
            await self._abort(process, stderr_task)
            raise
        returncode = await process.wait()

        self.stats.total_calls += 1
        self.stats.total_cost += parser.cost
        self.stats.total_tokens += parser.tokens
        if parser.session_id:
            self._session_id = parser.session_id

        if returncode != 0 or parser.error:
            message = parser.error or stderr or f"{self.binary} exited with code {returncode}"
            raise ProcessError(message, exit_code=returncode, stderr=stderr)
        if stderr:
            logger.warning(f"{self.instance_name} stderr: {stderr}")

        return ExecutionResult(
            text=parser.text,
            session_id=self._session_id,
            cost=parser.cost,
            tokens=parser.tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
