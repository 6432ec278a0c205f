"""Session lifecycle: prepare the environment, launch the main instance, clean up."""

import asyncio
import logging
import os
import shutil
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import Configuration
from .context_store import META_KEY, ContextStore
from .errors import ConductorError, ProcessError
from .launch import AGENT_BINARY, LaunchOptions, build_launch_args, build_system_prompt
from .logging_manager import LoggingManager
from .process_tracker import ProcessTracker, Supervisor
from .session_store import (
    InstanceRecord,
    InstanceStatus,
    SessionMetadata,
    SessionPaths,
    find_session,
    generate_session_id,
    project_name,
)
from .system import command_exists, conductor_home, run_command
from .wiring import ConnectionWirer
from .workbench import Workbench
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)

SESSION_ENV = "CONDUCTOR_SESSION"
LOG_LEVEL_ENV = "CONDUCTOR_LOG_LEVEL"


@dataclass
class OrchestratorOptions:
    """Options of one ``conductor start`` run."""

    config_path: Path
    prompt: str | None = None
    interactive: bool = False
    vibe: bool = False
    worktree: bool | str | None = None
    """True for the default tag ``worktree-<session id>``, or an explicit tag."""

    session_id: str | None = None
    """Session to restore; instance ids and agent sessions are resumed."""


class Orchestrator:
    """Runs one team session from setup to teardown.

    ``start`` prepares the session directory, the workbench, worktrees and the
    per-instance tool-server specs, then spawns the main instance with
    inherited stdio and waits for it. Cleanup is registered with the process
    tracker so it also runs on signals and uncaught errors.
    """

    def __init__(
        self,
        configuration: Configuration,
        options: OrchestratorOptions,
        root: str | Path | None = None,
        tracker: ProcessTracker | None = None,
        exit_func: Callable[[int], Any] = sys.exit,
        binary: str = AGENT_BINARY,
        start_directory: str | Path | None = None,
    ):
        self.configuration = configuration
        self.options = options
        self.root = Path(root) if root is not None else conductor_home()
        self.binary = binary
        self.start_time = datetime.now()
        self.start_directory = Path(start_directory or Path.cwd()).resolve()

        project = project_name(self.start_directory)
        self.previous: SessionMetadata | None = None
        if options.session_id:
            paths = find_session(options.session_id, project, self.root)
            if paths is None:
                raise ConductorError(f"Session not found: {options.session_id}")
            self.session_paths = paths
            self.previous = paths.load_metadata()
        else:
            self.session_paths = SessionPaths(
                generate_session_id(self.start_time), project, self.root
            )
        self.session_id = self.session_paths.session_id

        self.worktree_tag = self._resolve_worktree_tag()
        self.worktree_manager = (
            WorktreeManager(self.session_id, self.root) if self.worktree_tag else None
        )
        self.tracker = tracker or ProcessTracker()
        self.supervisor = Supervisor(self.tracker, exit_func)
        self.context_store = ContextStore(configuration.team_name, self.root)
        self.logging_manager: LoggingManager | None = None
        self.workbench: Workbench | None = None
        self.metadata: SessionMetadata | None = None
        self.directories: dict[str, Path] = {}
        self._cleaned_up = False

    def _resolve_worktree_tag(self) -> str | None:
        worktree = self.options.worktree
        if worktree is True:
            return f"worktree-{self.session_id}"
        if isinstance(worktree, str) and worktree:
            return worktree
        if worktree is None and self.previous is not None:
            return self.previous.worktree
        return None

    @property
    def main_name(self) -> str:
        return self.configuration.main_name

    # Lifecycle

    async def start(self) -> int:
        """Prepare the session, run the main instance and clean up.

        Returns:
            Exit code of the main instance

        Raises:
            ProcessError: If the agent binary is missing or cannot be spawned
            ConductorError: If any preparation step fails
        """
        if not command_exists(self.binary):
            raise ProcessError(
                f"{self.binary} CLI not found. Install it first: "
                "npm install -g @anthropic-ai/claude-code"
            )

        self.supervisor.install()
        self.tracker.add_cleanup_handler(self.cleanup)

        try:
            process = await self._prepare_and_launch()
        except BaseException:
            self._mark_main(InstanceStatus.FAILED, completed_at=datetime.now().isoformat())
            await self.tracker.cleanup()
            self.supervisor.uninstall()
            raise

        started = time.monotonic()
        returncode = await process.wait()
        status = InstanceStatus.COMPLETED if returncode == 0 else InstanceStatus.FAILED
        self._mark_main(
            status,
            completed_at=datetime.now().isoformat(),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(f"Main instance {self.main_name} exited with code {returncode}")

        await self.tracker.cleanup()
        self.supervisor.uninstall()
        return returncode

    async def _prepare_and_launch(self) -> asyncio.subprocess.Process:
        paths = self.session_paths
        paths.ensure_directories()
        self.logging_manager = LoggingManager(
            paths.session_path, os.environ.get(LOG_LEVEL_ENV, "INFO")
        )
        logger.info(f"Starting session {self.session_id} for team {self.configuration.team_name}")

        paths.save_start_directory(self.start_directory)
        paths.create_current_link()
        if self.configuration.config_path is not None:
            shutil.copyfile(self.configuration.config_path, paths.config_path)

        self._setup_directories()

        self.workbench = Workbench(self.directories[self.main_name], self.session_id)
        self.workbench.initialize()

        self.run_before_commands()

        wirer = ConnectionWirer(self.configuration, paths)
        mcp_paths = wirer.write(wirer.generate(self.previous))

        self.metadata = self._create_metadata(wirer.instance_ids)
        paths.save_metadata(self.metadata)

        return await self._launch_main(mcp_paths[self.main_name])

    def _setup_directories(self) -> None:
        """Resolve each instance's working directory, isolating it when tagged."""
        for name in self.configuration.instances:
            directory = self.configuration.instance_directory(name)
            tag = self.configuration.worktree_tag(name, self.worktree_tag)
            if tag and self.worktree_manager is not None:
                directory = self.worktree_manager.setup_worktree(directory, tag)
                for extra in self.configuration.additional_directories(name):
                    self.worktree_manager.setup_worktree(extra, tag)
            self.directories[name] = directory

    def _additional_directories(self, name: str) -> list[str]:
        extras = self.configuration.additional_directories(name)
        if self.worktree_manager is not None:
            extras = [self.worktree_manager.map_path_to_worktree(path) for path in extras]
        return [str(path) for path in extras]

    def run_before_commands(self) -> None:
        """Run the team's ``before`` commands in order, aborting on the first failure.

        Raises:
            ProcessError: If a command exits non-zero
        """
        for command in self.configuration.before_commands:
            logger.info(f"Executing: {command}")
            try:
                output = run_command(command, cwd=self.start_directory)
            except ProcessError as e:
                logger.error(f"Command failed: {command}", extra={"stderr": e.stderr})
                raise ProcessError(
                    f"Before command failed: {command}", exit_code=e.exit_code, stderr=e.stderr
                ) from e
            if output:
                logger.info(f"Output: {output}")

    def _create_metadata(self, instance_ids: dict[str, str]) -> SessionMetadata:
        instances = {}
        for name, instance in self.configuration.instances.items():
            previous = self.previous.instances.get(name) if self.previous else None
            directory = self.directories.get(name) or self.configuration.instance_directory(name)
            worktree = None
            if self.worktree_manager is not None:
                worktree = self.worktree_manager.get_worktree_path(
                    self.configuration.instance_directory(name)
                )
            instances[name] = InstanceRecord(
                id=instance_ids[name],
                name=name,
                directory=str(directory),
                model=self.configuration.model_for(name),
                provider=instance.provider,
                session_id=previous.session_id if previous else None,
                worktree=str(worktree) if worktree else None,
            )

        return SessionMetadata(
            session_id=self.session_id,
            team_name=self.configuration.team_name,
            main_instance=self.main_name,
            config_path=str(self.configuration.config_path or ""),
            start_time=self.start_time.isoformat(),
            start_directory=str(self.start_directory),
            worktree=self.worktree_tag,
            instances=instances,
        )

    def build_system_prompt(self, name: str) -> str:
        """Instance prompt, persisted context and workbench instructions."""
        instance = self.configuration.require_instance(name)
        context = self.context_store.build_instance_context(name)
        context.pop(META_KEY, None)
        instructions = None
        if self.workbench is not None:
            instructions = self.workbench.instructions(is_main=name == self.main_name)
        return build_system_prompt(instance.prompt, context, instructions)

    def build_main_args(self, mcp_config_path: str | Path) -> list[str]:
        """Launch arguments of the main instance, prompt handling included."""
        name = self.main_name
        instance = self.configuration.main_instance
        vibe = self.options.vibe or instance.vibe

        resume = None
        if self.metadata is not None:
            resume = self.metadata.instances[name].session_id

        system_prompt = self.build_system_prompt(name)
        if self.options.interactive and self.options.prompt:
            system_prompt += (
                f"\n\nInitial task: {self.options.prompt}\n\n"
                "You can interact with other agents using the MCP tools available."
            )

        args = build_launch_args(
            LaunchOptions(
                model=self.configuration.model_for(name),
                additional_directories=self._additional_directories(name),
                mcp_config_path=str(mcp_config_path),
                resume_session_id=resume,
                vibe=vibe,
                allowed_tools=[] if vibe else self.configuration.allowed_tools(name),
                disallowed_tools=[] if vibe else self.configuration.disallowed_tools(name),
                system_prompt=system_prompt or None,
            )
        )
        if self.options.prompt and not self.options.interactive:
            args.extend(["-p", self.options.prompt])
        return args

    async def _launch_main(self, mcp_config_path: Path) -> asyncio.subprocess.Process:
        name = self.main_name
        directory = self.directories[name]
        args = self.build_main_args(mcp_config_path)
        if self.logging_manager is not None:
            self.logging_manager.log_info(
                name,
                f"Launching {self.binary}",
                {"command": self.binary, "args": args, "directory": str(directory)},
            )

        env = os.environ.copy()
        env[SESSION_ENV] = str(self.session_paths.session_path)
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, *args, cwd=directory, env=env
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {self.binary}: {e}") from e

        self.tracker.track(process, name, [self.binary, *args])
        self._mark_main(InstanceStatus.RUNNING, started_at=datetime.now().isoformat())
        logger.info(
            f"Main instance {name} running",
            extra={"pid": process.pid, "directory": str(directory)},
        )
        return process

    def _mark_main(self, status: InstanceStatus, **counters: Any) -> None:
        if self.metadata is None:
            return
        self.metadata.set_status(self.main_name, status, **counters)
        self.session_paths.update_instance(self.main_name, status=status, **counters)

    async def cleanup(self) -> None:
        """Tear down worktrees, drop the ``current`` pointer and close logging.

        Registered as a process-tracker cleanup handler; runs at most once.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True
        logger.info("Cleaning up...")

        if self.worktree_manager is not None:
            try:
                self.worktree_manager.cleanup()
            except ConductorError as e:
                logger.error(f"Failed to clean up worktrees: {e}")

        self.session_paths.remove_current_link()
        if self.logging_manager is not None:
            self.logging_manager.close()
