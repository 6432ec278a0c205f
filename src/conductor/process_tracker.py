"""Child process tracking and process-wide shutdown supervision."""

import asyncio
import inspect
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import psutil

from .errors import ProcessError

logger = logging.getLogger(__name__)

CleanupHandler = Callable[[], Awaitable[None] | None]

DEFAULT_GRACE_PERIOD = 1.0


@dataclass
class TrackedProcess:
    """A child process under tracking."""

    pid: int
    name: str
    command: str
    process: Any = field(repr=False)
    start_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "command": self.command,
            "start_time": self.start_time.isoformat(),
        }


class ProcessTracker:
    """Tracks spawned child processes and tears them down on cleanup.

    Processes that exit on their own are dropped from tracking by an exit
    watcher, so cleanup never signals a pid that has already gone away.
    """

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD):
        """Initialize the tracker.

        Args:
            grace_period: Seconds between SIGTERM and SIGKILL during cleanup
        """
        self.grace_period = grace_period
        self._processes: dict[int, TrackedProcess] = {}
        self._watchers: dict[int, asyncio.Task] = {}
        self._cleanup_handlers: list[CleanupHandler] = []
        self._cleaning = False

    def track(self, process: Any, name: str, command: str | list[str]) -> TrackedProcess:
        """Start tracking a child process.

        Args:
            process: ``asyncio.subprocess.Process`` (or anything with ``pid``
                and an awaitable ``wait()``)
            name: Human-readable name (usually the instance name)
            command: Command line the process was started with

        Raises:
            ProcessError: If the handle has no pid
        """
        pid = getattr(process, "pid", None)
        if not pid:
            raise ProcessError(f"Cannot track process '{name}': no pid available")

        if isinstance(command, list):
            command = " ".join(command)

        tracked = TrackedProcess(pid=pid, name=name, command=command, process=process)
        self._processes[pid] = tracked

        wait = getattr(process, "wait", None)
        if wait is not None and inspect.iscoroutinefunction(wait):
            self._watchers[pid] = asyncio.ensure_future(self._watch_exit(pid, process))

        logger.debug(f"Tracking process {name} (pid {pid})")
        return tracked

    async def _watch_exit(self, pid: int, process: Any) -> None:
        try:
            returncode = await process.wait()
        except asyncio.CancelledError:
            return
        self._processes.pop(pid, None)
        self._watchers.pop(pid, None)
        logger.debug(f"Process {pid} exited with code {returncode}")

    def add_cleanup_handler(self, handler: CleanupHandler) -> None:
        """Register a teardown callback (sync or async) run by cleanup()."""
        self._cleanup_handlers.append(handler)

    def get_processes(self) -> list[TrackedProcess]:
        return list(self._processes.values())

    def get_process(self, pid: int) -> TrackedProcess | None:
        return self._processes.get(pid)

    def is_tracking(self, pid: int) -> bool:
        return pid in self._processes

    @property
    def process_count(self) -> int:
        return len(self._processes)

    async def cleanup(self) -> None:
        """Run cleanup handlers, then terminate every tracked process.

        Handlers are consumed, so calling this again is a no-op unless new
        handlers or processes were added in between. Handler failures are
        logged and do not stop the remaining steps.
        """
        if self._cleaning:
            logger.debug("Cleanup already in progress")
            return
        self._cleaning = True

        try:
            handlers, self._cleanup_handlers = self._cleanup_handlers, []
            for handler in handlers:
                try:
                    result = handler()
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Cleanup handler failed: {e}", exc_info=True)

            if self._processes:
                for tracked in list(self._processes.values()):
                    logger.info(f"Terminating {tracked.name} (pid {tracked.pid})")
                    self._send_signal(tracked.pid, signal.SIGTERM)

                await asyncio.sleep(self.grace_period)

                for tracked in list(self._processes.values()):
                    if self._is_alive(tracked):
                        logger.warning(f"Force killing {tracked.name} (pid {tracked.pid})")
                        self._send_signal(tracked.pid, signal.SIGKILL)

            self._processes.clear()
            for task in self._watchers.values():
                if not task.done() and not task.get_loop().is_closed():
                    task.cancel()
            self._watchers.clear()
        finally:
            self._cleaning = False

    @staticmethod
    def _send_signal(pid: int, sig: signal.Signals) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            logger.debug(f"Process {pid} already gone")
        except PermissionError as e:
            logger.error(f"Cannot signal process {pid}: {e}")

    @staticmethod
    def _is_alive(tracked: TrackedProcess) -> bool:
        if getattr(tracked.process, "returncode", None) is not None:
            return False
        try:
            return psutil.Process(tracked.pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False


class Supervisor:
    """Owns process-wide signal and error hooks for one run.

    SIGINT, SIGTERM and SIGHUP shut down with exit code 0; errors escaping
    the event loop or the interpreter shut down with exit code 1. Either way
    the tracker's cleanup runs exactly once before exiting.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

    def __init__(
        self,
        tracker: ProcessTracker,
        exit_func: Callable[[int], Any] = sys.exit,
    ):
        """Initialize the supervisor.

        Args:
            tracker: Tracker whose cleanup runs on shutdown
            exit_func: Called with the exit code once cleanup finished
        """
        self.tracker = tracker
        self.exit_func = exit_func
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed_signals: list[signal.Signals] = []
        self._previous_exception_handler = None
        self._previous_excepthook = None
        self._shutdown_started = False
        self.exit_code: int | None = None

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_started

    def install(self) -> None:
        """Install signal handlers and error hooks on the running loop."""
        loop = asyncio.get_running_loop()
        self._loop = loop

        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._installed_signals.append(sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"Cannot install handler for {sig.name}: {e}")

        self._previous_exception_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._on_loop_exception)

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._on_uncaught_exception

    def uninstall(self) -> None:
        """Restore the hooks that were in place before install()."""
        if self._loop is not None and not self._loop.is_closed():
            for sig in self._installed_signals:
                self._loop.remove_signal_handler(sig)
            self._loop.set_exception_handler(self._previous_exception_handler)
        self._installed_signals.clear()
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        self._schedule_shutdown(0)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.error(f"Unhandled error: {context.get('message')}", exc_info=exc)
        self._schedule_shutdown(1)

    def _on_uncaught_exception(self, exc_type, exc, tb) -> None:
        logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
        if not self._shutdown_started:
            self._shutdown_started = True
            try:
                asyncio.run(self.tracker.cleanup())
            except RuntimeError as e:
                logger.error(f"Cleanup after uncaught exception failed: {e}")
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc, tb)

    def _schedule_shutdown(self, exit_code: int) -> None:
        if self._shutdown_started:
            logger.debug("Shutdown already in progress")
            return
        loop = self._loop or asyncio.get_running_loop()
        loop.create_task(self.shutdown(exit_code))

    async def shutdown(self, exit_code: int = 0) -> None:
        """Run cleanup once and exit with ``exit_code``."""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self.exit_code = exit_code

        try:
            await self.tracker.cleanup()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}", exc_info=True)
            self.exit_code = 1

        self.uninstall()
        self.exit_func(self.exit_code)
