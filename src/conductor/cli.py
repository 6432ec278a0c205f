"""Command-line interface of Conductor."""

import argparse
import asyncio
import json
import logging
import os
import sys
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from . import __version__
from .config import Configuration
from .context_store import META_KEY, ContextLevel, ContextStore
from .errors import ConductorError, ConfigurationError
from .executors import create_executor
from .logging_manager import LoggingManager
from .orchestrator import LOG_LEVEL_ENV, Orchestrator, OrchestratorOptions
from .process_tracker import ProcessTracker
from .secure_context import SecureContextStore
from .server import ToolProtocolServer
from .session_store import (
    InstanceStatus,
    SessionMetadata,
    SessionPaths,
    list_sessions,
    project_name,
)
from .system import conductor_home, format_cost, format_duration, parse_session_id
from .tools import AnalysisToolset, ContextToolset, InstanceToolset, register_tools
from .worktree import WorktreeManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "conductor.yml"
DEFAULT_TEAM = "default"

DEFAULT_CONFIG = """version: 1
team:
  name: my-dev-team
  main: lead
  instances:
    lead:
      description: Team lead coordinating development efforts
      directory: .
      model: opus
      connections: [frontend, backend]
      prompt: You are the team lead coordinating development efforts
      allowed_tools: [Read, Edit, Write, Bash, WebSearch]

    frontend:
      description: Frontend specialist handling UI and user experience
      directory: ./frontend
      model: sonnet
      prompt: You specialize in frontend development with modern frameworks
      allowed_tools: [Read, Edit, Write, Bash]

    backend:
      description: Backend developer managing APIs and the data layer
      directory: ./backend
      model: sonnet
      prompt: You specialize in backend development and API design
      allowed_tools: [Read, Edit, Write, Bash]
"""


def _print_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [len(header) for header in headers]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    print("  ".join(header.ljust(width) for header, width in zip(headers, widths)))
    for row in rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)))


# start


def cmd_start(args: argparse.Namespace) -> int:
    configuration = Configuration.load(args.config)
    options = OrchestratorOptions(
        config_path=Path(args.config).resolve(),
        prompt=args.prompt,
        interactive=args.interactive,
        vibe=args.vibe,
        worktree=args.worktree,
        session_id=args.session_id,
    )
    orchestrator = Orchestrator(configuration, options)
    return asyncio.run(orchestrator.start())


# init


def cmd_init(args: argparse.Namespace) -> int:
    path = Path(DEFAULT_CONFIG_FILE)
    if path.exists() and not args.force:
        print(f"Configuration file already exists: {path}", file=sys.stderr)
        print("Use --force to overwrite", file=sys.stderr)
        return 1

    path.write_text(DEFAULT_CONFIG)
    print(f"Created {path}")
    print("\nNext steps:")
    print(f"1. Edit {path} to describe your team")
    print(f"2. Run 'conductor start {path}' to launch it")
    return 0


# list-sessions and ps


def cmd_list_sessions(args: argparse.Namespace) -> int:
    project = project_name(Path.cwd())
    sessions = list_sessions(project)
    if not sessions:
        print("No sessions found")
        return 0

    rows = []
    for paths in sessions[: args.limit]:
        metadata = paths.load_metadata()
        created = parse_session_id(paths.session_id)
        rows.append(
            [
                paths.session_id,
                created.strftime("%Y-%m-%d %H:%M:%S") if created else "Unknown",
                metadata.main_instance if metadata else "Unknown",
                str(len(metadata.instances)) if metadata else "0",
                metadata.config_path if metadata else "Unknown",
            ]
        )
    _print_table(["SESSION_ID", "CREATED", "MAIN_INSTANCE", "INSTANCES", "CONFIG_FILE"], rows)

    if len(sessions) > args.limit:
        print(f"\nShowing {args.limit} of {len(sessions)} sessions. Use --limit to see more.")
    print(f"\nSession paths: {conductor_home()}/sessions/{project}/<session_id>")
    return 0


def running_sessions(root: Path | None = None) -> list[SessionMetadata]:
    """Sessions of every project whose main instance is still running, newest first."""
    sessions_dir = (root or conductor_home()) / "sessions"
    if not sessions_dir.is_dir():
        return []

    running = []
    for project_dir in sessions_dir.iterdir():
        if not project_dir.is_dir():
            continue
        for paths in list_sessions(project_dir.name, root):
            metadata = paths.load_metadata()
            if metadata is None:
                continue
            main = metadata.instances.get(metadata.main_instance)
            if main is not None and main.status is InstanceStatus.RUNNING:
                running.append(metadata)
    return sorted(running, key=lambda metadata: metadata.session_id, reverse=True)


def cmd_ps(args: argparse.Namespace) -> int:
    sessions = running_sessions()
    if not sessions:
        print("No running sessions found")
        return 0

    rows = []
    for metadata in sessions:
        cost = sum(record.cost or 0.0 for record in metadata.instances.values())
        started = datetime.fromisoformat(metadata.start_time)
        directories = sorted({record.directory for record in metadata.instances.values()})
        rows.append(
            [
                metadata.session_id,
                metadata.team_name,
                format_cost(cost),
                format_duration((datetime.now() - started).total_seconds()),
                ", ".join(directories),
            ]
        )
    print("Total cost does not include the cost of the main instance\n")
    _print_table(["SESSION_ID", "TEAM", "TOTAL_COST", "UPTIME", "DIRECTORY"], rows)
    return 0


# mcp-serve


def cmd_mcp_serve(args: argparse.Namespace) -> int:
    session_paths = SessionPaths.from_session_path(args.session_path)
    # stdout carries the protocol stream; logs go to stderr and the session files
    logging_manager = LoggingManager(
        session_paths.session_path, os.environ.get(LOG_LEVEL_ENV, "WARNING")
    )
    try:
        return asyncio.run(serve_instance(args, session_paths, logging_manager))
    finally:
        logging_manager.close()


async def serve_instance(
    args: argparse.Namespace, session_paths: SessionPaths, logging_manager: LoggingManager
) -> int:
    """Serve the tools of one instance over stdio until the client disconnects."""
    name = args.instance
    configuration = Configuration.load(args.config)
    instance = configuration.require_instance(name)
    metadata = session_paths.load_metadata()

    directory = configuration.instance_directory(name)
    additional = configuration.additional_directories(name)
    tag = configuration.worktree_tag(name, metadata.worktree if metadata else None)
    if tag:
        worktrees = WorktreeManager(session_paths.session_id, session_paths.root)
        directory = worktrees.setup_worktree(directory, tag)
        additional = [worktrees.setup_worktree(path, tag) for path in additional]

    context_store = ContextStore(configuration.team_name, session_paths.root)

    def persisted_context() -> dict[str, Any]:
        context = context_store.build_instance_context(name)
        context.pop(META_KEY, None)
        return context

    record = metadata.instances.get(name) if metadata else None
    mcp_config_path = session_paths.mcp_config_path(name)
    tracker = ProcessTracker()
    executor = create_executor(
        configuration,
        name,
        directory=directory,
        mcp_config_path=mcp_config_path if mcp_config_path.exists() else None,
        session_id=record.session_id if record else None,
        context_provider=persisted_context,
        tracker=tracker,
        additional_directories=[str(path) for path in additional],
    )

    server = ToolProtocolServer(name=f"conductor-{name}")
    register_tools(
        server,
        InstanceToolset(
            name,
            args.instance_id or (record.id if record else name),
            instance.description,
            executor,
            directory,
            session_paths=session_paths,
            logging_manager=logging_manager,
        ),
        ContextToolset(context_store, name),
        AnalysisToolset(SecureContextStore(directory), name),
    )

    logging_manager.log_info(name, f"Starting tool server for instance {name}")
    try:
        await server.start()
    finally:
        await tracker.cleanup()
        await executor.close()
    return 0


# context


def _team_name(config: str | None) -> str | None:
    """Team name from ``--config``, ``./conductor.yml`` or the current session."""
    candidates = [Path(config)] if config else [Path(DEFAULT_CONFIG_FILE)]
    if not config:
        current = conductor_home() / "sessions" / project_name(Path.cwd()) / "current"
        candidates.append(current / "config.yml")

    for path in candidates:
        if not path.exists():
            continue
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse configuration {path}: {e}") from e
        if isinstance(data, dict) and isinstance(data.get("team"), dict):
            return data["team"].get("name")
    return None


def _context_store(args: argparse.Namespace) -> ContextStore:
    team = _team_name(args.config)
    if team is None and args.level != ContextLevel.GLOBAL.value:
        raise ConfigurationError(
            "No team context found. Run from a team directory or specify --config"
        )
    return ContextStore(team or DEFAULT_TEAM)


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_context(args: argparse.Namespace) -> int:
    store = _context_store(args)

    if args.context_command == "get":
        value = store.get(args.level, args.key, args.instance)
        if args.json:
            print(json.dumps(value, indent=2))
        elif value is None:
            print(f"No context found for key '{args.key}'")
        else:
            label = f"{args.level} context" + (f" [{args.key}]" if args.key else "")
            print(f"{label}:\n{json.dumps(value, indent=2)}")
        return 0

    if args.context_command == "set":
        store.set(args.level, args.key, _parse_value(args.value), args.instance)
        print(f"Set {args.level} context key '{args.key}'")
        return 0

    deleted = store.delete(args.level, args.key, args.instance)
    target = f"key '{args.key}'" if args.key else "all keys"
    if deleted:
        print(f"Deleted {target} from {args.level} context")
    else:
        print(f"Nothing to delete for {target} in {args.level} context")
    return 0


# version


def cmd_version(args: argparse.Namespace) -> int:
    print(f"conductor {__version__}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conductor", description="Orchestrate a team of collaborating agent instances"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Start a team session")
    start.add_argument("config", nargs="?", default=DEFAULT_CONFIG_FILE)
    start.add_argument(
        "--vibe", action="store_true", help="Skip permission prompts for every instance"
    )
    start.add_argument("-p", "--prompt", help="Initial prompt for the main instance")
    start.add_argument(
        "-i", "--interactive", action="store_true", help="Run the main instance interactively"
    )
    start.add_argument("--session-id", help="Resume a previous session")
    start.add_argument(
        "-w",
        "--worktree",
        nargs="?",
        const=True,
        default=None,
        metavar="TAG",
        help="Isolate instances in git worktrees (default tag: worktree-<session id>)",
    )
    start.set_defaults(handler=cmd_start)

    init = commands.add_parser("init", help=f"Create a sample {DEFAULT_CONFIG_FILE}")
    init.add_argument("-f", "--force", action="store_true")
    init.set_defaults(handler=cmd_init)

    sessions = commands.add_parser("list-sessions", help="List sessions of this project")
    sessions.add_argument("--limit", type=int, default=10)
    sessions.set_defaults(handler=cmd_list_sessions)

    ps = commands.add_parser("ps", help="List running sessions with costs")
    ps.set_defaults(handler=cmd_ps)

    serve = commands.add_parser("mcp-serve", help="Serve one instance's tools over stdio")
    serve.add_argument("instance")
    serve.add_argument("--config", required=True)
    serve.add_argument("--session-path", required=True)
    serve.add_argument("--instance-id")
    serve.set_defaults(handler=cmd_mcp_serve)

    context = commands.add_parser("context", help="Inspect and edit persistent context")
    context_commands = context.add_subparsers(dest="context_command", required=True)
    levels = [level.value for level in ContextLevel]
    for command in ("get", "set", "delete"):
        sub = context_commands.add_parser(command)
        if command == "set":
            sub.add_argument("key")
            sub.add_argument("value", help="JSON value (plain strings accepted)")
        else:
            sub.add_argument("key", nargs="?")
        sub.add_argument("-l", "--level", choices=levels, default=ContextLevel.TEAM.value)
        sub.add_argument("-i", "--instance", help="Instance name (instance level)")
        sub.add_argument("-c", "--config", help="Team configuration file")
        if command == "get":
            sub.add_argument("--json", action="store_true", help="Output JSON only")
        sub.set_defaults(handler=cmd_context)

    version = commands.add_parser("version", help="Show version")
    version.set_defaults(handler=cmd_version)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except ConductorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
