"""Agent back-ends behind a common execute/reset interface."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..config import Configuration
from ..launch import LaunchOptions
from ..process_tracker import ProcessTracker
from .base import ExecutionResult, Executor, ExecutorStats
from .claude import ClaudeExecutor, StreamParser
from .openai_compat import OpenAIExecutor


def create_executor(
    configuration: Configuration,
    instance_name: str,
    directory: str | Path | None = None,
    mcp_config_path: str | Path | None = None,
    session_id: str | None = None,
    context_provider: Callable[[], dict[str, Any]] | None = None,
    tracker: ProcessTracker | None = None,
    additional_directories: list[str] | None = None,
) -> Executor:
    """Build the executor matching an instance's provider.

    Args:
        configuration: Team configuration
        instance_name: Instance to build the executor for
        directory: Working directory override (e.g. a worktree path)
        mcp_config_path: Tool-server spec file for the instance's own connections
        session_id: Agent session to resume
        context_provider: Callable returning persisted context for prompts
        tracker: Process tracker for spawned agent processes
        additional_directories: Extra directories override, already mapped

    Raises:
        ConfigurationError: If the instance is unknown or its provider is
            misconfigured
    """
    instance = configuration.require_instance(instance_name)

    if instance.provider == "openai":
        return OpenAIExecutor(
            instance_name,
            model=instance.model,
            system_prompt=instance.prompt,
            temperature=instance.temperature,
            api_version=instance.api_version,
            token_env=instance.openai_token_env,
            base_url=instance.base_url,
        )

    if additional_directories is None:
        additional_directories = [
            str(path) for path in configuration.additional_directories(instance_name)
        ]
    options = LaunchOptions(
        model=configuration.model_for(instance_name),
        additional_directories=additional_directories,
        mcp_config_path=str(mcp_config_path) if mcp_config_path else None,
        vibe=instance.vibe,
        allowed_tools=configuration.allowed_tools(instance_name),
        disallowed_tools=configuration.disallowed_tools(instance_name),
        system_prompt=instance.prompt,
    )
    return ClaudeExecutor(
        instance_name,
        directory or configuration.instance_directory(instance_name),
        options,
        session_id=session_id,
        context_provider=context_provider,
        tracker=tracker,
    )


__all__ = [
    "ClaudeExecutor",
    "ExecutionResult",
    "Executor",
    "ExecutorStats",
    "OpenAIExecutor",
    "StreamParser",
    "create_executor",
]
