"""Command-line construction for the external agent binary."""

import json
from dataclasses import dataclass, field
from typing import Any

AGENT_BINARY = "claude"


@dataclass
class LaunchOptions:
    """Flags passed to one agent invocation."""

    model: str | None = None
    additional_directories: list[str] = field(default_factory=list)
    mcp_config_path: str | None = None
    resume_session_id: str | None = None
    vibe: bool = False
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    system_prompt: str | None = None


def build_launch_args(options: LaunchOptions) -> list[str]:
    """Agent flags in the order the binary expects them (prompt flags excluded)."""
    args: list[str] = []

    if options.model:
        args.extend(["--model", options.model])
    for directory in options.additional_directories:
        args.extend(["--add-dir", str(directory)])
    if options.mcp_config_path:
        args.extend(["--mcp-config", str(options.mcp_config_path)])
    if options.resume_session_id:
        args.extend(["--resume", options.resume_session_id])

    if options.vibe:
        args.append("--dangerously-skip-permissions")
    else:
        if options.allowed_tools:
            args.extend(["--allowedTools", ",".join(options.allowed_tools)])
        if options.disallowed_tools:
            args.extend(["--disallowedTools", ",".join(options.disallowed_tools)])

    if options.system_prompt:
        args.extend(["--append-system-prompt", options.system_prompt])

    return args


def context_section(context: dict[str, Any]) -> str:
    """Render persisted context as a system prompt section."""
    return (
        "## Persistent Context\n\n"
        "The following context is available from previous sessions:\n\n"
        f"```json\n{json.dumps(context, indent=2, default=str)}\n```\n\n"
        "Consider this context when performing your tasks."
    )


def build_system_prompt(
    prompt: str | None,
    context: dict[str, Any] | None = None,
    instructions: str | None = None,
) -> str:
    """Join the instance prompt, persisted context and workbench instructions.

    Empty parts are skipped; parts are separated by a blank line.
    """
    parts = []
    if prompt:
        parts.append(prompt.strip())
    if context:
        parts.append(context_section(context))
    if instructions:
        parts.append(instructions.strip())
    return "\n\n".join(parts)
