"""Team configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError
from .wiring import validate_connections

logger = logging.getLogger(__name__)

Model = Literal["opus", "sonnet", "haiku", "gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"]
Provider = Literal["claude", "openai"]

DEFAULT_MODEL = "opus"
DEFAULT_PROVIDER = "claude"


class McpServerConfig(BaseModel):
    """An external tool server declared directly on an instance."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    type: Literal["stdio", "sse"]
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None

    @model_validator(mode="after")
    def _check_transport(self) -> "McpServerConfig":
        if self.type == "stdio" and not self.command:
            raise ValueError(f"stdio MCP server '{self.name}' missing command")
        if self.type == "sse" and not self.url:
            raise ValueError(f"sse MCP server '{self.name}' missing url")
        return self


class InstanceConfig(BaseModel):
    """One agent instance of the team."""

    model_config = ConfigDict(extra="ignore")

    description: str = Field(min_length=1)
    directory: str | list[str] | None = None
    model: Model | None = None
    provider: Provider = DEFAULT_PROVIDER
    connections: list[str] = Field(default_factory=list)
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] = Field(default_factory=list)
    tools: list[str] | None = None
    mcps: list[McpServerConfig] = Field(default_factory=list)
    prompt: str | None = None
    vibe: bool = False
    worktree: bool | str | None = None

    # OpenAI-compatible provider settings
    temperature: float | None = None
    api_version: Literal["chat_completion", "responses"] | None = None
    openai_token_env: str | None = None
    base_url: str | None = None


class TeamDefinition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    main: str = Field(min_length=1)
    before: list[str] = Field(default_factory=list)
    instances: dict[str, InstanceConfig]

    @model_validator(mode="after")
    def _check_main(self) -> "TeamDefinition":
        if not self.instances:
            raise ValueError("No instances defined")
        if self.main not in self.instances:
            raise ValueError(f"Main instance '{self.main}' not found in instances")
        return self


class TeamConfig(BaseModel):
    """Root of a team YAML file."""

    version: Literal[1]
    team: TeamDefinition


def _format_validation_error(error: PydanticValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        message = item["msg"].removeprefix("Value error, ")
        lines.append(f"{location}: {message}" if location else message)
    return "; ".join(lines)


class Configuration:
    """Validated team configuration plus path and tool helpers."""

    def __init__(self, data: dict[str, Any], config_path: str | Path | None = None):
        """Validate raw configuration data.

        Args:
            data: Parsed YAML document
            config_path: File the data came from; relative directories are
                resolved against its directory

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config_path = Path(config_path).resolve() if config_path else None
        if not isinstance(data, dict):
            raise ConfigurationError("Invalid YAML format: expected a mapping")

        try:
            self.config = TeamConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration: {_format_validation_error(e)}"
            ) from e

        validate_connections(
            {name: inst.connections for name, inst in self.instances.items()}
        )
        for name in self.instances:
            for directory in self._directories(name):
                if not directory.exists():
                    raise ConfigurationError(
                        f"Directory not found for instance '{name}': {directory}"
                    )
                if not directory.is_dir():
                    raise ConfigurationError(
                        f"Path is not a directory for instance '{name}': {directory}"
                    )

    @classmethod
    def load(cls, config_path: str | Path) -> "Configuration":
        """Load and validate a team YAML file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        path = Path(config_path).resolve()
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse configuration: {e}") from e

        logger.debug(f"Loaded team configuration from {path}")
        return cls(data, path)

    @property
    def team_name(self) -> str:
        return self.config.team.name

    @property
    def main_name(self) -> str:
        return self.config.team.main

    @property
    def instances(self) -> dict[str, InstanceConfig]:
        return self.config.team.instances

    @property
    def before_commands(self) -> list[str]:
        return self.config.team.before

    @property
    def main_instance(self) -> InstanceConfig:
        return self.instances[self.main_name]

    def get_instance(self, name: str) -> InstanceConfig | None:
        return self.instances.get(name)

    def require_instance(self, name: str) -> InstanceConfig:
        instance = self.get_instance(name)
        if instance is None:
            raise ConfigurationError(f"Instance '{name}' not found in configuration")
        return instance

    def expand_path(self, path: str) -> Path:
        """Expand ``~`` and resolve relative paths against the config directory."""
        expanded = Path(os.path.expanduser(path))
        if not expanded.is_absolute():
            base = self.config_path.parent if self.config_path else Path.cwd()
            expanded = base / expanded
        return expanded.resolve()

    def _directories(self, name: str) -> list[Path]:
        directory = self.require_instance(name).directory
        if directory is None:
            return []
        entries = directory if isinstance(directory, list) else [directory]
        return [self.expand_path(entry) for entry in entries]

    def instance_directory(self, name: str) -> Path:
        """Primary working directory of an instance (cwd when unset)."""
        directories = self._directories(name)
        return directories[0] if directories else Path.cwd().resolve()

    def additional_directories(self, name: str) -> list[Path]:
        return self._directories(name)[1:]

    def model_for(self, name: str) -> str:
        return self.require_instance(name).model or DEFAULT_MODEL

    def allowed_tools(self, name: str) -> list[str]:
        """Explicit tool list plus ``mcp__<connection>`` entries; empty in vibe mode."""
        instance = self.get_instance(name)
        if instance is None or instance.vibe:
            return []
        tools = list(instance.allowed_tools or instance.tools or [])
        tools.extend(f"mcp__{connection}" for connection in instance.connections)
        return tools

    def disallowed_tools(self, name: str) -> list[str]:
        instance = self.get_instance(name)
        return list(instance.disallowed_tools) if instance else []

    def worktree_tag(self, name: str, session_tag: str | None) -> str | None:
        """Isolation tag for an instance.

        ``worktree: false`` opts out, a string names the instance's own tag,
        anything else follows the session-wide tag.
        """
        setting = self.require_instance(name).worktree
        if setting is False:
            return None
        if isinstance(setting, str):
            return setting
        return session_tag
