"""Instance connection graph validation and tool-server spec generation.

Each instance gets one ``<instance>.mcp.json`` in the session directory. It
lists the instance's explicitly configured external servers plus one stdio
server per declared connection; that server is this program running
``mcp-serve`` for the connected instance. Connections are one-directional.
"""

import hashlib
import logging
import secrets
import sys
import time
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import ConfigurationError
from .file_lock import atomic_write_json

if TYPE_CHECKING:
    from .config import Configuration, InstanceConfig
    from .session_store import SessionMetadata, SessionPaths

logger = logging.getLogger(__name__)


def validate_connections(graph: Mapping[str, list[str]]) -> None:
    """Reject unknown targets, self-connections and cycles.

    Args:
        graph: Instance name to the names it connects to

    Raises:
        ConfigurationError: On the first problem found
    """
    for name, connections in graph.items():
        for connection in connections:
            if connection not in graph:
                raise ConfigurationError(
                    f"Instance '{name}' has unknown connection '{connection}'"
                )
            if connection == name:
                raise ConfigurationError(f"Instance '{name}' cannot connect to itself")

    visited: set[str] = set()
    stack: set[str] = set()

    def has_cycle(node: str) -> bool:
        visited.add(node)
        stack.add(node)
        for connection in graph[node]:
            if connection not in visited:
                if has_cycle(connection):
                    return True
            elif connection in stack:
                return True
        stack.discard(node)
        return False

    for name in graph:
        if name not in visited and has_cycle(name):
            raise ConfigurationError("Circular dependency detected in instance connections")


def generate_instance_id(name: str) -> str:
    """``<name>_<8 hex>`` from md5 of name, wall clock and a random value."""
    seed = f"{name}{time.time_ns()}{secrets.token_hex(8)}"
    return f"{name}_{hashlib.md5(seed.encode('utf-8')).hexdigest()[:8]}"


class ConnectionWirer:
    """Builds per-instance tool-server launch specs for a team."""

    def __init__(
        self,
        configuration: "Configuration",
        session_paths: "SessionPaths",
        python: str = sys.executable,
    ):
        """Initialize the wirer.

        Args:
            configuration: Validated team configuration
            session_paths: Layout of the session the specs are written into
            python: Interpreter used to launch ``mcp-serve`` sub-processes
        """
        self.configuration = configuration
        self.session_paths = session_paths
        self.python = python
        self.instance_ids: dict[str, str] = {}

    def assign_ids(self, previous: "SessionMetadata | None" = None) -> dict[str, str]:
        """Assign stable ids, reusing those recorded in ``previous``."""
        for name in self.configuration.instances:
            record = previous.instances.get(name) if previous else None
            if record and record.id:
                self.instance_ids[name] = record.id
            else:
                self.instance_ids[name] = generate_instance_id(name)
        return dict(self.instance_ids)

    def _connection_entry(self, connection: str) -> dict[str, Any]:
        return {
            "type": "stdio",
            "command": self.python,
            "args": [
                "-m",
                "conductor",
                "mcp-serve",
                connection,
                "--config",
                str(self.session_paths.config_path),
                "--session-path",
                str(self.session_paths.session_path),
                "--instance-id",
                self.instance_ids[connection],
            ],
            "env": {"CONDUCTOR_HOME": str(self.session_paths.root)},
        }

    def instance_spec(self, name: str, instance: "InstanceConfig") -> dict[str, Any]:
        servers: dict[str, Any] = {}

        for mcp in instance.mcps:
            if mcp.type == "stdio":
                servers[mcp.name] = {
                    "type": "stdio",
                    "command": mcp.command,
                    "args": list(mcp.args),
                    "env": dict(mcp.env),
                }
            else:
                servers[mcp.name] = {"type": "sse", "url": mcp.url}

        for connection in instance.connections:
            servers[connection] = self._connection_entry(connection)

        return {"mcpServers": servers}

    def generate(self, previous: "SessionMetadata | None" = None) -> dict[str, dict[str, Any]]:
        """Build the spec of every instance.

        Returns:
            Instance name to ``{"mcpServers": {...}}``
        """
        self.assign_ids(previous)
        return {
            name: self.instance_spec(name, instance)
            for name, instance in self.configuration.instances.items()
        }

    def write(self, specs: dict[str, dict[str, Any]]) -> dict[str, Path]:
        """Write each spec to ``<session>/<instance>.mcp.json``."""
        paths = {}
        for name, spec in specs.items():
            path = self.session_paths.mcp_config_path(name)
            atomic_write_json(path, spec, mode=0o600)
            paths[name] = path
            logger.debug(
                f"Wrote tool-server config for {name}",
                extra={"servers": list(spec["mcpServers"])},
            )
        return paths

    def generate_all(self, previous: "SessionMetadata | None" = None) -> dict[str, Path]:
        return self.write(self.generate(previous))
