"""Tool sets served to connected instances by ``conductor mcp-serve``."""

from ..protocol import ToolDefinition, ToolHandler
from ..server import ToolProtocolServer
from .analysis import AnalysisToolset
from .context import ContextToolset
from .instance import InstanceToolset


def register_tools(server: ToolProtocolServer, *toolsets) -> list[ToolDefinition]:
    """Register every tool of every toolset; returns the definitions in order."""
    registered: list[ToolDefinition] = []
    for toolset in toolsets:
        for definition, handler in toolset.definitions():
            server.register_tool(definition, handler)
            registered.append(definition)
    return registered


__all__ = [
    "AnalysisToolset",
    "ContextToolset",
    "InstanceToolset",
    "ToolDefinition",
    "ToolHandler",
    "register_tools",
]
