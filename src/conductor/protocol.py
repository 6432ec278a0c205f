"""Wire types for the line-delimited JSON-RPC tool protocol."""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

JSONRPC_VERSION = "2.0"


class ErrorCode(IntEnum):
    """Reserved error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    TOOL_NOT_FOUND = -32001
    TOOL_EXECUTION_ERROR = -32002
    SESSION_ERROR = -32003


class Method:
    LIST_TOOLS = "listTools"
    CALL_TOOL = "callTool"
    INITIALIZE = "initialize"


METHOD_ALIASES = {
    "tools/list": Method.LIST_TOOLS,
    "tools/call": Method.CALL_TOOL,
}

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    """A named tool exposed by the server."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


def create_response(id: Any, result: Any = None, error: dict[str, Any] | None = None) -> dict:
    """Create a JSON-RPC response."""
    response: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": id}
    if error is not None:
        response["error"] = error
    else:
        response["result"] = result
    return response


def create_error(code: int, message: str, data: Any = None) -> dict[str, Any]:
    """Create a JSON-RPC error object."""
    error: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return error


def is_request(message: Any) -> bool:
    """A request is an object carrying both an id and a method."""
    return isinstance(message, dict) and "id" in message and message.get("id") is not None


def text_content(result: Any) -> dict[str, Any]:
    """Wrap a tool result as protocol text content."""
    text = result if isinstance(result, str) else json.dumps(result, indent=2, default=str)
    return {"content": [{"type": "text", "text": text}]}
