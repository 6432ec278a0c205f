"""Line-delimited JSON-RPC tool server.

Each input line is one JSON message; each response is written as one line.
A line is handled to completion, tool call included, before the next one is
read, so at most one request is in flight per server.
"""

import asyncio
import json
import logging
import signal
import sys
import time
from enum import Enum
from typing import Any, TextIO

from . import __version__
from .errors import ProtocolError
from .protocol import (
    METHOD_ALIASES,
    ErrorCode,
    Method,
    ToolDefinition,
    ToolHandler,
    create_error,
    create_response,
    text_content,
)

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 16 * 1024 * 1024


class ServerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ToolProtocolServer:
    """Serves registered tools over a byte stream.

    Tools must be registered while the server is idle. Registering a name
    twice is rejected.
    """

    def __init__(self, name: str = "conductor", version: str = __version__):
        self.server_info = {"name": name, "version": version}
        self.state = ServerState.IDLE
        self._tools: dict[str, tuple[ToolDefinition, ToolHandler]] = {}
        self._writer: TextIO | None = None
        self._read_task: asyncio.Future | None = None

    # Registration

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Register a tool.

        Raises:
            ProtocolError: If the server already started or the name is taken
        """
        if self.state is not ServerState.IDLE:
            raise ProtocolError(
                f"Cannot register tool '{definition.name}' after the server started",
                ErrorCode.INTERNAL_ERROR,
            )
        if definition.name in self._tools:
            raise ProtocolError(
                f"Tool '{definition.name}' is already registered", ErrorCode.INVALID_PARAMS
            )
        self._tools[definition.name] = (definition, handler)
        logger.debug(f"Registered tool {definition.name}")

    @property
    def tools(self) -> list[ToolDefinition]:
        return [definition for definition, _ in self._tools.values()]

    # Dispatch

    async def handle_line(self, line: str | bytes) -> dict[str, Any] | None:
        """Handle one raw input line; returns the response, or None for notifications."""
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON received: {e}")
            return create_response(0, error=create_error(ErrorCode.PARSE_ERROR, "Parse error"))
        return await self.handle_message(message)

    async def handle_message(self, message: Any) -> dict[str, Any] | None:
        if not isinstance(message, dict):
            return create_response(
                0, error=create_error(ErrorCode.INVALID_REQUEST, "Invalid request")
            )
        if message.get("id") is None:
            logger.debug(f"Ignoring notification {message.get('method')}")
            return None
        if not isinstance(message.get("method"), str):
            return create_response(
                message["id"],
                error=create_error(ErrorCode.INVALID_REQUEST, "Invalid request: missing method"),
            )
        return await self.handle_request(message)

    async def handle_request(self, request: dict[str, Any]) -> dict[str, Any]:
        """Handle a JSON-RPC request."""
        request_id = request["id"]
        method = METHOD_ALIASES.get(request["method"], request["method"])
        params = request.get("params") or {}

        try:
            if method == Method.LIST_TOOLS:
                result = {"tools": [definition.to_dict() for definition in self.tools]}
            elif method == Method.CALL_TOOL:
                result = await self._call_tool(params)
            elif method == Method.INITIALIZE:
                result = {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {"tools": {}},
                    "serverInfo": self.server_info,
                }
            else:
                raise ProtocolError(f"Method not found: {method}", ErrorCode.METHOD_NOT_FOUND)
            return create_response(request_id, result=result)

        except ProtocolError as e:
            return create_response(request_id, error=create_error(e.code, str(e), e.data))
        except Exception as e:
            logger.error(f"Error handling request {method}: {e}", exc_info=True)
            return create_response(
                request_id, error=create_error(ErrorCode.INTERNAL_ERROR, "Internal error", str(e))
            )

    async def _call_tool(self, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict):
            raise ProtocolError("Params must be an object", ErrorCode.INVALID_PARAMS)
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError("Tool name is required", ErrorCode.INVALID_PARAMS)
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ProtocolError("Tool arguments must be an object", ErrorCode.INVALID_PARAMS)

        entry = self._tools.get(name)
        if entry is None:
            raise ProtocolError(f"Tool not found: {name}", ErrorCode.TOOL_NOT_FOUND)
        _, handler = entry

        started = time.monotonic()
        try:
            result = await handler(arguments)
        except ProtocolError:
            raise
        except Exception as e:
            logger.warning(f"Tool {name} failed: {e}", extra={"tool": name})
            raise ProtocolError(
                str(e) or type(e).__name__, ErrorCode.TOOL_EXECUTION_ERROR, {"tool": name}
            ) from e

        logger.info(
            f"Tool {name} completed",
            extra={"tool": name, "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return text_content(result)

    # Transport

    def _write(self, response: dict[str, Any]) -> None:
        if self.state is not ServerState.LISTENING or self._writer is None:
            logger.debug(f"Dropping response {response.get('id')} during shutdown")
            return
        try:
            self._writer.write(json.dumps(response) + "\n")
            self._writer.flush()
        except (BrokenPipeError, ValueError, OSError) as e:
            logger.warning(f"Output stream closed: {e}")
            self.shutdown()

    async def serve(self, reader: asyncio.StreamReader, writer: TextIO) -> None:
        """Read requests from ``reader`` until EOF or shutdown, answering on ``writer``."""
        if self.state is not ServerState.IDLE:
            raise ProtocolError("Server already started", ErrorCode.INTERNAL_ERROR)

        self._writer = writer
        self.state = ServerState.LISTENING
        logger.info(f"{self.server_info['name']} tool server listening ({len(self._tools)} tools)")

        try:
            while self.state is ServerState.LISTENING:
                self._read_task = asyncio.ensure_future(reader.readline())
                try:
                    line = await self._read_task
                except asyncio.CancelledError:
                    if self.state is ServerState.LISTENING:
                        raise
                    break
                except ValueError as e:
                    logger.warning(f"Discarding oversized request: {e}")
                    self._write(
                        create_response(
                            0, error=create_error(ErrorCode.INVALID_REQUEST, "Request too large")
                        )
                    )
                    continue
                finally:
                    self._read_task = None

                if not line:
                    break
                if not line.strip():
                    continue

                response = await self.handle_line(line)
                if response is not None:
                    self._write(response)
        finally:
            self.state = ServerState.SHUTTING_DOWN
            self._writer = None
            self.state = ServerState.STOPPED
            logger.info("Tool server stopped")

    def shutdown(self) -> None:
        """Stop accepting requests; a tool call already running completes."""
        if self.state in (ServerState.SHUTTING_DOWN, ServerState.STOPPED):
            return
        if self.state is ServerState.IDLE:
            self.state = ServerState.STOPPED
            return
        logger.info("Tool server shutting down")
        self.state = ServerState.SHUTTING_DOWN
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    async def start(self, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> None:
        """Serve over standard streams until stdin closes or a termination signal."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, stdin)

        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown)
                installed.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Cannot install handler for {sig.name}: {e}")

        try:
            await self.serve(reader, stdout)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
