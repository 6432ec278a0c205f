"""Unit tests for server.py - the line-delimited JSON-RPC tool server."""

import asyncio
import io
import json

import pytest

from conductor.errors import ProtocolError
from conductor.protocol import ErrorCode, ToolDefinition, text_content
from conductor.server import ServerState, ToolProtocolServer


async def _echo(arguments):
    return {"echo": arguments.get("text")}


async def _fail(arguments):
    raise ValueError("bad input")


@pytest.fixture
def server():
    server = ToolProtocolServer("test-server", "1.2.3")
    server.register_tool(
        ToolDefinition(
            "echo",
            "Echo the text back",
            {"type": "object", "properties": {"text": {"type": "string"}}},
        ),
        _echo,
    )
    server.register_tool(ToolDefinition("fail", "Always fails"), _fail)
    return server


def _request(method, params=None, id=1):
    message = {"jsonrpc": "2.0", "id": id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


class TestRegistration:
    """Test tool registration rules."""

    def test_duplicate_name_rejected(self, server):
        with pytest.raises(ProtocolError, match="already registered"):
            server.register_tool(ToolDefinition("echo", "Again"), _echo)

    @pytest.mark.asyncio
    async def test_register_after_start_rejected(self, server):
        reader = asyncio.StreamReader()
        reader.feed_eof()
        await server.serve(reader, io.StringIO())

        with pytest.raises(ProtocolError):
            server.register_tool(ToolDefinition("late", "Too late"), _echo)


class TestDispatch:
    """Test request handling."""

    @pytest.mark.asyncio
    async def test_list_tools(self, server):
        response = await server.handle_line(_request("listTools"))

        tools = response["result"]["tools"]
        assert [tool["name"] for tool in tools] == ["echo", "fail"]
        assert tools[0]["inputSchema"]["properties"] == {"text": {"type": "string"}}
        assert tools[1]["inputSchema"] == {"type": "object", "properties": {}}

    @pytest.mark.asyncio
    async def test_call_tool_wraps_result_as_text(self, server):
        response = await server.handle_line(
            _request("callTool", {"name": "echo", "arguments": {"text": "hi"}}, id=7)
        )

        assert response["id"] == 7
        assert response["result"] == text_content({"echo": "hi"})
        assert json.loads(response["result"]["content"][0]["text"]) == {"echo": "hi"}

    @pytest.mark.asyncio
    async def test_slash_aliases_accepted(self, server):
        listed = await server.handle_line(_request("tools/list"))
        called = await server.handle_line(_request("tools/call", {"name": "echo"}))

        assert len(listed["result"]["tools"]) == 2
        assert "result" in called

    @pytest.mark.asyncio
    async def test_initialize_reports_server_info(self, server):
        response = await server.handle_line(_request("initialize", {}))

        assert response["result"]["serverInfo"] == {"name": "test-server", "version": "1.2.3"}
        assert "tools" in response["result"]["capabilities"]

    @pytest.mark.asyncio
    async def test_unknown_method(self, server):
        response = await server.handle_line(_request("resources/list"))

        assert response["error"]["code"] == ErrorCode.METHOD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_tool(self, server):
        response = await server.handle_line(_request("callTool", {"name": "nope"}))

        assert response["error"]["code"] == ErrorCode.TOOL_NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params",
        [{}, {"name": ""}, {"name": "echo", "arguments": [1, 2]}, ["echo"]],
    )
    async def test_invalid_params(self, server, params):
        response = await server.handle_line(_request("callTool", params))

        assert response["error"]["code"] == ErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_tool_failure_maps_to_execution_error(self, server):
        response = await server.handle_line(_request("callTool", {"name": "fail"}))

        assert response["error"]["code"] == ErrorCode.TOOL_EXECUTION_ERROR
        assert response["error"]["message"] == "bad input"
        assert response["error"]["data"] == {"tool": "fail"}

    @pytest.mark.asyncio
    async def test_malformed_json_is_parse_error(self, server):
        response = await server.handle_line("{not json")

        assert response == {
            "jsonrpc": "2.0",
            "id": 0,
            "error": {"code": ErrorCode.PARSE_ERROR, "message": "Parse error"},
        }

    @pytest.mark.asyncio
    async def test_non_object_is_invalid_request(self, server):
        response = await server.handle_line("[1, 2, 3]")

        assert response["error"]["code"] == ErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_missing_method_is_invalid_request(self, server):
        response = await server.handle_line(json.dumps({"jsonrpc": "2.0", "id": 3}))

        assert response["id"] == 3
        assert response["error"]["code"] == ErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_notification_gets_no_response(self, server):
        response = await server.handle_line(
            json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"})
        )

        assert response is None


class TestServe:
    """Test the stream loop."""

    @pytest.mark.asyncio
    async def test_malformed_line_does_not_stop_server(self, server):
        """A bad line gets a parse error and the next request is still served."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"{oops\n")
        reader.feed_data(b"\n")
        request = _request("callTool", {"name": "echo", "arguments": {"text": "x"}}, id=2)
        reader.feed_data((request + "\n").encode())
        reader.feed_eof()
        output = io.StringIO()

        await server.serve(reader, output)

        lines = [json.loads(line) for line in output.getvalue().splitlines()]
        assert len(lines) == 2
        assert lines[0]["error"]["code"] == ErrorCode.PARSE_ERROR
        assert lines[1]["id"] == 2
        assert "result" in lines[1]
        assert server.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_responses_follow_request_order(self, server):
        reader = asyncio.StreamReader()
        for request_id in range(1, 6):
            reader.feed_data((_request("listTools", id=request_id) + "\n").encode())
        reader.feed_eof()
        output = io.StringIO()

        await server.serve(reader, output)

        ids = [json.loads(line)["id"] for line in output.getvalue().splitlines()]
        assert ids == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_shutdown_stops_waiting_reader(self, server):
        reader = asyncio.StreamReader()
        task = asyncio.ensure_future(server.serve(reader, io.StringIO()))
        await asyncio.sleep(0.01)

        server.shutdown()
        await asyncio.wait_for(task, timeout=1)

        assert server.state is ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_serve_twice_rejected(self, server):
        reader = asyncio.StreamReader()
        reader.feed_eof()
        await server.serve(reader, io.StringIO())

        with pytest.raises(ProtocolError):
            await server.serve(reader, io.StringIO())

    def test_shutdown_before_start(self, server):
        server.shutdown()

        assert server.state is ServerState.STOPPED
