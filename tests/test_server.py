import json

import httpx
import pytest

from gerrit_review_mcp.server import PROTOCOL_VERSION, GerritReviewServer
from gerrit_review_mcp.tools import TOOLS

from conftest import gerrit_json


async def _lines(*lines):
    for line in lines:
        yield line


async def _serve(server, *lines):
    written = []

    async def write(payload):
        written.append(json.loads(payload))

    await server.serve(_lines(*lines), write)
    return written


@pytest.fixture
def server(make_gateway):
    gateway, transport = make_gateway(lambda request: gerrit_json({"subject": "Fix the bug"}))
    server = GerritReviewServer(gateway)
    server.transport = transport
    return server


@pytest.mark.asyncio
async def test_initialize(server):
    response = await server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})

    assert response["jsonrpc"] == "2.0"
    assert response["id"] == 1
    result = response["result"]
    assert result["protocolVersion"] == PROTOCOL_VERSION
    assert result["serverInfo"]["name"] == "gerrit-review"
    assert result["capabilities"] == {"tools": {}}


@pytest.mark.asyncio
async def test_id_zero_gets_a_response(server):
    response = await server.handle_message({"jsonrpc": "2.0", "id": 0, "method": "initialize"})
    assert response["id"] == 0
    assert "result" in response


@pytest.mark.asyncio
async def test_tools_list_returns_catalog(server):
    response = await server.handle_message({"jsonrpc": "2.0", "id": "a", "method": "tools/list"})

    tools = response["result"]["tools"]
    assert [tool["name"] for tool in tools] == [tool.name for tool in TOOLS]
    for listed, tool in zip(tools, TOOLS):
        assert listed["description"] == tool.description
        assert listed["inputSchema"] == tool.input_schema


@pytest.mark.asyncio
async def test_tools_call_success(server):
    response = await server.handle_message({
        "jsonrpc": "2.0", "id": 3, "method": "tools/call",
        "params": {"name": "gerrit_get_change", "arguments": {"changeNumber": "42"}},
    })

    assert "error" not in response
    result = response["result"]
    assert result.get("isError", False) is False
    assert result["content"][0]["type"] == "text"
    assert json.loads(result["content"][0]["text"]) == {"subject": "Fix the bug"}


@pytest.mark.asyncio
async def test_tool_failure_is_not_a_protocol_error(make_gateway):
    gateway, _ = make_gateway(lambda request: httpx.Response(403, text="Forbidden"))
    server = GerritReviewServer(gateway)

    response = await server.handle_message({
        "jsonrpc": "2.0", "id": 4, "method": "tools/call",
        "params": {"name": "gerrit_get_comments", "arguments": {"changeNumber": "42"}},
    })

    assert "error" not in response
    assert response["result"]["isError"] is True
    assert "403" in response["result"]["content"][0]["text"]


@pytest.mark.asyncio
async def test_invalid_arguments_are_tool_errors(server):
    response = await server.handle_message({
        "jsonrpc": "2.0", "id": 5, "method": "tools/call",
        "params": {"name": "gerrit_get_file_content", "arguments": {"changeNumber": "42"}},
    })

    assert response["result"]["isError"] is True
    assert "filePath" in response["result"]["content"][0]["text"]
    assert server.transport.requests == []


@pytest.mark.asyncio
async def test_unknown_tool_is_a_tool_error(server):
    response = await server.handle_message({
        "jsonrpc": "2.0", "id": 6, "method": "tools/call", "params": {"name": "nope", "arguments": {}},
    })
    assert response["result"]["isError"] is True
    assert response["result"]["content"][0]["text"] == "Unknown tool: nope"


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["resources/list", "prompts/get", "shutdown", None])
async def test_unknown_method(server, method):
    response = await server.handle_message({"jsonrpc": "2.0", "id": 7, "method": method})
    assert response["error"]["code"] == -32601
    assert "result" not in response


@pytest.mark.asyncio
async def test_bad_params_is_internal_error(server):
    response = await server.handle_message({"jsonrpc": "2.0", "id": 8, "method": "tools/call", "params": [1, 2]})
    assert response["error"]["code"] == -32603
    assert "params" in response["error"]["message"]


@pytest.mark.asyncio
async def test_notifications_never_answered(server):
    written = await _serve(
        server,
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        json.dumps({"jsonrpc": "2.0", "method": "tools/list"}),
        json.dumps({"jsonrpc": "2.0", "id": None, "method": "no/such/method"}),
        json.dumps({
            "jsonrpc": "2.0", "method": "tools/call",
            "params": {"name": "gerrit_get_change", "arguments": {"changeNumber": "1"}},
        }),
    )
    assert written == []
    assert server.transport.requests == []


@pytest.mark.asyncio
async def test_malformed_lines_are_dropped(server):
    written = await _serve(
        server,
        "{not json",
        "",
        "   ",
        "[1, 2, 3]",
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}),
    )
    assert len(written) == 1
    assert written[0]["id"] == 1


@pytest.mark.asyncio
async def test_responses_follow_request_order(server):
    written = await _serve(
        server,
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "initialize"}),
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/list"}),
        json.dumps({
            "jsonrpc": "2.0", "id": 3, "method": "tools/call",
            "params": {"name": "gerrit_get_change", "arguments": {"changeNumber": "1"}},
        }),
        json.dumps({"jsonrpc": "2.0", "id": 4, "method": "bogus"}),
    )
    assert [response["id"] for response in written] == [1, 2, 3, 4]
    assert written[3]["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_float_id_is_echoed(server):
    response = await server.handle_line('{"jsonrpc":"2.0","id":1.0,"method":"initialize"}')
    assert response["id"] == 1.0
    assert isinstance(response["id"], float)
    assert response["result"]["protocolVersion"] == PROTOCOL_VERSION

    response = await server.handle_line('{"jsonrpc":"2.0","id":2.5,"method":"nope"}')
    assert response["id"] == 2.5
    assert response["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_unusable_ids_are_dropped(server):
    written = await _serve(
        server,
        '{"jsonrpc":"2.0","id":true,"method":"tools/list"}',
        '{"jsonrpc":"2.0","id":NaN,"method":"tools/list"}',
        '{"jsonrpc":"2.0","id":{"a":1},"method":"tools/list"}',
    )
    assert written == []
