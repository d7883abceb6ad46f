import json
import math
import sys
from io import TextIOWrapper
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, Optional

import anyio
from mcp.types import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    CallToolResult,
    ErrorData,
    Implementation,
    InitializeResult,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    ToolsCapability,
)

from .config import logger
from .gateway import RestGateway
from .tools import TOOLS, call_tool, list_mcp_tools

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "gerrit-review"
SERVER_VERSION = "1.0.0"

Writer = Callable[[str], Awaitable[None]]


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def make_result(request_id, result: Dict[str, Any]) -> Dict[str, Any]:
    # Built by hand so the id is echoed with the type the client sent
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def make_error(request_id, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": _dump(ErrorData(code=code, message=message))}


def usable_id(request_id: Any) -> bool:
    """Strings and numbers can be echoed back. Booleans and non-finite floats cannot."""
    if isinstance(request_id, bool):
        return False
    if isinstance(request_id, float):
        return math.isfinite(request_id)
    return isinstance(request_id, (int, str))


class GerritReviewServer:
    """Line-delimited JSON-RPC server exposing the Gerrit tool catalog.

    Messages are handled strictly one at a time: a tool call runs to completion
    before the next line is read, so responses leave in arrival order and the
    REST backend never sees concurrent calls from one agent.
    """

    def __init__(self, gateway: RestGateway):
        self.gateway = gateway
        logger.info(f"🚀 Gerrit review MCP server initialized with {len(TOOLS)} tools")

    async def handle_line(self, line: str) -> Optional[Dict[str, Any]]:
        """Parse one transport line. Malformed lines are dropped without a reply."""
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"🗑️ Ignoring malformed line: {line[:200]}")
            return None
        if not isinstance(message, dict):
            logger.debug(f"🗑️ Ignoring non-object message: {line[:200]}")
            return None
        return await self.handle_message(message)

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        method = message.get("method")
        request_id = message.get("id")

        if request_id is None:
            logger.debug(f"🔔 Notification received: {method}")
            return None
        if not usable_id(request_id):
            logger.debug(f"🗑️ Ignoring message with unusable id: {request_id!r}")
            return None

        try:
            if method == "initialize":
                return make_result(request_id, self._initialize())
            elif method == "tools/list":
                logger.info("🔧 Agent requesting available tools")
                return make_result(request_id, _dump(ListToolsResult(tools=list_mcp_tools())))
            elif method == "tools/call":
                return make_result(request_id, await self._call_tool(message.get("params")))
            else:
                logger.warning(f"❓ Unknown method: {method}")
                return make_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
        except Exception as e:
            logger.error(f"💥 Error handling {method}: {e}")
            return make_error(request_id, INTERNAL_ERROR, str(e))

    def _initialize(self) -> Dict[str, Any]:
        logger.info("🤝 Agent initializing MCP session")
        result = InitializeResult(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=ServerCapabilities(tools=ToolsCapability()),
            serverInfo=Implementation(name=SERVER_NAME, version=SERVER_VERSION),
        )
        return _dump(result)

    async def _call_tool(self, params: Any) -> Dict[str, Any]:
        """Run a tool. Tool failures become ``isError`` results, not protocol errors."""
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise TypeError("tools/call params must be an object")

        name = params.get("name")
        logger.info(f"🎯 AGENT CALLED TOOL: {name}")
        logger.debug(f"📋 Tool arguments: {params.get('arguments')}")

        try:
            text = await call_tool(self.gateway, name, params.get("arguments"))
        except Exception as e:
            logger.error(f"💥 Tool call error for {name}: {e}")
            result = CallToolResult(content=[TextContent(type="text", text=str(e))], isError=True)
        else:
            logger.info(f"✅ Tool {name} returned {len(text)} chars")
            result = CallToolResult(content=[TextContent(type="text", text=text)], isError=False)
        return _dump(result)

    async def serve(self, lines: AsyncIterable[str], write: Writer) -> None:
        """Dispatch every line from ``lines`` and write each response as one JSON line."""
        async for line in lines:
            response = await self.handle_line(line)
            if response is not None:
                await write(json.dumps(response))
        logger.info("🏁 Input stream closed")

    async def run(self):
        """Serve the agent over this process's stdin/stdout"""
        logger.info("🚀 Starting Gerrit review MCP server on stdio...")

        stdin = anyio.wrap_file(TextIOWrapper(sys.stdin.buffer, encoding="utf-8"))
        stdout = anyio.wrap_file(TextIOWrapper(sys.stdout.buffer, encoding="utf-8"))

        async def write(payload: str) -> None:
            await stdout.write(payload + "\n")
            await stdout.flush()

        async with self.gateway:
            await self.serve(stdin, write)
