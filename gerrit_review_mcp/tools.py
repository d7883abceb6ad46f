"""
The fixed catalog of Gerrit tools offered to the review agent.

Each tool validates its arguments, makes one REST call through the gateway
and returns text for the MCP ``content`` block.
"""
import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from mcp.types import Tool

from .config import logger
from .gateway import GatewayError, RestGateway

PATCHSET_LEVEL = "/PATCHSET_LEVEL"

ToolHandler = Callable[[RestGateway, Dict[str, Any]], Awaitable[str]]


class InvalidArguments(ValueError):
    """A tool call is missing required arguments"""


class UnknownTool(ValueError):
    """No tool with the requested name"""


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required", []))

    def validate(self, arguments: Dict[str, Any]) -> None:
        missing = [field for field in self.required if arguments.get(field) is None]
        if missing:
            raise InvalidArguments(f"Missing required argument(s) for {self.name}: {', '.join(missing)}")

    def as_mcp_tool(self) -> Tool:
        return Tool(name=self.name, description=self.description, inputSchema=self.input_schema)


def _schema(properties: Dict[str, Dict[str, Any]], required: List[str]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_CHANGE_NUMBER = {"type": "string", "description": "Gerrit change number"}


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2)


def _change(args: Dict[str, Any]) -> str:
    return str(args["changeNumber"])


def _drafts_path(args: Dict[str, Any]) -> str:
    return f"changes/{_change(args)}/revisions/current/drafts"


async def _get_change(gateway: RestGateway, args: Dict[str, Any]) -> str:
    data = await gateway.get(
        f"changes/{_change(args)}/detail/"
        "?o=CURRENT_REVISION&o=CURRENT_COMMIT&o=DETAILED_ACCOUNTS"
    )
    return _dump(data)


async def _get_changed_files(gateway: RestGateway, args: Dict[str, Any]) -> str:
    return _dump(await gateway.get(f"changes/{_change(args)}/revisions/current/files"))


async def _get_file_content(gateway: RestGateway, args: Dict[str, Any]) -> str:
    encoded = quote(str(args["filePath"]), safe="")
    raw = await gateway.get_raw(f"changes/{_change(args)}/revisions/current/files/{encoded}/content")
    try:
        content = base64.b64decode(raw.strip())
    except (binascii.Error, ValueError) as e:
        raise GatewayError(f"File content for {args['filePath']} is not valid base64: {e}") from e
    return content.decode("utf-8", errors="replace")


async def _get_comments(gateway: RestGateway, args: Dict[str, Any]) -> str:
    return _dump(await gateway.get(f"changes/{_change(args)}/comments/"))


async def _get_draft_comments(gateway: RestGateway, args: Dict[str, Any]) -> str:
    return _dump(await gateway.get(f"changes/{_change(args)}/drafts/"))


def draft_comment_body(args: Dict[str, Any]) -> Dict[str, Any]:
    """PUT body for a new draft. ``line`` is dropped for file and patchset level comments."""
    body: Dict[str, Any] = {
        "path": str(args["filePath"]),
        "message": str(args["message"]),
        "unresolved": args.get("unresolved") is not False,
    }
    line = args.get("line")
    if isinstance(line, (int, float)) and not isinstance(line, bool):
        body["line"] = int(line)
    return body


def reply_body(args: Dict[str, Any]) -> Dict[str, Any]:
    """PUT body for a thread reply. Replies are always posted as resolved."""
    return {
        "path": str(args["filePath"]),
        "message": str(args["message"]),
        "in_reply_to": str(args["inReplyTo"]),
        "unresolved": False,
    }


async def _post_draft_comment(gateway: RestGateway, args: Dict[str, Any]) -> str:
    body = draft_comment_body(args)
    logger.info(f"📝 Posting draft on change {_change(args)}: {body['path']}:{body.get('line', '-')}")
    return _dump(await gateway.put(_drafts_path(args), body))


async def _reply_to_comment(gateway: RestGateway, args: Dict[str, Any]) -> str:
    body = reply_body(args)
    logger.info(f"💬 Replying to comment {body['in_reply_to']} on change {_change(args)}")
    return _dump(await gateway.put(_drafts_path(args), body))


TOOLS: Tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="gerrit_get_change",
        description="Get change metadata including subject, owner, branch, status, "
                    "commit message, insertions, and deletions.",
        input_schema=_schema({"changeNumber": _CHANGE_NUMBER}, ["changeNumber"]),
        handler=_get_change,
    ),
    ToolDefinition(
        name="gerrit_get_changed_files",
        description="List all files changed in the current patchset with lines inserted/deleted.",
        input_schema=_schema({"changeNumber": _CHANGE_NUMBER}, ["changeNumber"]),
        handler=_get_changed_files,
    ),
    ToolDefinition(
        name="gerrit_get_file_content",
        description="Get the full content of a file in the current patchset revision.",
        input_schema=_schema(
            {
                "changeNumber": _CHANGE_NUMBER,
                "filePath": {"type": "string", "description": "Path to the file"},
            },
            ["changeNumber", "filePath"],
        ),
        handler=_get_file_content,
    ),
    ToolDefinition(
        name="gerrit_get_comments",
        description="Get all published comments on a change, grouped by file.",
        input_schema=_schema({"changeNumber": _CHANGE_NUMBER}, ["changeNumber"]),
        handler=_get_comments,
    ),
    ToolDefinition(
        name="gerrit_get_draft_comments",
        description="Get all existing draft comments on a change.",
        input_schema=_schema({"changeNumber": _CHANGE_NUMBER}, ["changeNumber"]),
        handler=_get_draft_comments,
    ),
    ToolDefinition(
        name="gerrit_post_draft_comment",
        description="Post a new draft comment on a specific file and line. "
                    f"Use {PATCHSET_LEVEL} as filePath for patchset-level comments.",
        input_schema=_schema(
            {
                "changeNumber": _CHANGE_NUMBER,
                "filePath": {"type": "string", "description": f"File path or {PATCHSET_LEVEL}"},
                "line": {"type": "number", "description": "Line number (omit for file-level)"},
                "message": {"type": "string", "description": "Comment text"},
                "unresolved": {"type": "boolean", "description": "Mark as unresolved"},
            },
            ["changeNumber", "filePath", "message"],
        ),
        handler=_post_draft_comment,
    ),
    ToolDefinition(
        name="gerrit_reply_to_comment",
        description="Reply to an existing comment thread. Uses in_reply_to to chain comments.",
        input_schema=_schema(
            {
                "changeNumber": _CHANGE_NUMBER,
                "filePath": {"type": "string", "description": "File path of the thread"},
                "message": {"type": "string", "description": "Reply text"},
                "inReplyTo": {"type": "string", "description": "ID of comment to reply to"},
            },
            ["changeNumber", "filePath", "message", "inReplyTo"],
        ),
        handler=_reply_to_comment,
    ),
)

TOOL_INDEX: Dict[str, ToolDefinition] = {tool.name: tool for tool in TOOLS}


def get_tool(name: Optional[str]) -> ToolDefinition:
    tool = TOOL_INDEX.get(name) if isinstance(name, str) else None
    if tool is None:
        raise UnknownTool(f"Unknown tool: {name}")
    return tool


def list_mcp_tools() -> List[Tool]:
    return [tool.as_mcp_tool() for tool in TOOLS]


async def call_tool(gateway: RestGateway, name: Optional[str], arguments: Optional[Dict[str, Any]]) -> str:
    """Validate and run one tool. Every failure surfaces as an exception."""
    tool = get_tool(name)
    args = arguments or {}
    if not isinstance(args, dict):
        raise InvalidArguments(f"Arguments for {tool.name} must be an object")
    tool.validate(args)
    return await tool.handler(gateway, args)
