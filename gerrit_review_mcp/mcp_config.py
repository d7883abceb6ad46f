"""
Registration of the Gerrit tool server in the agent's workspace MCP config.

The agent discovers MCP servers through ``<workspace>/.cursor/mcp.json``.
The entry starts this package's ``serve`` command with the GERRIT_*
credentials in its environment.
"""
import json
import sys
from pathlib import Path
from typing import Any, Dict, Union

from .config import Credentials, logger

MCP_SERVER_NAME = "gerrit-review"
MCP_CONFIG_DIR = ".cursor"
MCP_CONFIG_FILE = "mcp.json"


def mcp_config_path(workspace: Union[str, Path]) -> Path:
    return Path(workspace) / MCP_CONFIG_DIR / MCP_CONFIG_FILE


def _read_config(path: Path) -> Dict[str, Any]:
    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {"mcpServers": {}}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️ Unreadable MCP config {path}, starting fresh: {e}")
        return {"mcpServers": {}}

    if not isinstance(config, dict):
        return {"mcpServers": {}}
    if not isinstance(config.get("mcpServers"), dict):
        config["mcpServers"] = {}
    return config


def server_entry(credentials: Credentials) -> Dict[str, Any]:
    return {
        "command": sys.executable,
        "args": ["-m", "gerrit_review_mcp.main", "serve"],
        "env": credentials.to_env(),
    }


def write_mcp_config(workspace: Union[str, Path], credentials: Credentials) -> bool:
    """Add or replace the gerrit-review entry, keeping other servers untouched"""
    path = mcp_config_path(workspace)
    config = _read_config(path)
    config["mcpServers"][MCP_SERVER_NAME] = server_entry(credentials)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config, indent="\t"), encoding="utf-8")
    except OSError as e:
        logger.error(f"❌ Failed to write MCP config {path}: {e}")
        return False

    logger.info(f"🔧 MCP config written to {path}")
    return True


def remove_mcp_config(workspace: Union[str, Path]) -> bool:
    """Drop the gerrit-review entry. Returns True when an entry was removed."""
    path = mcp_config_path(workspace)
    if not path.exists():
        return False

    config = _read_config(path)
    if MCP_SERVER_NAME not in config["mcpServers"]:
        return False

    del config["mcpServers"][MCP_SERVER_NAME]
    try:
        path.write_text(json.dumps(config, indent="\t"), encoding="utf-8")
    except OSError as e:
        logger.warning(f"⚠️ Could not remove MCP server config from {path}: {e}")
        return False

    logger.info("🧹 Removed MCP server config")
    return True


def is_mcp_configured(workspace: Union[str, Path]) -> bool:
    path = mcp_config_path(workspace)
    if not path.exists():
        return False
    return MCP_SERVER_NAME in _read_config(path)["mcpServers"]
