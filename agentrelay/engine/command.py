"""Agent CLI command line and permission-hook config files.

The agent runs through a shell (``cd <dir> && claude ...``) with the
stream-json output protocol. When a permission bridge is running, each
run also gets a small MCP config file that makes the CLI launch
``permission_proxy`` as its permission-prompt tool.
"""
from __future__ import annotations

import json
import logging
import shlex
import sys
import time
import uuid
from pathlib import Path

from .models import ChannelContext

logger = logging.getLogger(__name__)

PERMISSION_SERVER_NAME = "agentrelay-permissions"
PERMISSION_TOOL = f"mcp__{PERMISSION_SERVER_NAME}__approve_tool"
MCP_CONFIG_PREFIX = "mcp-config-agentrelay-"
_PROXY_MODULE = "agentrelay.engine.mcp_server.permission_proxy"


def escape_shell_string(value: str) -> str:
    """Single-quote *value* for a POSIX shell."""
    return "'" + value.replace("'", "'\\''") + "'"


def build_agent_command(
    working_dir: str,
    prompt: str,
    session_id: str | None = None,
    *,
    agent_command: str = "claude",
    model: str = "sonnet",
    mcp_config_path: str | Path | None = None,
) -> str:
    """Shell command that runs one agent turn in *working_dir*."""
    parts = [f"cd {shlex.quote(working_dir)} &&", agent_command]
    if session_id:
        parts.extend(["--resume", shlex.quote(session_id)])
    parts.extend([
        "--output-format", "stream-json",
        "--model", shlex.quote(model),
        "-p", escape_shell_string(prompt),
        "--verbose",
    ])
    if mcp_config_path is not None:
        parts.extend([
            "--mcp-config", shlex.quote(str(mcp_config_path)),
            "--permission-prompt-tool", PERMISSION_TOOL,
            "--allowedTools", f"mcp__{PERMISSION_SERVER_NAME}",
        ])
    return " ".join(parts)


def build_proxy_args(context: ChannelContext, bridge_port: int) -> list[str]:
    args = [
        "-m", _PROXY_MODULE,
        "--port", str(bridge_port),
        "--channel-id", context.channel_id,
        "--channel-name", context.channel_name,
        "--user-id", context.user_id,
    ]
    if context.message_id:
        args.extend(["--message-id", context.message_id])
    return args


def write_permission_mcp_config(
    context: ChannelContext,
    bridge_port: int,
    directory: str | Path,
) -> Path:
    """Write a per-run MCP config that routes approvals to the bridge."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    name = f"{MCP_CONFIG_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.json"
    path = directory / name
    config = {
        "mcpServers": {
            PERMISSION_SERVER_NAME: {
                "command": sys.executable,
                "args": build_proxy_args(context, bridge_port),
            },
        },
    }
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    logger.debug(
        "Wrote permission MCP config %s for channel %s", path, context.channel_id,
    )
    return path


def cleanup_permission_mcp_configs(
    directory: str | Path, max_age_seconds: float = 3600.0,
) -> int:
    """Delete config files older than *max_age_seconds*; returns the count."""
    directory = Path(directory)
    if not directory.is_dir():
        return 0
    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in directory.glob(f"{MCP_CONFIG_PREFIX}*.json"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    if removed:
        logger.info("Removed %d stale permission MCP config(s)", removed)
    return removed
