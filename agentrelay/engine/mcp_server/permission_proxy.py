"""MCP permission-prompt proxy.

Standalone FastMCP server launched by the agent CLI (via --mcp-config)
for one channel run. Speaks MCP on stdin/stdout and relays every
``approve_tool`` call to the orchestrator's PermissionBridge over TCP.

Usage:
    python -m agentrelay.engine.mcp_server.permission_proxy --port PORT \\
        --channel-id ID --channel-name NAME --user-id USER [--message-id MSG]

Tool call flow:
    agent CLI → MCP stdin/stdout → permission_proxy → TCP → PermissionBridge
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

logger = logging.getLogger(__name__)

# Set from CLI args before the server starts.
_bridge_port: int = 0
_channel_context: dict[str, Any] = {}


class BridgeClient:
    """TCP client that connects to the PermissionBridge."""

    def __init__(self, port: int, host: str = "127.0.0.1") -> None:
        self._port = port
        self._host = host
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._req_id: int = 0
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect with retry; the bridge may still be starting up.

        Retries up to 10 times with exponential backoff (0.2s doubling,
        capped at 2s).
        """
        max_attempts = 10
        delay = 0.2
        for attempt in range(1, max_attempts + 1):
            try:
                self._reader, self._writer = await asyncio.open_connection(
                    self._host, self._port,
                )
                logger.info(
                    "Connected to PermissionBridge on port %d (attempt %d)",
                    self._port, attempt,
                )
                return
            except OSError as exc:
                if attempt == max_attempts:
                    logger.error(
                        "Failed to connect to PermissionBridge on port %d "
                        "after %d attempts: %s",
                        self._port, max_attempts, exc,
                    )
                    raise
                logger.debug(
                    "PermissionBridge connection attempt %d/%d failed: %s, "
                    "retrying in %.1fs",
                    attempt, max_attempts, exc, delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, 2.0)

    async def close(self) -> None:
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._reader = None
        self._writer = None

    async def call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Send one request and return its ``result`` object.

        Raises ValueError for error responses (FastMCP marks these as errors).
        """
        async with self._lock:
            if self._reader is None or self._writer is None:
                raise ValueError("PermissionBridge connection is not initialized")

            self._req_id += 1
            request_id = self._req_id
            data = json.dumps({
                "id": request_id,
                "method": method,
                "params": params,
            }).encode("utf-8") + b"\n"
            self._writer.write(data)
            await self._writer.drain()

            # A timed-out earlier call may still deliver its answer;
            # skip anything that is not ours.
            while True:
                line = await self._reader.readline()
                if not line:
                    raise ValueError("PermissionBridge connection closed unexpectedly")
                try:
                    response = json.loads(line.decode("utf-8"))
                except json.JSONDecodeError:
                    logger.warning(
                        "Ignoring non-JSON response from PermissionBridge: %r",
                        line[:200],
                    )
                    continue
                if not isinstance(response, dict):
                    continue
                if response.get("id") != request_id:
                    logger.warning(
                        "Discarding out-of-order PermissionBridge response "
                        "(expected id=%s, got id=%s)",
                        request_id, response.get("id"),
                    )
                    continue
                break

            if "error" in response:
                raise ValueError(str(response["error"]))
            result = response.get("result")
            if not isinstance(result, dict):
                raise ValueError(f"Malformed PermissionBridge result: {result!r}")
            return result


# ── FastMCP lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def proxy_lifespan(server: FastMCP):
    """Connect to the PermissionBridge on startup, disconnect on shutdown."""
    client = BridgeClient(_bridge_port)
    await client.connect()
    try:
        yield {"bridge": client}
    finally:
        await client.close()


# ── FastMCP server ────────────────────────────────────────────────

mcp = FastMCP(
    name="agentrelay-permissions",
    instructions=(
        "Permission prompt tool. Every tool call that needs approval is "
        "forwarded to a human in the originating chat channel."
    ),
    lifespan=proxy_lifespan,
)


def _bridge(ctx: Context) -> BridgeClient:
    return ctx.request_context.lifespan_context["bridge"]


@mcp.tool(
    name="approve_tool",
    description=(
        "Decide whether the agent may run a tool. Returns JSON with "
        "behavior allow (and updatedInput) or deny (and message)."
    ),
)
async def approve_tool(
    tool_name: str,
    input: dict[str, Any],
    tool_use_id: str | None = None,
    ctx: Context = None,
) -> str:
    params: dict[str, Any] = {
        "tool_name": tool_name,
        "input": input,
        "tool_use_id": tool_use_id,
        "context": dict(_channel_context),
    }
    logger.info("approve_tool %s (tool_use_id=%s)", tool_name, tool_use_id)
    decision = await _bridge(ctx).call("approve_tool", params)
    return json.dumps(decision)


# ── Entry point ───────────────────────────────────────────────────

def main() -> None:
    """Entry point when launched by the agent CLI as an MCP subprocess."""
    global _bridge_port, _channel_context

    parser = argparse.ArgumentParser(
        prog="agentrelay-permission-proxy",
        description="MCP permission-prompt proxy for agentrelay channel runs",
    )
    parser.add_argument("--port", type=int, required=True,
                        help="PermissionBridge TCP port to connect to")
    parser.add_argument("--channel-id", required=True)
    parser.add_argument("--channel-name", default="")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--message-id", default=None)
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")
    args = parser.parse_args()
    _bridge_port = args.port
    _channel_context = {
        "channel_id": args.channel_id,
        "channel_name": args.channel_name,
        "user_id": args.user_id,
        "message_id": args.message_id,
    }

    # Logging goes to stderr (stdout is the MCP transport)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logger.info(
        "Starting permission_proxy (bridge_port=%d, channel=%s, pid=%d)",
        _bridge_port, args.channel_id, os.getpid(),
    )

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
