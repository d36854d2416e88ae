"""TCP bridge answering the agent's permission-prompt tool.

Runs in the orchestrator process next to the PermissionBroker. Each
agent run launches permission_proxy.py as an MCP server; the proxy
connects here and forwards every ``approve_tool`` call.

Protocol: Newline-delimited JSON (JSONL) over TCP on localhost.

Request:  {"id": N, "method": "approve_tool", "params": {...}}
Response: {"id": N, "result": {"behavior": "allow", "updatedInput": {...}}}
Error:    {"id": N, "error": "message"}
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, TYPE_CHECKING

from ..errors import ApprovalCancelledError
from ..models import ChannelContext

if TYPE_CHECKING:
    from ..permissions import PermissionBroker

logger = logging.getLogger(__name__)


class PermissionBridge:
    """TCP server bridging permission proxies to the in-process broker.

    Tool call flow:
        agent CLI → MCP stdio → permission_proxy → TCP → PermissionBridge → PermissionBroker
    """

    def __init__(self, broker: PermissionBroker, host: str = "127.0.0.1") -> None:
        self._broker = broker
        self._host = host
        self._server: asyncio.Server | None = None
        self._port: int = 0
        self._connections: set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._server is not None

    async def start(self) -> int:
        """Start TCP server on a random available port. Returns the port."""
        self._server = await asyncio.start_server(
            self._handle_client, self._host, 0,
        )
        addr = self._server.sockets[0].getsockname()
        self._port = addr[1]
        logger.info("PermissionBridge started on port %d", self._port)
        return self._port

    async def stop(self) -> None:
        """Stop the TCP server and close all connections."""
        if self._server:
            self._server.close()
        # Handlers must finish before wait_closed() can return.
        for task in list(self._connections):
            task.cancel()
        self._connections.clear()
        if self._server:
            await self._server.wait_closed()
            self._server = None
            logger.info("PermissionBridge stopped (port=%d)", self._port)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single proxy connection."""
        peer = writer.get_extra_info("peername")
        logger.debug("PermissionBridge client connected: %s", peer)
        task = asyncio.current_task()
        if task:
            self._connections.add(task)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    request = json.loads(line.decode("utf-8"))
                except json.JSONDecodeError as exc:
                    await self._write(writer, {"id": None, "error": f"Invalid JSON: {exc}"})
                    continue
                if not isinstance(request, dict):
                    await self._write(writer, {"id": None, "error": "Request must be an object"})
                    continue

                req_id = request.get("id")
                method = request.get("method", "")
                params = request.get("params")
                if not isinstance(params, dict):
                    params = {}
                try:
                    result = await self._dispatch(method, params)
                    response: dict[str, Any] = {"id": req_id, "result": result}
                except (KeyError, ValueError, ApprovalCancelledError) as exc:
                    logger.warning(
                        "PermissionBridge request failed: method=%s error=%s", method, exc,
                    )
                    response = {"id": req_id, "error": str(exc)}
                await self._write(writer, response)
        except asyncio.CancelledError:
            pass
        except (ConnectionError, asyncio.IncompleteReadError):
            logger.debug("PermissionBridge client %s dropped", peer)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            if task:
                self._connections.discard(task)
            logger.debug("PermissionBridge client disconnected: %s", peer)

    @staticmethod
    async def _write(writer: asyncio.StreamWriter, payload: dict[str, Any]) -> None:
        writer.write(json.dumps(payload).encode("utf-8") + b"\n")
        await writer.drain()

    async def _dispatch(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        if method != "approve_tool":
            raise ValueError(f"Unknown method: {method}")
        tool_name = str(params["tool_name"])
        tool_input = params.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}
        raw_context = params.get("context")
        context = (
            ChannelContext.from_dict(raw_context)
            if isinstance(raw_context, dict) and raw_context.get("channel_id")
            else None
        )
        decision = await self._broker.request_approval(tool_name, tool_input, context)
        return decision.to_dict()
