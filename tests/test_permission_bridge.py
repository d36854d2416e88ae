"""PermissionBridge <-> BridgeClient over a real localhost socket."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from agentrelay.engine.mcp_server.permission_bridge import PermissionBridge
from agentrelay.engine.mcp_server.permission_proxy import BridgeClient
from agentrelay.engine.permissions import PermissionBroker


class AutoNotifier:
    """Answers every approval request as soon as it is announced."""

    def __init__(self, approve: bool) -> None:
        self.approve = approve
        self.broker: PermissionBroker | None = None

    async def send_approval_request(self, approval) -> str:
        notification_id = f"n-{approval.request_id}"
        asyncio.get_running_loop().call_soon(
            self.broker.resolve_by_external_signal,
            approval.context.channel_id, notification_id,
            approval.context.user_id, self.approve,
        )
        return notification_id

    async def approval_resolved(self, approval) -> None:
        return None


CONTEXT = {"channel_id": "c1", "channel_name": "backend", "user_id": "u1", "message_id": None}


async def _started(broker: PermissionBroker):
    bridge = PermissionBridge(broker)
    port = await bridge.start()
    client = BridgeClient(port)
    await client.connect()
    return bridge, client


@pytest.mark.asyncio
async def test_safe_tool_round_trip() -> None:
    bridge, client = await _started(PermissionBroker())
    try:
        result = await client.call("approve_tool", {
            "tool_name": "Read", "input": {"file_path": "a.py"}, "context": CONTEXT,
        })
        assert result == {"behavior": "allow", "updatedInput": {"file_path": "a.py"}}
    finally:
        await client.close()
        await bridge.stop()


@pytest.mark.asyncio
async def test_interactive_approval_round_trip() -> None:
    notifier = AutoNotifier(approve=False)
    broker = PermissionBroker(notifier)
    notifier.broker = broker
    bridge, client = await _started(broker)
    try:
        result = await client.call("approve_tool", {
            "tool_name": "Bash", "input": {"command": "rm -rf /"}, "context": CONTEXT,
        })
        assert result == {"behavior": "deny", "message": "Denied by user"}

        notifier.approve = True
        result = await client.call("approve_tool", {
            "tool_name": "Write", "input": {"file_path": "x"}, "context": CONTEXT,
        })
        assert result["behavior"] == "allow"
    finally:
        await client.close()
        await bridge.stop()


@pytest.mark.asyncio
async def test_missing_context_uses_static_decision() -> None:
    bridge, client = await _started(PermissionBroker(AutoNotifier(approve=True)))
    try:
        result = await client.call("approve_tool", {"tool_name": "Bash", "input": {}})
        assert result["behavior"] == "deny"
    finally:
        await client.close()
        await bridge.stop()


@pytest.mark.asyncio
async def test_unknown_method_returns_error() -> None:
    bridge, client = await _started(PermissionBroker())
    try:
        with pytest.raises(ValueError, match="Unknown method"):
            await client.call("spawn_child", {})
        with pytest.raises(ValueError, match="tool_name"):
            await client.call("approve_tool", {"input": {}})
    finally:
        await client.close()
        await bridge.stop()


@pytest.mark.asyncio
async def test_invalid_json_line_gets_error_response() -> None:
    bridge = PermissionBridge(PermissionBroker())
    port = await bridge.start()
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(b"not json\n")
        await writer.drain()
        response = json.loads(await asyncio.wait_for(reader.readline(), timeout=5))
        assert response["id"] is None
        assert "Invalid JSON" in response["error"]
    finally:
        writer.close()
        await writer.wait_closed()
        await bridge.stop()


@pytest.mark.asyncio
async def test_shutdown_cancels_waiting_call() -> None:
    class SilentNotifier:
        async def send_approval_request(self, approval) -> str:
            return "n1"

        async def approval_resolved(self, approval) -> None:
            return None

    broker = PermissionBroker(SilentNotifier())
    bridge, client = await _started(broker)
    try:
        call = asyncio.ensure_future(client.call("approve_tool", {
            "tool_name": "Bash", "input": {}, "context": CONTEXT,
        }))
        for _ in range(100):
            if broker.status()["pending_count"]:
                break
            await asyncio.sleep(0.01)
        broker.shutdown()
        with pytest.raises(ValueError, match="cancelled"):
            await asyncio.wait_for(call, timeout=5)
    finally:
        await client.close()
        await bridge.stop()


@pytest.mark.asyncio
async def test_client_connect_gives_up_without_bridge() -> None:
    bridge = PermissionBridge(PermissionBroker())
    port = await bridge.start()
    await bridge.stop()
    client = BridgeClient(port)
    with patch("asyncio.sleep", new=AsyncMock()) as sleep:
        with pytest.raises(OSError):
            await client.connect()
    assert sleep.await_count == 9
