from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from pathlib import Path

from aiohttp.test_utils import AioHTTPTestCase

from agentrelay.adapters.events import CompletionUnit, SessionStatus
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.models import ChannelContext
from agentrelay.server.server import RelayServer
from agentrelay.shared.formatters.tool_summary import ToolSummary
from agentrelay.shared.services.session_store import SessionStore


def _write_agent(path: Path, body: str) -> None:
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(0o755)


RESULT_LINES = "\n".join(json.dumps(line) for line in [
    {"type": "system", "subtype": "init", "session_id": "s-http"},
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "Done here"}]}},
    {"type": "result", "subtype": "success", "num_turns": 2, "session_id": "s-http"},
])


class TestRelayServer(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir)
        (root / "backend").mkdir()
        self.agent = root / "fake-agent"
        _write_agent(self.agent, f"cat <<'EOF'\n{RESULT_LINES}\nEOF")

        config = RelayConfig(
            base_folder=self.tmpdir,
            allowed_user_id="u1",
            agent_command=str(self.agent),
            session_db_path=":memory:",
            mcp_config_dir=str(root / "mcp"),
            process_timeout_seconds=10,
        )
        self.store = SessionStore(":memory:")
        self.relay = RelayServer(config, store=self.store)
        self.relay.orchestrator.supervisor._shell = "/bin/sh"
        return self.relay.app

    async def asyncTearDown(self):
        await self.relay.orchestrator.shutdown()
        self.store.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)
        await super().asyncTearDown()

    async def _wait_idle(self, channel_id: str) -> None:
        for _ in range(200):
            if not self.relay.orchestrator.has_active(channel_id):
                return
            await asyncio.sleep(0.05)
        raise AssertionError(f"channel {channel_id} never went idle")

    def _message(self, **overrides):
        body = {"user_id": "u1", "channel_name": "backend", "prompt": "do the thing"}
        body.update(overrides)
        return body

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["active_channels"] == []
        assert data["bridge_port"] is None
        assert data["approvals"]["pending_count"] == 0

    async def test_message_runs_agent_to_completion(self):
        resp = await self.client.post("/channels/c1/messages", json=self._message())
        assert resp.status == 202
        data = await resp.json()
        assert data["status"] == "started"
        assert data["resumed_session_id"] is None

        await self._wait_idle("c1")
        assert self.store.get_session("c1") == "s-http"
        units = [unit for _, unit in self.relay._units.values()]
        completions = [u for u in units if isinstance(u, CompletionUnit)]
        assert len(completions) == 1
        assert completions[0].footer == "Completed in 2 turns"
        # The status unit was replaced in place by the completion.
        assert not any(isinstance(u, SessionStatus) for u in units)

        session = await (await self.client.get("/channels/c1/session")).json()
        assert session == {"channel_id": "c1", "session_id": "s-http", "active": False}

    async def test_busy_channel_conflict_and_kill(self):
        _write_agent(self.agent, "sleep 30")
        first = await self.client.post("/channels/c1/messages", json=self._message())
        assert first.status == 202
        handle = self.relay.orchestrator.registry.channel("c1").slot.handle

        second = await self.client.post("/channels/c1/messages", json=self._message())
        assert second.status == 409
        assert "already running" in (await second.json())["error"]

        killed = await self.client.post("/channels/c1/kill")
        assert (await killed.json())["status"] == "killed"
        await asyncio.wait_for(handle.wait(), timeout=10)
        idle = await self.client.post("/channels/c1/kill")
        assert (await idle.json())["status"] == "idle"

    async def test_message_validation(self):
        resp = await self.client.post("/channels/c1/messages", data="not json")
        assert resp.status == 400
        resp = await self.client.post("/channels/c1/messages", json=[1, 2])
        assert resp.status == 400
        resp = await self.client.post("/channels/c1/messages", json=self._message(prompt="  "))
        assert resp.status == 400

    async def test_unauthorized_user(self):
        resp = await self.client.post("/channels/c1/messages", json=self._message(user_id="u2"))
        assert resp.status == 403
        assert not self.relay.orchestrator.has_active("c1")

    async def test_ignored_channel(self):
        resp = await self.client.post(
            "/channels/c0/messages", json=self._message(channel_name="general"),
        )
        assert resp.status == 404

    async def test_missing_working_directory(self):
        resp = await self.client.post(
            "/channels/c7/messages", json=self._message(channel_name="nowhere"),
        )
        assert resp.status == 404
        assert "not found" in (await resp.json())["error"]
        assert not self.relay.orchestrator.has_active("c7")

    async def test_reset_clears_session(self):
        self.store.set_session("c1", "s-old", "backend")
        resp = await self.client.post("/channels/c1/reset")
        assert resp.status == 200
        assert (await resp.json())["status"] == "cleared"
        assert self.store.get_session("c1") is None

    async def test_tool_summary_lookup(self):
        resp = await self.client.get("/channels/c1/tools/t1")
        assert resp.status == 404

        state = self.relay.orchestrator.registry.channel("c1")
        state.tool_summaries["t1"] = ToolSummary("Read", "read", "Read a.py", details="full text")
        resp = await self.client.get("/channels/c1/tools/t1")
        assert resp.status == 200
        data = await resp.json()
        assert data["details"] == "full text"

    async def test_approval_without_client_falls_back(self):
        broker = self.relay.orchestrator.broker
        decision = await broker.request_approval(
            "Bash", {"command": "ls"}, ChannelContext("c1", "backend", "u1"),
        )
        assert not decision.allowed
        assert broker.status()["pending_count"] == 0

    async def test_approval_round_trip_over_http(self):
        events: asyncio.Queue = asyncio.Queue()
        self.relay._sse_queues.append(events)
        broker = self.relay.orchestrator.broker
        task = asyncio.ensure_future(broker.request_approval(
            "Bash", {"command": "make deploy"}, ChannelContext("c1", "backend", "u1"),
        ))

        posted = await asyncio.wait_for(events.get(), timeout=5)
        assert posted["event"] == "unit_posted"
        assert posted["data"]["unit"]["unit_type"] == "approval_request"
        assert posted["data"]["unit"]["input_display"] == "$ make deploy"
        requested = await asyncio.wait_for(events.get(), timeout=5)
        assert requested["event"] == "approval_requested"
        notification_id = requested["data"]["notification_id"]

        listing = await (await self.client.get("/approvals")).json()
        assert listing["pending_count"] == 1

        wrong = await self.client.post(
            f"/channels/c1/approvals/{notification_id}",
            json={"user_id": "u2", "approved": True},
        )
        assert (await wrong.json())["resolved"] is False

        resp = await self.client.post(
            f"/channels/c1/approvals/{notification_id}",
            json={"user_id": "u1", "approved": True},
        )
        assert (await resp.json())["resolved"] is True
        decision = await asyncio.wait_for(task, timeout=5)
        assert decision.allowed

        updated = await asyncio.wait_for(events.get(), timeout=5)
        assert updated["event"] == "unit_updated"
        assert updated["data"]["unit"]["state"] == "approved"
        resolved = await asyncio.wait_for(events.get(), timeout=5)
        assert resolved["event"] == "approval_resolved"

        again = await self.client.post(
            f"/channels/c1/approvals/{notification_id}",
            json={"user_id": "u1", "approved": False},
        )
        assert (await again.json())["resolved"] is False
        self.relay._sse_queues.remove(events)
