"""HTTP + SSE chat front end for the session orchestrator.

Chat clients post prompts and approval answers over HTTP and receive
every rendered unit over Server-Sent Events. The server is both the
orchestrator's UpdateSink and its ApprovalNotifier.

Routes:
    GET  /health
    GET  /events                                     SSE stream
    GET  /approvals                                  pending approvals
    POST /channels/{channel_id}/messages             start a run
    POST /channels/{channel_id}/reset                forget the session
    POST /channels/{channel_id}/kill                 stop the agent
    GET  /channels/{channel_id}/session
    GET  /channels/{channel_id}/tools/{tool_id}      full tool summary
    POST /channels/{channel_id}/approvals/{notification_id}
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from collections import OrderedDict
from typing import Any

from aiohttp import web

from agentrelay.adapters.events import (
    ApprovalOutcomeUnit,
    ApprovalRequestUnit,
    RenderableUnit,
)
from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import (
    AgentSpawnError,
    ChannelBusyError,
    WorkingDirectoryError,
)
from agentrelay.engine.models import ChannelContext
from agentrelay.engine.orchestrator import SessionOrchestrator
from agentrelay.engine.permissions import PendingApproval
from agentrelay.shared.formatters.tool_summary import format_tool_input
from agentrelay.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

_MAX_UNITS = 5000


class RelayServer:
    """aiohttp application exposing the orchestrator to chat clients."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        store: SessionStore | None = None,
    ) -> None:
        self.config = config
        self._host = config.host
        self._port = config.port
        self._store = store if store is not None else SessionStore(config.session_db_path)
        self.orchestrator = SessionOrchestrator(
            config, sink=self, notifier=self, store=self._store,
        )
        self._started_at = time.time()
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        # handle -> (channel_id, last unit)
        self._units: OrderedDict[str, tuple[str, RenderableUnit]] = OrderedDict()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── UpdateSink ──

    async def post_update(self, channel_id: str, unit: RenderableUnit) -> str:
        handle = uuid.uuid4().hex[:12]
        self._remember(handle, channel_id, unit)
        self._broadcast_sse("unit_posted", {
            "channel_id": channel_id,
            "handle": handle,
            "unit": unit.to_dict(),
        })
        return handle

    async def update_unit(self, handle: str, unit: RenderableUnit) -> None:
        entry = self._units.get(handle)
        if entry is None:
            logger.warning("Update for unknown unit handle %s (%s)", handle, unit.unit_type)
            return
        channel_id = entry[0]
        self._remember(handle, channel_id, unit)
        self._broadcast_sse("unit_updated", {
            "channel_id": channel_id,
            "handle": handle,
            "unit": unit.to_dict(),
        })

    def _remember(self, handle: str, channel_id: str, unit: RenderableUnit) -> None:
        self._units[handle] = (channel_id, unit)
        self._units.move_to_end(handle)
        while len(self._units) > _MAX_UNITS:
            self._units.popitem(last=False)

    # ── ApprovalNotifier ──

    async def send_approval_request(self, approval: PendingApproval) -> str:
        if not self._sse_queues:
            raise ConnectionError("No chat client connected to receive approval requests")
        unit = ApprovalRequestUnit(
            request_id=approval.request_id,
            tool_name=approval.tool_name,
            input_display=format_tool_input(
                approval.tool_name, approval.tool_input, self.config.base_folder,
            ),
            timeout_seconds=approval.timeout_seconds,
            requester_id=approval.context.user_id,
        )
        handle = await self.post_update(approval.context.channel_id, unit)
        self._broadcast_sse("approval_requested", {
            "channel_id": approval.context.channel_id,
            "notification_id": handle,
            "request_id": approval.request_id,
            "tool_name": approval.tool_name,
        })
        return handle

    async def approval_resolved(self, approval: PendingApproval) -> None:
        if approval.notification_id is None:
            return
        message = approval.decision.message if approval.decision else ""
        await self.update_unit(approval.notification_id, ApprovalOutcomeUnit(
            request_id=approval.request_id,
            tool_name=approval.tool_name,
            state=approval.state.value,
            message=message or "",
        ))
        self._broadcast_sse("approval_resolved", {
            "channel_id": approval.context.channel_id,
            "notification_id": approval.notification_id,
            "request_id": approval.request_id,
            "state": approval.state.value,
        })

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-agentrelay-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/events", self._handle_sse)
        r.add_get("/approvals", self._handle_list_approvals)
        r.add_post("/channels/{channel_id}/messages", self._handle_message)
        r.add_post("/channels/{channel_id}/reset", self._handle_reset)
        r.add_post("/channels/{channel_id}/kill", self._handle_kill)
        r.add_get("/channels/{channel_id}/session", self._handle_get_session)
        r.add_get("/channels/{channel_id}/tools/{tool_id}", self._handle_get_tool_summary)
        r.add_post(
            "/channels/{channel_id}/approvals/{notification_id}",
            self._handle_resolve_approval,
        )

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site)
        if actual_port is None:
            raise RuntimeError("agentrelay server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("agentrelay server listening on %s:%d", self._host, actual_port)

        await self.orchestrator.start()

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.orchestrator.shutdown()
            self._store.close()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site: web.TCPSite) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        for sock in sockets:
            return sock.getsockname()[1]
        return None

    # ── SSE ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            connected = {"active_channels": self.orchestrator.registry.active_channels()}
            await response.write(f"event: connected\ndata: {json.dumps(connected)}\n\n".encode())
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"], default=str)
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "base_folder": self.config.base_folder,
            **self.orchestrator.status(),
        })

    async def _handle_list_approvals(self, request: web.Request) -> web.Response:
        return web.json_response(self.orchestrator.broker.status())

    @staticmethod
    async def _json_body(request: web.Request) -> tuple[dict[str, Any], web.Response | None]:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return {}, web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return {}, web.json_response({"error": "JSON body must be an object"}, status=400)
        return body, None

    def _authorized(self, user_id: str) -> bool:
        allowed = self.config.allowed_user_id
        return allowed is None or user_id == allowed

    async def _handle_message(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        body, err = await self._json_body(request)
        if err:
            return err
        prompt = str(body.get("prompt", "")).strip()
        if not prompt:
            return web.json_response({"error": "No prompt provided"}, status=400)
        user_id = str(body.get("user_id", ""))
        if not self._authorized(user_id):
            logger.warning("Rejected message from unauthorized user %s on channel %s", user_id, channel_id)
            return web.json_response({"error": "User not allowed"}, status=403)
        channel_name = str(body.get("channel_name") or channel_id)
        if self.config.is_ignored(channel_name):
            return web.json_response({"error": f"Channel {channel_name} is ignored"}, status=404)

        context = ChannelContext(
            channel_id=channel_id,
            channel_name=channel_name,
            user_id=user_id,
            message_id=body.get("message_id") or None,
        )
        resumed = self.orchestrator.get_session_id(channel_id)
        try:
            await self.orchestrator.submit(context, prompt)
        except ChannelBusyError as exc:
            return web.json_response({"error": str(exc)}, status=409)
        except WorkingDirectoryError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        except AgentSpawnError as exc:
            return web.json_response({"error": str(exc)}, status=502)
        return web.json_response(
            {"status": "started", "channel_id": channel_id, "resumed_session_id": resumed},
            status=202,
        )

    async def _handle_reset(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        self.orchestrator.clear_session(channel_id)
        return web.json_response({"status": "cleared", "channel_id": channel_id})

    async def _handle_kill(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        killed = self.orchestrator.kill(channel_id)
        return web.json_response({"status": "killed" if killed else "idle", "channel_id": channel_id})

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        return web.json_response({
            "channel_id": channel_id,
            "session_id": self.orchestrator.get_session_id(channel_id),
            "active": self.orchestrator.has_active(channel_id),
        })

    async def _handle_get_tool_summary(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        tool_id = request.match_info["tool_id"]
        summary = self.orchestrator.get_tool_summary(channel_id, tool_id)
        if summary is None:
            return web.json_response({"error": f"No summary for tool {tool_id}"}, status=404)
        return web.json_response(summary.to_dict())

    async def _handle_resolve_approval(self, request: web.Request) -> web.Response:
        channel_id = request.match_info["channel_id"]
        notification_id = request.match_info["notification_id"]
        body, err = await self._json_body(request)
        if err:
            return err
        user_id = str(body.get("user_id", ""))
        approved = bool(body.get("approved", False))
        resolved = self.orchestrator.broker.resolve_by_external_signal(
            channel_id, notification_id, user_id, approved,
        )
        logger.info(
            "Approval answer channel=%s notification=%s approved=%s resolved=%s",
            channel_id, notification_id, approved, resolved,
        )
        return web.json_response({"resolved": resolved})
