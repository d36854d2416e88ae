"""Session orchestrator: one agent run per channel, end to end.

Wires the SessionRegistry, ProcessSupervisor, MessageRouter and
PermissionBroker together. Callbacks from a spawned process carry the
slot generation they were created for; anything arriving for a
generation that is no longer installed is stale and ignored, which makes
result, exit, timeout and kill teardown safe to race.
"""
from __future__ import annotations

import logging
from functools import partial
from pathlib import Path
from typing import Any, TYPE_CHECKING

from agentrelay.adapters.events import (
    ApprovalNotifier,
    CompletionUnit,
    FailureUnit,
    RenderableUnit,
    SessionStatus,
    UpdateSink,
    post_unit,
    replace_unit,
)
from agentrelay.shared.formatters.tool_summary import ToolSummary

from .command import (
    build_agent_command,
    cleanup_permission_mcp_configs,
    write_permission_mcp_config,
)
from .config import RelayConfig
from .errors import AgentSpawnError, AgentTimeoutError, ChannelBusyError, WorkingDirectoryError
from .mcp_server.permission_bridge import PermissionBridge
from .message_router import MessageRouter
from .models import ChannelContext
from .permissions import PermissionBroker
from .registry import SessionRegistry
from .supervisor import ProcessSupervisor, SupervisedProcess

if TYPE_CHECKING:
    from agentrelay.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

_PROMPT_PREVIEW = 200


class SessionOrchestrator:
    """Entry point for everything a chat front end can ask of a channel."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        sink: UpdateSink | None = None,
        notifier: ApprovalNotifier | None = None,
        store: SessionStore | None = None,
        supervisor: ProcessSupervisor | None = None,
        broker: PermissionBroker | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self._sink = sink
        self.registry = SessionRegistry(store)
        self.broker = broker or PermissionBroker(
            notifier,
            timeout_seconds=config.approval_timeout_seconds,
            default_on_timeout=config.approval_default_on_timeout,
            fallback=config.approval_fallback,
        )
        self.bridge = PermissionBridge(self.broker)
        self.supervisor = supervisor or ProcessSupervisor(config.process_timeout_seconds)
        self.router = MessageRouter(
            self.registry,
            store=store,
            sink=sink,
            base_folder=config.base_folder,
            large_input_threshold=config.large_input_threshold,
            preview_length=config.result_preview_length,
            on_result=self._on_result,
        )
        # slot generation -> permission MCP config written for that run
        self._mcp_configs: dict[int, Path] = {}

    # ── Lifecycle ──

    async def start(self, with_bridge: bool = True) -> None:
        if with_bridge:
            await self.bridge.start()
        cleanup_permission_mcp_configs(
            self.config.mcp_config_dir, self.config.mcp_config_max_age_seconds,
        )
        if self.store is not None:
            self.store.cleanup_old_sessions(self.config.session_max_age_days)

    async def shutdown(self) -> None:
        """Cancel approvals, stop every agent and the bridge."""
        self.broker.shutdown()
        handles = self.registry.handles()
        for channel_id in self.registry.active_channels():
            self.registry.kill(channel_id)
        for handle in handles:
            await handle.stop()
        for path in list(self._mcp_configs.values()):
            path.unlink(missing_ok=True)
        self._mcp_configs.clear()
        await self.bridge.stop()
        logger.info("SessionOrchestrator shut down (%d process(es) stopped)", len(handles))

    # ── Channel operations ──

    def working_dir_for(self, channel_name: str) -> Path:
        return Path(self.config.base_folder) / channel_name

    def get_session_id(self, channel_id: str) -> str | None:
        if self.store is not None:
            return self.store.get_session(channel_id)
        state = self.registry.get(channel_id)
        return state.session_id if state else None

    def has_active(self, channel_id: str) -> bool:
        return self.registry.has_active(channel_id)

    async def submit(self, context: ChannelContext, prompt: str) -> bool:
        """Start an agent run for *prompt* in the context's channel.

        Returns False for ignored channels. Raises ChannelBusyError when
        a run is already in flight, WorkingDirectoryError when the
        channel has no folder, AgentSpawnError when the agent cannot be
        started. The channel is left idle on every error path.
        """
        channel_id = context.channel_id
        if self.config.is_ignored(context.channel_name):
            logger.debug("Ignoring message in channel %s", context.channel_name)
            return False

        session_id = self.get_session_id(channel_id)
        # Check and reserve with no await in between.
        slot = self.registry.try_reserve(channel_id, session_id, context=context)
        if slot is None:
            raise ChannelBusyError(channel_id)
        generation = slot.generation

        working_dir = self.working_dir_for(context.channel_name)
        slot.sink_handle = await post_unit(self._sink, channel_id, SessionStatus(
            resumed=session_id is not None,
            session_id=session_id,
            working_dir=str(working_dir),
            prompt=prompt[:_PROMPT_PREVIEW],
        ))

        if not working_dir.is_dir():
            await self._fail(channel_id, generation, FailureUnit(
                reason="working_dir",
                title="Working directory not found",
                detail=str(working_dir),
            ))
            raise WorkingDirectoryError(channel_id, str(working_dir))

        mcp_config_path = None
        if self.bridge.running:
            mcp_config_path = write_permission_mcp_config(
                context, self.bridge.port, self.config.mcp_config_dir,
            )
            self._mcp_configs[generation] = mcp_config_path
        command = build_agent_command(
            str(working_dir),
            prompt,
            session_id,
            agent_command=self.config.agent_command,
            model=self.config.model,
            mcp_config_path=mcp_config_path,
        )
        logger.info(
            "Starting agent for channel %s (resume=%s, dir=%s)",
            channel_id, session_id or "-", working_dir,
        )

        try:
            handle = await self.supervisor.spawn(
                channel_id,
                command,
                on_stdout=partial(self._on_stdout, channel_id, generation),
                on_stderr=partial(self._on_stderr, channel_id, generation),
                on_exit=partial(self._on_exit, channel_id, generation),
                on_timeout=partial(self._on_timeout, channel_id, generation),
            )
        except AgentSpawnError as exc:
            await self._fail(channel_id, generation, FailureUnit(
                reason="process_error",
                title="Failed to start agent",
                detail=exc.reason,
            ))
            raise

        if not self.registry.attach(channel_id, generation, handle):
            logger.info(
                "Reservation on channel %s replaced during spawn, stopping pid=%s",
                channel_id, handle.pid,
            )
            handle.terminate()
        return True

    def kill(self, channel_id: str) -> bool:
        """Stop the channel's agent; the session id is kept."""
        state = self.registry.get(channel_id)
        generation = state.slot.generation if state and state.slot else None
        killed = self.registry.kill(channel_id)
        if generation is not None:
            self._discard_mcp_config(generation)
        return killed

    def clear_session(self, channel_id: str) -> None:
        """Stop the agent and forget everything about the channel."""
        state = self.registry.get(channel_id)
        if state is not None and state.slot is not None:
            self._discard_mcp_config(state.slot.generation)
        cancelled = self.broker.cancel_channel(channel_id)
        if cancelled:
            logger.info("Denied %d pending approval(s) on cleared channel %s", cancelled, channel_id)
        self.registry.clear(channel_id)

    def get_tool_summary(self, channel_id: str, tool_id: str) -> ToolSummary | None:
        state = self.registry.get(channel_id)
        return state.tool_summaries.get(tool_id) if state else None

    def status(self) -> dict[str, Any]:
        return {
            "active_channels": self.registry.active_channels(),
            "bridge_port": self.bridge.port if self.bridge.running else None,
            "approvals": self.broker.status(),
        }

    # ── Process callbacks ──

    async def _on_stdout(self, channel_id: str, generation: int, chunk: bytes) -> None:
        if self.registry.current(channel_id, generation) is None:
            return
        await self.router.feed(channel_id, chunk)

    async def _on_stderr(self, channel_id: str, generation: int, text: str) -> None:
        if self.registry.current(channel_id, generation) is None:
            logger.debug("Stale stderr on channel %s: %s", channel_id, text.strip()[:200])
            return
        await self.router.handle_stderr(channel_id, text)

    async def _on_result(self, channel_id: str) -> None:
        state = self.registry.get(channel_id)
        if state is None or state.slot is None:
            return
        slot = state.slot
        if slot.handle is not None:
            slot.handle.terminate()
        self._finish_run(channel_id, slot.generation)

    async def _on_timeout(
        self, channel_id: str, generation: int, handle: SupervisedProcess,
    ) -> None:
        slot = self.registry.current(channel_id, generation)
        if slot is None:
            return
        error = AgentTimeoutError(channel_id, handle.timeout_seconds)
        await self._fail(channel_id, generation, FailureUnit(
            reason="timeout",
            title="Agent timed out",
            detail=str(error),
        ))

    async def _on_exit(
        self, channel_id: str, generation: int, handle: SupervisedProcess,
    ) -> None:
        if self.registry.current(channel_id, generation) is not None:
            # A final line may lack its newline.
            await self.router.finish(channel_id)
        slot = self.registry.current(channel_id, generation)
        if slot is None:
            self._discard_mcp_config(generation)
            return

        code = handle.returncode
        unit: RenderableUnit
        if code == 0:
            state = self.registry.channel(channel_id)
            unit = CompletionUnit(
                success=True,
                text="\n\n".join(state.response_text) or "Agent exited without a result",
                footer="Process exited cleanly",
                session_id=state.session_id,
            )
        else:
            logger.warning(
                "Agent for channel %s failed with exit code %s", channel_id, code,
            )
            unit = FailureUnit(
                reason="process_failed",
                title="Agent process failed",
                detail=f"Process exited with code {code}",
                exit_code=code,
            )
        await self._fail(channel_id, generation, unit)

    # ── Helpers ──

    async def _fail(
        self, channel_id: str, generation: int, unit: RenderableUnit,
    ) -> None:
        """Render a terminal unit and leave the channel idle."""
        slot = self.registry.current(channel_id, generation)
        handle = slot.sink_handle if slot is not None else None
        await replace_unit(self._sink, channel_id, handle, unit)
        self._finish_run(channel_id, generation)

    def _finish_run(self, channel_id: str, generation: int) -> None:
        self.registry.release(channel_id, generation)
        self._discard_mcp_config(generation)

    def _discard_mcp_config(self, generation: int) -> None:
        path = self._mcp_configs.pop(generation, None)
        if path is not None:
            path.unlink(missing_ok=True)
