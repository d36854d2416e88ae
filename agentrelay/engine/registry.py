"""Per-channel slot table guaranteeing one agent process per channel.

All per-channel state (process slot, stream buffer, open tool calls,
tool summaries) lives in one ChannelState record so clearing a channel
cannot leave any of it behind. Every method runs on the event loop and
none of them await, so check-then-reserve is a single step.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentrelay.shared.formatters.tool_summary import ToolSummary

from .models import ChannelContext, ToolCallRecord
from .stream_decoder import StreamDecoder

if TYPE_CHECKING:
    from agentrelay.shared.services.session_store import SessionStore

    from .supervisor import SupervisedProcess

logger = logging.getLogger(__name__)


@dataclass
class ProcessSlot:
    """The single unit of work a channel may have in flight."""
    generation: int
    # None while reserved but not yet spawned.
    handle: SupervisedProcess | None = None
    reserved_session_id: str | None = None
    # UI unit updated with text and the final summary.
    sink_handle: str | None = None
    context: ChannelContext | None = None


@dataclass
class ChannelState:
    channel_id: str
    channel_name: str = ""
    slot: ProcessSlot | None = None
    decoder: StreamDecoder = field(default_factory=StreamDecoder)
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    tool_summaries: dict[str, ToolSummary] = field(default_factory=dict)
    # Assistant text of the current run.
    response_text: list[str] = field(default_factory=list)
    session_id: str | None = None

    def __post_init__(self) -> None:
        self.decoder.channel_id = self.channel_id


class SessionRegistry:
    """Owns every channel's ChannelState."""

    def __init__(self, store: SessionStore | None = None) -> None:
        self._store = store
        self._channels: dict[str, ChannelState] = {}
        self._generation = 0

    def channel(self, channel_id: str) -> ChannelState:
        """Get or create the state record of a channel."""
        state = self._channels.get(channel_id)
        if state is None:
            state = ChannelState(channel_id=channel_id)
            self._channels[channel_id] = state
        return state

    def get(self, channel_id: str) -> ChannelState | None:
        return self._channels.get(channel_id)

    def has_active(self, channel_id: str) -> bool:
        state = self._channels.get(channel_id)
        return state is not None and state.slot is not None

    def active_channels(self) -> list[str]:
        return [cid for cid, s in self._channels.items() if s.slot is not None]

    def reserve(
        self,
        channel_id: str,
        prior_session_id: str | None,
        sink_handle: str | None = None,
        context: ChannelContext | None = None,
    ) -> ProcessSlot:
        """Install a fresh reservation, terminating whatever was there."""
        state = self.channel(channel_id)
        old = state.slot
        if old is not None:
            if old.handle is not None:
                old.handle.terminate()
            logger.info(
                "Replacing slot generation %d on channel %s", old.generation, channel_id,
            )
        self._generation += 1
        slot = ProcessSlot(
            generation=self._generation,
            reserved_session_id=prior_session_id,
            sink_handle=sink_handle,
            context=context,
        )
        state.slot = slot
        if context is not None and context.channel_name:
            state.channel_name = context.channel_name
        state.decoder.reset()
        state.response_text.clear()
        return slot

    def try_reserve(
        self,
        channel_id: str,
        prior_session_id: str | None,
        sink_handle: str | None = None,
        context: ChannelContext | None = None,
    ) -> ProcessSlot | None:
        """Reserve only if the channel is idle; None when it is busy."""
        if self.has_active(channel_id):
            return None
        return self.reserve(channel_id, prior_session_id, sink_handle, context)

    def current(self, channel_id: str, generation: int) -> ProcessSlot | None:
        """The slot of *generation*, if it is still installed."""
        state = self._channels.get(channel_id)
        if state is None or state.slot is None:
            return None
        if state.slot.generation != generation:
            return None
        return state.slot

    def attach(
        self, channel_id: str, generation: int, handle: SupervisedProcess,
    ) -> bool:
        """Bind a spawned process to its reservation.

        Returns False when the reservation was replaced or released while
        spawning; the caller then owns (and must terminate) the process.
        """
        slot = self.current(channel_id, generation)
        if slot is None:
            return False
        slot.handle = handle
        return True

    def release(self, channel_id: str, generation: int | None = None) -> bool:
        """Drop the slot; safe to call any number of times.

        With *generation*, only that reservation is released, so a stale
        exit cannot free a newer run.
        """
        state = self._channels.get(channel_id)
        if state is None or state.slot is None:
            return False
        if generation is not None and state.slot.generation != generation:
            return False
        state.slot = None
        state.decoder.reset()
        logger.debug("Released slot on channel %s", channel_id)
        return True

    def kill(self, channel_id: str) -> bool:
        """Terminate the channel's process and free the channel."""
        state = self._channels.get(channel_id)
        if state is None or state.slot is None:
            return False
        if state.slot.handle is not None:
            state.slot.handle.terminate()
        return self.release(channel_id)

    def clear(self, channel_id: str) -> None:
        """Kill, forget all channel state and the persisted session id."""
        self.kill(channel_id)
        state = self._channels.pop(channel_id, None)
        if state is not None:
            state.tool_calls.clear()
            state.tool_summaries.clear()
            state.response_text.clear()
        if self._store is not None:
            self._store.clear_session(channel_id)
        logger.info("Cleared channel %s", channel_id)

    def handles(self) -> list[SupervisedProcess]:
        return [
            s.slot.handle for s in self._channels.values()
            if s.slot is not None and s.slot.handle is not None
        ]
