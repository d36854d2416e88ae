"""Dispatch of decoded agent messages.

Every complete protocol line from a channel's agent is routed by its
``type``:

    system     → session id persisted, session-started unit on ``init``
    assistant  → text shown, each tool_use opens a ToolCallRecord
    user       → tool_result closes the matching ToolCallRecord
    result     → session id persisted, completion unit, process teardown

Lines the router does not understand are logged and dropped.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from agentrelay.adapters.events import (
    CompletionUnit,
    RenderableUnit,
    SessionStarted,
    TextUpdate,
    ToolCallUnit,
    UpdateSink,
    WarningUnit,
    post_unit,
    replace_unit,
)
from agentrelay.shared.formatters.tool_summary import (
    ToolSummary,
    first_line_preview,
    format_tool_input,
    normalize_input,
    result_text,
    summarize_tool,
    truncate_for_display,
)

from .models import MessageType, ToolCallRecord
from .registry import ChannelState, SessionRegistry

if TYPE_CHECKING:
    from agentrelay.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

ResultHandler = Callable[[str], Awaitable[None]]
Summarizer = Callable[..., ToolSummary]

_QUIET_STDERR_MARKERS = ("INFO", "DEBUG")


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


class MessageRouter:
    """Routes decoded messages for every channel."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        store: SessionStore | None = None,
        sink: UpdateSink | None = None,
        base_folder: str = "",
        large_input_threshold: int = 2000,
        preview_length: int = 100,
        on_result: ResultHandler | None = None,
        summarize: Summarizer = summarize_tool,
    ) -> None:
        self._registry = registry
        self._store = store
        self._sink = sink
        self._base_folder = base_folder
        self._large_input_threshold = large_input_threshold
        self._preview_length = preview_length
        self._on_result = on_result
        self._summarize = summarize
        self._handlers: dict[str, Callable[[ChannelState, dict[str, Any]], Awaitable[None]]] = {
            MessageType.SYSTEM.value: self._on_system,
            MessageType.ASSISTANT.value: self._on_assistant,
            MessageType.USER.value: self._on_user,
            MessageType.RESULT.value: self._on_result_message,
        }

    async def feed(self, channel_id: str, chunk: bytes) -> int:
        """Decode a stdout chunk and dispatch every completed message."""
        state = self._registry.channel(channel_id)
        return await self._dispatch_all(channel_id, state.decoder.feed(chunk))

    async def finish(self, channel_id: str) -> int:
        """Dispatch whatever the decoder still holds at end of stream."""
        state = self._registry.get(channel_id)
        if state is None:
            return 0
        return await self._dispatch_all(channel_id, state.decoder.flush())

    async def _dispatch_all(
        self, channel_id: str, messages: list[dict[str, Any]],
    ) -> int:
        count = 0
        for message in messages:
            await self.dispatch(channel_id, message)
            count += 1
            # Nothing useful follows a terminal result.
            if message.get("type") == MessageType.RESULT.value:
                break
        return count

    async def dispatch(self, channel_id: str, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            logger.debug(
                "Ignoring message type %r on channel %s", msg_type, channel_id,
            )
            return
        await handler(self._registry.channel(channel_id), message)

    async def handle_stderr(self, channel_id: str, text: str) -> None:
        """Surface agent stderr, skipping its own info/debug chatter."""
        shown = []
        for line in text.splitlines():
            if not line.strip():
                continue
            if any(marker in line for marker in _QUIET_STDERR_MARKERS):
                logger.debug("Agent stderr [%s]: %s", channel_id, line)
                continue
            logger.warning("Agent stderr [%s]: %s", channel_id, line)
            shown.append(line)
        if shown:
            await post_unit(
                self._sink, channel_id,
                WarningUnit(text=truncate_for_display("\n".join(shown))),
            )

    # ── Handlers ──

    async def _on_system(self, state: ChannelState, message: dict[str, Any]) -> None:
        self._persist_session(state, message.get("session_id"))
        if message.get("subtype") != "init":
            logger.debug(
                "System message %r on channel %s", message.get("subtype"), state.channel_id,
            )
            return
        tools = message.get("tools") or []
        await post_unit(self._sink, state.channel_id, SessionStarted(
            session_id=message.get("session_id"),
            working_dir=str(message.get("cwd") or ""),
            model=str(message.get("model") or ""),
            tool_count=len(tools) if isinstance(tools, list) else 0,
        ))

    async def _on_assistant(self, state: ChannelState, message: dict[str, Any]) -> None:
        self._persist_session(state, message.get("session_id"))
        content = (message.get("message") or {}).get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]

        texts = [
            str(block["text"]) for block in content
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
        ]
        if texts:
            state.response_text.append("\n".join(texts))
            await self._update_primary(
                state, TextUpdate(text=truncate_for_display("\n\n".join(state.response_text))),
            )

        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                await self._open_tool_call(state, block)

    async def _open_tool_call(self, state: ChannelState, block: dict[str, Any]) -> None:
        tool_id = block.get("id")
        if not tool_id:
            logger.warning("tool_use without id on channel %s", state.channel_id)
            return
        tool_name = str(block.get("name") or "unknown")
        tool_input = block.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}

        try:
            serialized_len = len(json.dumps(tool_input, default=str))
        except (TypeError, ValueError):
            serialized_len = 0
        if serialized_len > self._large_input_threshold:
            summary = self._summarize(tool_name, tool_input)
            state.tool_summaries[tool_id] = summary
            unit = ToolCallUnit(
                tool_id=tool_id,
                tool_name=tool_name,
                input_display=summary.summary,
                large=True,
                has_full_content=True,
            )
            logger.debug(
                "Large %s input (%d chars) on channel %s summarized",
                tool_name, serialized_len, state.channel_id,
            )
        else:
            unit = ToolCallUnit(
                tool_id=tool_id,
                tool_name=tool_name,
                input_display=format_tool_input(tool_name, tool_input, self._base_folder),
            )

        handle = await post_unit(self._sink, state.channel_id, unit)
        state.tool_calls[tool_id] = ToolCallRecord(
            tool_id=tool_id,
            tool_name=tool_name,
            normalized_input=normalize_input(tool_input, self._base_folder),
            unit_handle=handle,
        )

    async def _on_user(self, state: ChannelState, message: dict[str, Any]) -> None:
        content = (message.get("message") or {}).get("content") or []
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_id = block.get("tool_use_id")
            record = state.tool_calls.pop(tool_id, None) if tool_id else None
            if record is None:
                logger.debug(
                    "No open tool call %r on channel %s, result ignored",
                    tool_id, state.channel_id,
                )
                continue
            await self._close_tool_call(state, record, block)

    async def _close_tool_call(
        self, state: ChannelState, record: ToolCallRecord, block: dict[str, Any],
    ) -> None:
        is_error = bool(block.get("is_error"))
        raw = result_text(block.get("content"))
        summary = self._summarize(record.tool_name, record.normalized_input, raw, is_error)
        if summary.has_full_content:
            state.tool_summaries[record.tool_id] = summary
        if record.unit_handle is None:
            return
        await replace_unit(self._sink, state.channel_id, record.unit_handle, ToolCallUnit(
            tool_id=record.tool_id,
            tool_name=record.tool_name,
            input_display=format_tool_input(record.tool_name, record.normalized_input),
            status="error" if is_error else "success",
            preview=first_line_preview(raw, self._preview_length),
            has_full_content=record.tool_id in state.tool_summaries,
        ))

    async def _on_result_message(
        self, state: ChannelState, message: dict[str, Any],
    ) -> None:
        session_id = message.get("session_id")
        self._persist_session(state, session_id)

        subtype = str(message.get("subtype") or "")
        try:
            num_turns = int(message.get("num_turns") or 0)
        except (TypeError, ValueError):
            num_turns = 0
        if subtype == "success" and not message.get("is_error"):
            text = (
                "\n\n".join(state.response_text)
                or str(message.get("result") or "")
                or "Task completed"
            )
            unit = CompletionUnit(
                success=True,
                subtype=subtype,
                num_turns=num_turns,
                text=truncate_for_display(text),
                footer=f"Completed in {_plural(num_turns, 'turn')}",
                session_id=session_id,
            )
        else:
            unit = CompletionUnit(
                success=False,
                subtype=subtype,
                num_turns=num_turns,
                text=f"Task failed: {subtype or 'unknown'}",
                footer=f"Stopped after {_plural(num_turns, 'turn')}",
                session_id=session_id,
            )
        logger.info(
            "Result on channel %s: subtype=%s turns=%d",
            state.channel_id, subtype, num_turns,
        )
        await self._update_primary(state, unit)
        state.response_text.clear()
        if self._on_result is not None:
            await self._on_result(state.channel_id)

    # ── Helpers ──

    async def _update_primary(self, state: ChannelState, unit: RenderableUnit) -> None:
        slot = state.slot
        handle = slot.sink_handle if slot is not None else None
        new_handle = await replace_unit(self._sink, state.channel_id, handle, unit)
        if slot is not None and slot.sink_handle is None:
            slot.sink_handle = new_handle

    def _persist_session(self, state: ChannelState, session_id: Any) -> None:
        if not session_id or not isinstance(session_id, str):
            return
        state.session_id = session_id
        if self._store is None:
            return
        try:
            self._store.set_session(
                state.channel_id, session_id, state.channel_name or state.channel_id,
            )
        except sqlite3.Error:
            logger.exception(
                "Failed to persist session %s for channel %s",
                session_id, state.channel_id,
            )
