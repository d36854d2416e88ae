"""Incremental decoder for the agent's newline-delimited JSON stream.

Stdout arrives in arbitrary chunks. Complete lines are parsed and
returned in order; the unterminated tail is buffered until the next
chunk completes it. A bad complete line is a protocol violation that is
logged and skipped. A tail that does not parse yet is expected and kept
silently.
"""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class StreamDecoder:
    """Per-channel line reassembler."""

    def __init__(self, channel_id: str = "") -> None:
        self.channel_id = channel_id
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        # Tail length at the last failed tail parse, for stall detection.
        self._stalled_tail: str | None = None

    @property
    def pending(self) -> str:
        """The buffered, not yet complete tail."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Append a chunk and return every message it completes."""
        data = self._buffer + self._text.decode(chunk)
        segments = data.split("\n")
        tail = segments.pop()
        messages: list[dict[str, Any]] = []

        for line in segments:
            message = self._parse_line(line)
            if message is not None:
                messages.append(message)

        self._buffer = tail
        message = self._try_tail()
        if message is not None:
            messages.append(message)
        return messages

    def flush(self) -> list[dict[str, Any]]:
        """Drain the tail at end of stream; it is now a final line."""
        tail = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        self._stalled_tail = None
        message = self._parse_line(tail)
        return [message] if message is not None else []

    def reset(self) -> None:
        self._text.reset()
        self._buffer = ""
        self._stalled_tail = None

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        line = line.strip()
        if not line:
            return None
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning(
                "Protocol decode error on channel %s: %s (line=%r)",
                self.channel_id, exc, line[:200],
            )
            return None
        if not isinstance(message, dict):
            logger.warning(
                "Ignoring non-object protocol line on channel %s: %r",
                self.channel_id, line[:200],
            )
            return None
        return message

    def _try_tail(self) -> dict[str, Any] | None:
        """Dispatch a tail that is already a complete object.

        The agent may end its output without a trailing newline, so a
        tail that parses as an object is consumed immediately.
        """
        tail = self._buffer.strip()
        if not tail or not tail.endswith("}"):
            return None
        try:
            message = json.loads(tail)
        except json.JSONDecodeError:
            if self._stalled_tail == self._buffer:
                logger.warning(
                    "Buffered tail on channel %s failed to parse twice without "
                    "growing (%d chars)", self.channel_id, len(self._buffer),
                )
            self._stalled_tail = self._buffer
            return None
        if not isinstance(message, dict):
            return None
        self._buffer = ""
        self._stalled_tail = None
        return message
