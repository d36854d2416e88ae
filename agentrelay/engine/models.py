"""Core data models for the session orchestrator.

All dataclasses, enums, and type aliases shared by the engine. Single
source of truth to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class MessageType(str, Enum):
    """Discriminator of a line emitted by the agent process."""
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"


class ToolRisk(str, Enum):
    """Static risk category of a tool name."""
    SAFE = "safe"
    DANGEROUS = "dangerous"
    UNKNOWN = "unknown"


class ApprovalState(str, Enum):
    """Approval lifecycle. See permissions.py for transition rules."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class Behavior(str, Enum):
    """Answer returned to the agent's permission-prompt tool."""
    ALLOW = "allow"
    DENY = "deny"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChannelContext:
    """Who asked for a run, and where the conversation lives."""
    channel_id: str
    channel_name: str
    user_id: str
    # Message that triggered the run (or the approval notification).
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "channel_name": self.channel_name,
            "user_id": self.user_id,
            "message_id": self.message_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelContext:
        return cls(
            channel_id=str(data["channel_id"]),
            channel_name=str(data.get("channel_name", "")),
            user_id=str(data.get("user_id", "")),
            message_id=data.get("message_id") or None,
        )


@dataclass
class ToolCallRecord:
    """An announced tool invocation waiting for its result."""
    tool_id: str
    tool_name: str
    normalized_input: dict[str, Any]
    # Handle of the UI unit to update when the result arrives.
    unit_handle: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PermissionDecision:
    """Decision handed back to the agent for one tool call."""
    behavior: Behavior
    updated_input: dict[str, Any] | None = None
    message: str | None = None

    @property
    def allowed(self) -> bool:
        return self.behavior == Behavior.ALLOW

    @classmethod
    def allow(cls, tool_input: dict[str, Any]) -> PermissionDecision:
        return cls(behavior=Behavior.ALLOW, updated_input=tool_input)

    @classmethod
    def deny(cls, message: str) -> PermissionDecision:
        return cls(behavior=Behavior.DENY, message=message)

    def to_dict(self) -> dict[str, Any]:
        """Shape expected by the agent CLI's permission-prompt tool."""
        if self.allowed:
            return {
                "behavior": Behavior.ALLOW.value,
                "updatedInput": self.updated_input or {},
            }
        return {
            "behavior": Behavior.DENY.value,
            "message": self.message or "Denied",
        }
