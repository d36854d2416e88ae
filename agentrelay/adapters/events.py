"""Renderable units emitted by the session orchestrator.

Each unit is a typed dataclass the chat front end turns into a message.
The orchestrator only knows the two collaborator protocols below; their
failures are logged and never interrupt a channel.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from agentrelay.engine.permissions import PendingApproval

logger = logging.getLogger(__name__)


@dataclass
class RenderableUnit:
    """Base unit posted to (or updated in) a channel."""
    unit_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionStatus(RenderableUnit):
    """First unit of a run: starting fresh or resuming."""
    unit_type: str = "session_status"
    resumed: bool = False
    session_id: str | None = None
    working_dir: str = ""
    prompt: str = ""


@dataclass
class SessionStarted(RenderableUnit):
    unit_type: str = "session_started"
    session_id: str | None = None
    working_dir: str = ""
    model: str = ""
    tool_count: int = 0


@dataclass
class TextUpdate(RenderableUnit):
    unit_type: str = "text"
    text: str = ""


@dataclass
class ToolCallUnit(RenderableUnit):
    """One tool invocation; updated in place when its result arrives."""
    unit_type: str = "tool_call"
    tool_id: str = ""
    tool_name: str = ""
    input_display: str = ""
    # running | success | error
    status: str = "running"
    preview: str = ""
    large: bool = False
    has_full_content: bool = False


@dataclass
class CompletionUnit(RenderableUnit):
    unit_type: str = "completion"
    success: bool = True
    subtype: str = ""
    num_turns: int = 0
    text: str = ""
    # e.g. "Completed in 3 turns"
    footer: str = ""
    session_id: str | None = None


@dataclass
class FailureUnit(RenderableUnit):
    """Terminal failure: timeout, nonzero exit, spawn error, bad config."""
    unit_type: str = "failure"
    # timeout | process_failed | process_error | working_dir | cancelled
    reason: str = ""
    title: str = ""
    detail: str = ""
    exit_code: int | None = None


@dataclass
class WarningUnit(RenderableUnit):
    unit_type: str = "warning"
    text: str = ""


@dataclass
class ApprovalRequestUnit(RenderableUnit):
    unit_type: str = "approval_request"
    request_id: str = ""
    tool_name: str = ""
    input_display: str = ""
    timeout_seconds: float = 0.0
    requester_id: str = ""


@dataclass
class ApprovalOutcomeUnit(RenderableUnit):
    unit_type: str = "approval_outcome"
    request_id: str = ""
    tool_name: str = ""
    state: str = ""
    message: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class UpdateSink(Protocol):
    """Chat surface the orchestrator writes units to."""

    async def post_update(
        self, channel_id: str, unit: RenderableUnit,
    ) -> str | None: ...

    async def update_unit(self, handle: str, unit: RenderableUnit) -> None: ...


class ApprovalNotifier(Protocol):
    """Chat surface that asks a human to approve a tool call."""

    async def send_approval_request(self, approval: PendingApproval) -> str:
        """Publish the request and return the id of the notification."""
        ...

    async def approval_resolved(self, approval: PendingApproval) -> None: ...


async def post_unit(
    sink: UpdateSink | None, channel_id: str, unit: RenderableUnit,
) -> str | None:
    """Post a unit, logging (not raising) sink failures."""
    if sink is None:
        return None
    try:
        return await sink.post_update(channel_id, unit)
    except Exception:
        logger.exception(
            "Sink failed to post %s for channel %s", unit.unit_type, channel_id,
        )
        return None


async def replace_unit(
    sink: UpdateSink | None,
    channel_id: str,
    handle: str | None,
    unit: RenderableUnit,
) -> str | None:
    """Update *handle* in place, or post a new unit when there is none."""
    if sink is None:
        return None
    if handle is None:
        return await post_unit(sink, channel_id, unit)
    try:
        await sink.update_unit(handle, unit)
    except Exception:
        logger.exception(
            "Sink failed to update %s (%s) for channel %s",
            handle, unit.unit_type, channel_id,
        )
    return handle
