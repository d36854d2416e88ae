"""Tool-use approval broker.

Safe tools are allowed immediately. Dangerous and unrecognized tools
are held until a human answers the notification, the deadline passes,
or the broker shuts down.

State Diagram:

    PENDING ──┬──> APPROVED    (requester answered yes)
              ├──> DENIED      (requester answered no, or session cleared)
              ├──> TIMED_OUT   (deadline passed, configured default applied)
              └──> CANCELLED   (broker shutdown)

Every record makes exactly one transition; terminal records are removed
so late or duplicate answers find nothing and are ignored.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentrelay.adapters.events import ApprovalNotifier
from agentrelay.shared.formatters.tool_summary import normalize_tool_name

from .errors import ApprovalCancelledError
from .models import ApprovalState, ChannelContext, PermissionDecision, ToolRisk

logger = logging.getLogger(__name__)


class KnownTool(str, Enum):
    """Agent tools with a fixed risk category."""
    READ = "Read"
    GLOB = "Glob"
    GREP = "Grep"
    LS = "LS"
    TODO_READ = "TodoRead"
    WEB_FETCH = "WebFetch"
    WEB_SEARCH = "WebSearch"
    BASH = "Bash"
    WRITE = "Write"
    EDIT = "Edit"
    MULTI_EDIT = "MultiEdit"
    TODO_WRITE = "TodoWrite"


TOOL_RISK: dict[KnownTool, ToolRisk] = {
    KnownTool.READ: ToolRisk.SAFE,
    KnownTool.GLOB: ToolRisk.SAFE,
    KnownTool.GREP: ToolRisk.SAFE,
    KnownTool.LS: ToolRisk.SAFE,
    KnownTool.TODO_READ: ToolRisk.SAFE,
    KnownTool.WEB_FETCH: ToolRisk.SAFE,
    KnownTool.WEB_SEARCH: ToolRisk.SAFE,
    KnownTool.BASH: ToolRisk.DANGEROUS,
    KnownTool.WRITE: ToolRisk.DANGEROUS,
    KnownTool.EDIT: ToolRisk.DANGEROUS,
    KnownTool.MULTI_EDIT: ToolRisk.DANGEROUS,
    KnownTool.TODO_WRITE: ToolRisk.DANGEROUS,
}

VALID_TRANSITIONS: dict[ApprovalState, set[ApprovalState]] = {
    ApprovalState.PENDING: {
        ApprovalState.APPROVED,
        ApprovalState.DENIED,
        ApprovalState.TIMED_OUT,
        ApprovalState.CANCELLED,
    },
    ApprovalState.APPROVED: set(),
    ApprovalState.DENIED: set(),
    ApprovalState.TIMED_OUT: set(),
    ApprovalState.CANCELLED: set(),
}


def classify_tool(tool_name: str) -> ToolRisk:
    """Risk category of a tool; anything unrecognized is UNKNOWN."""
    try:
        tool = KnownTool(normalize_tool_name(tool_name))
    except ValueError:
        return ToolRisk.UNKNOWN
    return TOOL_RISK[tool]


def requires_approval(tool_name: str) -> bool:
    return classify_tool(tool_name) != ToolRisk.SAFE


def _make_request_id() -> str:
    return f"approval_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass
class PendingApproval:
    """One tool call waiting on a human."""
    request_id: str
    tool_name: str
    tool_input: dict[str, Any]
    context: ChannelContext
    # Event-loop time at which the default decision applies.
    deadline: float
    timeout_seconds: float
    created_at: float = field(default_factory=time.time)
    state: ApprovalState = ApprovalState.PENDING
    # Id of the notification the approver reacts to.
    notification_id: str | None = None
    decision: PermissionDecision | None = None
    future: asyncio.Future[PermissionDecision] | None = field(
        default=None, repr=False,
    )
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.state]


class PermissionBroker:
    """Answers the agent's permission-prompt tool for every channel."""

    def __init__(
        self,
        notifier: ApprovalNotifier | None = None,
        *,
        timeout_seconds: float = 30.0,
        default_on_timeout: str = "deny",
        fallback: str = "deny",
    ) -> None:
        self._notifier = notifier
        self._timeout = timeout_seconds
        self._default_on_timeout = default_on_timeout
        self._fallback = fallback
        self._pending: dict[str, PendingApproval] = {}
        self._announce_tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def static_decision(
        self, tool_name: str, tool_input: dict[str, Any],
    ) -> PermissionDecision:
        """Decision used when nobody can be asked."""
        if classify_tool(tool_name) == ToolRisk.SAFE or self._fallback == "allow":
            return PermissionDecision.allow(tool_input)
        return PermissionDecision.deny(
            f"{tool_name} requires approval and no approver is reachable"
        )

    async def request_approval(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ChannelContext | None,
    ) -> PermissionDecision:
        """Resolve once the tool call is allowed or denied."""
        risk = classify_tool(tool_name)
        if risk == ToolRisk.SAFE:
            logger.debug("Auto-approved safe tool %s", tool_name)
            return PermissionDecision.allow(tool_input)
        if self._closed:
            return PermissionDecision.deny("Permission broker is shut down")
        if self._notifier is None or context is None:
            logger.info(
                "No approver for %s (%s), using static decision",
                tool_name, risk.value,
            )
            return self.static_decision(tool_name, tool_input)

        loop = asyncio.get_running_loop()
        pending = PendingApproval(
            request_id=_make_request_id(),
            tool_name=tool_name,
            tool_input=tool_input,
            context=context,
            deadline=loop.time() + self._timeout,
            timeout_seconds=self._timeout,
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(
            self._timeout, self._expire, pending.request_id,
        )
        self._pending[pending.request_id] = pending
        logger.info(
            "Approval requested request_id=%s tool=%s channel=%s",
            pending.request_id, tool_name, context.channel_id,
        )

        try:
            pending.notification_id = await self._notifier.send_approval_request(
                pending
            )
        except Exception:
            logger.exception(
                "Failed to send approval request %s, falling back to static decision",
                pending.request_id,
            )
            if pending.state == ApprovalState.PENDING:
                self._discard(pending)
                return self.static_decision(tool_name, tool_input)

        return await pending.future

    def resolve_by_external_signal(
        self,
        channel_id: str,
        notification_id: str,
        user_id: str,
        approved: bool,
    ) -> bool:
        """Apply a human answer; returns False when it changed nothing."""
        pending = self._find(channel_id, notification_id)
        if pending is None:
            logger.debug(
                "Approval signal ignored channel=%s notification=%s "
                "(missing or already resolved)", channel_id, notification_id,
            )
            return False
        if str(user_id) != pending.context.user_id:
            logger.warning(
                "Approval signal for %s from user %s ignored (requester is %s)",
                pending.request_id, user_id, pending.context.user_id,
            )
            return False
        if approved:
            return self._transition(
                pending, ApprovalState.APPROVED,
                PermissionDecision.allow(pending.tool_input),
            )
        return self._transition(
            pending, ApprovalState.DENIED,
            PermissionDecision.deny("Denied by user"),
        )

    def cancel_channel(self, channel_id: str) -> int:
        """Deny every pending approval of a cleared channel."""
        count = 0
        for pending in list(self._pending.values()):
            if pending.context.channel_id != channel_id:
                continue
            if self._transition(
                pending, ApprovalState.DENIED,
                PermissionDecision.deny("Session cleared"),
            ):
                count += 1
        return count

    def shutdown(self) -> None:
        """Reject every pending approval; later requests are denied."""
        self._closed = True
        pending_list = list(self._pending.values())
        for pending in pending_list:
            self._transition(pending, ApprovalState.CANCELLED, None)
        if pending_list:
            logger.info("PermissionBroker shut down, cancelled %d request(s)", len(pending_list))

    def status(self) -> dict[str, Any]:
        loop_time = None
        try:
            loop_time = asyncio.get_running_loop().time()
        except RuntimeError:
            pass
        now = time.time()
        requests = []
        for pending in self._pending.values():
            entry: dict[str, Any] = {
                "request_id": pending.request_id,
                "tool_name": pending.tool_name,
                "channel_id": pending.context.channel_id,
                "notification_id": pending.notification_id,
                "age_seconds": round(now - pending.created_at, 3),
            }
            if loop_time is not None:
                entry["remaining_seconds"] = round(
                    max(0.0, pending.deadline - loop_time), 3,
                )
            requests.append(entry)
        return {"pending_count": len(requests), "requests": requests}

    def get(self, request_id: str) -> PendingApproval | None:
        return self._pending.get(request_id)

    # ── Internals ──

    def _find(self, channel_id: str, notification_id: str) -> PendingApproval | None:
        for pending in self._pending.values():
            if (
                pending.context.channel_id == channel_id
                and pending.notification_id == notification_id
            ):
                return pending
        return None

    def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        message = (
            f"Timed out after {pending.timeout_seconds:g} seconds, "
            f"defaulted to {self._default_on_timeout}"
        )
        if self._default_on_timeout == "allow":
            decision = PermissionDecision.allow(pending.tool_input)
            decision.message = message
        else:
            decision = PermissionDecision.deny(message)
        self._transition(pending, ApprovalState.TIMED_OUT, decision)

    def _transition(
        self,
        pending: PendingApproval,
        target: ApprovalState,
        decision: PermissionDecision | None,
    ) -> bool:
        """The only place a PendingApproval changes state."""
        if target not in VALID_TRANSITIONS[pending.state]:
            logger.debug(
                "Ignoring %s -> %s for %s",
                pending.state.value, target.value, pending.request_id,
            )
            return False
        pending.state = target
        pending.decision = decision
        self._discard(pending)
        if pending.future is not None and not pending.future.done():
            if target == ApprovalState.CANCELLED:
                pending.future.set_exception(
                    ApprovalCancelledError(pending.request_id, "broker shutting down")
                )
            else:
                pending.future.set_result(decision)
        logger.info(
            "Approval %s -> %s (tool=%s channel=%s)",
            pending.request_id, target.value, pending.tool_name,
            pending.context.channel_id,
        )
        self._announce(pending)
        return True

    def _discard(self, pending: PendingApproval) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        self._pending.pop(pending.request_id, None)

    def _announce(self, pending: PendingApproval) -> None:
        if self._notifier is None or pending.notification_id is None:
            return
        task = asyncio.ensure_future(self._notify_resolved(pending))
        self._announce_tasks.add(task)
        task.add_done_callback(self._announce_tasks.discard)

    async def _notify_resolved(self, pending: PendingApproval) -> None:
        try:
            await self._notifier.approval_resolved(pending)
        except Exception:
            logger.exception(
                "Failed to announce outcome of approval %s", pending.request_id,
            )
