"""Session orchestrator engine: per-channel agent processes, stream
decoding and tool approvals.
"""
from .models import (
    ApprovalState,
    Behavior,
    ChannelContext,
    MessageType,
    PermissionDecision,
    ToolCallRecord,
    ToolRisk,
)
from .config import RelayConfig
from .errors import (
    AgentSpawnError,
    AgentTimeoutError,
    ApprovalCancelledError,
    ChannelBusyError,
    ConfigError,
    RelayError,
    WorkingDirectoryError,
)
from .stream_decoder import StreamDecoder
from .registry import ChannelState, ProcessSlot, SessionRegistry
from .permissions import PendingApproval, PermissionBroker, classify_tool
from .supervisor import ProcessSupervisor, SupervisedProcess
from .message_router import MessageRouter
from .orchestrator import SessionOrchestrator

__all__ = [
    "AgentSpawnError",
    "AgentTimeoutError",
    "ApprovalCancelledError",
    "ApprovalState",
    "Behavior",
    "ChannelBusyError",
    "ChannelContext",
    "ChannelState",
    "ConfigError",
    "MessageRouter",
    "MessageType",
    "PendingApproval",
    "PermissionBroker",
    "PermissionDecision",
    "ProcessSlot",
    "ProcessSupervisor",
    "RelayConfig",
    "RelayError",
    "SessionOrchestrator",
    "SessionRegistry",
    "StreamDecoder",
    "SupervisedProcess",
    "ToolCallRecord",
    "ToolRisk",
    "WorkingDirectoryError",
    "classify_tool",
]
