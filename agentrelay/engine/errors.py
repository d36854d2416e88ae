"""Exception hierarchy for the session orchestrator.

Specific exceptions for each failure mode. Sink and notifier failures
are logged where they happen and never surface through these types.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all agentrelay errors."""


class AgentSpawnError(RelayError):
    """Failed to start the agent process for a channel."""
    def __init__(self, channel_id: str, reason: str):
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(f"Failed to spawn agent for channel {channel_id}: {reason}")


class AgentTimeoutError(RelayError):
    """Agent process exceeded the watchdog budget."""
    def __init__(self, channel_id: str, timeout_seconds: float):
        self.channel_id = channel_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Agent for channel {channel_id} timed out after {timeout_seconds}s"
        )


class ChannelBusyError(RelayError):
    """The channel already holds a live or reserved agent process."""
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(
            f"Channel {channel_id} is already running an agent session"
        )


class WorkingDirectoryError(RelayError):
    """The working directory bound to a channel does not exist."""
    def __init__(self, channel_id: str, path: str):
        self.channel_id = channel_id
        self.path = path
        super().__init__(
            f"Working directory for channel {channel_id} not found: {path}"
        )


class ApprovalCancelledError(RelayError):
    """A pending approval was rejected without a decision."""
    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Approval {request_id} cancelled: {reason}")


class ConfigError(RelayError):
    """A configuration value is missing or invalid."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key}: {reason}")
