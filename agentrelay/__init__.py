"""agentrelay: drive a coding agent CLI from chat, one session per channel."""

__version__ = "0.1.0"
