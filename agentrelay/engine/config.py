"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTRELAY_* env vars,
plus the BASE_FOLDER / ALLOWED_USER_ID / MCP_* names used by existing
deployments.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_PREFIXES = ("AGENTRELAY_", "MCP_")
_ENV_NAMES = {"BASE_FOLDER", "ALLOWED_USER_ID"}
_DECISIONS = {"allow", "deny"}


def _default_session_db() -> str:
    return str(Path.home() / ".agentrelay" / "sessions.db")


@dataclass
class RelayConfig:
    """Session orchestrator configuration."""

    # Root folder holding one working directory per channel name.
    base_folder: str = "."
    # When set, only this user may submit prompts or answer approvals.
    allowed_user_id: str | None = None

    # Agent CLI invocation
    agent_command: str = "claude"
    model: str = "sonnet"
    # Wall-clock watchdog per spawned process.
    process_timeout_seconds: float = 300.0

    # Interactive approvals
    approval_timeout_seconds: float = 30.0
    approval_default_on_timeout: str = "deny"
    # Static decision for non-safe tools when nobody can be asked.
    approval_fallback: str = "deny"

    # Tool inputs serialized past this many characters are summarized.
    large_input_threshold: int = 2000
    result_preview_length: int = 100

    ignored_channels: list[str] = field(default_factory=lambda: ["general"])

    # Persistence
    session_db_path: str = field(default_factory=_default_session_db)
    session_max_age_days: int = 30

    # Permission-hook MCP config files
    mcp_config_dir: str = field(default_factory=tempfile.gettempdir)
    mcp_config_max_age_seconds: float = 3600.0

    # HTTP front end
    host: str = "127.0.0.1"
    port: int = 0

    # Logging
    log_level: str = "INFO"

    def is_ignored(self, channel_name: str) -> bool:
        return channel_name in self.ignored_channels

    def validate(self) -> None:
        """Raise ConfigError for values the orchestrator cannot run with."""
        if not self.base_folder:
            raise ConfigError("base_folder", "must not be empty")
        if self.approval_default_on_timeout not in _DECISIONS:
            raise ConfigError(
                "approval_default_on_timeout",
                f"expected allow or deny, got {self.approval_default_on_timeout!r}",
            )
        if self.approval_fallback not in _DECISIONS:
            raise ConfigError(
                "approval_fallback",
                f"expected allow or deny, got {self.approval_fallback!r}",
            )
        if self.process_timeout_seconds <= 0:
            raise ConfigError("process_timeout_seconds", "must be positive")
        if self.approval_timeout_seconds <= 0:
            raise ConfigError("approval_timeout_seconds", "must be positive")

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith(_ENV_PREFIXES) or k in _ENV_NAMES
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no env overrides set, using defaults")

        defaults = cls()
        config = cls(
            base_folder=os.getenv("BASE_FOLDER", defaults.base_folder),
            allowed_user_id=os.getenv("ALLOWED_USER_ID") or None,
            agent_command=os.getenv(
                "AGENTRELAY_AGENT_COMMAND", defaults.agent_command
            ),
            model=os.getenv("AGENTRELAY_MODEL", defaults.model),
            process_timeout_seconds=float(os.getenv(
                "AGENTRELAY_PROCESS_TIMEOUT",
                str(defaults.process_timeout_seconds),
            )),
            approval_timeout_seconds=float(os.getenv(
                "MCP_APPROVAL_TIMEOUT", str(defaults.approval_timeout_seconds)
            )),
            approval_default_on_timeout=os.getenv(
                "MCP_DEFAULT_ON_TIMEOUT", defaults.approval_default_on_timeout
            ).lower(),
            approval_fallback=os.getenv(
                "AGENTRELAY_APPROVAL_FALLBACK", defaults.approval_fallback
            ).lower(),
            session_db_path=os.getenv(
                "AGENTRELAY_SESSION_DB", defaults.session_db_path
            ),
            host=os.getenv("AGENTRELAY_HOST", defaults.host),
            port=int(os.getenv("AGENTRELAY_PORT", str(defaults.port))),
            log_level=os.getenv("AGENTRELAY_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "RelayConfig.from_env: base_folder=%s model=%s timeout=%.0fs "
            "approval_timeout=%.0fs default_on_timeout=%s",
            config.base_folder, config.model, config.process_timeout_seconds,
            config.approval_timeout_seconds, config.approval_default_on_timeout,
        )
        return config
