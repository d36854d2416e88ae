"""YAML configuration loader.

Overlays a YAML file on top of the environment-derived RelayConfig.

Example YAML:
    relay:
      base_folder: /srv/projects
      allowed_user_id: "123456789"
      agent_command: claude
      model: sonnet
      process_timeout_seconds: 300
      ignored_channels: [general, random]

    approvals:
      timeout_seconds: 45
      default_on_timeout: deny
      fallback: deny

    sessions:
      db_path: ~/.agentrelay/sessions.db
      max_age_days: 30

    server:
      host: 127.0.0.1
      port: 8765
      log_level: INFO
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# section -> {yaml key: RelayConfig field}
_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "relay": {
        "base_folder": "base_folder",
        "allowed_user_id": "allowed_user_id",
        "agent_command": "agent_command",
        "model": "model",
        "process_timeout_seconds": "process_timeout_seconds",
        "large_input_threshold": "large_input_threshold",
        "result_preview_length": "result_preview_length",
        "ignored_channels": "ignored_channels",
        "mcp_config_dir": "mcp_config_dir",
    },
    "approvals": {
        "timeout_seconds": "approval_timeout_seconds",
        "default_on_timeout": "approval_default_on_timeout",
        "fallback": "approval_fallback",
    },
    "sessions": {
        "db_path": "session_db_path",
        "max_age_days": "session_max_age_days",
    },
    "server": {
        "host": "host",
        "port": "port",
        "log_level": "log_level",
    },
}

_FLOAT_FIELDS = {"process_timeout_seconds", "approval_timeout_seconds"}
_INT_FIELDS = {
    "large_input_threshold", "result_preview_length",
    "session_max_age_days", "port",
}


def _coerce(field_name: str, value: Any) -> Any:
    try:
        if field_name in _FLOAT_FIELDS:
            return float(value)
        if field_name in _INT_FIELDS:
            return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(field_name, str(exc)) from exc
    if field_name == "ignored_channels":
        if not isinstance(value, list):
            raise ConfigError(field_name, "expected a list of channel names")
        return [str(v) for v in value]
    if field_name in ("approval_default_on_timeout", "approval_fallback"):
        return str(value).lower()
    if field_name in ("session_db_path", "mcp_config_dir", "base_folder"):
        return str(Path(str(value)).expanduser())
    if field_name == "allowed_user_id":
        return str(value) if value is not None else None
    return value


def load_yaml_config(
    path: str | Path, base: RelayConfig | None = None,
) -> RelayConfig:
    """Load a YAML file and overlay it on *base* (default: env config)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else RelayConfig.from_env()
    for section, fields in _SECTION_FIELDS.items():
        values = raw.get(section) or {}
        if not isinstance(values, dict):
            raise ConfigError(section, "section must be a mapping")
        for key, value in values.items():
            field_name = fields.get(key)
            if field_name is None:
                logger.warning(
                    "load_yaml_config: ignoring unknown key %s.%s", section, key,
                )
                continue
            setattr(config, field_name, _coerce(field_name, value))

    for section in top_sections:
        if section not in _SECTION_FIELDS:
            logger.warning("load_yaml_config: ignoring unknown section %s", section)

    config.validate()
    return config
