"""agentrelay: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler


def _configure_logging(level_name: str, log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentrelay.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _discover_config(explicit: str | None) -> Path | None:
    log = logging.getLogger(__name__)
    if explicit:
        path = Path(explicit)
        log.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return path
    candidate = Path.cwd() / "agentrelay.yaml"
    if candidate.exists():
        log.info("Auto-discovered config: %s", candidate)
        return candidate
    log.info("No config file found (tried %s); using environment", candidate)
    return None


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Relay chat channels to per-channel coding agent sessions",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./agentrelay.yaml if present)",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface for the HTTP server (overrides config)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port for the HTTP server, 0 picks a free one (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    level = "DEBUG" if args.verbose else os.getenv("AGENTRELAY_LOG_LEVEL", "INFO")
    log_file = _configure_logging(level, Path.home() / ".agentrelay" / "logs")
    log = logging.getLogger(__name__)

    import yaml

    from agentrelay.engine.config import RelayConfig
    from agentrelay.engine.errors import ConfigError
    from agentrelay.engine.yaml_config import load_yaml_config
    from agentrelay.server.server import RelayServer

    config_path = _discover_config(args.config)
    try:
        if config_path is not None:
            config = load_yaml_config(config_path)
        else:
            config = RelayConfig.from_env()
            config.validate()
    except (ConfigError, FileNotFoundError, yaml.YAMLError) as exc:
        log.error("Invalid configuration: %s", exc)
        sys.exit(2)

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if not args.verbose:
        logging.getLogger().setLevel(
            getattr(logging, config.log_level.upper(), logging.INFO)
        )

    log.info(
        "Starting agentrelay cwd=%s base_folder=%s host=%s port=%s log=%s",
        Path.cwd(), config.base_folder, config.host, config.port, log_file,
    )
    server = RelayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        log.info("Interrupted")
    sys.exit(0)


if __name__ == "__main__":
    main()
