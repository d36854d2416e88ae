from __future__ import annotations

import json
import os
import shlex
import sys
import time

from agentrelay.engine.command import (
    MCP_CONFIG_PREFIX,
    PERMISSION_SERVER_NAME,
    PERMISSION_TOOL,
    build_agent_command,
    build_proxy_args,
    cleanup_permission_mcp_configs,
    escape_shell_string,
    write_permission_mcp_config,
)
from agentrelay.engine.models import ChannelContext


def test_escape_shell_string_handles_single_quotes() -> None:
    assert escape_shell_string("it's") == "'it'\\''s'"
    assert shlex.split(escape_shell_string("it's \"fine\" $HOME")) == ["it's \"fine\" $HOME"]


def test_fresh_session_command() -> None:
    cmd = build_agent_command("/srv/projects/backend", "fix the tests")
    assert cmd == (
        "cd /srv/projects/backend && claude --output-format stream-json "
        "--model sonnet -p 'fix the tests' --verbose"
    )


def test_resume_command_includes_session() -> None:
    cmd = build_agent_command("/srv/p", "continue", "sess-123", model="opus")
    assert "--resume sess-123" in cmd
    assert "--model opus" in cmd
    assert cmd.index("--resume") < cmd.index("--output-format")


def test_working_dir_with_spaces_is_quoted() -> None:
    cmd = build_agent_command("/srv/my projects/a", "hi")
    assert cmd.startswith("cd '/srv/my projects/a' && ")


def test_prompt_round_trips_through_shell_parsing() -> None:
    prompt = "don't `rm -rf` $(things); echo \"ok\"\nsecond line"
    cmd = build_agent_command("/srv/p", prompt)
    tokens = shlex.split(cmd)
    assert tokens[tokens.index("-p") + 1] == prompt


def test_permission_flags_only_with_mcp_config() -> None:
    plain = build_agent_command("/srv/p", "hi")
    assert "--permission-prompt-tool" not in plain

    cmd = build_agent_command("/srv/p", "hi", mcp_config_path="/tmp/cfg.json")
    tokens = shlex.split(cmd)
    assert tokens[tokens.index("--mcp-config") + 1] == "/tmp/cfg.json"
    assert tokens[tokens.index("--permission-prompt-tool") + 1] == PERMISSION_TOOL
    assert tokens[tokens.index("--allowedTools") + 1] == f"mcp__{PERMISSION_SERVER_NAME}"


def test_proxy_args_carry_channel_context() -> None:
    context = ChannelContext("c1", "backend", "u1", "m1")
    args = build_proxy_args(context, 4321)
    assert args[:2] == ["-m", "agentrelay.engine.mcp_server.permission_proxy"]
    assert args[args.index("--port") + 1] == "4321"
    assert args[args.index("--channel-id") + 1] == "c1"
    assert args[args.index("--message-id") + 1] == "m1"

    no_message = build_proxy_args(ChannelContext("c1", "backend", "u1"), 4321)
    assert "--message-id" not in no_message


def test_write_permission_mcp_config(tmp_path) -> None:
    context = ChannelContext("c1", "backend", "u1")
    path = write_permission_mcp_config(context, 5555, tmp_path / "cfg")
    assert path.name.startswith(MCP_CONFIG_PREFIX)
    data = json.loads(path.read_text())
    server = data["mcpServers"][PERMISSION_SERVER_NAME]
    assert server["command"] == sys.executable
    assert "5555" in server["args"]


def test_cleanup_removes_only_stale_configs(tmp_path) -> None:
    context = ChannelContext("c1", "backend", "u1")
    stale = write_permission_mcp_config(context, 1, tmp_path)
    fresh = write_permission_mcp_config(context, 2, tmp_path)
    unrelated = tmp_path / "other.json"
    unrelated.write_text("{}")
    old = time.time() - 7200
    os.utime(stale, (old, old))
    os.utime(unrelated, (old, old))

    assert cleanup_permission_mcp_configs(tmp_path, 3600) == 1
    assert not stale.exists()
    assert fresh.exists()
    assert unrelated.exists()


def test_cleanup_missing_directory(tmp_path) -> None:
    assert cleanup_permission_mcp_configs(tmp_path / "nope") == 0
