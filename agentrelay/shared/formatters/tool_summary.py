"""Tool input and result summaries for chat display.

Registry-based: each tool family has one decorated summarizer that turns
the tool input (and, once known, its result) into a short one-line
summary plus the full details that a viewer can fetch on demand.

    @tool_summarizer("Write")
    def _summarize_write(args, result, is_error, max_length):
        return ToolSummary(tool_name="Write", operation="create", summary=...)
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable

DISPLAY_LIMIT = 2000
DISPLAY_KEEP = 1900
DEFAULT_MAX_LENGTH = 3500


@dataclass
class ToolSummary:
    """Short summary plus full details of one tool operation."""

    tool_name: str
    operation: str
    summary: str
    details: str = ""
    stats: dict[str, Any] = field(default_factory=dict)
    # True when details are too long to show inline.
    has_full_content: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "operation": self.operation,
            "summary": self.summary,
            "details": self.details,
            "stats": dict(self.stats),
            "has_full_content": self.has_full_content,
        }


# ── Registry ──

_SUMMARIZERS: dict[str, Callable[..., ToolSummary]] = {}


def tool_summarizer(*names: str):
    """Register a summarizer for one or more lower-case tool names."""

    def decorator(fn: Callable[..., ToolSummary]):
        for name in names:
            _SUMMARIZERS[name] = fn
        return fn

    return decorator


def normalize_tool_name(name: str) -> str:
    """Strip an MCP server prefix.

    E.g. ``mcp__filesystem__Read`` → ``Read``.
    """
    if name.startswith("mcp__") and name.count("__") >= 2:
        return name.split("__", 2)[2]
    return name


def summarize_tool(
    tool_name: str,
    tool_input: dict[str, Any] | None,
    result: str = "",
    is_error: bool = False,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> ToolSummary:
    """Main entry point: dispatch to a registered summarizer or the default."""
    bare = normalize_tool_name(tool_name)
    summarizer = _SUMMARIZERS.get(bare.lower(), _summarize_generic)
    return summarizer(bare, tool_input or {}, result or "", is_error, max_length)


# ── Display helpers ──


def truncate_for_display(text: str) -> str:
    """Fit text into one chat message."""
    if len(text) <= DISPLAY_LIMIT:
        return text
    return text[:DISPLAY_KEEP] + "..."


def first_line_preview(content: Any, length: int) -> str:
    """First non-empty line of a tool result, bounded to *length*."""
    text = result_text(content)
    first = ""
    for line in text.splitlines():
        if line.strip():
            first = line.strip()
            break
    return _trunc(first, length)


def result_text(content: Any) -> str:
    """Flatten a tool_result payload (string or list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                if block.get("type") == "text":
                    parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return str(content)


def relativize(value: str, base_folder: str) -> str:
    """Show paths under *base_folder* relative to it."""
    base = base_folder.rstrip("/")
    if not base or base == ".":
        return value
    if value == base:
        return "."
    return value.replace(base + "/", "./")


def normalize_input(
    tool_input: dict[str, Any], base_folder: str,
) -> dict[str, Any]:
    """Copy of a tool input with string values relativized."""
    normalized: dict[str, Any] = {}
    for key, value in tool_input.items():
        if isinstance(value, str):
            normalized[key] = relativize(value, base_folder)
        else:
            normalized[key] = value
    return normalized


def format_tool_input(
    tool_name: str, tool_input: dict[str, Any], base_folder: str = "",
) -> str:
    """One-block rendering of a tool input for approval and tool units."""
    bare = normalize_tool_name(tool_name)
    args = normalize_input(tool_input, base_folder)
    if bare == "Bash" and "command" in args:
        text = f"$ {args['command']}"
        if args.get("description"):
            text += f"\n# {args['description']}"
        return truncate_for_display(text)
    if bare in ("Edit", "MultiEdit", "Write", "Read") and "file_path" in args:
        header = str(args["file_path"])
        rest = {
            k: v for k, v in args.items()
            if k not in ("file_path", "content", "old_string", "new_string", "edits")
        }
        if rest:
            header += " " + json.dumps(rest, default=str)
        return truncate_for_display(header)
    lines = []
    for key, value in args.items():
        if not isinstance(value, str):
            value = json.dumps(value, default=str)
        lines.append(f"{key}: {_trunc(value, 200)}")
    return truncate_for_display("\n".join(lines))


def _trunc(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def _basename(path: str) -> str:
    return path.rstrip("/").split("/")[-1] or "file"


def _size_kb(text: str) -> float:
    return round(len(text) / 1024, 2)


def extract_code_features(content: str) -> str:
    """Count classes, functions and imports in written code."""
    features = []
    classes = re.findall(r"class\s+\w+", content)
    if classes:
        features.append(f"{len(classes)} class{'es' if len(classes) > 1 else ''}")
    funcs = re.findall(
        r"def\s+\w+|function\s+\w+|async\s+function\s+\w+", content,
    )
    if funcs:
        features.append(f"{len(funcs)} function{'s' if len(funcs) > 1 else ''}")
    imports = re.findall(r"^(?:import|from)\s+", content, flags=re.MULTILINE)
    if imports:
        features.append(f"{len(imports)} import{'s' if len(imports) > 1 else ''}")
    return ", ".join(features)


def _edit_diff(old: str, new: str, max_length: int) -> str:
    diff: list[str] = []
    for prefix, text in (("-", old), ("+", new)):
        if not text:
            continue
        lines = text.split("\n")
        diff.extend(f"{prefix} {line}" for line in lines[:10])
        if len(lines) > 10:
            diff.append(f"... [truncated {len(lines) - 10} lines]")
    return _trunc("\n".join(diff), max_length)


def _multi_edit_details(edits: list[dict[str, Any]], max_length: int) -> str:
    details: list[str] = []
    for index, edit in enumerate(edits[:5], start=1):
        old = str(edit.get("old_string", ""))
        new = str(edit.get("new_string", ""))
        details.append(f"Change {index}:")
        details.append(f"- {_trunc(old.split(chr(10))[0], 83)}")
        details.append(f"+ {_trunc(new.split(chr(10))[0], 83)}")
        details.append("")
    if len(edits) > 5:
        details.append(f"... [{len(edits) - 5} more changes]")
    return _trunc("\n".join(details), max_length)


# ── Summarizers ──


@tool_summarizer("write")
def _summarize_write(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    content = str(args.get("content", ""))
    lines = len(content.split("\n"))
    size = _size_kb(content)
    features = extract_code_features(content)
    summary = f"Created {_basename(str(args.get('file_path', '')))} ({lines} lines, {size}KB)"
    if features:
        summary += f"\n{features}"
    return ToolSummary(
        tool_name="Write",
        operation="create",
        summary=summary,
        details=content,
        stats={"lines_added": lines, "file_size": f"{size}KB"},
        has_full_content=len(content) > 500,
    )


@tool_summarizer("edit")
def _summarize_edit(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    old = str(args.get("old_string", ""))
    new = str(args.get("new_string", ""))
    return ToolSummary(
        tool_name="Edit",
        operation="modify",
        summary=f"Modified {_basename(str(args.get('file_path', '')))}",
        details=_edit_diff(old, new, max_length),
        has_full_content=len(old + new) > 500,
    )


@tool_summarizer("multiedit")
def _summarize_multi_edit(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    edits = [e for e in args.get("edits") or [] if isinstance(e, dict)]
    details = _multi_edit_details(edits, max_length)
    return ToolSummary(
        tool_name="MultiEdit",
        operation="modify",
        summary=(
            f"Modified {_basename(str(args.get('file_path', '')))} "
            f"({len(edits)} changes)"
        ),
        details=details,
        stats={"lines_added": len(edits)},
        has_full_content=len(details) > 500,
    )


@tool_summarizer("read")
def _summarize_read(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    lines = len(result.split("\n"))
    return ToolSummary(
        tool_name="Read",
        operation="read",
        summary=f"Read {_basename(str(args.get('file_path', '')))} ({lines} lines)",
        details=result,
        stats={"file_size": f"{_size_kb(result)}KB"},
        has_full_content=len(result) > 1000,
    )


@tool_summarizer("bash")
def _summarize_bash(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    command = str(args.get("command", "unknown"))
    description = str(args.get("description", ""))
    return ToolSummary(
        tool_name="Bash",
        operation="execute",
        summary=description or f"Ran: {_trunc(command, 53)}",
        details=f"Command: {command}\n\nOutput:\n{result}",
        has_full_content=len(result) > 800,
    )


@tool_summarizer("glob", "grep")
def _summarize_search(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    pattern = args.get("pattern") or args.get("query") or "unknown"
    matches = len([line for line in result.split("\n") if line.strip()])
    is_glob = name.lower() == "glob"
    verb = "Found" if is_glob else "Searched"
    noun = "match" if matches == 1 else "matches"
    return ToolSummary(
        tool_name="Glob" if is_glob else "Grep",
        operation="search",
        summary=f'{verb} "{pattern}" ({matches} {noun})',
        details=result,
        has_full_content=len(result) > 600,
    )


def _summarize_generic(
    name: str, args: dict, result: str, is_error: bool, max_length: int,
) -> ToolSummary:
    input_str = ", ".join(f"{k}={v}" for k, v in args.items())
    summary = name
    if input_str:
        summary += f" ({_trunc(input_str, 103)})"
    return ToolSummary(
        tool_name=name,
        operation="execute",
        summary=summary,
        details=result or json.dumps(args, indent=2, default=str),
        has_full_content=len(result) > 500,
    )
