"""Tests for tool input/result summaries and display helpers."""

from __future__ import annotations

from agentrelay.shared.formatters.tool_summary import (
    DISPLAY_KEEP,
    DISPLAY_LIMIT,
    extract_code_features,
    first_line_preview,
    format_tool_input,
    normalize_input,
    normalize_tool_name,
    relativize,
    result_text,
    summarize_tool,
    truncate_for_display,
)


class TestNormalizeToolName:
    def test_plain_name(self):
        assert normalize_tool_name("Bash") == "Bash"

    def test_strips_mcp_prefix(self):
        assert normalize_tool_name("mcp__filesystem__Read") == "Read"

    def test_single_separator_is_not_a_prefix(self):
        assert normalize_tool_name("mcp__Read") == "mcp__Read"


class TestSummarizers:
    def test_write_counts_lines_and_features(self):
        content = "import os\n\nclass A:\n    def run(self):\n        pass\n"
        summary = summarize_tool("Write", {"file_path": "/srv/p/a.py", "content": content})
        assert summary.operation == "create"
        assert summary.summary.startswith("Created a.py (6 lines")
        assert "1 class" in summary.summary
        assert "1 function" in summary.summary
        assert summary.has_full_content is False

    def test_large_write_has_full_content(self):
        summary = summarize_tool("Write", {"file_path": "big.txt", "content": "x" * 600})
        assert summary.has_full_content is True
        assert summary.details == "x" * 600

    def test_edit_diff(self):
        summary = summarize_tool(
            "Edit",
            {"file_path": "src/app.py", "old_string": "a = 1", "new_string": "a = 2"},
        )
        assert summary.summary == "Modified app.py"
        assert "- a = 1" in summary.details
        assert "+ a = 2" in summary.details

    def test_multi_edit_counts_changes(self):
        edits = [{"old_string": f"v{i}", "new_string": f"w{i}"} for i in range(7)]
        summary = summarize_tool("MultiEdit", {"file_path": "m.py", "edits": edits})
        assert summary.summary == "Modified m.py (7 changes)"
        assert "[2 more changes]" in summary.details

    def test_read_uses_result(self):
        summary = summarize_tool("Read", {"file_path": "/x/notes.md"}, "one\ntwo\nthree")
        assert summary.summary == "Read notes.md (3 lines)"
        assert summary.has_full_content is False
        big = summarize_tool("Read", {"file_path": "n.md"}, "y" * 1001)
        assert big.has_full_content is True

    def test_bash_prefers_description(self):
        summary = summarize_tool("Bash", {"command": "pytest -q", "description": "Run tests"}, "ok")
        assert summary.summary == "Run tests"
        assert summary.details.startswith("Command: pytest -q")
        bare = summarize_tool("Bash", {"command": "ls"})
        assert bare.summary == "Ran: ls"

    def test_search_counts_matches(self):
        summary = summarize_tool("Grep", {"pattern": "TODO"}, "a.py:1\nb.py:2\n")
        assert summary.summary == 'Searched "TODO" (2 matches)'
        glob = summarize_tool("Glob", {"pattern": "*.py"}, "a.py")
        assert glob.summary == 'Found "*.py" (1 match)'

    def test_mcp_prefixed_tool_uses_bare_summarizer(self):
        summary = summarize_tool("mcp__fs__Read", {"file_path": "a.txt"}, "hello")
        assert summary.tool_name == "Read"

    def test_unknown_tool_generic(self):
        summary = summarize_tool("Deploy", {"env": "prod"})
        assert summary.summary == "Deploy (env=prod)"
        assert '"env": "prod"' in summary.details

    def test_to_dict(self):
        data = summarize_tool("Bash", {"command": "ls"}).to_dict()
        assert data["tool_name"] == "Bash"
        assert set(data) == {
            "tool_name", "operation", "summary", "details", "stats", "has_full_content",
        }


class TestDisplayHelpers:
    def test_truncate_for_display(self):
        assert truncate_for_display("short") == "short"
        exact = "a" * DISPLAY_LIMIT
        assert truncate_for_display(exact) == exact
        long = "b" * (DISPLAY_LIMIT + 1)
        out = truncate_for_display(long)
        assert out == "b" * DISPLAY_KEEP + "..."

    def test_first_line_preview_skips_blank_lines(self):
        assert first_line_preview("\n\n  hello world  \nmore", 100) == "hello world"
        assert first_line_preview("x" * 50, 10) == "xxxxxxx..."

    def test_result_text_flattens_blocks(self):
        blocks = [
            {"type": "text", "text": "alpha"},
            {"type": "image", "data": "..."},
            "beta",
        ]
        assert result_text(blocks) == "alpha\nbeta"
        assert result_text(None) == ""
        assert result_text(12) == "12"

    def test_relativize(self):
        assert relativize("/srv/p/a/b.py", "/srv/p") == "./a/b.py"
        assert relativize("/srv/p", "/srv/p/") == "."
        assert relativize("/other/x", "/srv/p") == "/other/x"
        assert relativize("/srv/p/x", "") == "/srv/p/x"

    def test_normalize_input_leaves_non_strings(self):
        out = normalize_input({"file_path": "/srv/p/x.py", "limit": 5}, "/srv/p")
        assert out == {"file_path": "./x.py", "limit": 5}

    def test_format_bash_input(self):
        text = format_tool_input("Bash", {"command": "rm -rf build", "description": "Clean"})
        assert text == "$ rm -rf build\n# Clean"

    def test_format_file_input_hides_bodies(self):
        text = format_tool_input(
            "Write", {"file_path": "/srv/p/a.py", "content": "secret body"}, "/srv/p",
        )
        assert text == "./a.py"

    def test_format_generic_input(self):
        text = format_tool_input("WebFetch", {"url": "https://example.com", "retries": 2})
        assert text == "url: https://example.com\nretries: 2"

    def test_extract_code_features_empty(self):
        assert extract_code_features("just text") == ""
