"""Tests for ai/tool_call_parser.py."""

from __future__ import annotations

import logging

import pytest

from llamacode.ai.tool_call_parser import (
    DelimitedJsonStrategy,
    LooseJsonStrategy,
    PositionalCallStrategy,
    ToolCallExtractor,
    extract_tool_calls,
    has_tool_calls,
    normalize_arguments,
    normalize_tool_marker_text,
)


# -----------------------------------------------------------------------------
# Tests: Delimited JSON
# -----------------------------------------------------------------------------


class TestDelimitedJson:
    """Tests for <tool_call> blocks."""

    def test_extracts_calls_in_order_with_normalized_keys(self) -> None:
        text = (
            "Let me look around.\n"
            '<tool_call>{"name": "list_directory", "arguments": {"path": "src"}}</tool_call>\n'
            'and then <tool_call>{"name": "read_file", "arguments": {"filepath": "README.md"}}</tool_call>'
        )

        calls = extract_tool_calls(text)

        assert [call.name for call in calls] == ["list_directory", "read_file"]
        assert calls[0].args == {"dir_path": "src"}
        assert calls[1].args == {"file_path": "README.md"}
        assert all(call.strategy == "delimited_json" for call in calls)

    def test_tool_args_shape(self) -> None:
        text = '<tools>{"tool": "run_shell_command", "args": {"cmd": "ls -la"}}</tools>'

        calls = extract_tool_calls(text)

        assert len(calls) == 1
        assert calls[0].name == "run_shell_command"
        assert calls[0].args == {"command": "ls -la"}

    def test_stylized_markers_are_normalized(self) -> None:
        text = '＜tool_call＞{"name": "read_file", "arguments": {"file_path": "a.txt"}}＜/tool_call＞'

        calls = extract_tool_calls(text)

        assert [call.name for call in calls] == ["read_file"]
        assert normalize_tool_marker_text("＜x＞") == "<x>"

    def test_fenced_json_inside_tags(self) -> None:
        text = '<tool_call>\n```json\n{"name": "read_file", "arguments": {"path": "b.py"}}\n```\n</tool_call>'

        calls = extract_tool_calls(text)

        assert calls[0].args == {"file_path": "b.py"}

    def test_string_arguments_are_decoded(self) -> None:
        text = '<tool_call>{"name": "read_file", "arguments": "{\\"path\\": \\"c.md\\"}"}</tool_call>'

        calls = extract_tool_calls(text)

        assert calls[0].args == {"file_path": "c.md"}

    def test_malformed_block_is_skipped_without_losing_neighbours(self, caplog: pytest.LogCaptureFixture) -> None:
        text = (
            "<tool_call>{not json at all}</tool_call>\n"
            '<tool_call>{"name": "read_file", "arguments": {"file_path": "ok.txt"}}</tool_call>'
        )

        with caplog.at_level(logging.WARNING):
            result = DelimitedJsonStrategy().parse(text)

        assert [call.args["file_path"] for call in result.calls] == ["ok.txt"]
        assert result.skipped == 1
        assert any("Skipping" in record.message for record in caplog.records)

    def test_spans_point_at_the_block(self) -> None:
        prefix = "text "
        block = '<tool_call>{"name": "read_file", "arguments": {}}</tool_call>'

        (call,) = extract_tool_calls(prefix + block)

        assert call.span == (len(prefix), len(prefix) + len(block))


# -----------------------------------------------------------------------------
# Tests: Loose JSON
# -----------------------------------------------------------------------------


class TestLooseJson:
    """Tests for bare and fenced JSON objects."""

    def test_bare_json_in_prose(self) -> None:
        text = 'I will call {"name": "read_file", "arguments": {"file": "setup.cfg"}} now.'

        calls = extract_tool_calls(text)

        assert len(calls) == 1
        assert calls[0].strategy == "loose_json"
        assert calls[0].args == {"file_path": "setup.cfg"}

    def test_fenced_and_bare_are_ordered_without_duplicates(self) -> None:
        text = (
            '{"name": "list_directory", "arguments": {"dir": "."}}\n'
            "```json\n"
            '{"name": "read_file", "arguments": {"path": "x.py"}}\n'
            "```\n"
            '{"tool": "web_search", "args": {"q": "ollama"}}'
        )

        calls = extract_tool_calls(text)

        assert [call.name for call in calls] == ["list_directory", "read_file", "web_search"]
        assert calls[2].args == {"query": "ollama"}

    def test_plain_json_without_arguments_is_not_a_call(self) -> None:
        text = 'The manifest says {"name": "my-package", "version": "1.0"}.'

        assert LooseJsonStrategy().parse(text).calls == ()
        assert extract_tool_calls(text) == []

    def test_function_wrapper_shape(self) -> None:
        text = '{"type": "function", "function": {"name": "read_file", "arguments": {"path": "a"}}}'

        calls = extract_tool_calls(text)

        assert calls[0].name == "read_file"
        assert calls[0].args == {"file_path": "a"}

    def test_delimited_wins_over_loose(self) -> None:
        text = (
            '{"name": "web_search", "arguments": {"query": "x"}}\n'
            '<tool_call>{"name": "read_file", "arguments": {"file_path": "y"}}</tool_call>'
        )

        calls = extract_tool_calls(text)

        assert [call.name for call in calls] == ["read_file"]

    def test_deeply_nested_json_is_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        text = '{"name": "read_file", "arguments": {"file_path": "a"}} ' + "[" * 100_000

        with caplog.at_level(logging.WARNING, logger="llamacode.ai.tool_call_parser"):
            result = LooseJsonStrategy().parse(text)

        assert [call.name for call in result.calls] == ["read_file"]
        assert result.skipped == 1
        assert "nested too deeply" in caplog.text
        assert [call.args for call in extract_tool_calls(text)] == [{"file_path": "a"}]


# -----------------------------------------------------------------------------
# Tests: Positional calls
# -----------------------------------------------------------------------------


class TestPositionalCalls:
    """Tests for name(arg, ...) syntax."""

    def test_positional_arguments_follow_ordering_table(self) -> None:
        text = "Sure.\nwrite_file('notes.txt', 'hello, world\\n')"

        calls = extract_tool_calls(text)

        assert len(calls) == 1
        assert calls[0].name == "write_file"
        assert calls[0].args == {"file_path": "notes.txt", "content": "hello, world\n"}
        assert calls[0].strategy == "positional_call"

    def test_keyword_form(self) -> None:
        calls = extract_tool_calls("run_shell_command(cmd='git status')")

        assert calls[0].args == {"command": "git status"}

    def test_requires_line_start_or_whitespace(self) -> None:
        text = "Call it like `read_file('x')` or foo.read_file('y')"

        assert PositionalCallStrategy().parse(text).calls == ()

    def test_unknown_names_are_ignored(self) -> None:
        assert extract_tool_calls("delete_everything('/')") == []

    def test_numbers_and_multiple_calls(self) -> None:
        text = "read_file(\"a.py\", 10, 20)\nlist_directory('src')"

        calls = extract_tool_calls(text)

        assert calls[0].args == {"file_path": "a.py", "offset": 10, "limit": 20}
        assert calls[1].args == {"dir_path": "src"}

    def test_backtick_quoted_arguments(self) -> None:
        calls = extract_tool_calls("read_file(`a.txt`)\nwrite_file(`notes.md`, `it's, done`)")

        assert calls[0].args == {"file_path": "a.txt"}
        assert calls[1].args == {"file_path": "notes.md", "content": "it's, done"}

    def test_too_many_arguments_is_skipped(self) -> None:
        result = PositionalCallStrategy().parse("list_directory('a', 'b')")

        assert result.calls == ()
        assert result.skipped == 1


# -----------------------------------------------------------------------------
# Tests: Extractor surface
# -----------------------------------------------------------------------------


class TestExtractor:
    """Tests for has_tool_calls and precedence."""

    def test_plain_text_has_no_tool_calls(self) -> None:
        text = "Here is a summary of the repository layout."

        assert has_tool_calls(text) is False
        assert extract_tool_calls(text) == []

    def test_empty_input(self) -> None:
        assert has_tool_calls("") is False
        assert ToolCallExtractor().extract_result("").strategy == "none"

    def test_extraction_is_deterministic(self) -> None:
        text = '<tool_call>{"name": "read_file", "arguments": {"path": "a"}}</tool_call>'

        assert extract_tool_calls(text) == extract_tool_calls(text)

    def test_custom_strategy_order(self) -> None:
        extractor = ToolCallExtractor([PositionalCallStrategy()])
        text = '<tool_call>{"name": "web_search", "arguments": {}}</tool_call>\nread_file("z")'

        assert [call.name for call in extractor.extract(text)] == ["read_file"]


class TestNormalizeArguments:
    """Tests for the synonym table."""

    def test_shared_synonyms(self) -> None:
        assert normalize_arguments("read_file", {"path": "a"}) == {"file_path": "a"}
        assert normalize_arguments("run_shell_command", {"cmd": "ls"}) == {"command": "ls"}
        assert normalize_arguments("glob", {"folder": "src"}) == {"dir_path": "src"}

    def test_per_tool_override(self) -> None:
        assert normalize_arguments("list_directory", {"path": "src"}) == {"dir_path": "src"}

    def test_canonical_key_wins(self) -> None:
        assert normalize_arguments("read_file", {"file_path": "a", "path": "b"}) == {"file_path": "a"}
