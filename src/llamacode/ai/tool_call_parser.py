"""Recover tool calls embedded in free-form model text.

Backends without native function calling are asked to describe tool calls in
text. Models drift between several encodings, so extraction runs an ordered
list of independent strategies; the first strategy that yields at least one
call wins:

1. Delimited JSON inside ``<tool_call>`` (or ``<tools>``/``<xml>``) tags.
2. Loose JSON objects, either bare in prose or inside fenced code blocks.
3. Positional call syntax such as ``read_file('README.md')`` for a fixed
   allow-list of tool names.

Argument keys are normalized through a synonym table after parsing. A
malformed candidate is logged and skipped without affecting its neighbours.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Protocol, Sequence, runtime_checkable

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "PARAMETER_SYNONYMS",
    "POSITIONAL_PARAMETERS",
    "ExtractedToolCall",
    "StrategyResult",
    "ExtractionStrategy",
    "DelimitedJsonStrategy",
    "LooseJsonStrategy",
    "PositionalCallStrategy",
    "ToolCallExtractor",
    "extract_tool_calls",
    "has_tool_calls",
    "normalize_arguments",
    "normalize_tool_marker_text",
    "try_parse_json_block",
]

LOGGER = logging.getLogger(__name__)

# Normalizes stylized glyphs inside tool markers emitted by some models.
# Every mapping is one character to one character so match spans stay valid
# against the original text.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("《"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("》"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u2002"): " ",
        ord("\u2003"): " ",
        ord("\u2009"): " ",
        ord("\u200b"): " ",
        ord("\u202f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

# Canonical parameter names for the keys models most often get wrong.
PARAMETER_SYNONYMS: Mapping[str, str] = {
    "path": "file_path",
    "filepath": "file_path",
    "file": "file_path",
    "filename": "file_path",
    "cmd": "command",
    "dir": "dir_path",
    "directory": "dir_path",
    "folder": "dir_path",
}

# Per-tool overrides applied before the shared table.
TOOL_PARAMETER_SYNONYMS: Mapping[str, Mapping[str, str]] = {
    "list_directory": {"path": "dir_path", "file_path": "dir_path"},
    "search_files": {"q": "query", "pattern": "query"},
    "web_search": {"q": "query"},
}

# Parameter order for positional call syntax; also the positional allow-list.
POSITIONAL_PARAMETERS: Mapping[str, tuple[str, ...]] = {
    "write_file": ("file_path", "content"),
    "read_file": ("file_path", "offset", "limit"),
    "list_directory": ("dir_path",),
    "run_shell_command": ("command",),
    "replace_in_file": ("file_path", "old_string", "new_string"),
    "edit_file": ("file_path", "old_string", "new_string"),
    "search_files": ("query",),
    "web_search": ("query",),
}

_DELIMITED_BLOCK_RE = re.compile(
    r"<\s*(?P<tag>tool_call|tools|xml)\s*>(?P<body>.*?)<\s*/\s*(?P=tag)\s*>",
    re.IGNORECASE | re.DOTALL,
)
_DELIMITED_OPEN_RE = re.compile(r"<\s*(?:tool_call|tools|xml)\s*>", re.IGNORECASE)
_FENCED_BLOCK_RE = re.compile(r"```[ \t]*(?:json|JSON|tool_call)?[ \t]*\n(?P<body>.*?)```", re.DOTALL)
_JSON_CALL_HINT_RE = re.compile(r"\"(?:name|tool|function)\"\s*:")


# -----------------------------------------------------------------------------
# Result Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExtractedToolCall:
    """A tool call recovered from text.

    Attributes:
        name: Tool name as written by the model.
        args: Arguments with normalized keys.
        strategy: Name of the strategy that produced the call.
        span: ``(start, end)`` offsets of the match in the source text.
    """

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    strategy: str = ""
    span: tuple[int, int] = (0, 0)


@dataclass(slots=True, frozen=True)
class StrategyResult:
    """Outcome of running one strategy over a text.

    ``skipped`` counts candidates that looked like tool calls but could not be
    parsed; they never invalidate the calls that did parse.
    """

    strategy: str
    calls: tuple[ExtractedToolCall, ...] = ()
    skipped: int = 0

    @property
    def matched(self) -> bool:
        return bool(self.calls)


@runtime_checkable
class ExtractionStrategy(Protocol):
    """One independent grammar for embedded tool calls."""

    name: str

    def parse(self, text: str) -> StrategyResult:
        ...

    def detect(self, text: str) -> bool:
        """Cheap check for candidate markers; may return false positives."""
        ...


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    return result if isinstance(result, dict) else None


def normalize_arguments(tool_name: str, args: Mapping[str, Any]) -> dict[str, Any]:
    """Rename synonym keys to their canonical parameter names.

    A canonical key that is already present wins over its synonyms.
    """
    overrides = TOOL_PARAMETER_SYNONYMS.get(tool_name, {})
    normalized: dict[str, Any] = {}
    renamed: dict[str, Any] = {}
    for key, value in args.items():
        lowered = str(key).strip().lower()
        canonical = overrides.get(lowered) or PARAMETER_SYNONYMS.get(lowered)
        if canonical and canonical != key:
            renamed.setdefault(canonical, value)
        else:
            normalized[key] = value
    for key, value in renamed.items():
        normalized.setdefault(key, value)
    return normalized


class _MalformedCandidate(ValueError):
    pass


_ARGUMENT_KEYS = ("arguments", "parameters", "args")


def _coerce_call(obj: Any, *, require_arguments: bool = False) -> tuple[str, dict[str, Any]] | None:
    """Map a decoded JSON value onto ``(name, args)``.

    Returns None when the object is not shaped like a tool call at all and
    raises :class:`_MalformedCandidate` when it is, but cannot be used. With
    ``require_arguments`` an object without an arguments key is not a call,
    which keeps ordinary JSON such as ``{"name": "my-package"}`` out.
    """
    if isinstance(obj, _MalformedCandidate):
        raise obj
    if not isinstance(obj, Mapping):
        return None
    if isinstance(obj.get("function"), Mapping):
        obj = obj["function"]
    if require_arguments and not any(key in obj for key in _ARGUMENT_KEYS):
        return None
    if "name" in obj:
        name = obj.get("name")
        raw_args = obj.get("arguments", obj.get("parameters", obj.get("args", {})))
    elif "tool" in obj:
        name = obj.get("tool")
        raw_args = obj.get("args", obj.get("arguments", obj.get("parameters", {})))
    else:
        return None
    if not isinstance(name, str) or not name.strip():
        raise _MalformedCandidate("tool name is missing or not a string")
    if raw_args is None:
        raw_args = {}
    if isinstance(raw_args, str):
        parsed = try_parse_json_block(raw_args) if raw_args.strip() else {}
        if parsed is None:
            raise _MalformedCandidate(f"arguments for {name!r} are not a JSON object")
        raw_args = parsed
    if not isinstance(raw_args, Mapping):
        raise _MalformedCandidate(f"arguments for {name!r} are not an object")
    name = name.strip()
    return name, normalize_arguments(name, raw_args)


def _iter_json_values(text: str, offset: int = 0) -> Iterator[tuple[Any, int, int]]:
    """Yield ``(value, start, end)`` for each top-level JSON object or array in ``text``.

    A value nested too deeply to decode is yielded as a :class:`_MalformedCandidate`
    and scanning resumes after its run of opening brackets.
    """
    decoder = json.JSONDecoder()
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char not in "{[":
            index += 1
            continue
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index += 1
            continue
        except RecursionError:
            start = index
            while index < length and text[index] in "{[ \t\r\n":
                index += 1
            yield _MalformedCandidate("JSON value is nested too deeply"), offset + start, offset + index
            continue
        yield value, offset + index, offset + end
        index = end


def _calls_from_value(value: Any) -> Iterator[Any]:
    if isinstance(value, list):
        yield from value
    else:
        yield value


# -----------------------------------------------------------------------------
# Strategy 1: Delimited JSON
# -----------------------------------------------------------------------------


class DelimitedJsonStrategy:
    """JSON payloads wrapped in ``<tool_call>`` style tags."""

    name = "delimited_json"

    def detect(self, text: str) -> bool:
        return bool(_DELIMITED_OPEN_RE.search(normalize_tool_marker_text(text)))

    def parse(self, text: str) -> StrategyResult:
        normalized = normalize_tool_marker_text(text)
        calls: list[ExtractedToolCall] = []
        skipped = 0
        for block in _DELIMITED_BLOCK_RE.finditer(normalized):
            body = block.group("body")
            body_offset = block.start("body")
            fenced = _FENCED_BLOCK_RE.search(body)
            if fenced:
                body_offset += fenced.start("body")
                body = fenced.group("body")
            found = 0
            for value, _start, _end in _iter_json_values(body, body_offset):
                for candidate in _calls_from_value(value):
                    try:
                        coerced = _coerce_call(candidate)
                    except _MalformedCandidate as exc:
                        LOGGER.warning("Skipping malformed delimited tool call: %s", exc)
                        skipped += 1
                        continue
                    if coerced is None:
                        continue
                    found += 1
                    calls.append(
                        ExtractedToolCall(
                            name=coerced[0],
                            args=coerced[1],
                            strategy=self.name,
                            span=(block.start(), block.end()),
                        )
                    )
            if not found:
                LOGGER.warning("Skipping delimited block without a usable tool call: %r", body[:120])
                skipped += 1
        return StrategyResult(self.name, tuple(calls), skipped)


# -----------------------------------------------------------------------------
# Strategy 2: Bare or fenced JSON
# -----------------------------------------------------------------------------


class LooseJsonStrategy:
    """``{name, arguments}``/``{tool, args}`` objects in prose or code fences."""

    name = "loose_json"

    def detect(self, text: str) -> bool:
        return "{" in text and bool(_JSON_CALL_HINT_RE.search(text))

    def parse(self, text: str) -> StrategyResult:
        if not self.detect(text):
            return StrategyResult(self.name)
        found: list[ExtractedToolCall] = []
        skipped = 0
        fenced_spans: list[tuple[int, int]] = []

        for block in _FENCED_BLOCK_RE.finditer(text):
            fenced_spans.append((block.start(), block.end()))
            body = block.group("body")
            calls, bad = self._scan(body, block.start("body"))
            found.extend(calls)
            skipped += bad

        bare_text = text
        for start, end in fenced_spans:
            # Blank out fenced blocks so bare scanning never reports them twice.
            bare_text = bare_text[:start] + " " * (end - start) + bare_text[end:]
        calls, bad = self._scan(bare_text, 0)
        found.extend(calls)
        skipped += bad

        found.sort(key=lambda call: call.span[0])
        return StrategyResult(self.name, tuple(found), skipped)

    def _scan(self, text: str, offset: int) -> tuple[list[ExtractedToolCall], int]:
        calls: list[ExtractedToolCall] = []
        skipped = 0
        for value, start, end in _iter_json_values(text, offset):
            for candidate in _calls_from_value(value):
                try:
                    coerced = _coerce_call(candidate, require_arguments=True)
                except _MalformedCandidate as exc:
                    LOGGER.warning("Skipping malformed JSON tool call: %s", exc)
                    skipped += 1
                    continue
                if coerced is not None:
                    calls.append(
                        ExtractedToolCall(
                            name=coerced[0],
                            args=coerced[1],
                            strategy=self.name,
                            span=(start, end),
                        )
                    )
        return calls, skipped


# -----------------------------------------------------------------------------
# Strategy 3: Positional call syntax
# -----------------------------------------------------------------------------


_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "`": "`", "0": "\0"}
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")
_KEYWORD_RE = re.compile(r"^(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.+)$", re.DOTALL)


def _find_call_end(text: str, open_index: int) -> int:
    """Return the index of the ``)`` closing the call opened at ``open_index``, or -1."""
    depth = 0
    quote: str | None = None
    index = open_index
    while index < len(text):
        char = text[index]
        if quote:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "'\"`":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
        index += 1
    return -1


def _split_arguments(body: str) -> list[str]:
    """Split on top-level commas, honouring quotes and nesting."""
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    depth = 0
    index = 0
    while index < len(body):
        char = body[index]
        if quote:
            current.append(char)
            if char == "\\" and index + 1 < len(body):
                current.append(body[index + 1])
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "'\"`":
            quote = char
            current.append(char)
        elif char in "([{":
            depth += 1
            current.append(char)
        elif char in ")]}":
            depth -= 1
            current.append(char)
        elif char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        index += 1
    tail = "".join(current).strip()
    if tail or parts:
        parts.append(tail)
    return parts


def _parse_literal(token: str) -> Any:
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"`":
        inner = token[1:-1]
        result: list[str] = []
        index = 0
        while index < len(inner):
            char = inner[index]
            if char == "\\" and index + 1 < len(inner):
                nxt = inner[index + 1]
                result.append(_ESCAPES.get(nxt, "\\" + nxt))
                index += 2
                continue
            result.append(char)
            index += 1
        return "".join(result)
    if _NUMBER_RE.match(token):
        return float(token) if "." in token else int(token)
    if token in {"true", "True"}:
        return True
    if token in {"false", "False"}:
        return False
    raise _MalformedCandidate(f"unsupported argument literal {token!r}")


class PositionalCallStrategy:
    """``tool_name('arg', ...)`` calls for an allow-list of tool names.

    Calls are only recognized at line start or after whitespace so prose that
    mentions a tool name inside other punctuation is left alone.
    """

    name = "positional_call"

    def __init__(self, parameters: Mapping[str, Sequence[str]] | None = None) -> None:
        self._parameters = {key: tuple(value) for key, value in (parameters or POSITIONAL_PARAMETERS).items()}
        names = "|".join(re.escape(name) for name in sorted(self._parameters, key=len, reverse=True))
        self._call_re = re.compile(rf"(?:^|(?<=\s))(?P<name>{names})\s*\(", re.MULTILINE)

    def detect(self, text: str) -> bool:
        return bool(self._call_re.search(text))

    def parse(self, text: str) -> StrategyResult:
        calls: list[ExtractedToolCall] = []
        skipped = 0
        position = 0
        while True:
            match = self._call_re.search(text, position)
            if match is None:
                break
            name = match.group("name")
            open_index = match.end() - 1
            close_index = _find_call_end(text, open_index)
            if close_index < 0:
                LOGGER.warning("Skipping unterminated %s(...) call", name)
                skipped += 1
                position = match.end()
                continue
            body = text[open_index + 1 : close_index]
            try:
                args = self._bind(name, body)
            except _MalformedCandidate as exc:
                LOGGER.warning("Skipping malformed %s(...) call: %s", name, exc)
                skipped += 1
            else:
                calls.append(
                    ExtractedToolCall(
                        name=name,
                        args=normalize_arguments(name, args),
                        strategy=self.name,
                        span=(match.start("name"), close_index + 1),
                    )
                )
            position = close_index + 1
        return StrategyResult(self.name, tuple(calls), skipped)

    def _bind(self, name: str, body: str) -> dict[str, Any]:
        order = self._parameters[name]
        args: dict[str, Any] = {}
        positional_index = 0
        for token in _split_arguments(body):
            if not token:
                raise _MalformedCandidate("empty argument")
            keyword = _KEYWORD_RE.match(token)
            if keyword:
                args[keyword.group("key")] = _parse_literal(keyword.group("value"))
                continue
            if positional_index >= len(order):
                raise _MalformedCandidate(f"too many positional arguments (expected at most {len(order)})")
            args[order[positional_index]] = _parse_literal(token)
            positional_index += 1
        return args


# -----------------------------------------------------------------------------
# Extractor
# -----------------------------------------------------------------------------


class ToolCallExtractor:
    """Run extraction strategies in precedence order.

    Example:
        extractor = ToolCallExtractor()
        if extractor.has_tool_calls(text):
            calls = extractor.extract(text)
    """

    def __init__(self, strategies: Sequence[ExtractionStrategy] | None = None) -> None:
        self._strategies: tuple[ExtractionStrategy, ...] = tuple(
            strategies
            if strategies is not None
            else (DelimitedJsonStrategy(), LooseJsonStrategy(), PositionalCallStrategy())
        )

    @property
    def strategies(self) -> tuple[ExtractionStrategy, ...]:
        return self._strategies

    def has_tool_calls(self, text: str) -> bool:
        if not text or not isinstance(text, str):
            return False
        return any(strategy.detect(text) for strategy in self._strategies)

    def extract_result(self, text: str) -> StrategyResult:
        """Return the result of the first strategy that produced calls."""
        if not self.has_tool_calls(text):
            return StrategyResult("none")
        skipped = 0
        for strategy in self._strategies:
            result = strategy.parse(text)
            skipped += result.skipped
            if result.matched:
                LOGGER.debug(
                    "Extracted %s tool call(s) via %s",
                    len(result.calls),
                    strategy.name,
                )
                return result
        return StrategyResult("none", (), skipped)

    def extract(self, text: str) -> list[ExtractedToolCall]:
        return list(self.extract_result(text).calls)


_DEFAULT_EXTRACTOR = ToolCallExtractor()


def extract_tool_calls(text: str) -> list[ExtractedToolCall]:
    """Extract tool calls using the default strategy order."""
    return _DEFAULT_EXTRACTOR.extract(text)


def has_tool_calls(text: str) -> bool:
    """Cheap check for any tool-call marker in ``text``."""
    return _DEFAULT_EXTRACTOR.has_tool_calls(text)
