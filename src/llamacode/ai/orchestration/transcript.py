"""Presentation-facing transcript of a session.

The turn processor never renders anything itself. It reports finalized
items and the live pending item to a :class:`TranscriptSink`; a terminal UI,
a log, or a test can sit behind that protocol.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, runtime_checkable

from ..types import FinishReason

__all__ = [
    "TranscriptKind",
    "TranscriptItem",
    "TranscriptSink",
    "RecordingTranscript",
    "StreamingTextBuffer",
    "find_last_safe_split_point",
    "finish_reason_message",
    "FINISH_REASON_MESSAGES",
    "REQUEST_CANCELLED_MESSAGE",
    "USER_CANCELLED_MESSAGE",
    "LOOP_HALTED_MESSAGE",
    "max_turns_message",
    "compression_message",
    "context_overflow_message",
]

LOGGER = logging.getLogger(__name__)

_FENCE = "```"

REQUEST_CANCELLED_MESSAGE = "Request cancelled."
USER_CANCELLED_MESSAGE = "User cancelled the request."
LOOP_HALTED_MESSAGE = (
    "A potential loop was detected. This can happen due to repetitive tool calls or other model "
    "behavior. The request has been halted."
)

FINISH_REASON_MESSAGES: dict[FinishReason, str | None] = {
    FinishReason.UNSPECIFIED: None,
    FinishReason.STOP: None,
    FinishReason.MAX_TOKENS: "Response truncated due to token limits.",
    FinishReason.SAFETY: "Response stopped due to safety reasons.",
    FinishReason.MALFORMED_FUNCTION_CALL: "Response stopped due to malformed function call.",
    FinishReason.OTHER: "Response stopped for other reasons.",
}


def finish_reason_message(reason: FinishReason | None) -> str | None:
    """Notice shown for a finish reason, or None when the stop was normal."""
    if reason is None:
        return None
    return FINISH_REASON_MESSAGES.get(reason)


def max_turns_message(limit: int) -> str:
    return (
        f"The session has reached the maximum number of turns: {limit}. "
        "Raise max_session_turns in ~/.llamacode/settings.json or set LLAMACODE_MAX_TURNS."
    )


def compression_message(model: str, original_tokens: int | None, compressed_tokens: int | None) -> str:
    before = "unknown" if original_tokens is None else original_tokens
    after = "unknown" if compressed_tokens is None else compressed_tokens
    return (
        f"IMPORTANT: This conversation approached the input token limit for {model}. "
        f"A compressed context will be sent for future messages (compressed from: {before} to {after} tokens)."
    )


def context_overflow_message(estimated: int, remaining: int, limit: int | None = None) -> str:
    text = (
        f"Sending this message ({estimated} tokens) might exceed the remaining context window limit "
        f"({remaining} tokens)."
    )
    if limit and remaining < limit * 0.75:
        text += " Please try reducing the size of your message or use the `/compress` command to compress the chat history."
    return text


# -----------------------------------------------------------------------------
# Items and sinks
# -----------------------------------------------------------------------------


class TranscriptKind(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    ASSISTANT_CONTENT = "assistant_content"
    THOUGHT = "thought"
    TOOL_GROUP = "tool_group"
    INFO = "info"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class TranscriptItem:
    """One finalized entry of the transcript."""

    kind: TranscriptKind
    text: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class TranscriptSink(Protocol):
    def add(self, item: TranscriptItem) -> None:
        """Append a finalized item."""
        ...

    def update_pending(self, item: TranscriptItem | None) -> None:
        """Replace the live item still being streamed; None clears it."""
        ...


class RecordingTranscript:
    """Transcript sink that keeps everything in memory."""

    def __init__(self) -> None:
        self.items: list[TranscriptItem] = []
        self.pending: TranscriptItem | None = None

    def add(self, item: TranscriptItem) -> None:
        self.items.append(item)

    def update_pending(self, item: TranscriptItem | None) -> None:
        self.pending = item

    def texts(self, kind: TranscriptKind | None = None) -> list[str]:
        return [item.text for item in self.items if kind is None or item.kind is kind]


# -----------------------------------------------------------------------------
# Markdown-safe streaming
# -----------------------------------------------------------------------------


def _inside_code_block(text: str, index: int) -> bool:
    return text.count(_FENCE, 0, index) % 2 == 1


def find_last_safe_split_point(text: str) -> int:
    """Index at which ``text`` can be split without breaking markdown.

    When the text ends inside a fenced code block the split happens at the
    start of that block. Otherwise it happens after the last blank line that
    is not inside a code block. Returns ``len(text)`` when no split point
    exists.
    """
    if _inside_code_block(text, len(text)):
        start = text.rfind(_FENCE)
        return start if start > 0 else len(text)

    search_end = len(text)
    while search_end > 0:
        index = text.rfind("\n\n", 0, search_end)
        if index == -1:
            break
        split = index + 2
        if not _inside_code_block(text, index):
            return split
        search_end = index
    return len(text)


class StreamingTextBuffer:
    """Accumulates streamed assistant text for one transcript.

    Content is kept as the pending item; once the buffer exceeds
    ``flush_threshold`` characters it is split at a safe point and the head
    is finalized. The first finalized chunk of a response is an
    ``ASSISTANT`` item, later chunks are ``ASSISTANT_CONTENT``.
    """

    def __init__(self, sink: TranscriptSink, *, flush_threshold: int = 2000) -> None:
        self._sink = sink
        self._threshold = max(flush_threshold, 1)
        self._buffer = ""
        self._kind = TranscriptKind.ASSISTANT

    @property
    def text(self) -> str:
        return self._buffer

    def append(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        if len(self._buffer) >= self._threshold:
            split = find_last_safe_split_point(self._buffer)
            if 0 < split < len(self._buffer):
                head, self._buffer = self._buffer[:split], self._buffer[split:]
                self._sink.add(TranscriptItem(self._kind, head))
                self._kind = TranscriptKind.ASSISTANT_CONTENT
        self._sink.update_pending(TranscriptItem(self._kind, self._buffer))

    def flush(self) -> None:
        """Finalize whatever is buffered and clear the pending item."""
        if self._buffer:
            self._sink.add(TranscriptItem(self._kind, self._buffer))
        self._buffer = ""
        self._kind = TranscriptKind.ASSISTANT
        self._sink.update_pending(None)
