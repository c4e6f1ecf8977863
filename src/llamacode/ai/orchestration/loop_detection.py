"""Advisory detection of repetitive model behaviour.

The detector never stops a turn by itself. It reports a suspected loop once
per prompt and leaves the decision to the turn processor and its operator.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from typing import Any, Mapping

from ..events import ContentEvent, LoopDetectedEvent, StreamEvent, ToolCallRequestEvent

__all__ = ["LoopDetector"]

LOGGER = logging.getLogger(__name__)

_FENCE = "```"


class LoopDetector:
    """Rolling signatures of recent assistant actions within one prompt.

    Args:
        tool_threshold: Identical consecutive tool calls that count as a loop.
        content_threshold: Repetitions of the same content chunk that count as a loop.
        chunk_size: Characters per content chunk signature.
    """

    def __init__(self, *, tool_threshold: int = 5, content_threshold: int = 10, chunk_size: int = 50) -> None:
        self.tool_threshold = max(tool_threshold, 1)
        self.content_threshold = max(content_threshold, 1)
        self.chunk_size = max(chunk_size, 1)
        self._disabled = False
        self._prompt_id: str | None = None
        self._reset_state()

    @property
    def disabled(self) -> bool:
        return self._disabled

    @property
    def reported(self) -> bool:
        return self._reported

    def disable_for_session(self) -> None:
        LOGGER.info("Loop detection disabled for the rest of the session")
        self._disabled = True

    def reset(self, prompt_id: str) -> None:
        """Start tracking a new user prompt."""
        self._prompt_id = prompt_id
        self._reset_state()

    def observe(self, event: StreamEvent) -> LoopDetectedEvent | None:
        """Feed one stream event; returns an event the first time a loop is suspected."""
        if self._disabled or self._reported:
            return None
        reason: str | None = None
        if isinstance(event, ToolCallRequestEvent):
            reason = self._observe_tool_call(event.request.name, event.request.args)
        elif isinstance(event, ContentEvent):
            reason = self._observe_content(event.text)
        if reason is None:
            return None
        self._reported = True
        LOGGER.warning("Possible loop detected in prompt %s: %s", self._prompt_id, reason)
        return LoopDetectedEvent(reason)

    def _reset_state(self) -> None:
        self._reported = False
        self._last_tool_signature: str | None = None
        self._tool_repeats = 0
        self._content_buffer = ""
        self._chunk_counts: Counter[str] = Counter()
        self._in_code_block = False

    def _observe_tool_call(self, name: str, args: Mapping[str, Any]) -> str | None:
        signature = f"{name}:{_canonical(args)}"
        if signature == self._last_tool_signature:
            self._tool_repeats += 1
        else:
            self._last_tool_signature = signature
            self._tool_repeats = 1
        if self._tool_repeats >= self.tool_threshold:
            return f"Tool '{name}' was called {self._tool_repeats} times in a row with identical arguments"
        return None

    def _observe_content(self, text: str) -> str | None:
        self._content_buffer += text
        while len(self._content_buffer) >= self.chunk_size:
            chunk = self._content_buffer[: self.chunk_size]
            self._content_buffer = self._content_buffer[self.chunk_size :]
            if chunk.count(_FENCE) % 2:
                self._in_code_block = not self._in_code_block
            if self._in_code_block or not chunk.strip():
                continue
            digest = hashlib.sha256(chunk.encode("utf-8")).hexdigest()
            self._chunk_counts[digest] += 1
            if self._chunk_counts[digest] >= self.content_threshold:
                return f"The same content was repeated {self._chunk_counts[digest]} times"
        return None


def _canonical(args: Mapping[str, Any]) -> str:
    try:
        return json.dumps(args, sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(sorted(args.items()))
