"""Turn state, configuration, and results."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum

from ..cancellation import CancellationToken
from ..events import LoopDetectedEvent, ToolCallRequest
from ..types import FinishReason, GenerationOptions, GenerationRequest, Message

__all__ = [
    "TurnState",
    "TurnOutcome",
    "LoopDecision",
    "TurnConfig",
    "Turn",
    "TurnResult",
    "new_prompt_id",
]

LOGGER = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    AWAITING_LOOP_DECISION = "awaiting_loop_decision"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"


class TurnOutcome(str, Enum):
    FINISHED = "finished"
    ERROR = "error"
    CANCELLED = "cancelled"
    LOOP_HALTED = "loop_halted"
    CONTEXT_OVERFLOW = "context_overflow"
    MAX_TURNS = "max_turns"


class LoopDecision(str, Enum):
    """Operator answer to a suspected loop."""

    DISABLE = "disable"
    KEEP = "keep"


@dataclass(slots=True, frozen=True)
class TurnConfig:
    """Configuration for turns driven by :class:`TurnProcessor`.

    Attributes:
        model: Model name placed in every request.
        system_instruction: Optional system prompt.
        options: Sampling options.
        max_iterations: Model round-trips allowed per user prompt.
        flush_threshold: Buffered characters before pending text is split
            at a safe markdown boundary and flushed to the transcript.
    """

    model: str
    system_instruction: str | None = None
    options: GenerationOptions = field(default_factory=GenerationOptions)
    max_iterations: int = 25
    flush_threshold: int = 2000


def new_prompt_id() -> str:
    return f"prompt_{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class Turn:
    """Transient aggregate owned by the turn processor.

    ``text`` accumulates across every model response of the turn and is only
    ever appended to; ``response_text`` and ``batch`` hold the current
    response.
    """

    prompt_id: str
    token: CancellationToken
    request: GenerationRequest | None = None
    iterations: int = 0
    text: list[str] = field(default_factory=list)
    response_text: list[str] = field(default_factory=list)
    batch: list[ToolCallRequest] = field(default_factory=list)
    seen_call_ids: set[str] = field(default_factory=set)
    loop_event: LoopDetectedEvent | None = None
    finish_reason: FinishReason | None = None

    def begin_response(self, request: GenerationRequest) -> None:
        self.request = request
        self.response_text = []
        self.batch = []
        self.loop_event = None
        self.finish_reason = None

    def append_text(self, text: str) -> None:
        self.text.append(text)
        self.response_text.append(text)

    @property
    def current_text(self) -> str:
        return "".join(self.response_text)

    def add_call(self, request: ToolCallRequest) -> ToolCallRequest:
        """Add ``request`` to the batch, re-keying an id already used in this turn."""
        if not request.call_id or request.call_id in self.seen_call_ids:
            fresh = f"{request.call_id or 'call'}_{uuid.uuid4().hex[:8]}"
            LOGGER.debug("Re-keying duplicate tool call id %r as %s", request.call_id, fresh)
            request = replace(request, call_id=fresh)
        if not request.prompt_id:
            request = replace(request, prompt_id=self.prompt_id)
        self.seen_call_ids.add(request.call_id)
        self.batch.append(request)
        return request

    def assistant_message(self, *, include_calls: bool = True) -> Message | None:
        calls = [call.to_function_call() for call in self.batch] if include_calls else []
        text = self.current_text
        if not text and not calls:
            return None
        return Message.assistant(text, calls)


@dataclass(slots=True, frozen=True)
class TurnResult:
    """How a turn ended.

    Attributes:
        outcome: Terminal outcome.
        prompt_id: Identifier of the user prompt.
        text: All assistant text streamed during the turn.
        new_messages: Messages appended to history by this turn, in order.
        error: The failure for ``ERROR`` outcomes.
        iterations: Model round-trips performed.
        finish_reason: Finish reason of the last model response.
    """

    outcome: TurnOutcome
    prompt_id: str
    text: str = ""
    new_messages: tuple[Message, ...] = ()
    error: BaseException | None = None
    iterations: int = 0
    finish_reason: FinishReason | None = None
