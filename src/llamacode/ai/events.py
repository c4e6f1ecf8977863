"""Canonical stream events produced by content generators.

Adapters translate backend-specific deltas into these events so the turn
processor can consume any backend through a single ``async for`` loop.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .types import FinishReason, FunctionCallPart, UsageMetadata

__all__ = [
    "ToolCallRequest",
    "ContentEvent",
    "ThoughtEvent",
    "ToolCallRequestEvent",
    "FinishedEvent",
    "ErrorEvent",
    "UserCancelledEvent",
    "ChatCompressedEvent",
    "LoopDetectedEvent",
    "ContextWindowWillOverflowEvent",
    "CitationEvent",
    "ModelInfoEvent",
    "StreamEvent",
    "TERMINAL_EVENTS",
]


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A request to run one tool, immutable once created.

    Attributes:
        call_id: Identifier unique within the owning turn.
        name: Requested tool name.
        args: Tool arguments.
        prompt_id: Identifier of the user prompt that spawned the call.
        is_client_initiated: True when issued locally rather than by the model.
    """

    call_id: str
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    prompt_id: str = ""
    is_client_initiated: bool = False

    def to_function_call(self) -> FunctionCallPart:
        return FunctionCallPart(name=self.name, args=dict(self.args), call_id=self.call_id)


@dataclass(slots=True, frozen=True)
class ContentEvent:
    text: str


@dataclass(slots=True, frozen=True)
class ThoughtEvent:
    summary: str


@dataclass(slots=True, frozen=True)
class ToolCallRequestEvent:
    request: ToolCallRequest


@dataclass(slots=True, frozen=True)
class FinishedEvent:
    reason: FinishReason = FinishReason.STOP
    usage: UsageMetadata | None = None


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    """Terminal failure; ``error`` is the originating exception."""

    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


@dataclass(slots=True, frozen=True)
class UserCancelledEvent:
    pass


@dataclass(slots=True, frozen=True)
class ChatCompressedEvent:
    original_tokens: int
    compressed_tokens: int


@dataclass(slots=True, frozen=True)
class LoopDetectedEvent:
    reason: str = ""


@dataclass(slots=True, frozen=True)
class ContextWindowWillOverflowEvent:
    estimated_request_tokens: int
    remaining_tokens: int


@dataclass(slots=True, frozen=True)
class CitationEvent:
    text: str


@dataclass(slots=True, frozen=True)
class ModelInfoEvent:
    model: str


StreamEvent = Union[
    ContentEvent,
    ThoughtEvent,
    ToolCallRequestEvent,
    FinishedEvent,
    ErrorEvent,
    UserCancelledEvent,
    ChatCompressedEvent,
    LoopDetectedEvent,
    ContextWindowWillOverflowEvent,
    CitationEvent,
    ModelInfoEvent,
]

# Events that end the meaningful content of a stream.
TERMINAL_EVENTS = (FinishedEvent, ErrorEvent, UserCancelledEvent)
