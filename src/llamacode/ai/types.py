"""Backend-agnostic conversation and request types.

Every value in this module is frozen so requests can be shared between the
turn processor, the content generator, and backend adapters without any of
them rewriting history behind the others' backs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal, Mapping, Sequence, Union

__all__ = [
    "Role",
    "TextPart",
    "FunctionCallPart",
    "FunctionResponsePart",
    "Part",
    "Message",
    "ToolDeclaration",
    "GenerationOptions",
    "GenerationRequest",
    "FinishReason",
    "UsageMetadata",
    "GenerationResponse",
    "EmbeddingRequest",
]


Role = Literal["user", "assistant", "system"]


# -----------------------------------------------------------------------------
# Message Parts
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextPart:
    """Plain text fragment of a message."""

    text: str


@dataclass(slots=True, frozen=True)
class FunctionCallPart:
    """A tool invocation requested by the model.

    Attributes:
        name: Name of the requested tool.
        args: Arguments keyed by canonical parameter name.
        call_id: Identifier linking the call to its response.
    """

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(slots=True, frozen=True)
class FunctionResponsePart:
    """The result of a tool invocation, fed back to the model.

    Attributes:
        name: Name of the tool that produced the response.
        response: JSON-serializable payload (``{"output": ...}`` or ``{"error": ...}``).
        call_id: Identifier of the originating call.
    """

    name: str
    response: Mapping[str, Any] = field(default_factory=dict)
    call_id: str | None = None

    def render(self) -> str:
        """Return the response payload as compact JSON text."""
        try:
            return json.dumps(dict(self.response), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.response)


Part = Union[TextPart, FunctionCallPart, FunctionResponsePart]


# -----------------------------------------------------------------------------
# Message
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message made of ordered parts.

    Attributes:
        role: Who authored the message.
        parts: Ordered parts; order is preserved on the wire.
    """

    role: Role
    parts: tuple[Part, ...] = ()

    @property
    def text(self) -> str:
        """Concatenated text of all :class:`TextPart` entries."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def function_calls(self) -> tuple[FunctionCallPart, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionCallPart))

    @property
    def function_responses(self) -> tuple[FunctionResponsePart, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionResponsePart))

    @classmethod
    def user(cls, text: str) -> Message:
        """Create a user message with a single text part."""
        return cls(role="user", parts=(TextPart(text),))

    @classmethod
    def system(cls, text: str) -> Message:
        """Create a system message with a single text part."""
        return cls(role="system", parts=(TextPart(text),))

    @classmethod
    def assistant(
        cls,
        text: str = "",
        calls: Sequence[FunctionCallPart] = (),
    ) -> Message:
        """Create an assistant message; text (if any) precedes the calls."""
        parts: list[Part] = []
        if text:
            parts.append(TextPart(text))
        parts.extend(calls)
        return cls(role="assistant", parts=tuple(parts))

    @classmethod
    def tool_results(cls, responses: Sequence[FunctionResponsePart]) -> Message:
        """Create the user-role message carrying tool results."""
        return cls(role="user", parts=tuple(responses))


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDeclaration:
    """Tool schema advertised to the model."""

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to the OpenAI/Ollama function tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


@dataclass(slots=True, frozen=True)
class GenerationOptions:
    """Sampling options shared by every backend.

    Attributes:
        temperature: Sampling temperature.
        max_output_tokens: Cap on generated tokens.
        top_p: Nucleus sampling threshold.
        stop: Stop sequences.
        seed: Deterministic sampling seed where supported.
        think: Ask reasoning models to stream their thinking separately.
    """

    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    stop: tuple[str, ...] = ()
    seed: int | None = None
    think: bool = False


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    """Immutable request handed to a content generator.

    Built fresh for every submission; use :meth:`with_messages` to derive a
    continuation instead of mutating an existing request.
    """

    model: str
    messages: tuple[Message, ...]
    system_instruction: str | None = None
    tools: tuple[ToolDeclaration, ...] = ()
    options: GenerationOptions = field(default_factory=GenerationOptions)
    prompt_id: str = ""

    def with_messages(self, messages: Sequence[Message]) -> GenerationRequest:
        return replace(self, messages=tuple(messages))

    def with_system_instruction(self, system_instruction: str | None) -> GenerationRequest:
        return replace(self, system_instruction=system_instruction)


@dataclass(slots=True, frozen=True)
class EmbeddingRequest:
    """Texts to embed with an optional model override."""

    texts: tuple[str, ...]
    model: str | None = None


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class FinishReason(str, Enum):
    """Why the backend stopped generating."""

    UNSPECIFIED = "unspecified"
    STOP = "stop"
    MAX_TOKENS = "max_tokens"
    SAFETY = "safety"
    MALFORMED_FUNCTION_CALL = "malformed_function_call"
    OTHER = "other"

    @classmethod
    def from_backend(cls, value: str | None) -> FinishReason:
        """Map backend-specific finish strings onto the canonical set."""
        normalized = (value or "").strip().lower()
        if not normalized:
            return cls.UNSPECIFIED
        if normalized in {"stop", "end_turn", "tool_calls", "function_call", "load"}:
            return cls.STOP
        if normalized in {"length", "max_tokens"}:
            return cls.MAX_TOKENS
        if normalized in {"content_filter", "safety"}:
            return cls.SAFETY
        return cls.OTHER


@dataclass(slots=True, frozen=True)
class UsageMetadata:
    """Token usage reported by the backend, when available."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.prompt_tokens is None and self.completion_tokens is None:
            return None
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)


@dataclass(slots=True, frozen=True)
class GenerationResponse:
    """Result of a non-streaming generation."""

    text: str = ""
    function_calls: tuple[FunctionCallPart, ...] = ()
    finish_reason: FinishReason = FinishReason.UNSPECIFIED
    usage: UsageMetadata | None = None
    model: str | None = None
    thought: str | None = None

    def to_message(self) -> Message:
        """Convert to the assistant message appended to history."""
        return Message.assistant(self.text, self.function_calls)
