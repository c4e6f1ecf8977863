"""Shared machinery for backend adapters.

An adapter turns a :class:`GenerationRequest` into one backend's wire format
and turns that backend's stream back into canonical events. Subclasses only
implement the raw stream; this base class decides per model whether tool
schemas travel natively or through the text protocol, and in the latter case
recovers tool calls from the completed text before reporting completion.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Mapping, Sequence

from ..cancellation import CancellationToken
from ..events import (
    ContentEvent,
    ErrorEvent,
    FinishedEvent,
    StreamEvent,
    ThoughtEvent,
    ToolCallRequest,
    ToolCallRequestEvent,
    UserCancelledEvent,
)
from ..tool_call_parser import ToolCallExtractor
from ..types import (
    FinishReason,
    FunctionCallPart,
    GenerationRequest,
    GenerationResponse,
    UsageMetadata,
)
from .tool_prompt import merge_system_instruction

__all__ = [
    "ToolMode",
    "AdapterConfig",
    "CapabilityCache",
    "BackendAdapter",
    "new_call_id",
]

LOGGER = logging.getLogger(__name__)


class ToolMode(str, Enum):
    """How tool schemas reach the model."""

    AUTO = "auto"
    NATIVE = "native"
    TEXT = "text"

    @classmethod
    def parse(cls, value: str | ToolMode | None) -> ToolMode:
        if isinstance(value, ToolMode):
            return value
        normalized = (value or "").strip().lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        return cls.AUTO


@dataclass(slots=True)
class AdapterConfig:
    """Connection settings shared by all adapters.

    Attributes:
        base_url: Backend root URL.
        model: Default model name.
        api_key: Credential for OpenAI-compatible servers.
        timeout: Connect and initial-response timeout in seconds; streams
            themselves are never timed out once they have started.
        tool_mode: Native tool calling, text protocol, or probe per model.
        embedding_model: Model used by :meth:`BackendAdapter.embed`.
        debug_logging: Log serialized request payloads.
        default_headers: Extra HTTP headers.
    """

    base_url: str
    model: str
    api_key: str | None = None
    timeout: float | None = 60.0
    tool_mode: ToolMode = ToolMode.AUTO
    embedding_model: str = "nomic-embed-text"
    debug_logging: bool = False
    default_headers: Mapping[str, str] | None = None


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class CapabilityCache:
    """Session cache of per-model native tool-calling support."""

    def __init__(self) -> None:
        self._entries: dict[str, bool] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def peek(self, model: str) -> bool | None:
        return self._entries.get(model)

    def set(self, model: str, supported: bool) -> None:
        self._entries[model] = supported

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_probe(self, model: str, probe: Callable[[str], Awaitable[bool | None]]) -> bool:
        """Return the cached answer, probing once per model when missing.

        A probe returning None (inconclusive) is not cached and is treated as
        no native support for this request only.
        """
        cached = self._entries.get(model)
        if cached is not None:
            return cached
        lock = self._locks.setdefault(model, asyncio.Lock())
        async with lock:
            cached = self._entries.get(model)
            if cached is not None:
                return cached
            result = await probe(model)
            if result is None:
                return False
            self._entries[model] = result
            LOGGER.debug("Model %s native tool calling: %s", model, result)
            return result


class BackendAdapter(ABC):
    """Base class for backend adapters."""

    name = "backend"

    def __init__(
        self,
        config: AdapterConfig,
        *,
        extractor: ToolCallExtractor | None = None,
        capabilities: CapabilityCache | None = None,
    ) -> None:
        self._config = config
        self._extractor = extractor or ToolCallExtractor()
        self._capabilities = capabilities or CapabilityCache()

    @property
    def config(self) -> AdapterConfig:
        return self._config

    @property
    def capabilities(self) -> CapabilityCache:
        return self._capabilities

    async def supports_native_tools(self, model: str) -> bool:
        mode = self._config.tool_mode
        if mode is ToolMode.NATIVE:
            return True
        if mode is ToolMode.TEXT:
            return False
        return await self._capabilities.get_or_probe(model, self._probe_native_tools)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------
    @abstractmethod
    async def _probe_native_tools(self, model: str) -> bool | None:
        """Ask the backend whether ``model`` supports native tool calling."""

    @abstractmethod
    def _stream_raw(
        self,
        request: GenerationRequest,
        *,
        native_tools: bool,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        """Yield canonical events for ``request``; must end with :class:`FinishedEvent`.

        Raises:
            BackendUnreachableError: The backend could not be reached.
            BackendProtocolError: Non-2xx response or malformed envelope.
        """

    @abstractmethod
    async def embed(self, texts: Sequence[str], *, model: str | None = None) -> list[list[float]]:
        """Return one embedding vector per input text."""

    async def count_tokens(self, request: GenerationRequest) -> int | None:
        """Exact token count from the backend, or None when unsupported."""
        return None

    async def aclose(self) -> None:
        """Release network resources."""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def generate_stream(
        self,
        request: GenerationRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream canonical events, recovering text-protocol tool calls at completion."""
        cancel_token = token or CancellationToken()
        native = bool(request.tools) and await self.supports_native_tools(request.model)
        if request.tools and not native:
            LOGGER.debug("Using text tool protocol for %s", request.model)
            request = replace(
                request,
                system_instruction=merge_system_instruction(request.system_instruction, request.tools),
            )
        text_protocol = bool(request.tools) and not native
        buffer: list[str] = []

        async for event in self._stream_raw(request, native_tools=native, token=cancel_token):
            if text_protocol and isinstance(event, ContentEvent):
                buffer.append(event.text)
            elif text_protocol and isinstance(event, FinishedEvent):
                for call_event in self._extract_calls("".join(buffer), request):
                    yield call_event
            yield event
            if isinstance(event, FinishedEvent):
                return

    async def generate(
        self,
        request: GenerationRequest,
        token: CancellationToken | None = None,
    ) -> GenerationResponse:
        """Run ``request`` to completion and aggregate the stream."""
        text: list[str] = []
        thoughts: list[str] = []
        calls: list[FunctionCallPart] = []
        finish = FinishReason.UNSPECIFIED
        usage: UsageMetadata | None = None
        async for event in self.generate_stream(request, token):
            if isinstance(event, ContentEvent):
                text.append(event.text)
            elif isinstance(event, ThoughtEvent):
                thoughts.append(event.summary)
            elif isinstance(event, ToolCallRequestEvent):
                calls.append(event.request.to_function_call())
            elif isinstance(event, FinishedEvent):
                finish = event.reason
                usage = event.usage
            elif isinstance(event, ErrorEvent):
                raise event.error
            elif isinstance(event, UserCancelledEvent):
                break
        return GenerationResponse(
            text="".join(text),
            function_calls=tuple(calls),
            finish_reason=finish,
            usage=usage,
            model=request.model,
            thought="".join(thoughts) or None,
        )

    def _extract_calls(self, text: str, request: GenerationRequest) -> list[ToolCallRequestEvent]:
        if not self._extractor.has_tool_calls(text):
            return []
        known = {tool.name for tool in request.tools}
        events: list[ToolCallRequestEvent] = []
        for call in self._extractor.extract(text):
            if known and call.name not in known:
                LOGGER.debug("Extracted call to undeclared tool %s", call.name)
            events.append(
                ToolCallRequestEvent(
                    ToolCallRequest(
                        call_id=new_call_id(),
                        name=call.name,
                        args=dict(call.args),
                        prompt_id=request.prompt_id,
                    )
                )
            )
        return events
