"""Uniform façade over one backend adapter.

The turn processor only ever talks to a :class:`ContentGenerator`. It adds
the behaviour every backend shares: a leading model-info event, a context
window guard, estimated token counts, translation of backend failures into
:class:`ErrorEvent`, and cancellation of in-flight stream reads.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncIterator, Literal, Sequence

from .adapters.base import AdapterConfig, BackendAdapter
from .adapters.fake import FakeAdapter
from .adapters.ollama import OllamaAdapter
from .adapters.openai_compatible import OpenAICompatibleAdapter
from .cancellation import CANCELLED, CancellationToken
from .errors import BackendError
from .events import (
    TERMINAL_EVENTS,
    ContextWindowWillOverflowEvent,
    ErrorEvent,
    ModelInfoEvent,
    StreamEvent,
    UserCancelledEvent,
)
from .tokens import TokenCounterRegistry, estimate_request_tokens
from .types import GenerationRequest, GenerationResponse

__all__ = ["ContentGenerator", "BackendKind", "create_content_generator"]

LOGGER = logging.getLogger(__name__)

BackendKind = Literal["ollama", "openai", "fake"]

_END = object()


async def _next_event(stream: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


class ContentGenerator:
    """Request/response and streaming access to one backend.

    Example:
        generator = create_content_generator(config)
        async for event in generator.generate_stream(request, token):
            ...
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        *,
        token_limit: int | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._adapter = adapter
        self._token_limit = token_limit if token_limit and token_limit > 0 else None
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()

    @property
    def adapter(self) -> BackendAdapter:
        return self._adapter

    @property
    def model(self) -> str:
        return self._adapter.config.model

    @property
    def token_limit(self) -> int | None:
        return self._token_limit

    async def generate(
        self,
        request: GenerationRequest,
        token: CancellationToken | None = None,
    ) -> GenerationResponse:
        """Run a request to completion.

        Raises:
            BackendError: The backend was unreachable or answered badly.
        """
        return await self._adapter.generate(request, token)

    async def generate_stream(
        self,
        request: GenerationRequest,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream canonical events for ``request``.

        The stream always ends with exactly one of ``FinishedEvent``,
        ``ErrorEvent``, ``UserCancelledEvent`` or, when the request would not
        fit the context window, ``ContextWindowWillOverflowEvent``.
        """
        cancel_token = token or CancellationToken()
        yield ModelInfoEvent(request.model)

        overflow = await self._check_context_window(request)
        if overflow is not None:
            yield overflow
            return

        stream = self._adapter.generate_stream(request, cancel_token).__aiter__()
        try:
            while True:
                if cancel_token.cancelled:
                    yield UserCancelledEvent()
                    return
                try:
                    event = await cancel_token.race(_next_event(stream))
                except BackendError as exc:
                    LOGGER.warning("Backend %s failed: %s", self._adapter.name, exc)
                    yield ErrorEvent(exc)
                    return
                if event is CANCELLED:
                    yield UserCancelledEvent()
                    return
                if event is _END:
                    if cancel_token.cancelled:
                        yield UserCancelledEvent()
                    return
                yield event
                if isinstance(event, TERMINAL_EVENTS):
                    return
        finally:
            await stream.aclose()

    async def count_tokens(self, request: GenerationRequest) -> int:
        """Token count from the backend, estimated from payload size when unsupported."""
        exact = await self._adapter.count_tokens(request)
        if exact is not None:
            return exact
        return estimate_request_tokens(request, registry=self._token_registry)

    async def embed(self, texts: Sequence[str], *, model: str | None = None) -> list[list[float]]:
        if not texts:
            return []
        return await self._adapter.embed(texts, model=model)

    async def aclose(self) -> None:
        await self._adapter.aclose()

    async def _check_context_window(self, request: GenerationRequest) -> ContextWindowWillOverflowEvent | None:
        if self._token_limit is None or not request.messages:
            return None
        total = await self.count_tokens(request)
        if total <= self._token_limit:
            return None
        history = await self.count_tokens(replace(request, messages=request.messages[:-1]))
        remaining = max(0, self._token_limit - history)
        estimated = max(0, total - history)
        LOGGER.info(
            "Request of %s token(s) exceeds the %s token context window (%s remaining)",
            total,
            self._token_limit,
            remaining,
        )
        return ContextWindowWillOverflowEvent(estimated_request_tokens=estimated, remaining_tokens=remaining)


def create_content_generator(
    config: AdapterConfig,
    *,
    backend: BackendKind = "ollama",
    fake_responses: str | Path | None = None,
    token_limit: int | None = None,
    **adapter_kwargs: Any,
) -> ContentGenerator:
    """Build a generator for the configured backend.

    A scripted responses file takes precedence over the network backends.
    """
    adapter: BackendAdapter
    if fake_responses:
        adapter = FakeAdapter.from_file(fake_responses, config=config, **adapter_kwargs)
    elif backend == "ollama":
        adapter = OllamaAdapter(config, **adapter_kwargs)
    elif backend == "openai":
        adapter = OpenAICompatibleAdapter(config, **adapter_kwargs)
    elif backend == "fake":
        adapter = FakeAdapter(config=config, **adapter_kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend!r}")
    LOGGER.debug("Using %s backend for model %s", adapter.name, config.model)
    return ContentGenerator(adapter, token_limit=token_limit)
