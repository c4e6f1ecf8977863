"""Adapter for OpenAI-compatible chat completion servers.

Works against any ``/v1/chat/completions`` implementation, including the
OpenAI-compatible endpoint that Ollama serves under ``/v1``. Retries are
disabled on the SDK client: connection and protocol failures end the turn
and are surfaced to the caller.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI
from openai.lib.streaming.chat import ChatCompletionStreamEvent

from ..cancellation import CancellationToken
from ..errors import BackendProtocolError, BackendUnreachableError
from ..events import ContentEvent, FinishedEvent, StreamEvent, ToolCallRequest, ToolCallRequestEvent
from ..types import (
    FinishReason,
    FunctionCallPart,
    FunctionResponsePart,
    GenerationRequest,
    Message,
    TextPart,
    UsageMetadata,
)
from .base import AdapterConfig, BackendAdapter, new_call_id
from ...utils.logging import log_payload
from .tool_prompt import render_message_text

__all__ = ["OpenAICompatibleAdapter", "build_openai_messages"]

LOGGER = logging.getLogger(__name__)

# Placeholder credential accepted by local servers that ignore authentication.
_PLACEHOLDER_API_KEY = "dummy-key"


def _native_messages(message: Message) -> List[Dict[str, Any]]:
    text = "".join(part.text for part in message.parts if isinstance(part, TextPart))
    calls = [part for part in message.parts if isinstance(part, FunctionCallPart)]
    responses = [part for part in message.parts if isinstance(part, FunctionResponsePart)]
    converted: List[Dict[str, Any]] = []
    for response in responses:
        converted.append(
            {
                "role": "tool",
                "tool_call_id": response.call_id or response.name,
                "content": response.render(),
            }
        )
    if text or calls or not responses:
        entry: Dict[str, Any] = {"role": message.role, "content": text or None}
        if calls:
            entry["tool_calls"] = [
                {
                    "id": call.call_id or call.name,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(dict(call.args), ensure_ascii=False, default=str),
                    },
                }
                for call in calls
            ]
        elif entry["content"] is None:
            entry["content"] = ""
        converted.append(entry)
    return converted


def build_openai_messages(request: GenerationRequest, *, native_tools: bool) -> List[Dict[str, Any]]:
    """Convert canonical history into chat completion messages."""
    messages: List[Dict[str, Any]] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})
    for message in request.messages:
        if native_tools:
            messages.extend(_native_messages(message))
        else:
            messages.append({"role": message.role, "content": render_message_text(message)})
    return messages


class OpenAICompatibleAdapter(BackendAdapter):
    """Backend adapter streaming through the ``openai`` SDK."""

    name = "openai"

    def __init__(
        self,
        config: AdapterConfig,
        *,
        client: AsyncOpenAI | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._client = client or self._build_client(config)

    def _build_client(self, config: AdapterConfig) -> AsyncOpenAI:
        headers = dict(config.default_headers) if config.default_headers else None
        return AsyncOpenAI(
            api_key=config.api_key or _PLACEHOLDER_API_KEY,
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout, read=None),
            max_retries=0,
            default_headers=headers,
        )

    def build_payload(self, request: GenerationRequest, *, native_tools: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": build_openai_messages(request, native_tools=native_tools),
        }
        options = request.options
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            payload["max_tokens"] = options.max_output_tokens
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop:
            payload["stop"] = list(options.stop)
        if options.seed is not None:
            payload["seed"] = options.seed
        if native_tools and request.tools:
            payload["tools"] = [tool.to_openai_tool() for tool in request.tools]
        payload["stream_options"] = {"include_usage": True}
        return payload

    async def _probe_native_tools(self, model: str) -> bool | None:
        # The chat completions contract includes tools; only an explicit
        # text mode opts out.
        return True

    async def _stream_raw(
        self,
        request: GenerationRequest,
        *,
        native_tools: bool,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request, native_tools=native_tools)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            request.model,
            len(payload["messages"]),
        )
        if self._config.debug_logging:
            log_payload(LOGGER, "Chat completion", payload)

        manager = self._client.chat.completions.stream(**payload)
        try:
            stream = await asyncio.wait_for(manager.__aenter__(), timeout=self._config.timeout)
        except (APIConnectionError, asyncio.TimeoutError) as exc:
            raise BackendUnreachableError(self._config.base_url, exc) from exc
        except APIStatusError as exc:
            raise BackendProtocolError(
                f"Chat completion request failed: {exc.message}",
                status_code=exc.status_code,
            ) from exc

        finish = FinishReason.UNSPECIFIED
        usage: UsageMetadata | None = None
        try:
            async for event in stream:
                if token.cancelled:
                    return
                event_type = getattr(event, "type", None)
                if event_type == "chunk":
                    finish, usage = self._chunk_metadata(event, finish, usage)
                    continue
                normalized = self._normalize_stream_event(event, request)
                if normalized is not None:
                    yield normalized
        except (APIConnectionError, httpx.TransportError) as exc:
            raise BackendProtocolError(f"Chat completion stream interrupted: {exc}") from exc
        except APIStatusError as exc:
            raise BackendProtocolError(
                f"Chat completion stream failed: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        finally:
            await manager.__aexit__(None, None, None)
        yield FinishedEvent(reason=finish if finish is not FinishReason.UNSPECIFIED else FinishReason.STOP, usage=usage)

    def _chunk_metadata(
        self,
        event: Any,
        finish: FinishReason,
        usage: UsageMetadata | None,
    ) -> tuple[FinishReason, UsageMetadata | None]:
        chunk = getattr(event, "chunk", None)
        for choice in getattr(chunk, "choices", None) or []:
            reason = getattr(choice, "finish_reason", None)
            if reason:
                finish = FinishReason.from_backend(reason)
        chunk_usage = getattr(chunk, "usage", None)
        if chunk_usage is not None:
            usage = UsageMetadata(
                prompt_tokens=getattr(chunk_usage, "prompt_tokens", None),
                completion_tokens=getattr(chunk_usage, "completion_tokens", None),
            )
        return finish, usage

    def _normalize_stream_event(
        self,
        event: ChatCompletionStreamEvent[Any],
        request: GenerationRequest,
    ) -> StreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return ContentEvent(str(delta_text))
            return None
        if event_type == "tool_calls.function.arguments.done":
            name = getattr(event, "name", None)
            if not name:
                LOGGER.warning("Skipping streamed tool call without a name")
                return None
            arguments = getattr(event, "parsed_arguments", None)
            if not isinstance(arguments, Mapping):
                raw = getattr(event, "arguments", None) or ""
                try:
                    arguments = json.loads(raw) if raw.strip() else {}
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping tool call %s with invalid JSON arguments", name)
                    return None
            if not isinstance(arguments, Mapping):
                LOGGER.warning("Skipping tool call %s with non-object arguments", name)
                return None
            return ToolCallRequestEvent(
                ToolCallRequest(
                    call_id=getattr(event, "id", None) or new_call_id(),
                    name=str(name),
                    args=dict(arguments),
                    prompt_id=request.prompt_id,
                )
            )
        return None

    async def embed(self, texts: Sequence[str], *, model: str | None = None) -> list[list[float]]:
        try:
            response = await self._client.embeddings.create(
                model=model or self._config.embedding_model,
                input=list(texts),
            )
        except APIConnectionError as exc:
            raise BackendUnreachableError(self._config.base_url, exc) from exc
        except APIStatusError as exc:
            raise BackendProtocolError(
                f"Embedding request failed: {exc.message}",
                status_code=exc.status_code,
            ) from exc
        return [list(item.embedding) for item in response.data]

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
