"""Adapter for Ollama's native ``/api/chat`` protocol.

Responses stream as newline-delimited JSON. Each record carries a message
fragment; the record with ``"done": true`` concludes the stream and reports
the finish reason and token usage.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx

from ..cancellation import CancellationToken
from ..errors import BackendProtocolError, BackendUnreachableError, StreamDecodeError
from ..events import ContentEvent, FinishedEvent, StreamEvent, ThoughtEvent, ToolCallRequest, ToolCallRequestEvent
from ..types import (
    FinishReason,
    FunctionCallPart,
    FunctionResponsePart,
    GenerationOptions,
    GenerationRequest,
    Message,
    TextPart,
    UsageMetadata,
)
from .base import AdapterConfig, BackendAdapter, new_call_id
from ...utils.logging import log_payload
from .tool_prompt import render_message_text

__all__ = ["OllamaAdapter", "build_chat_messages", "build_options"]

LOGGER = logging.getLogger(__name__)


def build_options(options: GenerationOptions) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if options.temperature is not None:
        payload["temperature"] = options.temperature
    if options.max_output_tokens is not None:
        payload["num_predict"] = options.max_output_tokens
    if options.top_p is not None:
        payload["top_p"] = options.top_p
    if options.stop:
        payload["stop"] = list(options.stop)
    if options.seed is not None:
        payload["seed"] = options.seed
    return payload


def _native_messages(message: Message) -> List[Dict[str, Any]]:
    text = "".join(part.text for part in message.parts if isinstance(part, TextPart))
    calls = [part for part in message.parts if isinstance(part, FunctionCallPart)]
    responses = [part for part in message.parts if isinstance(part, FunctionResponsePart)]
    converted: List[Dict[str, Any]] = []
    for response in responses:
        converted.append({"role": "tool", "content": response.render(), "tool_name": response.name})
    if text or calls or not responses:
        entry: Dict[str, Any] = {"role": message.role, "content": text}
        if calls:
            entry["tool_calls"] = [
                {"function": {"name": call.name, "arguments": dict(call.args)}} for call in calls
            ]
        converted.append(entry)
    return converted


def build_chat_messages(request: GenerationRequest, *, native_tools: bool) -> List[Dict[str, Any]]:
    """Convert canonical history into Ollama chat messages."""
    messages: List[Dict[str, Any]] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})
    for message in request.messages:
        if native_tools:
            messages.extend(_native_messages(message))
        else:
            messages.append({"role": message.role, "content": render_message_text(message)})
    return messages


class OllamaAdapter(BackendAdapter):
    """Backend adapter speaking Ollama's HTTP API through ``httpx``."""

    name = "ollama"

    def __init__(
        self,
        config: AdapterConfig,
        *,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self._base_url = config.base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(config.timeout, read=None),
            headers=dict(config.default_headers) if config.default_headers else None,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def build_payload(self, request: GenerationRequest, *, native_tools: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": build_chat_messages(request, native_tools=native_tools),
            "stream": True,
        }
        options = build_options(request.options)
        if options:
            payload["options"] = options
        if native_tools and request.tools:
            payload["tools"] = [tool.to_openai_tool() for tool in request.tools]
        if request.options.think:
            payload["think"] = True
        return payload

    async def _probe_native_tools(self, model: str) -> bool | None:
        try:
            response = await self._send("POST", "/api/show", body={"model": model})
        except (BackendUnreachableError, BackendProtocolError) as exc:
            LOGGER.warning("Capability probe for %s failed: %s", model, exc)
            return None
        try:
            data = response.json()
        except ValueError:
            LOGGER.warning("Capability probe for %s returned invalid JSON", model)
            return None
        capabilities = data.get("capabilities") or []
        return "tools" in capabilities

    async def _stream_raw(
        self,
        request: GenerationRequest,
        *,
        native_tools: bool,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request, native_tools=native_tools)
        LOGGER.debug(
            "Starting Ollama chat stream via %s with %s message(s)",
            request.model,
            len(payload["messages"]),
        )
        if self._config.debug_logging:
            log_payload(LOGGER, "Ollama chat", payload)

        response = await self._send("POST", "/api/chat", body=payload, stream=True)
        try:
            async for line in response.aiter_lines():
                if token.cancelled:
                    return
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as exc:
                    LOGGER.warning("%s", StreamDecodeError(line, exc))
                    continue
                if not isinstance(record, Mapping):
                    LOGGER.warning("%s", StreamDecodeError(line))
                    continue
                if record.get("error"):
                    raise BackendProtocolError(f"Ollama error: {record['error']}")
                for event in self._record_events(record, request):
                    yield event
                if record.get("done"):
                    yield FinishedEvent(
                        reason=FinishReason.from_backend(record.get("done_reason") or "stop"),
                        usage=UsageMetadata(
                            prompt_tokens=record.get("prompt_eval_count"),
                            completion_tokens=record.get("eval_count"),
                        ),
                    )
                    return
        except httpx.TransportError as exc:
            raise BackendProtocolError(f"Ollama stream interrupted: {exc}") from exc
        finally:
            await response.aclose()
        raise BackendProtocolError("Ollama stream ended without a completion record")

    def _record_events(self, record: Mapping[str, Any], request: GenerationRequest) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        message = record.get("message") or {}
        if not isinstance(message, Mapping):
            return events
        thinking = message.get("thinking")
        if thinking:
            events.append(ThoughtEvent(str(thinking)))
        content = message.get("content")
        if content:
            events.append(ContentEvent(str(content)))
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function") if isinstance(raw_call, Mapping) else None
            if not isinstance(function, Mapping) or not function.get("name"):
                LOGGER.warning("Skipping malformed native tool call: %r", raw_call)
                continue
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments) if arguments.strip() else {}
                except json.JSONDecodeError:
                    LOGGER.warning("Skipping native tool call with invalid arguments: %r", raw_call)
                    continue
            if not isinstance(arguments, Mapping):
                LOGGER.warning("Skipping native tool call with non-object arguments: %r", raw_call)
                continue
            events.append(
                ToolCallRequestEvent(
                    ToolCallRequest(
                        call_id=str(raw_call.get("id") or new_call_id()),
                        name=str(function["name"]),
                        args=dict(arguments),
                        prompt_id=request.prompt_id,
                    )
                )
            )
        return events

    async def embed(self, texts: Sequence[str], *, model: str | None = None) -> list[list[float]]:
        embedding_model = model or self._config.embedding_model
        vectors: list[list[float]] = []
        for text in texts:
            response = await self._send("POST", "/api/embeddings", body={"model": embedding_model, "prompt": text})
            try:
                data = response.json()
            except ValueError as exc:
                raise BackendProtocolError("Ollama returned an invalid embedding response") from exc
            embedding = data.get("embedding")
            if not isinstance(embedding, list):
                raise BackendProtocolError("Ollama embedding response has no 'embedding' field")
            vectors.append([float(value) for value in embedding])
        return vectors

    async def _send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        stream: bool = False,
    ) -> httpx.Response:
        """Send a request, bounding only the wait for the response headers."""
        request = self._client.build_request(method, path, json=body)
        try:
            response = await asyncio.wait_for(
                self._client.send(request, stream=stream),
                timeout=self._config.timeout,
            )
        except (httpx.ConnectError, httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise BackendUnreachableError(self._base_url, exc) from exc
        except httpx.TransportError as exc:
            raise BackendProtocolError(f"Ollama request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            raise BackendProtocolError(
                f"Ollama request to {path} failed: {_error_detail(body)}",
                status_code=response.status_code,
                body=body,
            )
        return response

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_detail(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip() or "empty response"
    if isinstance(data, Mapping) and data.get("error"):
        return str(data["error"])
    return body.strip()
