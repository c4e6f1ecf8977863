"""Tests for the OpenAI-compatible adapter."""

from __future__ import annotations

import json
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Iterable

import httpx
import pytest

from llamacode.ai.adapters import AdapterConfig, OpenAICompatibleAdapter, ToolMode
from llamacode.ai.adapters.openai_compatible import build_openai_messages
from llamacode.ai.errors import BackendProtocolError
from llamacode.ai.events import ContentEvent, FinishedEvent, ToolCallRequestEvent
from llamacode.ai.types import (
    FinishReason,
    FunctionCallPart,
    FunctionResponsePart,
    GenerationOptions,
    GenerationRequest,
    Message,
    ToolDeclaration,
)


@dataclass
class _FakeEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    name: str | None = None
    arguments: str | None = None
    parsed_arguments: Any | None = None
    chunk: Any | None = None


class _FakeStream:
    def __init__(self, events: Iterable[_FakeEvent]):
        self._iterator = iter(list(events))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> _FakeEvent:
        try:
            item = next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc
        if isinstance(item, BaseException):
            raise item
        return item


class _FakeStreamContext:
    def __init__(self, events: Iterable[_FakeEvent]):
        self._events = list(events)
        self.exited = False

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.exited = True
        return False


class _FakeCompletions:
    def __init__(self, events: Iterable[_FakeEvent]):
        self._events = list(events)
        self.calls: list[dict[str, Any]] = []
        self.contexts: list[_FakeStreamContext] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        context = _FakeStreamContext(self._events)
        self.contexts.append(context)
        return context


class _FakeEmbeddings:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        return SimpleNamespace(data=[SimpleNamespace(embedding=[float(len(text))]) for text in kwargs["input"]])


def _make_client(events: Iterable[_FakeEvent]) -> SimpleNamespace:
    return SimpleNamespace(
        chat=SimpleNamespace(completions=_FakeCompletions(events)),
        embeddings=_FakeEmbeddings(),
    )


def _chunk(finish_reason: str | None = None, usage: Any | None = None) -> _FakeEvent:
    choices = [SimpleNamespace(finish_reason=finish_reason)]
    return _FakeEvent(type="chunk", chunk=SimpleNamespace(choices=choices, usage=usage))


def _make_adapter(client: SimpleNamespace, **config: Any) -> OpenAICompatibleAdapter:
    settings = AdapterConfig(base_url="http://localhost:11434/v1", model="llama3.2", **config)
    return OpenAICompatibleAdapter(settings, client=client)  # type: ignore[arg-type]


READ_FILE_TOOL = ToolDeclaration(
    name="read_file",
    description="Read a file",
    parameters={"type": "object", "properties": {"file_path": {"type": "string"}}},
)


def _request(tools: tuple[ToolDeclaration, ...] = (), **options: Any) -> GenerationRequest:
    return GenerationRequest(
        model="llama3.2",
        messages=(Message.user("hello"),),
        system_instruction="Be brief.",
        tools=tools,
        options=GenerationOptions(**options),
        prompt_id="prompt_1",
    )


# -----------------------------------------------------------------------------
# Tests
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_normalizes_delta_and_tool_events() -> None:
    events = [
        _FakeEvent(type="content.delta", delta="Hello"),
        _FakeEvent(type="content.delta", delta=" world"),
        _FakeEvent(
            type="tool_calls.function.arguments.done",
            name="read_file",
            arguments='{"file_path": "a.txt"}',
            parsed_arguments={"file_path": "a.txt"},
        ),
        _chunk("tool_calls", SimpleNamespace(prompt_tokens=10, completion_tokens=4)),
    ]
    client = _make_client(events)
    adapter = _make_adapter(client)

    received = [event async for event in adapter.generate_stream(_request((READ_FILE_TOOL,), temperature=0.2))]

    assert [event.text for event in received if isinstance(event, ContentEvent)] == ["Hello", " world"]
    calls = [event.request for event in received if isinstance(event, ToolCallRequestEvent)]
    assert [(call.name, dict(call.args), call.prompt_id) for call in calls] == [
        ("read_file", {"file_path": "a.txt"}, "prompt_1")
    ]
    finished = received[-1]
    assert isinstance(finished, FinishedEvent)
    assert finished.reason is FinishReason.STOP
    assert finished.usage is not None and finished.usage.total_tokens == 14

    payload = client.chat.completions.calls[0]
    assert payload["temperature"] == 0.2
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["tools"][0]["function"]["name"] == "read_file"
    assert payload["messages"][0] == {"role": "system", "content": "Be brief."}
    assert client.chat.completions.contexts[0].exited is True


@pytest.mark.asyncio
async def test_raw_arguments_are_decoded_when_unparsed() -> None:
    events = [
        _FakeEvent(type="tool_calls.function.arguments.done", name="read_file", arguments='{"file_path": "b"}'),
        _FakeEvent(type="tool_calls.function.arguments.done", name="read_file", arguments="{broken"),
    ]
    adapter = _make_adapter(_make_client(events))

    received = [event async for event in adapter.generate_stream(_request((READ_FILE_TOOL,)))]

    calls = [event.request for event in received if isinstance(event, ToolCallRequestEvent)]
    assert [dict(call.args) for call in calls] == [{"file_path": "b"}]


@pytest.mark.asyncio
async def test_length_finish_reason_is_reported() -> None:
    adapter = _make_adapter(_make_client([_FakeEvent(type="content.delta", delta="cut"), _chunk("length")]))

    received = [event async for event in adapter.generate_stream(_request())]

    assert received[-1].reason is FinishReason.MAX_TOKENS


@pytest.mark.asyncio
async def test_transport_failure_mid_stream_is_a_protocol_error() -> None:
    client = _make_client([_FakeEvent(type="content.delta", delta="par"), httpx.ReadError("connection reset")])
    adapter = _make_adapter(client)

    received: list = []
    with pytest.raises(BackendProtocolError, match="interrupted") as excinfo:
        async for event in adapter.generate_stream(_request()):
            received.append(event)

    assert [event.text for event in received if isinstance(event, ContentEvent)] == ["par"]
    assert isinstance(excinfo.value.__cause__, httpx.ReadError)
    assert client.chat.completions.contexts[0].exited is True


@pytest.mark.asyncio
async def test_text_mode_uses_tool_prompt_and_extracts_calls() -> None:
    events = [
        _FakeEvent(type="content.delta", delta='<tool_call>{"name": "read_file", '),
        _FakeEvent(type="content.delta", delta='"arguments": {"path": "notes.md"}}</tool_call>'),
    ]
    client = _make_client(events)
    adapter = _make_adapter(client, tool_mode=ToolMode.TEXT)

    received = [event async for event in adapter.generate_stream(_request((READ_FILE_TOOL,)))]

    payload = client.chat.completions.calls[0]
    assert "tools" not in payload
    assert "<tool_call>" in payload["messages"][0]["content"]
    assert isinstance(received[-2], ToolCallRequestEvent)
    assert received[-2].request.args == {"file_path": "notes.md"}
    assert isinstance(received[-1], FinishedEvent)


def test_native_messages_pair_calls_and_results_by_id() -> None:
    request = GenerationRequest(
        model="llama3.2",
        messages=(
            Message.user("read it"),
            Message.assistant("", [FunctionCallPart("read_file", {"file_path": "a"}, "call_9")]),
            Message.tool_results([FunctionResponsePart("read_file", {"output": "data"}, "call_9")]),
        ),
    )

    messages = build_openai_messages(request, native_tools=True)

    assert messages[1]["content"] is None
    assert messages[1]["tool_calls"][0]["id"] == "call_9"
    assert json.loads(messages[1]["tool_calls"][0]["function"]["arguments"]) == {"file_path": "a"}
    assert messages[2] == {"role": "tool", "tool_call_id": "call_9", "content": '{"output": "data"}'}


def test_text_messages_render_tool_traffic() -> None:
    request = GenerationRequest(
        model="llama3.2",
        messages=(
            Message.assistant("", [FunctionCallPart("read_file", {"file_path": "a"}, "call_9")]),
            Message.tool_results([FunctionResponsePart("read_file", {"output": "data"}, "call_9")]),
        ),
    )

    messages = build_openai_messages(request, native_tools=False)

    assert "<tool_call>" in messages[0]["content"]
    assert "<tool_result" in messages[1]["content"]


@pytest.mark.asyncio
async def test_embed_uses_embedding_model() -> None:
    client = _make_client([])
    adapter = _make_adapter(client, embedding_model="nomic-embed-text")

    vectors = await adapter.embed(["ab", "abcd"])

    assert vectors == [[2.0], [4.0]]
    assert client.embeddings.calls[0]["model"] == "nomic-embed-text"


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    class _ClosableClient:
        def __init__(self) -> None:
            self.closed = False

        async def close(self) -> None:
            self.closed = True

    client = _ClosableClient()
    adapter = OpenAICompatibleAdapter(
        AdapterConfig(base_url="http://localhost:11434/v1", model="llama3.2"),
        client=client,  # type: ignore[arg-type]
    )

    await adapter.aclose()

    assert client.closed is True
