"""Scripted adapter for tests and offline replay.

Each submission consumes the next scripted response. A response is either a
plain string (streamed as one content chunk followed by completion) or an
explicit sequence of canonical events. Responses can be loaded from a JSONL
file where every line describes one response::

    {"text": "Hello"}
    {"events": [{"type": "tool_call", "name": "read_file", "args": {"file_path": "a.txt"}},
                {"type": "finished", "reason": "stop"}]}
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence, Union

from ..cancellation import CancellationToken
from ..errors import BackendProtocolError
from ..events import (
    ContentEvent,
    FinishedEvent,
    StreamEvent,
    ThoughtEvent,
    ToolCallRequest,
    ToolCallRequestEvent,
)
from ..types import FinishReason, GenerationRequest
from .base import AdapterConfig, BackendAdapter, ToolMode, new_call_id

__all__ = ["FakeAdapter", "ScriptedResponse"]

LOGGER = logging.getLogger(__name__)

ScriptedResponse = Union[str, Sequence[StreamEvent]]


class FakeAdapter(BackendAdapter):
    """Backend adapter replaying scripted responses.

    Attributes:
        requests: Every request received, in order.
    """

    name = "fake"

    def __init__(
        self,
        responses: Iterable[ScriptedResponse] = (),
        *,
        config: AdapterConfig | None = None,
        native_tools: bool = True,
        embedding_dimensions: int = 8,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            config or AdapterConfig(base_url="fake://", model="fake-model", tool_mode=ToolMode.AUTO),
            **kwargs,
        )
        self._responses: list[ScriptedResponse] = list(responses)
        self._native_tools = native_tools
        self._embedding_dimensions = max(1, embedding_dimensions)
        self.requests: list[GenerationRequest] = []

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: Any) -> FakeAdapter:
        """Load scripted responses from a JSONL file."""
        responses: list[ScriptedResponse] = []
        file_path = Path(path).expanduser()
        for lineno, line in enumerate(file_path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{file_path}:{lineno}: invalid JSON ({exc.msg})") from exc
            responses.append(_response_from_record(record, f"{file_path}:{lineno}"))
        LOGGER.debug("Loaded %s scripted response(s) from %s", len(responses), file_path)
        return cls(responses, **kwargs)

    def add_response(self, response: ScriptedResponse) -> None:
        self._responses.append(response)

    @property
    def remaining(self) -> int:
        return len(self._responses)

    async def _probe_native_tools(self, model: str) -> bool | None:
        return self._native_tools

    async def _stream_raw(
        self,
        request: GenerationRequest,
        *,
        native_tools: bool,
        token: CancellationToken,
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if not self._responses:
            raise BackendProtocolError("No scripted responses left")
        response = self._responses.pop(0)
        if isinstance(response, str):
            events: Sequence[StreamEvent] = (ContentEvent(response), FinishedEvent(FinishReason.STOP))
        else:
            events = response
        finished = False
        for event in events:
            if token.cancelled:
                return
            if isinstance(event, ToolCallRequestEvent) and not event.request.prompt_id:
                event = ToolCallRequestEvent(
                    ToolCallRequest(
                        call_id=event.request.call_id,
                        name=event.request.name,
                        args=event.request.args,
                        prompt_id=request.prompt_id,
                        is_client_initiated=event.request.is_client_initiated,
                    )
                )
            finished = finished or isinstance(event, FinishedEvent)
            yield event
        if not finished:
            yield FinishedEvent(FinishReason.STOP)

    async def embed(self, texts: Sequence[str], *, model: str | None = None) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            vectors.append([digest[index % len(digest)] / 255.0 for index in range(self._embedding_dimensions)])
        return vectors


def _response_from_record(record: Any, where: str) -> ScriptedResponse:
    if isinstance(record, str):
        return record
    if not isinstance(record, Mapping):
        raise ValueError(f"{where}: expected an object or string")
    if "text" in record and "events" not in record:
        return str(record["text"])
    events: list[StreamEvent] = []
    for raw in record.get("events") or []:
        events.append(_event_from_record(raw, where))
    return events


def _event_from_record(raw: Mapping[str, Any], where: str) -> StreamEvent:
    kind = str(raw.get("type", "")).lower()
    if kind == "content":
        return ContentEvent(str(raw.get("text", "")))
    if kind == "thought":
        return ThoughtEvent(str(raw.get("text", "")))
    if kind == "tool_call":
        return ToolCallRequestEvent(
            ToolCallRequest(
                call_id=str(raw.get("call_id") or new_call_id()),
                name=str(raw.get("name", "")),
                args=dict(raw.get("args") or {}),
            )
        )
    if kind == "finished":
        return FinishedEvent(FinishReason.from_backend(raw.get("reason") or "stop"))
    raise ValueError(f"{where}: unknown scripted event type {kind!r}")
