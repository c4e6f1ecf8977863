"""Turn processor.

Drives one conversational turn: builds the request, consumes the event
stream one event at a time, hands the collected tool calls to the scheduler
once the stream has ended, and submits the tool results as a continuation
until the model answers without calls.

Only the processor writes to the :class:`ConversationHistory`, and only with
finalized messages: a request's pending messages are committed together with
the assistant reply once its stream has ended.
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..cancellation import CANCELLED, CancellationToken
from ..content_generator import ContentGenerator
from ..errors import TurnInProgressError
from ..events import (
    ChatCompressedEvent,
    CitationEvent,
    ContentEvent,
    ContextWindowWillOverflowEvent,
    ErrorEvent,
    FinishedEvent,
    LoopDetectedEvent,
    ModelInfoEvent,
    StreamEvent,
    ThoughtEvent,
    ToolCallRequest,
    ToolCallRequestEvent,
    UserCancelledEvent,
)
from ..types import GenerationRequest, Message
from .approval import ApprovalMode
from .history import ConversationHistory
from .loop_detection import LoopDetector
from .scheduler import BatchResult, ToolScheduler
from .transcript import (
    LOOP_HALTED_MESSAGE,
    REQUEST_CANCELLED_MESSAGE,
    USER_CANCELLED_MESSAGE,
    RecordingTranscript,
    StreamingTextBuffer,
    TranscriptItem,
    TranscriptKind,
    TranscriptSink,
    compression_message,
    context_overflow_message,
    finish_reason_message,
    max_turns_message,
)
from .turn import (
    LoopDecision,
    Turn,
    TurnConfig,
    TurnOutcome,
    TurnResult,
    TurnState,
    new_prompt_id,
)

__all__ = ["TurnProcessor", "LoopDecisionHandler"]

LOGGER = logging.getLogger(__name__)

LoopDecisionHandler = Callable[[LoopDetectedEvent, CancellationToken], "LoopDecision | Awaitable[LoopDecision]"]


class _StreamStatus(Enum):
    COMPLETED = "completed"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    OVERFLOW = "overflow"


class TurnProcessor:
    """State machine for conversational turns.

    Args:
        generator: Content generator for the configured backend.
        scheduler: Runs the tool calls of each response.
        config: Model, system prompt, and turn limits.
        history: Shared conversation history; a fresh one when omitted.
        transcript: Presentation sink; an in-memory recorder when omitted.
        loop_detector: Advisory loop detector; a default one when omitted.
        loop_decision: Asked what to do about a suspected loop. Without it a
            suspected loop halts the turn.

    Example:
        processor = TurnProcessor(generator, scheduler, config=TurnConfig(model="llama3.2"))
        result = await processor.submit_query("List the files in src")
    """

    def __init__(
        self,
        generator: ContentGenerator,
        scheduler: ToolScheduler,
        *,
        config: TurnConfig,
        history: ConversationHistory | None = None,
        transcript: TranscriptSink | None = None,
        loop_detector: LoopDetector | None = None,
        loop_decision: LoopDecisionHandler | None = None,
    ) -> None:
        self._generator = generator
        self._scheduler = scheduler
        self._config = config
        self._history = history if history is not None else ConversationHistory()
        self._transcript: TranscriptSink = transcript if transcript is not None else RecordingTranscript()
        self._loop_detector = loop_detector or LoopDetector()
        self._loop_decision = loop_decision
        self._state = TurnState.IDLE
        self._turn: Turn | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def transcript(self) -> TranscriptSink:
        return self._transcript

    @property
    def config(self) -> TurnConfig:
        return self._config

    @property
    def loop_detector(self) -> LoopDetector:
        return self._loop_detector

    @property
    def is_busy(self) -> bool:
        return self._turn is not None

    async def submit_query(self, query: str | Message) -> TurnResult:
        """Run a full turn for a user query.

        Raises:
            TurnInProgressError: Another turn is still active.
        """
        if self._turn is not None:
            raise TurnInProgressError(self._state.value)
        turn = Turn(prompt_id=new_prompt_id(), token=CancellationToken())
        self._turn = turn
        self._loop_detector.reset(turn.prompt_id)
        message = Message.user(query) if isinstance(query, str) else query
        self._transcript.add(TranscriptItem(TranscriptKind.USER, message.text))
        start = len(self._history)
        LOGGER.debug("Starting turn %s", turn.prompt_id)

        error: BaseException | None = None
        try:
            outcome, error = await self._run(turn, [message])
        except Exception as exc:
            LOGGER.exception("Turn %s failed", turn.prompt_id)
            self._transcript.add(TranscriptItem(TranscriptKind.ERROR, str(exc) or type(exc).__name__))
            outcome, error = TurnOutcome.ERROR, exc
        finally:
            self._turn = None
            self._set_state(TurnState.IDLE)

        LOGGER.debug("Turn %s ended: %s after %s iteration(s)", turn.prompt_id, outcome.value, turn.iterations)
        return TurnResult(
            outcome=outcome,
            prompt_id=turn.prompt_id,
            text="".join(turn.text),
            new_messages=self._history.since(start),
            error=error,
            iterations=turn.iterations,
            finish_reason=turn.finish_reason,
        )

    def cancel(self, reason: str = "user") -> bool:
        """Cancel the active turn.

        Returns:
            True when this call cancelled a turn; False when no turn is active
            or it was already cancelled.
        """
        turn = self._turn
        if turn is None:
            return False
        if turn.token.cancel(reason):
            LOGGER.info("Cancelling turn %s in state %s", turn.prompt_id, self._state.value)
            return True
        return False

    def set_approval_mode(self, mode: ApprovalMode) -> None:
        self._scheduler.set_approval_mode(mode)

    async def schedule_client_tool(
        self,
        name: str,
        args: Mapping[str, Any] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> BatchResult:
        """Run a locally issued tool call.

        The result is reported to the transcript and never submitted to the
        model or written to history.
        """
        request = ToolCallRequest(
            call_id=f"client_{new_prompt_id()}",
            name=name,
            args=dict(args or {}),
            is_client_initiated=True,
        )
        batch = await self._scheduler.schedule([request], token or CancellationToken())
        self._report_batch(batch)
        return batch

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------
    async def _run(self, turn: Turn, pending: list[Message]) -> tuple[TurnOutcome, BaseException | None]:
        while True:
            if turn.iterations >= self._config.max_iterations:
                self._history.extend(pending)
                self._info(max_turns_message(self._config.max_iterations))
                return TurnOutcome.MAX_TURNS, None
            turn.iterations += 1

            request = self._build_request(turn, pending)
            turn.begin_response(request)
            self._set_state(TurnState.SUBMITTING)
            status, error = await self._consume(turn, request)

            if status is _StreamStatus.OVERFLOW:
                # Tool results answer calls already in history; the user query does not.
                if turn.iterations > 1:
                    self._history.extend(pending)
                return TurnOutcome.CONTEXT_OVERFLOW, None
            if status is _StreamStatus.ERROR:
                self._commit(pending, turn.assistant_message(include_calls=False))
                return TurnOutcome.ERROR, error
            if status is _StreamStatus.USER_CANCELLED:
                self._finish_cancelled(turn, pending)
                return TurnOutcome.CANCELLED, None

            if turn.loop_event is not None:
                decision = await self._decide_loop(turn)
                if decision is CANCELLED:
                    self._finish_cancelled(turn, pending)
                    return TurnOutcome.CANCELLED, None
                if decision is LoopDecision.DISABLE:
                    turn.seen_call_ids.difference_update(call.call_id for call in turn.batch)
                    LOGGER.debug("Resubmitting turn %s with loop detection disabled", turn.prompt_id)
                    continue
                self._commit(pending, turn.assistant_message(include_calls=False))
                self._info(LOOP_HALTED_MESSAGE)
                return TurnOutcome.LOOP_HALTED, None

            self._commit(pending, turn.assistant_message())
            pending = []
            if not turn.batch:
                return TurnOutcome.FINISHED, None

            self._set_state(TurnState.AWAITING_TOOL_RESULTS)
            batch = await self._scheduler.schedule(list(turn.batch), turn.token)
            self._report_batch(batch)
            results = batch.to_message()
            if turn.token.cancelled or batch.all_cancelled:
                self._history.append(results)
                self._info(USER_CANCELLED_MESSAGE if batch.any_completed else REQUEST_CANCELLED_MESSAGE)
                return TurnOutcome.CANCELLED, None
            self._scheduler.mark_submitted(result.call_id for result in batch.results)
            pending = [results]

    def _build_request(self, turn: Turn, pending: Sequence[Message]) -> GenerationRequest:
        return GenerationRequest(
            model=self._config.model,
            messages=self._history.messages + tuple(pending),
            system_instruction=self._config.system_instruction,
            tools=self._scheduler.registry.declarations(),
            options=self._config.options,
            prompt_id=turn.prompt_id,
        )

    def _commit(self, pending: Sequence[Message], reply: Message | None) -> None:
        self._history.extend(pending)
        if reply is not None:
            self._history.append(reply)

    def _finish_cancelled(self, turn: Turn, pending: Sequence[Message]) -> None:
        self._commit(pending, turn.assistant_message())
        if turn.batch:
            batch = self._scheduler.cancel_batch(list(turn.batch))
            self._report_batch(batch)
            self._history.append(batch.to_message())
        self._info(USER_CANCELLED_MESSAGE)

    async def _decide_loop(self, turn: Turn) -> Any:
        self._set_state(TurnState.AWAITING_LOOP_DECISION)
        if self._loop_decision is None or turn.loop_event is None:
            return LoopDecision.KEEP
        decision = self._loop_decision(turn.loop_event, turn.token)
        if inspect.isawaitable(decision):
            decision = await turn.token.race(decision)
        if decision is CANCELLED:
            return CANCELLED
        decision = LoopDecision(decision)
        if decision is LoopDecision.DISABLE:
            self._loop_detector.disable_for_session()
        return decision

    # ------------------------------------------------------------------
    # Stream consumption
    # ------------------------------------------------------------------
    async def _consume(self, turn: Turn, request: GenerationRequest) -> tuple[_StreamStatus, BaseException | None]:
        buffer = StreamingTextBuffer(self._transcript, flush_threshold=self._config.flush_threshold)
        self._set_state(TurnState.STREAMING)
        try:
            async for event in self._generator.generate_stream(request, turn.token):
                if isinstance(event, ContentEvent):
                    if turn.token.cancelled:
                        continue
                    turn.append_text(event.text)
                    buffer.append(event.text)
                    self._observe(turn, event)
                elif isinstance(event, ToolCallRequestEvent):
                    if turn.token.cancelled:
                        continue
                    added = turn.add_call(event.request)
                    self._observe(turn, ToolCallRequestEvent(added))
                elif isinstance(event, FinishedEvent):
                    buffer.flush()
                    turn.finish_reason = event.reason
                    notice = finish_reason_message(event.reason)
                    if notice:
                        self._info(notice)
                    return _StreamStatus.COMPLETED, None
                elif isinstance(event, ErrorEvent):
                    buffer.flush()
                    self._transcript.add(TranscriptItem(TranscriptKind.ERROR, event.message))
                    return _StreamStatus.ERROR, event.error
                elif isinstance(event, UserCancelledEvent):
                    buffer.flush()
                    return _StreamStatus.USER_CANCELLED, None
                elif isinstance(event, ContextWindowWillOverflowEvent):
                    buffer.flush()
                    self._info(
                        context_overflow_message(
                            event.estimated_request_tokens,
                            event.remaining_tokens,
                            self._generator.token_limit,
                        )
                    )
                    return _StreamStatus.OVERFLOW, None
                else:
                    self._decorate(turn, event, buffer)
        finally:
            buffer.flush()
        if turn.token.cancelled:
            return _StreamStatus.USER_CANCELLED, None
        return _StreamStatus.COMPLETED, None

    def _decorate(self, turn: Turn, event: StreamEvent, buffer: StreamingTextBuffer) -> None:
        if isinstance(event, LoopDetectedEvent):
            if turn.loop_event is None:
                turn.loop_event = event
        elif isinstance(event, ThoughtEvent):
            self._transcript.add(TranscriptItem(TranscriptKind.THOUGHT, event.summary))
        elif isinstance(event, ChatCompressedEvent):
            buffer.flush()
            self._info(compression_message(self._config.model, event.original_tokens, event.compressed_tokens))
        elif isinstance(event, CitationEvent):
            self._info(event.text)
        elif isinstance(event, ModelInfoEvent):
            LOGGER.debug("Turn %s is served by model %s", turn.prompt_id, event.model)
        else:  # pragma: no cover - exhaustive over StreamEvent
            LOGGER.debug("Ignoring stream event %r", event)

    def _observe(self, turn: Turn, event: StreamEvent) -> None:
        detected = self._loop_detector.observe(event)
        if detected is not None and turn.loop_event is None:
            turn.loop_event = detected

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------
    def _report_batch(self, batch: BatchResult) -> None:
        if not batch.results:
            return
        lines = []
        calls = []
        for result in batch.results:
            line = f"{result.name}: {result.status.value}"
            if result.error:
                line = f"{line} ({result.error})"
            lines.append(line)
            calls.append(
                {
                    "call_id": result.call_id,
                    "name": result.name,
                    "status": result.status.value,
                    "error": result.error,
                    "error_kind": result.error_kind,
                    "display": result.display,
                }
            )
        self._transcript.add(TranscriptItem(TranscriptKind.TOOL_GROUP, "\n".join(lines), {"calls": calls}))

    def _info(self, text: str) -> None:
        self._transcript.add(TranscriptItem(TranscriptKind.INFO, text))

    def _set_state(self, state: TurnState) -> None:
        if state is not self._state:
            LOGGER.debug("Turn state %s -> %s", self._state.value, state.value)
        self._state = state
