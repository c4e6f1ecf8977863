"""Lifecycle of every tool call within a turn.

The scheduler takes a batch of :class:`ToolCallRequest` values, validates
them, gates risky ones behind approval, runs the approved calls concurrently,
and reports back once every call of the batch has reached a terminal state.
It exclusively owns the mutable :class:`TrackedToolCall` records; listeners
only ever see frozen :class:`ToolCallSnapshot` copies.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from ..cancellation import CANCELLED, CancellationToken
from ..errors import ErrorCode, ToolCallError, ToolExecutionError, ToolRejectedError, ToolValidationError
from ..events import ToolCallRequest
from ..types import FunctionResponsePart, Message
from .approval import ApprovalHandler, ApprovalMode, ApprovalPolicy, ToolConfirmationOutcome
from .checkpoints import Checkpointer
from .tools.executor import ToolExecutor
from .tools.registry import ToolRegistry
from .tools.types import Tool, ToolKind, ToolOutput
from .tools.validation import validate_tool_call

__all__ = [
    "ToolCallState",
    "ToolCallResult",
    "TrackedToolCall",
    "ToolCallSnapshot",
    "BatchResult",
    "ToolScheduler",
    "CANCELLED_RESPONSE_MESSAGE",
]

LOGGER = logging.getLogger(__name__)

CANCELLED_RESPONSE_MESSAGE = "Tool call was cancelled by the user."

UpdateListener = Callable[[tuple["ToolCallSnapshot", ...]], Any]
BatchListener = Callable[["BatchResult"], Any]
HistoryProvider = Callable[[], Sequence[Message]]


# -----------------------------------------------------------------------------
# Call records
# -----------------------------------------------------------------------------


class ToolCallState(str, Enum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({ToolCallState.SUCCESS, ToolCallState.ERROR, ToolCallState.CANCELLED})


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    """Terminal outcome of one call.

    Attributes:
        call_id: Identifier of the call.
        name: Tool name as requested.
        status: One of the terminal states.
        response_parts: Function responses fed back to the model.
        error: Failure text for ``ERROR`` and ``CANCELLED`` results.
        error_kind: ``validation``, ``execution``, ``rejected`` or ``cancelled``.
        display: Human-oriented rendering of the output, when the tool gave one.
    """

    call_id: str
    name: str
    status: ToolCallState
    response_parts: tuple[FunctionResponsePart, ...] = ()
    error: str | None = None
    error_kind: str | None = None
    display: str | None = None


@dataclass(slots=True, frozen=True)
class ToolCallSnapshot:
    """Read-only view of a call handed to listeners and approval handlers."""

    call_id: str
    name: str
    args: dict[str, Any]
    state: ToolCallState
    kind: ToolKind | None = None
    result: ToolCallResult | None = None
    is_client_initiated: bool = False


@dataclass(slots=True)
class TrackedToolCall:
    """Mutable record of one call; never leaves the scheduler."""

    request: ToolCallRequest
    state: ToolCallState = ToolCallState.VALIDATING
    tool: Tool | None = None
    result: ToolCallResult | None = None
    approval: asyncio.Future[ToolConfirmationOutcome] | None = field(default=None, repr=False)

    @property
    def call_id(self) -> str:
        return self.request.call_id

    def snapshot(self) -> ToolCallSnapshot:
        return ToolCallSnapshot(
            call_id=self.request.call_id,
            name=self.request.name,
            args=dict(self.request.args),
            state=self.state,
            kind=self.tool.spec.kind if self.tool is not None else None,
            result=self.result,
            is_client_initiated=self.request.is_client_initiated,
        )


@dataclass(slots=True, frozen=True)
class BatchResult:
    """Results of a completed batch, in request order."""

    results: tuple[ToolCallResult, ...] = ()

    @property
    def all_cancelled(self) -> bool:
        return bool(self.results) and all(r.status is ToolCallState.CANCELLED for r in self.results)

    @property
    def any_completed(self) -> bool:
        """True when at least one call reached success or error."""
        return any(r.status in (ToolCallState.SUCCESS, ToolCallState.ERROR) for r in self.results)

    @property
    def function_responses(self) -> tuple[FunctionResponsePart, ...]:
        return tuple(part for result in self.results for part in result.response_parts)

    def to_message(self) -> Message:
        return Message.tool_results(self.function_responses)

    def __len__(self) -> int:
        return len(self.results)


# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------


class ToolScheduler:
    """Validates, approves, and executes batches of tool calls.

    Args:
        registry: Tools available to the model.
        executor: Runs one validated call; a default executor is created when omitted.
        approval_handler: Asked to confirm calls that need approval. Without
            one, waiting calls are resolved through :meth:`respond`.
        policy: Session approval policy.
        checkpointer: Offered a checkpoint before an approved edit runs.
        history_provider: Supplies the conversation for checkpoints.
        on_update: Receives snapshots of the active calls after every transition.
        on_batch_complete: Receives each :class:`BatchResult` exactly once.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        executor: ToolExecutor | None = None,
        approval_handler: ApprovalHandler | None = None,
        policy: ApprovalPolicy | None = None,
        checkpointer: Checkpointer | None = None,
        history_provider: HistoryProvider | None = None,
        on_update: UpdateListener | None = None,
        on_batch_complete: BatchListener | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor or ToolExecutor()
        self._approval_handler = approval_handler
        self._policy = policy or ApprovalPolicy()
        self._checkpointer = checkpointer
        self._history_provider = history_provider
        self._on_update = on_update
        self._on_batch_complete = on_batch_complete
        self._calls: dict[str, TrackedToolCall] = {}
        self._submitted: set[str] = set()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def policy(self) -> ApprovalPolicy:
        return self._policy

    @property
    def approval_mode(self) -> ApprovalMode:
        return self._policy.mode

    def snapshots(self) -> tuple[ToolCallSnapshot, ...]:
        return tuple(call.snapshot() for call in self._calls.values())

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    async def schedule(self, requests: Sequence[ToolCallRequest], token: CancellationToken) -> BatchResult:
        """Run ``requests`` to completion.

        Calls are validated and executed concurrently; only a call waiting
        for approval blocks, and only itself. Returns when every call is
        terminal, after notifying ``on_batch_complete`` exactly once.
        """
        if not requests:
            return BatchResult()
        tracked = [TrackedToolCall(request) for request in requests]
        seen: set[str] = set()
        for call in tracked:
            if call.call_id in self._calls or call.call_id in seen:
                raise ValueError(f"Tool call {call.call_id!r} is already scheduled")
            seen.add(call.call_id)
        for call in tracked:
            self._calls[call.call_id] = call
        LOGGER.debug("Scheduling %s tool call(s): %s", len(tracked), ", ".join(c.request.name for c in tracked))
        self._publish()
        try:
            results = await asyncio.gather(*(self._run_call(call, token) for call in tracked))
        finally:
            for call in tracked:
                self._calls.pop(call.call_id, None)
        return self._complete(tracked, tuple(results))

    def cancel_batch(self, requests: Sequence[ToolCallRequest]) -> BatchResult:
        """Report ``requests`` as cancelled without running them."""
        tracked = [TrackedToolCall(request) for request in requests]
        results = tuple(self._cancel(call, publish=False) for call in tracked)
        return self._complete(tracked, results)

    def mark_submitted(self, call_ids: Iterable[str]) -> None:
        """Record that results for ``call_ids`` were handed back to the model."""
        self._submitted.update(call_ids)

    def is_submitted(self, call_id: str) -> bool:
        return call_id in self._submitted

    def _complete(self, tracked: Sequence[TrackedToolCall], results: tuple[ToolCallResult, ...]) -> BatchResult:
        batch = BatchResult(results)
        self.mark_submitted(call.call_id for call in tracked if call.request.is_client_initiated)
        LOGGER.debug(
            "Tool batch complete: %s",
            ", ".join(f"{result.name}={result.status.value}" for result in results),
        )
        self._publish(tuple(call.snapshot() for call in tracked))
        if self._on_batch_complete is not None:
            try:
                self._on_batch_complete(batch)
            except Exception:  # pragma: no cover - listener belongs to the UI layer
                LOGGER.exception("Batch completion listener failed")
        return batch

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------
    def respond(self, call_id: str, outcome: ToolConfirmationOutcome) -> bool:
        """Answer a call waiting for approval.

        Returns:
            False when no call with ``call_id`` is waiting.
        """
        call = self._calls.get(call_id)
        if call is None or call.state is not ToolCallState.AWAITING_APPROVAL:
            return False
        return self._resolve_approval(call, outcome)

    def set_approval_mode(self, mode: ApprovalMode) -> None:
        """Switch the session mode and approve waiting calls it now covers."""
        self._policy.mode = mode
        for call in list(self._calls.values()):
            if call.state is not ToolCallState.AWAITING_APPROVAL or call.tool is None:
                continue
            if not self._policy.requires_approval(call.tool.spec):
                LOGGER.debug("Auto-approving %s after approval mode change", call.call_id)
                self._resolve_approval(call, ToolConfirmationOutcome.PROCEED_ONCE)

    def _resolve_approval(self, call: TrackedToolCall, outcome: ToolConfirmationOutcome) -> bool:
        future = call.approval
        if future is None or future.done():
            return False
        future.set_result(outcome)
        return True

    async def _await_approval(self, call: TrackedToolCall, token: CancellationToken) -> Any:
        future: asyncio.Future[ToolConfirmationOutcome] = asyncio.get_running_loop().create_future()
        call.approval = future
        self._transition(call, ToolCallState.AWAITING_APPROVAL)
        handler_task: asyncio.Task[None] | None = None
        if self._approval_handler is not None:
            handler_task = asyncio.create_task(self._ask_handler(call, token))
        try:
            return await token.race(future)
        finally:
            call.approval = None
            if handler_task is not None and not handler_task.done():
                handler_task.cancel()

    async def _ask_handler(self, call: TrackedToolCall, token: CancellationToken) -> None:
        assert self._approval_handler is not None
        try:
            outcome = ToolConfirmationOutcome(await self._approval_handler.confirm(call.snapshot(), token))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Approval handler failed for %s; rejecting: %s", call.call_id, exc)
            outcome = ToolConfirmationOutcome.REJECT
        self._resolve_approval(call, outcome)

    async def _checkpoint(self, call: TrackedToolCall) -> None:
        if self._checkpointer is None or call.tool is None:
            return
        parameter = call.tool.spec.path_parameter
        file_path = call.request.args.get(parameter) if parameter else None
        if not isinstance(file_path, str) or not file_path:
            return
        history = tuple(self._history_provider()) if self._history_provider is not None else ()
        try:
            await self._checkpointer.create_checkpoint(history, call.request, file_path)
        except Exception as exc:
            LOGGER.warning("Checkpoint for %s (%s) failed: %s", call.request.name, file_path, exc)

    # ------------------------------------------------------------------
    # Single call lifecycle
    # ------------------------------------------------------------------
    async def _run_call(self, call: TrackedToolCall, token: CancellationToken) -> ToolCallResult:
        request = call.request
        if token.cancelled:
            return self._cancel(call)
        try:
            tool = validate_tool_call(self._registry, request.name, request.args)
        except ToolValidationError as exc:
            LOGGER.debug("Tool call %s failed validation: %s", request.call_id, exc)
            return self._fail(call, exc)
        call.tool = tool
        spec = tool.spec

        if self._policy.requires_approval(spec):
            outcome = await self._await_approval(call, token)
            if outcome is CANCELLED:
                return self._cancel(call)
            if outcome is ToolConfirmationOutcome.REJECT:
                return self._fail(
                    call,
                    ToolRejectedError(message=f"User rejected the '{request.name}' tool call.", tool_name=request.name),
                )
            if outcome is ToolConfirmationOutcome.PROCEED_ALWAYS:
                self._policy.allow_always(spec.name)
            if spec.kind.is_edit:
                await self._checkpoint(call)
        else:
            self._transition(call, ToolCallState.SCHEDULED)

        if token.cancelled:
            return self._cancel(call)
        self._transition(call, ToolCallState.EXECUTING)
        try:
            output = await self._executor.execute(tool, request.args, token, call_id=request.call_id)
        except ToolExecutionError as exc:
            if token.cancelled:
                return self._cancel(call)
            return self._fail(call, exc)
        if token.cancelled:
            return self._cancel(call)
        if output.error is not None:
            return self._fail(
                call,
                ToolExecutionError(message=output.error, tool_name=request.name),
                display=output.display,
            )
        return self._succeed(call, output)

    def _transition(self, call: TrackedToolCall, state: ToolCallState) -> None:
        if call.state.is_terminal:
            raise RuntimeError(f"Tool call {call.call_id} is already {call.state.value}")
        call.state = state
        self._publish()

    def _finish(self, call: TrackedToolCall, result: ToolCallResult, *, publish: bool = True) -> ToolCallResult:
        if call.state.is_terminal:
            raise RuntimeError(f"Tool call {call.call_id} is already {call.state.value}")
        call.state = result.status
        call.result = result
        if publish:
            self._publish()
        return result

    def _succeed(self, call: TrackedToolCall, output: ToolOutput) -> ToolCallResult:
        request = call.request
        part = FunctionResponsePart(name=request.name, response={"output": output.llm_content}, call_id=request.call_id)
        return self._finish(
            call,
            ToolCallResult(
                call_id=request.call_id,
                name=request.name,
                status=ToolCallState.SUCCESS,
                response_parts=(part,),
                display=output.display,
            ),
        )

    def _fail(self, call: TrackedToolCall, error: ToolCallError, *, display: str | None = None) -> ToolCallResult:
        request = call.request
        part = FunctionResponsePart(name=request.name, response=error.to_dict(), call_id=request.call_id)
        return self._finish(
            call,
            ToolCallResult(
                call_id=request.call_id,
                name=request.name,
                status=ToolCallState.ERROR,
                response_parts=(part,),
                error=error.message,
                error_kind=error.kind,
                display=display,
            ),
        )

    def _cancel(self, call: TrackedToolCall, *, publish: bool = True) -> ToolCallResult:
        request = call.request
        part = FunctionResponsePart(
            name=request.name,
            response={"error": ErrorCode.OPERATION_CANCELLED, "message": CANCELLED_RESPONSE_MESSAGE},
            call_id=request.call_id,
        )
        return self._finish(
            call,
            ToolCallResult(
                call_id=request.call_id,
                name=request.name,
                status=ToolCallState.CANCELLED,
                response_parts=(part,),
                error=CANCELLED_RESPONSE_MESSAGE,
                error_kind="cancelled",
            ),
            publish=publish,
        )

    def _publish(self, snapshots: tuple[ToolCallSnapshot, ...] | None = None) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(snapshots if snapshots is not None else self.snapshots())
        except Exception:  # pragma: no cover - listener belongs to the UI layer
            LOGGER.exception("Tool update listener failed")
