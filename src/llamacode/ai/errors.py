"""Error hierarchy for the turn execution engine.

Backend errors end the current turn. Tool-call errors are converted into
function responses so the model sees why its call failed. User cancellation
is not an exception at all: it is a state of :class:`CancellationToken`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
    "LlamacodeError",
    "BackendError",
    "BackendUnreachableError",
    "BackendProtocolError",
    "StreamDecodeError",
    "ToolCallError",
    "ToolValidationError",
    "ToolExecutionError",
    "ToolRejectedError",
    "TurnInProgressError",
    "unreachable_message",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable codes carried in model-visible error payloads."""

    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_PARAMETER = "invalid_parameter"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    USER_REJECTED = "user_rejected"
    OPERATION_CANCELLED = "operation_cancelled"


# -----------------------------------------------------------------------------
# Base Errors
# -----------------------------------------------------------------------------


class LlamacodeError(Exception):
    """Base class for all engine errors."""


def unreachable_message(base_url: str) -> str:
    """Remediation text shown when the backend server cannot be reached."""
    return (
        f"Cannot connect to Ollama server at {base_url}.\n"
        "Please check:\n"
        "  1. Ollama is running (run: ollama serve)\n"
        "  2. The server URL is correct\n"
        "  3. Set OLLAMA_BASE_URL environment variable if using a different URL\n"
        "Example: export OLLAMA_BASE_URL=http://localhost:11434"
    )


class BackendError(LlamacodeError):
    """Base class for failures talking to a model backend."""


class BackendUnreachableError(BackendError):
    """The backend could not be reached at all (connection refused, DNS, timeout)."""

    def __init__(self, base_url: str, cause: BaseException | None = None) -> None:
        self.base_url = base_url
        self.cause = cause
        super().__init__(unreachable_message(base_url))


class BackendProtocolError(BackendError):
    """The backend answered, but with a non-2xx status or a malformed envelope."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message)


class StreamDecodeError(BackendError):
    """A single stream line failed to decode; the stream itself continues."""

    def __init__(self, line: str, cause: BaseException | None = None) -> None:
        self.line = line
        self.cause = cause
        preview = line if len(line) <= 80 else line[:77] + "..."
        super().__init__(f"Could not decode stream line: {preview}")


# -----------------------------------------------------------------------------
# Tool Call Errors
# -----------------------------------------------------------------------------


@dataclass
class ToolCallError(LlamacodeError):
    """Base class for tool-call failures that are reported back to the model.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable description.
        tool_name: Tool the failure relates to.
        details: Additional structured information.
    """

    error_code: str
    message: str
    tool_name: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a model-visible function response."""
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class ToolValidationError(ToolCallError):
    """The call named an unknown tool or its arguments violate the schema."""

    error_code: str = field(default=ErrorCode.INVALID_PARAMETER)
    message: str = field(default="Tool arguments are invalid")

    kind: ClassVar[str] = "validation"


@dataclass
class ToolExecutionError(ToolCallError):
    """The tool ran and failed, or exceeded its timeout."""

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    cause: BaseException | None = field(default=None, repr=False)

    kind: ClassVar[str] = "execution"


@dataclass
class ToolRejectedError(ToolCallError):
    """The user declined to run the call."""

    error_code: str = field(default=ErrorCode.USER_REJECTED)
    message: str = field(default="The user declined to run this tool call")

    kind: ClassVar[str] = "rejected"


# -----------------------------------------------------------------------------
# Turn Errors
# -----------------------------------------------------------------------------


class TurnInProgressError(LlamacodeError):
    """A user query arrived while another turn is still active."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"A turn is already in progress (state={state}); wait for it to finish or cancel it")
