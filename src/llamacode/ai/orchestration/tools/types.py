"""Tool system types.

Tools are opaque capabilities to the scheduler: it validates arguments
against :attr:`ToolSpec.parameters`, gates risky kinds behind approval, and
calls :meth:`Tool.execute` with the turn's cancellation token.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

from ...cancellation import CancellationToken
from ...types import ToolDeclaration

__all__ = [
    "ToolKind",
    "ToolSpec",
    "ToolOutput",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Kinds
# -----------------------------------------------------------------------------


class ToolKind(str, Enum):
    """Risk classification of a tool."""

    READ = "read"
    SEARCH = "search"
    FETCH = "fetch"
    THINK = "think"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    EXECUTE = "execute"
    OTHER = "other"

    @property
    def is_mutating(self) -> bool:
        """Whether calls of this kind need approval outside auto-approval modes."""
        return self in _MUTATING_KINDS

    @property
    def is_edit(self) -> bool:
        """Whether the edit-only auto-approval mode covers this kind."""
        return self in _EDIT_KINDS


_MUTATING_KINDS = frozenset({ToolKind.EDIT, ToolKind.DELETE, ToolKind.MOVE, ToolKind.EXECUTE})
_EDIT_KINDS = frozenset({ToolKind.EDIT})


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema for the tool's parameters.
        kind: Risk classification used for approval gating.
        timeout: Per-call timeout in seconds; None uses the executor default.
        path_parameter: Argument naming the file a call edits, for checkpoints.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    kind: ToolKind = ToolKind.OTHER
    timeout: float | None = None
    path_parameter: str | None = "file_path"

    def to_declaration(self) -> ToolDeclaration:
        """Convert to the declaration advertised to the model."""
        return ToolDeclaration(name=self.name, description=self.description, parameters=dict(self.parameters))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "kind": self.kind.value,
        }


# -----------------------------------------------------------------------------
# Tool Output
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolOutput:
    """What a tool returns.

    Attributes:
        llm_content: Payload sent back to the model.
        display: Optional human-oriented rendering for the transcript.
        error: Failure text when the tool ran but did not succeed.
    """

    llm_content: Any = ""
    display: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any]], Any]
AsyncToolHandler = Callable[..., Coroutine[Any, Any, Any]]


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], token: CancellationToken) -> ToolOutput | Any:
        """Execute the tool.

        Tools should check ``token`` at their own suspend points and stop
        early once it is cancelled.
        """
        ...


@dataclass
class SimpleTool:
    """Tool implementation wrapping a callable.

    Async handlers may accept the cancellation token as a second positional
    argument; sync handlers only receive the arguments.

    Example:
        tool = SimpleTool(
            spec=ToolSpec(name="greet", description="Greet someone"),
            handler=lambda args: f"Hello, {args.get('name', 'World')}!",
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    accepts_token: bool = False
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], token: CancellationToken) -> Any:
        if self._is_async:
            if self.accepts_token:
                return await self.handler(arguments, token)  # type: ignore[call-arg]
            return await self.handler(arguments)  # type: ignore[misc]
        return self.handler(arguments)
