"""Approval gating for side-effecting tool calls."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..cancellation import CancellationToken
from .tools.types import ToolSpec

if TYPE_CHECKING:
    from .scheduler import ToolCallSnapshot

__all__ = [
    "ApprovalMode",
    "ToolConfirmationOutcome",
    "ApprovalHandler",
    "ApprovalPolicy",
]

LOGGER = logging.getLogger(__name__)


class ApprovalMode(str, Enum):
    """Session-wide approval behaviour.

    ``DEFAULT`` asks for every mutating call, ``AUTO_EDIT`` approves file
    edits automatically, and ``YOLO`` approves everything.
    """

    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"

    @classmethod
    def parse(cls, value: str | ApprovalMode | None) -> ApprovalMode:
        if isinstance(value, ApprovalMode):
            return value
        normalized = (value or "").strip().lower().replace("-", "_")
        for mode in cls:
            if mode.value == normalized:
                return mode
        return cls.DEFAULT


class ToolConfirmationOutcome(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    REJECT = "reject"


@runtime_checkable
class ApprovalHandler(Protocol):
    """Collaborator asked to approve a call awaiting approval.

    Only the call being confirmed waits for the answer; the rest of its batch
    keeps running.
    """

    async def confirm(self, snapshot: ToolCallSnapshot, token: CancellationToken) -> ToolConfirmationOutcome:
        ...


class ApprovalPolicy:
    """Decides which calls need a human decision."""

    def __init__(self, mode: ApprovalMode = ApprovalMode.DEFAULT) -> None:
        self._mode = mode
        self._always_allowed: set[str] = set()

    @property
    def mode(self) -> ApprovalMode:
        return self._mode

    @mode.setter
    def mode(self, value: ApprovalMode) -> None:
        if value is not self._mode:
            LOGGER.info("Approval mode changed: %s -> %s", self._mode.value, value.value)
        self._mode = value

    @property
    def always_allowed(self) -> frozenset[str]:
        return frozenset(self._always_allowed)

    def allow_always(self, tool_name: str) -> None:
        """Skip approval for ``tool_name`` for the rest of the session."""
        self._always_allowed.add(tool_name)

    def requires_approval(self, spec: ToolSpec) -> bool:
        if not spec.kind.is_mutating:
            return False
        if spec.name in self._always_allowed:
            return False
        if self._mode is ApprovalMode.YOLO:
            return False
        if self._mode is ApprovalMode.AUTO_EDIT and spec.kind.is_edit:
            return False
        return True
