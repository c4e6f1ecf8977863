"""Tool registry.

The registry is the scheduler's source of truth for which tools exist,
what their parameter schemas are, and how risky they are. Disabled tools
stay registered but are neither advertised to the model nor callable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Iterator, Mapping

from ...types import ToolDeclaration
from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolKind, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


@dataclass(slots=True)
class ToolRegistration:
    """One registered tool.

    Attributes:
        tool: The implementation the scheduler executes.
        enabled: Whether the model is offered the tool and may call it.
        metadata: Free-form tags, e.g. where the tool came from.
    """

    tool: Tool
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def spec(self) -> ToolSpec:
        return self.tool.spec


class ToolRegistry:
    """Name-keyed tools in registration order.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            ToolSpec(name="read_file", description="Read a file", kind=ToolKind.READ),
            read_file,
        )
        declarations = registry.declarations()
    """

    def __init__(self) -> None:
        self._entries: dict[str, ToolRegistration] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        tool: Tool,
        *,
        enabled: bool = True,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Add ``tool`` under its own name.

        Raises:
            DuplicateToolError: The name is taken and ``allow_override`` is False.
        """
        if tool.name in self._entries and not allow_override:
            raise DuplicateToolError(tool.name)
        entry = ToolRegistration(tool=tool, enabled=enabled, metadata=dict(metadata or {}))
        self._entries[tool.name] = entry
        LOGGER.debug(
            "Registered %s tool %s%s",
            tool.spec.kind.value,
            tool.name,
            "" if enabled else " (disabled)",
        )
        return entry

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler | AsyncToolHandler,
        *,
        accepts_token: bool = False,
        **options: Any,
    ) -> ToolRegistration:
        """Wrap ``handler`` in a :class:`SimpleTool` and register it.

        ``accepts_token`` makes async handlers receive the turn's
        cancellation token; ``options`` are passed on to :meth:`register`.
        """
        return self.register(SimpleTool(spec=spec, handler=handler, accepts_token=accepts_token), **options)

    def unregister(self, name: str) -> bool:
        removed = self._entries.pop(name, None)
        if removed is not None:
            LOGGER.debug("Unregistered tool %s", name)
        return removed is not None

    def clear(self) -> None:
        self._entries.clear()

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        entry.enabled = enabled
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _active(self, name: str) -> ToolRegistration | None:
        entry = self._entries.get(name)
        return entry if entry is not None and entry.enabled else None

    def get(self, name: str) -> Tool | None:
        entry = self._active(name)
        return entry.tool if entry else None

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_spec(self, name: str) -> ToolSpec | None:
        entry = self._active(name)
        return entry.spec if entry else None

    def has(self, name: str) -> bool:
        return self._active(name) is not None

    def registrations(self, *, include_disabled: bool = False) -> Iterator[ToolRegistration]:
        for entry in self._entries.values():
            if entry.enabled or include_disabled:
                yield entry

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        return [entry.name for entry in self.registrations(include_disabled=include_disabled)]

    def declarations(
        self,
        *,
        filter_names: Collection[str] | None = None,
        kinds: Collection[ToolKind] | None = None,
    ) -> tuple[ToolDeclaration, ...]:
        """Declarations of the enabled tools, in registration order.

        Args:
            filter_names: Only include these tool names.
            kinds: Only include tools of these kinds, e.g. read-only tools.
        """
        return tuple(
            entry.spec.to_declaration()
            for entry in self.registrations()
            if (filter_names is None or entry.name in filter_names)
            and (kinds is None or entry.spec.kind in kinds)
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries
