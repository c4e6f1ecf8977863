"""Tool executor.

Runs one validated tool call with a per-call timeout and normalizes whatever
the tool returns into a :class:`ToolOutput`. Cancellation is cooperative:
the executor hands the turn's token to the tool and never kills it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from ...cancellation import CancellationToken
from ...errors import ErrorCode, ToolExecutionError
from .types import Tool, ToolOutput

__all__ = ["ToolExecutor", "ExecutorConfig", "coerce_tool_output"]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Executor Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Timeout for tools whose spec sets none, in seconds.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = 120.0
    log_arguments: bool = False
    log_results: bool = False


def coerce_tool_output(result: Any) -> ToolOutput:
    """Wrap a raw tool return value as a :class:`ToolOutput`."""
    if isinstance(result, ToolOutput):
        return result
    if result is None:
        return ToolOutput(llm_content="")
    return ToolOutput(llm_content=result)


# -----------------------------------------------------------------------------
# Tool Executor
# -----------------------------------------------------------------------------


class ToolExecutor:
    """Executes validated tool calls."""

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(
        self,
        tool: Tool,
        arguments: Mapping[str, Any],
        token: CancellationToken,
        *,
        call_id: str = "",
        timeout: float | None = None,
    ) -> ToolOutput:
        """Run ``tool`` with ``arguments``.

        Args:
            tool: The resolved tool.
            arguments: Validated arguments.
            token: The owning turn's cancellation token.
            call_id: Call identifier for tracing.
            timeout: Override for the tool's own or the default timeout.

        Returns:
            The normalized tool output.

        Raises:
            ToolExecutionError: The tool raised or exceeded its timeout.
        """
        name = tool.name
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", name, call_id, arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, call_id)

        effective_timeout = timeout if timeout is not None else tool.spec.timeout
        if effective_timeout is None:
            effective_timeout = self._config.default_timeout

        start_time = time.perf_counter()
        try:
            if effective_timeout is not None and effective_timeout > 0:
                result = await asyncio.wait_for(tool.execute(arguments, token), timeout=effective_timeout)
            else:
                result = await tool.execute(arguments, token)
        except asyncio.TimeoutError as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning(
                "Tool %s timed out after %.1fms (timeout=%.1fs)",
                name,
                duration_ms,
                effective_timeout,
            )
            raise ToolExecutionError(
                error_code=ErrorCode.TIMEOUT,
                message=f"Tool '{name}' timed out after {effective_timeout:g}s",
                tool_name=name,
                cause=exc,
            ) from exc
        except ToolExecutionError:
            raise
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            raise ToolExecutionError(
                message=f"Tool '{name}' failed: {exc}",
                tool_name=name,
                cause=exc,
            ) from exc

        output = coerce_tool_output(result)
        duration_ms = (time.perf_counter() - start_time) * 1000
        if self._config.log_results:
            LOGGER.debug("Tool %s completed in %.1fms with result: %s", name, duration_ms, output)
        else:
            LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
        return output
