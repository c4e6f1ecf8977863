"""Tool registry, validation, and execution.

Example:
    from llamacode.ai.orchestration.tools import ToolKind, ToolRegistry, ToolSpec

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="list_directory", description="List files", kind=ToolKind.READ),
        handler=lambda args: "\\n".join(sorted(os.listdir(args["dir_path"]))),
    )
"""

from .types import (
    AsyncToolHandler,
    SimpleTool,
    Tool,
    ToolHandler,
    ToolKind,
    ToolOutput,
    ToolSpec,
)

from .registry import (
    DuplicateToolError,
    ToolNotFoundError,
    ToolRegistration,
    ToolRegistry,
)

from .executor import (
    ExecutorConfig,
    ToolExecutor,
    coerce_tool_output,
)

from .validation import validate_tool_call

__all__ = [
    # types.py
    "Tool",
    "ToolSpec",
    "ToolKind",
    "ToolOutput",
    "ToolHandler",
    "AsyncToolHandler",
    "SimpleTool",
    # registry.py
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    # executor.py
    "ToolExecutor",
    "ExecutorConfig",
    "coerce_tool_output",
    # validation.py
    "validate_tool_call",
]
