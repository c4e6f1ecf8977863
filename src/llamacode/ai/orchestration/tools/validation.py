"""Tool-call validation against the registry and JSON schemas."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from ...errors import ErrorCode, ToolValidationError
from .registry import ToolRegistry
from .types import Tool

__all__ = ["MAX_SCHEMA_ERRORS", "validate_tool_call", "format_schema_path"]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5


def format_schema_path(path: Sequence[Any]) -> str:
    if not path:
        return ""
    components: list[str] = []
    for segment in path:
        if isinstance(segment, int):
            if components:
                components[-1] = f"{components[-1]}[{segment}]"
            else:
                components.append(f"[{segment}]")
        else:
            components.append(str(segment))
    return ".".join(filter(None, components))


def validate_tool_call(registry: ToolRegistry, name: str, args: Mapping[str, Any]) -> Tool:
    """Resolve ``name`` and check ``args`` against its schema.

    Returns:
        The tool to execute.

    Raises:
        ToolValidationError: Unknown or disabled tool, invalid schema, or
            arguments that do not satisfy the schema.
    """
    tool = registry.get(name)
    if tool is None:
        available = ", ".join(sorted(registry.list_names())) or "none"
        raise ToolValidationError(
            error_code=ErrorCode.TOOL_NOT_FOUND,
            message=f"Tool '{name}' not found in registry. Available tools: {available}",
            tool_name=name,
        )

    schema = tool.spec.parameters
    if not schema:
        return tool
    try:
        Draft7Validator.check_schema(dict(schema))
    except SchemaError as exc:
        LOGGER.warning("Tool %s declares an invalid schema: %s", name, exc.message)
        raise ToolValidationError(
            message=f"Tool '{name}' declares an invalid parameter schema: {exc.message}",
            tool_name=name,
        ) from exc

    validator = Draft7Validator(dict(schema))
    issues: list[str] = []
    for issue in validator.iter_errors(dict(args)):
        path = format_schema_path(list(issue.absolute_path))
        issues.append(f"{path}: {issue.message}" if path else issue.message)
        if len(issues) >= MAX_SCHEMA_ERRORS:
            break
    if issues:
        raise ToolValidationError(
            message=f"Invalid arguments for tool '{name}': " + "; ".join(issues),
            tool_name=name,
            details={"issues": issues},
        )
    return tool
