"""Model backends, content generation, and tool-call extraction."""

from .cancellation import CANCELLED, CancellationToken
from .content_generator import ContentGenerator, create_content_generator
from .tool_call_parser import ExtractedToolCall, ToolCallExtractor, extract_tool_calls, has_tool_calls

__all__ = [
    "CANCELLED",
    "CancellationToken",
    "ContentGenerator",
    "create_content_generator",
    "ExtractedToolCall",
    "ToolCallExtractor",
    "extract_tool_calls",
    "has_tool_calls",
]
