"""Text protocol used when a model has no native function calling.

Tool schemas are rendered into a system prompt section, and prior tool
traffic in the history is rendered back into text so the model sees the
same ``<tool_call>`` markup it is asked to produce.
"""

from __future__ import annotations

import json
from typing import Sequence

from ..tool_call_parser import has_tool_calls
from ..types import FunctionCallPart, FunctionResponsePart, Message, TextPart, ToolDeclaration

__all__ = [
    "build_tool_prompt",
    "merge_system_instruction",
    "render_function_call",
    "render_function_response",
    "render_message_text",
]

_INSTRUCTIONS = """\
# Tools

You can call the tools listed below. To call a tool, reply with a block of
exactly this form and nothing else inside the tags:

<tool_call>
{"name": "<tool name>", "arguments": {<arguments as a JSON object>}}
</tool_call>

Rules:
- Use one <tool_call> block per call; several blocks may appear in one reply.
- The arguments must be valid JSON and match the tool's parameter schema.
- After you call a tool, stop and wait. The results arrive in the next
  message inside <tool_result> tags.
- When no tool is needed, answer normally without any <tool_call> block.

Example:
<tool_call>
{"name": "list_directory", "arguments": {"dir_path": "."}}
</tool_call>

## Available tools
"""


def build_tool_prompt(tools: Sequence[ToolDeclaration]) -> str:
    """Render the tool usage section for the system prompt."""
    lines = [_INSTRUCTIONS]
    for tool in tools:
        schema = json.dumps(dict(tool.parameters) if tool.parameters else {"type": "object", "properties": {}}, ensure_ascii=False)
        lines.append(f"### {tool.name}\n{tool.description.strip()}\nParameters (JSON schema): {schema}\n")
    return "\n".join(lines).rstrip() + "\n"


def merge_system_instruction(system_instruction: str | None, tools: Sequence[ToolDeclaration]) -> str | None:
    if not tools:
        return system_instruction
    section = build_tool_prompt(tools)
    if system_instruction:
        return f"{system_instruction.rstrip()}\n\n{section}"
    return section


def render_function_call(part: FunctionCallPart) -> str:
    payload = {"name": part.name, "arguments": dict(part.args)}
    return f"<tool_call>\n{json.dumps(payload, ensure_ascii=False, default=str)}\n</tool_call>"


def render_function_response(part: FunctionResponsePart) -> str:
    return f'<tool_result name="{part.name}">\n{part.render()}\n</tool_result>'


def render_message_text(message: Message) -> str:
    """Flatten a message into plain text for the text protocol.

    Function calls are only rendered when the message text does not already
    carry the model's own tool-call markup.
    """
    text = message.text
    rendered_calls = not has_tool_calls(text)
    chunks: list[str] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            chunks.append(part.text)
        elif isinstance(part, FunctionCallPart):
            if rendered_calls:
                chunks.append(render_function_call(part))
        elif isinstance(part, FunctionResponsePart):
            chunks.append(render_function_response(part))
    return "\n\n".join(chunk for chunk in chunks if chunk)
