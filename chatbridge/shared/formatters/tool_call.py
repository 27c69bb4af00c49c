"""Plain-text rendering of tool invocations and their results."""

from __future__ import annotations

import json
from typing import Any

from chatbridge.shared.normalize import flatten_result_blocks

MAX_PARAM_CHARS = 80
MAX_INLINE_CHARS = 100
DEFAULT_MAX_LINES = 10


def format_tool_use(name: str, arguments: dict[str, Any] | None) -> str:
    """Render a tool call as ``Name(key: "value", ...)``.

    Long values are cut at 80 characters; when the joined parameter
    list exceeds 100 characters one parameter is placed per line.
    """
    params: list[str] = []
    for key, value in (arguments or {}).items():
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        if len(text) > MAX_PARAM_CHARS:
            params.append(f'{key}: "{text[:MAX_PARAM_CHARS]}..."')
        else:
            params.append(f'{key}: "{text}"')

    joined = ", ".join(params)
    if len(joined) > MAX_INLINE_CHARS:
        inner = ",\n  ".join(params)
        return f"{name}(\n  {inner}\n)"
    return f"{name}({joined})"


def format_tool_result(
    content: Any,
    is_error: bool = False,
    max_lines: int = DEFAULT_MAX_LINES,
) -> str:
    """Render a tool result for the timeline.

    Error results are prefixed with ``Error:``. String output with more
    than *max_lines* non-blank lines keeps the first *max_lines* and a
    ``... +N lines`` marker. Content block lists are flattened to text;
    any other value is rendered as indented JSON.
    """
    if isinstance(content, list):
        content = flatten_result_blocks(content)

    if is_error:
        if isinstance(content, str):
            detail = content
        else:
            detail = json.dumps(content, ensure_ascii=False) if content else ""
        return f"Error: {detail or 'Unknown error'}"

    if not content:
        return "Completed"

    if isinstance(content, str):
        lines = [line for line in content.split("\n") if line.strip()]
        if max_lines > 0 and len(lines) > max_lines:
            kept = "\n".join(lines[:max_lines])
            return f"{kept}\n... +{len(lines) - max_lines} lines"
        return content

    return json.dumps(content, indent=2, ensure_ascii=False)
