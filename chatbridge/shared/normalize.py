"""Normalization helpers for assistant protocol and log payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO timestamps (``Z`` suffix included) into aware UTC datetimes."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def flatten_result_blocks(blocks: list[Any]) -> str:
    """Join the text carried by a tool result's content blocks.

    Strings and ``text`` blocks contribute, nested ``tool_result`` content
    is flattened, everything else (images, tool_use) is skipped.
    """
    parts: list[str] = []
    for block in blocks:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict):
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif block_type == "tool_result":
                content = block.get("content")
                if isinstance(content, list):
                    content = flatten_result_blocks(content)
                if isinstance(content, str):
                    parts.append(content)
    return "\n".join(part for part in parts if part).strip()
