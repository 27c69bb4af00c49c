"""Typed view of the assistant CLI's stream-json protocol.

Every stdout line of ``claude --print --output-format stream-json``
is one JSON object. Lines are parsed once, here, into a closed set of
dataclasses so the rest of the engine never inspects raw dicts.
The same module parses entries of the on-disk conversation log.

Shapes handled:

    {"type": "system", "subtype": "init", "session_id": "..."}
    {"type": "assistant", "message": {"content": [...],
        "stop_reason": ..., "usage": {...}}, "session_id": "..."}
    {"type": "user", "message": {"content": [{"type": "tool_result",
        "tool_use_id": "...", "content": ..., "is_error": false}]}}
    {"type": "result", "message": {"tool_use_id": "...", "content": ...}}
    {"type": "result", "subtype": "success", "is_error": false,
        "result": "...", "total_cost_usd": 0.01, "usage": {...}}
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from chatbridge.engine.errors import ParseError
from chatbridge.engine.models import TurnStatus, Usage
from chatbridge.shared.normalize import parse_timestamp

CONTEXT_LIMIT_MESSAGE = "Prompt is too long"
END_TURN = "end_turn"


# ── Content blocks ──


@dataclass
class TextBlock:
    text: str = ""


@dataclass
class ToolUseBlock:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ThinkingBlock:
    text: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock, ThinkingBlock]


@dataclass
class ToolResult:
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False


# ── Events ──


@dataclass
class ProtocolEvent:
    """Base event parsed from one protocol line."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SystemEvent(ProtocolEvent):
    event_type: str = "system"
    subtype: str = ""


@dataclass
class AssistantEvent(ProtocolEvent):
    event_type: str = "assistant"
    blocks: list[ContentBlock] = field(default_factory=list)
    stop_reason: str | None = None
    usage: Usage | None = None


@dataclass
class UserEvent(ProtocolEvent):
    """User-role echo that carries no tool results."""
    event_type: str = "user"
    text: str = ""


@dataclass
class ToolResultEvent(ProtocolEvent):
    event_type: str = "tool_result"
    results: list[ToolResult] = field(default_factory=list)


@dataclass
class ResultEvent(ProtocolEvent):
    """Terminal event of one invocation."""
    event_type: str = "result"
    subtype: str = ""
    is_error: bool = False
    result: str | None = None
    total_cost_usd: float | None = None
    usage: Usage | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_context_limit(self) -> bool:
        return self.is_error and self.result == CONTEXT_LIMIT_MESSAGE


@dataclass
class LogEntry:
    """One line of the on-disk conversation log."""
    entry_type: str = ""
    blocks: list[ContentBlock] = field(default_factory=list)
    stop_reason: str | None = None
    usage: Usage | None = None
    timestamp: datetime | None = None
    session_id: str | None = None
    tool_results: list[ToolResult] = field(default_factory=list)

    @property
    def is_summary(self) -> bool:
        return self.entry_type == "summary"

    @property
    def text(self) -> str:
        return "\n".join(
            b.text for b in self.blocks if isinstance(b, TextBlock) and b.text
        )


# ── Parsing ──


def _session_id(obj: dict[str, Any]) -> str | None:
    value = obj.get("session_id") or obj.get("sessionId")
    return value if isinstance(value, str) and value else None


def parse_blocks(content: Any) -> list[ContentBlock]:
    """Convert raw message content into typed blocks.

    Unknown block types are dropped.
    """
    if isinstance(content, str):
        return [TextBlock(text=content)] if content else []
    if not isinstance(content, list):
        return []
    blocks: list[ContentBlock] = []
    for raw in content:
        if not isinstance(raw, dict):
            continue
        block_type = raw.get("type")
        if block_type == "text":
            text = raw.get("text")
            if isinstance(text, str):
                blocks.append(TextBlock(text=text))
        elif block_type == "tool_use":
            tool_input = raw.get("input")
            blocks.append(ToolUseBlock(
                id=str(raw.get("id") or ""),
                name=str(raw.get("name") or "unknown"),
                input=tool_input if isinstance(tool_input, dict) else {},
            ))
        elif block_type == "thinking":
            thinking = raw.get("thinking")
            blocks.append(
                ThinkingBlock(text=thinking if isinstance(thinking, str) else "")
            )
    return blocks


def parse_tool_results(content: Any) -> list[ToolResult]:
    if not isinstance(content, list):
        return []
    results: list[ToolResult] = []
    for raw in content:
        if isinstance(raw, dict) and raw.get("type") == "tool_result":
            results.append(ToolResult(
                tool_use_id=str(raw.get("tool_use_id") or ""),
                content=raw.get("content"),
                is_error=bool(raw.get("is_error")),
            ))
    return results


def _message(obj: dict[str, Any]) -> dict[str, Any]:
    message = obj.get("message")
    return message if isinstance(message, dict) else {}


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def parse_event(obj: Any) -> ProtocolEvent:
    """Convert one decoded protocol object into a typed event.

    Raises ParseError for anything outside the known shapes.
    """
    if not isinstance(obj, dict):
        raise ParseError(f"expected an object, got {type(obj).__name__}")
    event_type = obj.get("type")
    session_id = _session_id(obj)
    message = _message(obj)

    if event_type == "system":
        return SystemEvent(
            session_id=session_id, subtype=str(obj.get("subtype") or "")
        )

    if event_type == "assistant":
        if not message:
            raise ParseError("assistant event without message")
        stop_reason = message.get("stop_reason")
        return AssistantEvent(
            session_id=session_id,
            blocks=parse_blocks(message.get("content")),
            stop_reason=stop_reason if isinstance(stop_reason, str) else None,
            usage=Usage.from_payload(message.get("usage")),
        )

    if event_type == "user":
        content = message.get("content")
        results = parse_tool_results(content)
        if results:
            return ToolResultEvent(session_id=session_id, results=results)
        text = content if isinstance(content, str) else ""
        return UserEvent(session_id=session_id, text=text)

    if event_type == "result":
        if message.get("tool_use_id"):
            return ToolResultEvent(
                session_id=session_id,
                results=[ToolResult(
                    tool_use_id=str(message["tool_use_id"]),
                    content=message.get("content"),
                    is_error=bool(message.get("is_error")),
                )],
            )
        result = obj.get("result")
        duration = _number(obj.get("duration_ms"))
        num_turns = _number(obj.get("num_turns"))
        return ResultEvent(
            session_id=session_id,
            subtype=str(obj.get("subtype") or ""),
            is_error=bool(obj.get("is_error")),
            result=result if isinstance(result, str) else None,
            total_cost_usd=_number(obj.get("total_cost_usd")),
            usage=Usage.from_payload(obj.get("usage")),
            duration_ms=int(duration) if duration is not None else None,
            num_turns=int(num_turns) if num_turns is not None else None,
            raw=obj,
        )

    raise ParseError(f"unknown event type {event_type!r}")


def parse_line(line: str) -> ProtocolEvent:
    """Decode and parse one protocol line."""
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON ({exc.msg})", line) from exc
    return parse_event(obj)


def parse_log_entry(obj: Any) -> LogEntry:
    """Convert one decoded log line into a LogEntry."""
    if not isinstance(obj, dict):
        raise ParseError(f"expected an object, got {type(obj).__name__}")
    entry_type = obj.get("type")
    if not isinstance(entry_type, str) or not entry_type:
        raise ParseError("log entry without type")
    message = _message(obj)
    content = message.get("content")
    stop_reason = message.get("stop_reason")
    return LogEntry(
        entry_type=entry_type,
        blocks=parse_blocks(content) if entry_type == "assistant" else [],
        stop_reason=stop_reason if isinstance(stop_reason, str) else None,
        usage=Usage.from_payload(message.get("usage")),
        timestamp=parse_timestamp(obj.get("timestamp")),
        session_id=_session_id(obj),
        tool_results=parse_tool_results(content),
    )


def derive_turn_status(
    stop_reason: str | None, has_open_tools: bool
) -> TurnStatus:
    """Display status for a turn given its latest stop reason.

    ``completed`` only when the assistant reported ``end_turn`` and no
    tool call is still open; otherwise ``processing``.
    """
    if stop_reason == END_TURN and not has_open_tools:
        return TurnStatus.COMPLETED
    return TurnStatus.PROCESSING
