"""Data models for sessions, timelines and tool-call tracking."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class SessionStatus(str, Enum):
    CREATING = "creating"
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TurnStatus(str, Enum):
    """Display status of the turn currently being answered."""
    INITIALIZING = "initializing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


@dataclass
class Usage:
    """Token accounting reported by the assistant."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    tier: str = "unknown"

    @classmethod
    def from_payload(cls, payload: Any) -> Usage | None:
        """Build a Usage from a protocol ``usage`` object.

        Returns None when *payload* is not a mapping. Non-numeric
        counters are treated as zero.
        """
        if not isinstance(payload, dict):
            return None
        tier = payload.get("service_tier")
        return cls(
            input_tokens=_as_int(payload.get("input_tokens")),
            output_tokens=_as_int(payload.get("output_tokens")),
            cache_creation_tokens=_as_int(
                payload.get("cache_creation_input_tokens")
            ),
            cache_read_tokens=_as_int(payload.get("cache_read_input_tokens")),
            tier=tier if isinstance(tier, str) and tier else "unknown",
        )

    @property
    def is_zero(self) -> bool:
        # Input tokens alone do not make a report informative.
        return (
            self.cache_creation_tokens == 0
            and self.cache_read_tokens == 0
            and self.output_tokens == 0
        )

    @property
    def total_cache_tokens(self) -> int:
        return self.cache_creation_tokens + self.cache_read_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_cache_tokens": self.total_cache_tokens,
            "tier": self.tier,
        }


@dataclass
class ToolCallState:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    status: ToolStatus = ToolStatus.RUNNING
    result: str | None = None
    start_time: datetime = field(default_factory=_utcnow)
    end_time: datetime | None = None

    @property
    def duration(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def is_open(self) -> bool:
        return self.status in (ToolStatus.PENDING, ToolStatus.RUNNING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "status": self.status.value,
            "result": self.result,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
        }


# ── Timeline messages ──


@dataclass
class TimelineMessage:
    """Base entry of a session timeline."""
    kind: str = ""
    session_id: str = ""
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class UserMessage(TimelineMessage):
    kind: str = "user"
    text: str = ""


@dataclass
class AssistantText(TimelineMessage):
    kind: str = "assistant"
    text: str = ""
    # "stream" for text parsed from the invocation output,
    # "log" for text recovered from the on-disk conversation log.
    source: str = "stream"
    confirmed: bool = False


@dataclass
class ToolCallMessage(TimelineMessage):
    kind: str = "tool_call"
    tool: ToolCallState | None = None


@dataclass
class ServiceMessage(TimelineMessage):
    kind: str = "service"
    usage: Usage = field(default_factory=Usage)
    status: TurnStatus = TurnStatus.PROCESSING
    open_tools: int = 0
    cost_usd: float | None = None
    result: str | None = None
    duration_ms: int | None = None
    source: str = "stream"


def message_to_dict(message: TimelineMessage) -> dict[str, Any]:
    """Serialize a timeline message into plain JSON-compatible data."""
    data: dict[str, Any] = {
        "kind": message.kind,
        "id": message.id,
        "session_id": message.session_id,
        "timestamp": message.timestamp.isoformat(),
    }
    if isinstance(message, UserMessage):
        data["text"] = message.text
    elif isinstance(message, AssistantText):
        data["text"] = message.text
        data["source"] = message.source
    elif isinstance(message, ToolCallMessage):
        data["tool"] = message.tool.to_dict() if message.tool else None
    elif isinstance(message, ServiceMessage):
        data.update(
            usage=message.usage.to_dict(),
            status=message.status.value,
            open_tools=message.open_tools,
            cost_usd=message.cost_usd,
            result=message.result,
            duration_ms=message.duration_ms,
            source=message.source,
        )
    return data


@dataclass
class Session:
    """One conversation backed by the assistant CLI."""
    id: str
    name: str
    cwd: str
    status: SessionStatus = SessionStatus.CREATING
    timeline: list[TimelineMessage] = field(default_factory=list)
    pending_tools: dict[str, ToolCallState] = field(default_factory=dict)
    resume_token: str | None = None
    last_usage: Usage | None = None
    last_result: dict[str, Any] | None = None
    turn_status: TurnStatus = TurnStatus.COMPLETED
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)

    def append(self, message: TimelineMessage, limit: int = 0) -> None:
        """Append *message* and drop the oldest entries beyond *limit*."""
        message.session_id = self.id
        self.timeline.append(message)
        if limit > 0 and len(self.timeline) > limit:
            del self.timeline[: len(self.timeline) - limit]

    def current_turn(self) -> list[TimelineMessage]:
        """Messages after the most recent user message."""
        return self.recent_turns(1)

    def recent_turns(self, count: int) -> list[TimelineMessage]:
        """Messages of the last *count* turns, user messages excluded."""
        seen = 0
        for index in range(len(self.timeline) - 1, -1, -1):
            if isinstance(self.timeline[index], UserMessage):
                seen += 1
                if seen == count:
                    return [
                        m for m in self.timeline[index + 1:]
                        if not isinstance(m, UserMessage)
                    ]
        return [m for m in self.timeline if not isinstance(m, UserMessage)]

    def touch(self) -> None:
        self.last_active_at = _utcnow()
