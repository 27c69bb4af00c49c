"""Event types published by the session pool.

Each event is a typed dataclass delivered through the EventBus to
front-ends; ``event_to_dict`` flattens one for JSON output.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from chatbridge.engine.models import (
    ServiceMessage,
    TimelineMessage,
    message_to_dict,
)


@dataclass
class BridgeEvent:
    """Base event from the session pool."""
    event_type: str = ""
    session_id: str = ""


@dataclass
class SessionCreated(BridgeEvent):
    event_type: str = "session_created"
    name: str = ""
    cwd: str = ""
    resume_token: str | None = None


@dataclass
class SessionClosed(BridgeEvent):
    event_type: str = "session_closed"
    name: str = ""


@dataclass
class SessionSwitched(BridgeEvent):
    event_type: str = "session_switched"
    previous_id: str | None = None


@dataclass
class SessionStatusChanged(BridgeEvent):
    event_type: str = "session_status_changed"
    old_status: str = ""
    new_status: str = ""
    error: str | None = None


@dataclass
class MessageReceived(BridgeEvent):
    """A timeline message was appended, or updated in place."""
    event_type: str = "message_received"
    message: TimelineMessage | None = None
    updated: bool = False


@dataclass
class ServiceInfoReceived(BridgeEvent):
    event_type: str = "service_info_received"
    service: ServiceMessage | None = None


def event_to_dict(event: BridgeEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, TimelineMessage):
            val = message_to_dict(val)
        elif isinstance(val, Enum):
            val = val.value
        d[f] = val
    # "event" key instead of "event_type", matching the wire format of the CLI
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d
