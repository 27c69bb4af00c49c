"""Tests for pool events and the EventBus."""
from __future__ import annotations

import asyncio
import json

import pytest

from chatbridge.adapters.event_bus import EventBus
from chatbridge.adapters.events import (
    MessageReceived,
    ServiceInfoReceived,
    SessionCreated,
    event_to_dict,
)
from chatbridge.engine.models import (
    AssistantText,
    ServiceMessage,
    ToolCallMessage,
    ToolCallState,
    TurnStatus,
    Usage,
)


def test_event_to_dict_flattens_messages():
    message = AssistantText(session_id="s1", text="hi")
    data = event_to_dict(MessageReceived(session_id="s1", message=message))
    assert data["event"] == "message_received"
    assert data["message"]["kind"] == "assistant"
    assert data["message"]["text"] == "hi"
    assert data["updated"] is False
    json.dumps(data)


def test_event_to_dict_service_and_tool():
    service = ServiceMessage(usage=Usage(cache_read_tokens=5), status=TurnStatus.COMPLETED)
    data = event_to_dict(ServiceInfoReceived(session_id="s1", service=service))
    assert data["service"]["usage"]["total_cache_tokens"] == 5
    assert data["service"]["status"] == "completed"

    tool = ToolCallMessage(tool=ToolCallState(id="t1", name="Read"))
    data = event_to_dict(MessageReceived(session_id="s1", message=tool))
    assert data["message"]["tool"]["status"] == "running"
    json.dumps(data)


def test_event_to_dict_drops_none():
    data = event_to_dict(SessionCreated(session_id="s1", name="n", cwd="/"))
    assert "resume_token" not in data


@pytest.mark.asyncio
async def test_subscribers_sync_and_async():
    bus = EventBus()
    seen_sync, seen_async = [], []

    async def handler(event):
        seen_async.append(event)

    bus.subscribe(seen_sync.append)
    unsubscribe = bus.subscribe(handler)
    event = SessionCreated(session_id="s1")
    await bus.emit(event)
    unsubscribe()
    await bus.emit(event)
    assert seen_sync == [event, event]
    assert seen_async == [event]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("nope")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    await bus.emit(SessionCreated(session_id="s1"))
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_consume_receives_events_until_closed():
    bus = EventBus()
    received = []

    async def consumer():
        async for event in bus.consume():
            received.append(event)
            if len(received) == 2:
                bus.close()

    task = asyncio.create_task(consumer())
    await asyncio.sleep(0.01)
    await bus.emit(SessionCreated(session_id="a"))
    await bus.emit(SessionCreated(session_id="b"))
    await asyncio.wait_for(task, timeout=2.0)
    assert [e.session_id for e in received] == ["a", "b"]

    # Closed bus drops events
    await bus.emit(SessionCreated(session_id="c"))
    assert len(received) == 2


@pytest.mark.asyncio
async def test_no_queueing_without_consumer():
    bus = EventBus(maxsize=1)
    for _ in range(3):
        await bus.emit(SessionCreated(session_id="s"))
    assert bus._queue.empty()
