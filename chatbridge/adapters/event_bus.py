"""Async event bus bridging the session pool to front-ends.

Subscribers are called in order for every event. A front-end that
prefers pulling can iterate ``consume()`` instead; the queue only
fills while a consumer is attached.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from chatbridge.adapters.events import BridgeEvent

logger = logging.getLogger(__name__)

# Signature: def handler(event) -> None, or async def handler(event) -> None
Subscriber = Callable[[BridgeEvent], Any]


class EventBus:
    """Fan-out of pool events to subscribers and queue consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[BridgeEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._subscribers: list[Subscriber] = []
        self._consumers = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        """Register *handler*; returns a function that unregisters it."""
        self._subscribers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return _unsubscribe

    async def emit(self, event: BridgeEvent) -> None:
        """Deliver *event* to every subscriber and any active consumer."""
        if self._closed:
            return
        for handler in list(self._subscribers):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "EventBus subscriber failed on %s", event.event_type
                )
        if self._consumers == 0:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[BridgeEvent]:
        """Yield events as they arrive. Stops on close()."""
        self._consumers += 1
        try:
            while not self._closed:
                try:
                    event = await asyncio.wait_for(
                        self._queue.get(), timeout=0.5
                    )
                    yield event
                except asyncio.TimeoutError:
                    continue
        finally:
            self._consumers -= 1

    def close(self) -> None:
        """Stop delivery permanently."""
        self._closed = True
