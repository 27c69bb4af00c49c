"""Adapters package - Bridge between the engine and front-ends.

Contains the typed pool events and the event bus that carries them.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "BridgeEvent",
    "event_to_dict",
]

from chatbridge.adapters.event_bus import EventBus
from chatbridge.adapters.events import BridgeEvent, event_to_dict
