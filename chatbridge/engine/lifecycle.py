"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    CREATING ──> STARTING ──> READY ──┬──> READY  (each finished invocation)
                                      │
                                      └──> ERROR ──> READY  (recover)

    Any state ──> CLOSED  (terminal)
"""
from __future__ import annotations

from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.CREATING: {
        SessionStatus.STARTING,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.STARTING: {
        SessionStatus.READY,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.READY: {
        SessionStatus.READY,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.ERROR: {
        SessionStatus.READY,
        SessionStatus.CLOSED,
    },
    SessionStatus.CLOSED: set(),
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(
            sorted(s.value for s in allowed)
        ) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
