"""Exception hierarchy for the session bridge.

Specific exceptions for each failure mode. Parse-level errors are
recovered where they occur; process-level errors reach the caller
of ``SessionPool.send_message``.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class CapacityError(BridgeError):
    """The session pool is full."""
    def __init__(self, max_sessions: int):
        self.max_sessions = max_sessions
        super().__init__(
            f"Maximum number of sessions reached ({max_sessions})"
        )


class NotFoundError(BridgeError):
    """No session exists with the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class NotReadyError(BridgeError):
    """The session cannot accept a message in its current state."""
    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(
            f"Session {session_id} is not ready (status: {status})"
        )


class RunnerBusyError(NotReadyError):
    """An invocation is already in flight for this session."""
    def __init__(self, session_id: str):
        super().__init__(session_id, "busy")


class SpawnError(BridgeError):
    """The assistant CLI could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {command}: {reason}")


class ProcessError(BridgeError):
    """The assistant CLI exited with a nonzero status."""
    def __init__(self, session_id: str, exit_code: int, stderr: str = ""):
        self.session_id = session_id
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip()[:500] or "no output on stderr"
        super().__init__(
            f"Process for session {session_id} failed "
            f"(rc={exit_code}): {detail}"
        )


class ParseError(BridgeError):
    """A protocol line could not be interpreted."""
    def __init__(self, reason: str, line: str = ""):
        self.reason = reason
        self.line = line
        super().__init__(f"Unparseable protocol line: {reason}")


class ContextLimitError(BridgeError):
    """The conversation exceeded the model's context window."""
    def __init__(self, session_id: str, message: str = "Prompt is too long"):
        self.session_id = session_id
        self.message = message
        super().__init__(
            f"Context limit reached for session {session_id}: {message}"
        )
