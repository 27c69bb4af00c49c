"""Bounded pool of assistant sessions.

The pool is the single entry point for front-ends: it creates and
closes sessions, tracks which one is active, routes messages to the
right runner and publishes every change on the EventBus.
"""
from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from chatbridge.adapters.event_bus import EventBus
from chatbridge.adapters.events import (
    MessageReceived,
    SessionClosed,
    SessionCreated,
    SessionStatusChanged,
    SessionSwitched,
)

from .config import AsyncCallback, BridgeConfig
from .errors import (
    CapacityError,
    ContextLimitError,
    NotFoundError,
    NotReadyError,
    ProcessError,
    RunnerBusyError,
    SpawnError,
)
from .lifecycle import validate_transition
from .log_monitor import LogTailMonitor, LogUpdate
from .models import Session, SessionStatus, UserMessage
from .projector import TimelineProjector
from .protocol import ProtocolEvent
from .raw_sink import NullRawSink, RawStreamSink
from .runner import EventHandler, InvocationResult, StreamingInvocationRunner

logger = logging.getLogger(__name__)

CONTEXT_LIMIT_NOTICE = (
    "This session cannot continue: it has reached its context limit.\n"
    "Create a new session and continue there."
)

RunnerFactory = Callable[
    [Session, BridgeConfig, EventHandler, RawStreamSink],
    StreamingInvocationRunner,
]
MonitorFactory = Callable[[Session, BridgeConfig, AsyncCallback], LogTailMonitor]


def default_runner_factory(
    session: Session,
    config: BridgeConfig,
    on_event: EventHandler,
    raw_sink: RawStreamSink,
) -> StreamingInvocationRunner:
    return StreamingInvocationRunner(
        session.id,
        session.cwd,
        config,
        on_event=on_event,
        raw_sink=raw_sink,
        resume_token=session.resume_token,
    )


def default_monitor_factory(
    session: Session,
    config: BridgeConfig,
    on_update: AsyncCallback,
) -> LogTailMonitor:
    return LogTailMonitor(
        session.id, session.cwd, config, on_update,
        conversation_id=session.resume_token,
    )


@dataclass
class _Slot:
    session: Session
    runner: StreamingInvocationRunner
    projector: TimelineProjector
    monitor: LogTailMonitor | None = None


class SessionPool:
    """Owns up to ``max_sessions`` sessions and their runners."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        bus: EventBus | None = None,
        raw_sink: RawStreamSink | None = None,
        runner_factory: RunnerFactory | None = None,
        monitor_factory: MonitorFactory | None = None,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self.bus = bus or EventBus()
        self._raw_sink = raw_sink or NullRawSink()
        self._runner_factory = runner_factory or default_runner_factory
        self._monitor_factory = monitor_factory or default_monitor_factory
        self._slots: dict[str, _Slot] = {}
        self._active_id: str | None = None
        self._created_count = 0

    # ── Accessors ──

    @property
    def sessions(self) -> list[Session]:
        return [slot.session for slot in self._slots.values()]

    @property
    def active_session_id(self) -> str | None:
        return self._active_id

    @property
    def active_session(self) -> Session | None:
        if self._active_id is None:
            return None
        slot = self._slots.get(self._active_id)
        return slot.session if slot else None

    @property
    def can_create_session(self) -> bool:
        return len(self._slots) < self.config.max_sessions

    def get_session(self, session_id: str) -> Session:
        return self._slot(session_id).session

    def get_runner(self, session_id: str) -> StreamingInvocationRunner:
        return self._slot(session_id).runner

    def get_monitor(self, session_id: str) -> LogTailMonitor | None:
        return self._slot(session_id).monitor

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._slots

    def _slot(self, session_id: str) -> _Slot:
        slot = self._slots.get(session_id)
        if slot is None:
            raise NotFoundError(session_id)
        return slot

    async def _set_status(
        self, slot: _Slot, target: SessionStatus, error: str | None = None
    ) -> None:
        session = slot.session
        old = session.status
        validate_transition(old, target)
        session.status = target
        if old == target:
            return
        logger.info(
            "Session %s status %s -> %s%s",
            session.id[:8], old.value, target.value,
            f" ({error})" if error else "",
        )
        await self.bus.emit(SessionStatusChanged(
            session_id=session.id,
            old_status=old.value,
            new_status=target.value,
            error=error,
        ))

    # ── Session management ──

    async def create_session(
        self,
        name: str | None = None,
        *,
        cwd: str | None = None,
        resume_token: str | None = None,
    ) -> Session:
        """Create a session and make it active.

        Passing *resume_token* continues an existing CLI conversation.
        """
        if not self.can_create_session:
            raise CapacityError(self.config.max_sessions)
        workdir = os.path.abspath(os.path.expanduser(cwd or self.config.cwd))
        if not os.path.isdir(workdir):
            raise SpawnError(
                self.config.command,
                f"working directory does not exist: {workdir}",
            )

        self._created_count += 1
        session = Session(
            id=str(uuid.uuid4()),
            name=name or f"Session {self._created_count}",
            cwd=workdir,
            resume_token=resume_token,
        )
        projector = TimelineProjector(
            session,
            self.bus.emit,
            truncate_lines=self.config.truncate_lines,
            history_limit=self.config.message_history_limit,
        )
        runner = self._runner_factory(
            session,
            self.config,
            partial(self._on_stream_event, session.id),
            self._raw_sink,
        )
        slot = _Slot(session=session, runner=runner, projector=projector)
        self._slots[session.id] = slot
        logger.info(
            "Creating session %s '%s' (cwd=%s, resume=%s)",
            session.id[:8], session.name, workdir, resume_token or "<new>",
        )

        await self._set_status(slot, SessionStatus.STARTING)
        if self.config.monitor_logs:
            monitor = self._monitor_factory(
                session, self.config, partial(self._on_log_update, session.id)
            )
            try:
                await monitor.start()
                slot.monitor = monitor
            except OSError as exc:
                logger.warning(
                    "Log monitoring disabled for session %s: %s",
                    session.id[:8], exc,
                )
        await self._set_status(slot, SessionStatus.READY)

        await self.bus.emit(SessionCreated(
            session_id=session.id,
            name=session.name,
            cwd=session.cwd,
            resume_token=resume_token,
        ))
        await self._activate(session)
        return session

    async def switch_session(self, session_id: str) -> Session:
        slot = self._slot(session_id)
        await self._activate(slot.session)
        return slot.session

    async def _activate(self, session: Session) -> None:
        previous = self._active_id
        self._active_id = session.id
        session.touch()
        await self.bus.emit(SessionSwitched(
            session_id=session.id, previous_id=previous,
        ))

    async def close_session(self, session_id: str) -> None:
        """Terminate any running invocation and release the session."""
        slot = self._slot(session_id)
        session = slot.session
        logger.info("Closing session %s '%s'", session.id[:8], session.name)

        slot.runner.dispose()
        await slot.runner.terminate()
        if slot.monitor is not None:
            await slot.monitor.stop()
            slot.monitor = None
        await self._set_status(slot, SessionStatus.CLOSED)
        del self._slots[session_id]

        was_active = self._active_id == session_id
        if was_active:
            self._active_id = next(iter(self._slots), None)
        await self.bus.emit(SessionClosed(
            session_id=session.id, name=session.name,
        ))
        if was_active and self._active_id is not None:
            await self.bus.emit(SessionSwitched(
                session_id=self._active_id, previous_id=session_id,
            ))

    async def recover_session(self, session_id: str) -> Session:
        """Return a failed session to ready so it can be retried."""
        slot = self._slot(session_id)
        if slot.session.status != SessionStatus.ERROR:
            raise NotReadyError(session_id, slot.session.status.value)
        await self._set_status(slot, SessionStatus.READY)
        return slot.session

    async def shutdown(self) -> None:
        for session_id in list(self._slots):
            await self.close_session(session_id)
        self._raw_sink.close()

    # ── Messaging ──

    async def send_message(self, session_id: str, text: str) -> InvocationResult:
        """Send *text* and await the end of the resulting invocation.

        Spawn and process failures put the session in error and are
        re-raised. Reaching the context limit is reported in the
        timeline and leaves the session ready.
        """
        slot = self._slot(session_id)
        session = slot.session
        if session.status != SessionStatus.READY:
            raise NotReadyError(session_id, session.status.value)
        if slot.runner.is_running:
            raise RunnerBusyError(session_id)

        session.touch()
        # Log entries still pending belong to the previous turn
        if slot.monitor is not None:
            await slot.monitor.prime()
        user = UserMessage(text=text)
        session.append(user, self.config.message_history_limit)
        await self.bus.emit(MessageReceived(session_id=session.id, message=user))

        slot.projector.begin_invocation()

        try:
            result = await slot.runner.invoke(text)
        except ContextLimitError as exc:
            logger.warning("Session %s: %s", session.id[:8], exc)
            await slot.projector.finish_invocation(failed=True)
            await slot.projector.add_notice(CONTEXT_LIMIT_NOTICE)
            session.resume_token = slot.runner.resume_token
            return InvocationResult(
                resume_token=slot.runner.resume_token,
                context_limited=True,
            )
        except (SpawnError, ProcessError) as exc:
            logger.error("Session %s invocation failed: %s", session.id[:8], exc)
            await slot.projector.finish_invocation(failed=True)
            session.resume_token = slot.runner.resume_token
            if session.status != SessionStatus.CLOSED:
                await self._set_status(slot, SessionStatus.ERROR, str(exc))
            raise

        session.resume_token = result.resume_token
        await slot.projector.finish_invocation(failed=result.cancelled)
        return result

    async def _on_stream_event(self, session_id: str, event: ProtocolEvent) -> None:
        slot = self._slots.get(session_id)
        if slot is None:
            return
        if event.session_id and slot.monitor is not None:
            slot.monitor.conversation_id = event.session_id
        await slot.projector.apply(event)

    async def _on_log_update(self, session_id: str, update: LogUpdate) -> None:
        slot = self._slots.get(session_id)
        if slot is None:
            return
        appended = await slot.projector.merge_log_update(
            update.messages, update.service
        )
        if appended:
            logger.info(
                "Session %s recovered %d message(s) from %s",
                session_id[:8], appended, update.path.name,
            )

    # ── Health ──

    def check_health(self) -> dict[str, bool]:
        health: dict[str, bool] = {}
        for session_id, slot in self._slots.items():
            healthy = not slot.runner.is_disposed and slot.session.status in (
                SessionStatus.READY, SessionStatus.STARTING,
            )
            if not healthy:
                logger.warning(
                    "Session %s (%s) appears unhealthy. Status: %s",
                    slot.session.name, session_id[:8], slot.session.status.value,
                )
            health[session_id] = healthy
        return health

    def diagnostics(self) -> str:
        lines = [
            "=== Session Pool Diagnostics ===",
            f"Total sessions: {len(self._slots)}/{self.config.max_sessions}",
            f"Active session: {self._active_id or 'None'}",
            "Health check results:",
        ]
        health = self.check_health()
        for session_id, slot in self._slots.items():
            session = slot.session
            usage = session.last_usage
            lines.extend([
                f"  - {session.name} ({session_id}):",
                f"    Status: {session.status.value}",
                f"    Healthy: {'yes' if health.get(session_id) else 'no'}",
                f"    Resume token: {session.resume_token or 'Not set'}",
                f"    Running: {'yes' if slot.runner.is_running else 'no'}",
                f"    Turn: {session.turn_status.value}",
                f"    Messages: {len(session.timeline)}",
                f"    Open tools: {len(session.pending_tools)}",
                f"    Cache tokens: {usage.total_cache_tokens if usage else 0}",
                f"    Log: {slot.monitor.path if slot.monitor else 'not monitored'}",
                f"    Created: {session.created_at.isoformat()}",
                f"    Last active: {session.last_active_at.isoformat()}",
            ])
        return "\n".join(lines)
