"""Projection of protocol events onto a session timeline.

The projector owns every mutation of ``Session.timeline`` and
``Session.pending_tools`` during an invocation:

- text blocks become AssistantText entries as soon as they arrive;
- tool_use blocks open a ToolCallState that only a matching tool
  result, or the end of the invocation, can close;
- nonzero usage reports replace the session's last usage and are
  published as service snapshots;
- the per-turn status is re-derived after every event.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from chatbridge.adapters.events import (
    BridgeEvent,
    MessageReceived,
    ServiceInfoReceived,
)
from chatbridge.shared.formatters.tool_call import format_tool_result

from .models import (
    AssistantText,
    ServiceMessage,
    Session,
    TimelineMessage,
    ToolCallMessage,
    ToolCallState,
    ToolStatus,
    TurnStatus,
    Usage,
    _utcnow,
)
from .protocol import (
    END_TURN,
    AssistantEvent,
    ProtocolEvent,
    ResultEvent,
    SystemEvent,
    TextBlock,
    ThinkingBlock,
    ToolResult,
    ToolResultEvent,
    ToolUseBlock,
    derive_turn_status,
)

logger = logging.getLogger(__name__)

# Signature: async def emit(event: BridgeEvent) -> None
Emitter = Callable[[BridgeEvent], Awaitable[None]]

FORCED_COMPLETION_RESULT = "Tool completed when the invocation ended"
FAILED_COMPLETION_RESULT = "Error: invocation ended before the tool reported a result"


class TimelineProjector:
    """Applies protocol events for one session."""

    def __init__(
        self,
        session: Session,
        emit: Emitter,
        *,
        truncate_lines: int = 10,
        history_limit: int = 100,
    ) -> None:
        self.session = session
        self._emit = emit
        self._truncate_lines = truncate_lines
        self._history_limit = history_limit
        self._tool_messages: dict[str, ToolCallMessage] = {}
        self._stop_reason: str | None = None
        self._terminal: ResultEvent | None = None
        self._in_invocation = False

    @property
    def in_invocation(self) -> bool:
        return self._in_invocation

    def begin_invocation(self) -> None:
        self._stop_reason = None
        self._terminal = None
        self._in_invocation = True
        self.session.turn_status = TurnStatus.INITIALIZING

    async def apply(self, event: ProtocolEvent) -> None:
        """Fold one protocol event into the session."""
        if isinstance(event, AssistantEvent):
            await self._apply_assistant(event)
        elif isinstance(event, ToolResultEvent):
            for result in event.results:
                await self._complete_tool(result)
        elif isinstance(event, ResultEvent):
            self._terminal = event
            self._stop_reason = END_TURN
            self.session.last_result = event.raw or None
            logger.info(
                "Session %s turn result: subtype=%s is_error=%s cost=%s",
                self.session.id[:8], event.subtype, event.is_error,
                event.total_cost_usd,
            )
        elif isinstance(event, SystemEvent):
            logger.debug(
                "Session %s system event: %s", self.session.id[:8], event.subtype
            )
        self._refresh_status()

    async def _apply_assistant(self, event: AssistantEvent) -> None:
        for block in event.blocks:
            if isinstance(block, TextBlock):
                if block.text:
                    await self._add_text(block.text)
            elif isinstance(block, ToolUseBlock):
                await self._open_tool(block)
            elif isinstance(block, ThinkingBlock):
                logger.debug(
                    "Session %s thinking: %s",
                    self.session.id[:8], block.text[:200],
                )
        if event.stop_reason is not None:
            self._stop_reason = event.stop_reason
        if event.usage is not None:
            await self._record_usage(event.usage)

    async def _add_text(self, text: str) -> None:
        for existing in self.session.current_turn():
            if (
                isinstance(existing, AssistantText)
                and existing.source == "log"
                and not existing.confirmed
                and existing.text == text
            ):
                existing.confirmed = True
                return
        await self._append(AssistantText(text=text, source="stream"))

    async def _open_tool(self, block: ToolUseBlock) -> None:
        tool = ToolCallState(
            id=block.id,
            name=block.name,
            input=dict(block.input),
            status=ToolStatus.RUNNING,
        )
        self.session.pending_tools[tool.id] = tool
        message = ToolCallMessage(tool=tool)
        self._tool_messages[tool.id] = message
        logger.info(
            "Session %s tool started: %s (%s)",
            self.session.id[:8], tool.name, tool.id,
        )
        await self._append(message)

    async def _complete_tool(self, result: ToolResult) -> None:
        tool = self.session.pending_tools.pop(result.tool_use_id, None)
        if tool is None:
            logger.debug(
                "Session %s result for unknown tool %s ignored",
                self.session.id[:8], result.tool_use_id,
            )
            return
        tool.status = ToolStatus.ERROR if result.is_error else ToolStatus.COMPLETED
        tool.result = format_tool_result(
            result.content, result.is_error, self._truncate_lines
        )
        tool.end_time = _utcnow()
        logger.info(
            "Session %s tool %s: %s (%.2fs)",
            self.session.id[:8], tool.status.value, tool.name,
            tool.duration or 0.0,
        )
        await self._publish_tool(tool)

    async def _publish_tool(self, tool: ToolCallState) -> None:
        message = self._tool_messages.pop(tool.id, None)
        if message is None:
            return
        await self._emit(MessageReceived(
            session_id=self.session.id, message=message, updated=True,
        ))

    async def _record_usage(self, usage: Usage) -> None:
        if usage.is_zero:
            return
        self.session.last_usage = usage
        self._refresh_status()
        logger.debug(
            "Session %s usage: in=%d out=%d cache_read=%d cache_create=%d",
            self.session.id[:8], usage.input_tokens, usage.output_tokens,
            usage.cache_read_tokens, usage.cache_creation_tokens,
        )
        await self._emit(ServiceInfoReceived(
            session_id=self.session.id,
            service=self._snapshot(usage, self.session.turn_status),
        ))

    def _refresh_status(self) -> None:
        if not self._in_invocation:
            return
        self.session.turn_status = derive_turn_status(
            self._stop_reason, bool(self.session.pending_tools)
        )

    def _snapshot(
        self, usage: Usage, status: TurnStatus, source: str = "stream"
    ) -> ServiceMessage:
        return ServiceMessage(
            session_id=self.session.id,
            usage=usage,
            status=status,
            open_tools=len(self.session.pending_tools),
            source=source,
        )

    async def finish_invocation(self, failed: bool = False) -> ServiceMessage:
        """Close every open tool and publish the final snapshot of the turn."""
        for tool_id in list(self.session.pending_tools):
            tool = self.session.pending_tools.pop(tool_id)
            tool.end_time = _utcnow()
            if failed:
                tool.status = ToolStatus.ERROR
                tool.result = FAILED_COMPLETION_RESULT
            else:
                tool.status = ToolStatus.COMPLETED
                tool.result = FORCED_COMPLETION_RESULT
            logger.info(
                "Session %s force-completed tool %s (%s)",
                self.session.id[:8], tool.name, tool.status.value,
            )
            await self._publish_tool(tool)
        self._tool_messages.clear()

        status = TurnStatus.ERROR if failed else TurnStatus.COMPLETED
        self.session.turn_status = status
        self._in_invocation = False

        final = self._snapshot(self.session.last_usage or Usage(), status)
        if self._terminal is not None:
            final.cost_usd = self._terminal.total_cost_usd
            final.result = self._terminal.result
            final.duration_ms = self._terminal.duration_ms
        self.session.append(final, self._history_limit)
        await self._emit(ServiceInfoReceived(
            session_id=self.session.id, service=final,
        ))
        return final

    async def add_notice(self, text: str) -> AssistantText:
        """Append a synthetic assistant message (e.g. a context-limit notice)."""
        message = AssistantText(text=text, source="system")
        await self._append(message)
        return message

    async def merge_log_update(
        self,
        messages: list[AssistantText],
        service: ServiceMessage | None,
    ) -> int:
        """Reconcile entries recovered from the conversation log.

        Text already present in the current or the previous turn is
        ignored, so repeated updates and log entries that trail the stream
        by one turn are idempotent. Returns the number of appended messages.
        """
        known = {
            existing.text
            for existing in self.session.recent_turns(2)
            if isinstance(existing, AssistantText)
        }
        appended = 0
        for message in messages:
            if message.text in known:
                continue
            known.add(message.text)
            message.source = "log"
            await self._append(message)
            appended += 1
        if service is not None and not service.usage.is_zero:
            self.session.last_usage = service.usage
            service.session_id = self.session.id
            await self._emit(ServiceInfoReceived(
                session_id=self.session.id, service=service,
            ))
        return appended

    async def _append(self, message: TimelineMessage) -> None:
        self.session.append(message, self._history_limit)
        await self._emit(MessageReceived(
            session_id=self.session.id, message=message,
        ))
