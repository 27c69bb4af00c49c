"""Tests for the command-line front-end."""
from __future__ import annotations

import io

import pytest
from rich.console import Console

from chatbridge.adapters.events import (
    MessageReceived,
    ServiceInfoReceived,
    SessionStatusChanged,
)
from chatbridge.engine.cli import ConsoleFrontend, build_parser, load_config, render_event
from chatbridge.engine.models import (
    AssistantText,
    ServiceMessage,
    ToolCallMessage,
    ToolCallState,
    ToolStatus,
    TurnStatus,
    Usage,
    UserMessage,
)
from chatbridge.engine.pool import SessionPool

from conftest import FakeProcess, stream_bytes


def test_parser_and_config(tmp_path):
    args = build_parser().parse_args(
        ["--cwd", str(tmp_path), "--max-sessions", "3", "--no-monitor", "-v"]
    )
    config = load_config(args)
    assert config.cwd == str(tmp_path)
    assert config.max_sessions == 3
    assert config.monitor_logs is False
    assert config.log_level == "DEBUG"


def test_render_event_variants():
    text = render_event(MessageReceived(session_id="s", message=AssistantText(text="hi")))
    assert text.plain == "hi"
    assert render_event(MessageReceived(session_id="s", message=UserMessage(text="q"))) is None

    tool = ToolCallState(id="t1", name="Read", input={"path": "a.py"},
                         status=ToolStatus.COMPLETED, result="contents")
    rendered = render_event(MessageReceived(session_id="s", message=ToolCallMessage(tool=tool)))
    assert rendered.plain.startswith('[completed] Read(path: "a.py")')
    assert "contents" in rendered.plain

    processing = ServiceMessage(usage=Usage(output_tokens=1), status=TurnStatus.PROCESSING)
    assert render_event(ServiceInfoReceived(session_id="s", service=processing)) is None
    final = ServiceMessage(usage=Usage(output_tokens=3), status=TurnStatus.COMPLETED, cost_usd=0.5)
    assert "$0.5000" in render_event(ServiceInfoReceived(session_id="s", service=final)).plain

    error = SessionStatusChanged(session_id="s", old_status="ready", new_status="error", error="boom")
    assert "boom" in render_event(error).plain


@pytest.mark.asyncio
async def test_frontend_commands(config, fake_exec):
    out = io.StringIO()
    pool = SessionPool(config=config)
    frontend = ConsoleFrontend(pool, console=Console(file=out, width=200))

    assert await frontend.handle("/new first") is True
    first = pool.active_session
    await frontend.handle("/new second")
    await frontend.handle(f"/switch {first.id[:8]}")
    assert pool.active_session_id == first.id

    fake_exec.add(FakeProcess(stream_bytes(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "pong"}]}},
    )))
    await frontend.handle("ping")
    await frontend.handle("/sessions")
    await frontend.handle("/health")
    assert await frontend.handle("/quit") is False

    printed = out.getvalue()
    assert "pong" in printed
    assert "first" in printed
    assert "Session Pool Diagnostics" in printed
    frontend.close()
    await pool.shutdown()
