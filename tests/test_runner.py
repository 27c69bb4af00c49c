"""Tests for StreamingInvocationRunner against a fake subprocess."""
from __future__ import annotations

import asyncio
import signal
from unittest.mock import patch

import pytest

from chatbridge.engine.errors import (
    ContextLimitError,
    NotReadyError,
    ProcessError,
    RunnerBusyError,
    SpawnError,
)
from chatbridge.engine.protocol import AssistantEvent, ResultEvent, SystemEvent
from chatbridge.engine.runner import StreamingInvocationRunner

from conftest import FakeProcess, stream_bytes


def _runner(config, events=None, **kwargs):
    async def on_event(event):
        if events is not None:
            events.append(event)

    return StreamingInvocationRunner(
        "session-1", config.cwd, config, on_event=on_event, **kwargs
    )


INIT = {"type": "system", "subtype": "init", "session_id": "abc"}
HI = {
    "type": "assistant",
    "session_id": "abc",
    "message": {"content": [{"type": "text", "text": "hi"}], "stop_reason": "end_turn"},
}
DONE = {"type": "result", "subtype": "success", "is_error": False, "result": "hi", "session_id": "abc"}


def test_build_command_flags(config):
    config.skip_permissions = True
    config.extra_args = ["--model", "sonnet"]
    runner = _runner(config, resume_token="tok")
    assert runner.build_command() == [
        "claude", "--print", "--output-format", "stream-json", "--verbose",
        "--dangerously-skip-permissions", "--model", "sonnet",
        "--resume", "tok",
    ]


def test_cwd_is_required(config):
    with pytest.raises(ValueError):
        StreamingInvocationRunner("s", "", config)


@pytest.mark.asyncio
async def test_invoke_parses_events_and_records_resume_token(config, fake_exec):
    events = []
    proc = fake_exec.add(FakeProcess(stream_bytes(INIT, HI, DONE)))
    runner = _runner(config, events)

    result = await runner.invoke("hello")

    assert [type(e) for e in events] == [SystemEvent, AssistantEvent, ResultEvent]
    assert result.returncode == 0
    assert result.events == 3
    assert result.resume_token == "abc"
    assert runner.resume_token == "abc"
    assert isinstance(result.result, ResultEvent)
    assert proc.stdin.writes == [b"hello"]
    assert proc.stdin.closed is True

    cmd, kwargs = fake_exec.calls[0]
    assert "--resume" not in cmd
    assert kwargs["cwd"] == config.cwd
    assert kwargs["start_new_session"] is True


@pytest.mark.asyncio
async def test_second_invoke_resumes(config, fake_exec):
    fake_exec.add(FakeProcess(stream_bytes(INIT, DONE)))
    fake_exec.add(FakeProcess(stream_bytes(DONE)))
    runner = _runner(config)

    await runner.invoke("one")
    await runner.invoke("two")

    first, _ = fake_exec.calls[0]
    second, _ = fake_exec.calls[1]
    assert "--resume" not in first
    assert second[-2:] == ["--resume", "abc"]


@pytest.mark.asyncio
async def test_byte_level_chunking_gives_same_events(config, fake_exec):
    data = stream_bytes(INIT, HI, DONE)
    fake_exec.add(FakeProcess(data))
    fake_exec.add(FakeProcess([data[i:i + 1] for i in range(len(data))]))

    whole, split = [], []
    await _runner(config, whole).invoke("x")
    await _runner(config, split).invoke("x")
    assert whole == split


@pytest.mark.asyncio
async def test_non_json_lines_skipped(config, fake_exec):
    events = []
    fake_exec.add(FakeProcess(stream_bytes("Loaded credentials...", INIT, '{"type": "weird"}', DONE)))
    result = await _runner(config, events).invoke("x")
    assert result.events == 2
    assert [type(e) for e in events] == [SystemEvent, ResultEvent]


@pytest.mark.asyncio
async def test_trailing_line_without_newline_is_processed(config, fake_exec):
    events = []
    data = stream_bytes(INIT).rstrip(b"\n")
    fake_exec.add(FakeProcess(data))
    await _runner(config, events).invoke("x")
    assert len(events) == 1


@pytest.mark.asyncio
async def test_spawn_error(config, fake_exec):
    fake_exec.error = FileNotFoundError("claude")
    with pytest.raises(SpawnError) as exc_info:
        await _runner(config).invoke("x")
    assert "not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_nonzero_exit_raises_process_error(config, fake_exec):
    fake_exec.add(FakeProcess(stream_bytes(INIT), returncode=2, stderr=b"auth failed"))
    runner = _runner(config)
    with pytest.raises(ProcessError) as exc_info:
        await runner.invoke("x")
    assert exc_info.value.exit_code == 2
    assert exc_info.value.stderr == "auth failed"
    # The token seen before the failure is kept
    assert runner.resume_token == "abc"
    assert runner.is_running is False


@pytest.mark.asyncio
async def test_stderr_alone_does_not_fail(config, fake_exec):
    fake_exec.add(FakeProcess(stream_bytes(DONE), stderr=b"warning: slow"))
    result = await _runner(config).invoke("x")
    assert result.stderr == "warning: slow"


@pytest.mark.asyncio
async def test_context_limit_raises(config, fake_exec):
    too_long = {"type": "result", "is_error": True, "result": "Prompt is too long", "session_id": "abc"}
    fake_exec.add(FakeProcess(stream_bytes(too_long), returncode=1))
    with pytest.raises(ContextLimitError):
        await _runner(config).invoke("x")


@pytest.mark.asyncio
async def test_overlapping_invoke_rejected(config, fake_exec):
    proc = fake_exec.add(FakeProcess(stream_bytes(INIT), hold=True))
    runner = _runner(config)
    task = asyncio.create_task(runner.invoke("one"))
    await asyncio.sleep(0.01)
    assert runner.is_running

    with pytest.raises(RunnerBusyError):
        await runner.invoke("two")

    proc.release()
    await task
    assert runner.is_running is False


@pytest.mark.asyncio
async def test_dispose_and_terminate_cancel_invocation(config, fake_exec):
    events = []
    proc = fake_exec.add(FakeProcess(stream_bytes(INIT), hold=True))
    runner = _runner(config, events)
    task = asyncio.create_task(runner.invoke("one"))
    await asyncio.sleep(0.01)

    with patch("os.killpg", side_effect=lambda pid, sig: proc.release(-sig)) as killpg:
        runner.dispose()
        assert await runner.terminate() is True
    killpg.assert_called_once_with(proc.pid, signal.SIGTERM)

    result = await task
    assert result.cancelled is True
    assert len(events) == 1

    with pytest.raises(NotReadyError):
        await runner.invoke("again")


@pytest.mark.asyncio
async def test_terminate_escalates_to_kill(config, fake_exec):
    config.terminate_grace_seconds = 0.05
    proc = fake_exec.add(FakeProcess(stream_bytes(INIT), hold=True))
    runner = _runner(config)
    task = asyncio.create_task(runner.invoke("one"))
    await asyncio.sleep(0.01)

    sent = []

    def _killpg(pid, sig):
        sent.append(sig)
        if sig == signal.SIGKILL:
            proc.release(-9)

    with patch("os.killpg", side_effect=_killpg):
        runner.dispose()
        await runner.terminate()
    assert sent == [signal.SIGTERM, signal.SIGKILL]
    assert (await task).cancelled is True


@pytest.mark.asyncio
async def test_terminate_without_process(config):
    assert await _runner(config).terminate() is False


@pytest.mark.asyncio
async def test_failing_handler_terminates_process(config, fake_exec):
    proc = fake_exec.add(FakeProcess(stream_bytes(INIT), hold=True))

    async def on_event(event):
        raise RuntimeError("handler broke")

    runner = StreamingInvocationRunner(
        "session-1", config.cwd, config, on_event=on_event
    )
    with patch("os.killpg", side_effect=lambda pid, sig: proc.release(-sig)) as killpg:
        with pytest.raises(RuntimeError):
            await runner.invoke("one")
    killpg.assert_called_once_with(proc.pid, signal.SIGTERM)
    assert runner.is_running is False
