"""Shared fakes for subprocess-driven tests."""
from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import patch

import pytest

from chatbridge.engine.config import BridgeConfig


def stream_bytes(*events: Any) -> bytes:
    """Encode protocol events as newline-delimited JSON."""
    return b"".join(
        (e if isinstance(e, str) else json.dumps(e)).encode("utf-8") + b"\n"
        for e in events
    )


class FakeStdout:
    def __init__(self, chunks: list[bytes], released: asyncio.Event) -> None:
        self._chunks = list(chunks)
        self._released = released

    async def read(self, n: int = -1) -> bytes:
        await asyncio.sleep(0)
        if self._chunks:
            return self._chunks.pop(0)
        await self._released.wait()
        return b""


class FakeStderr:
    def __init__(self, data: bytes) -> None:
        self._data = data

    async def read(self, n: int = -1) -> bytes:
        data, self._data = self._data, b""
        return data


class FakeStdin:
    def __init__(self) -> None:
        self.writes: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process.

    With ``hold=True`` stdout stays open after the scripted chunks until
    ``release()`` (or a signal) ends the process.
    """

    def __init__(
        self,
        chunks: list[bytes] | bytes = (),
        returncode: int = 0,
        stderr: bytes = b"",
        hold: bool = False,
        pid: int = 4242,
    ) -> None:
        if isinstance(chunks, bytes):
            chunks = [chunks]
        self._released = asyncio.Event()
        if not hold:
            self._released.set()
        self.stdin = FakeStdin()
        self.stdout = FakeStdout(list(chunks), self._released)
        self.stderr = FakeStderr(stderr)
        self.pid = pid
        self.returncode: int | None = None
        self._exit_code = returncode
        self.signals: list[str] = []

    def release(self, code: int | None = None) -> None:
        if code is not None:
            self._exit_code = code
        self._released.set()

    async def wait(self) -> int:
        await self._released.wait()
        self.returncode = self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("terminate")
        self.release(-15)

    def kill(self) -> None:
        self.signals.append("kill")
        self.release(-9)


class FakeExec:
    """Replacement for asyncio.create_subprocess_exec."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.processes: list[FakeProcess] = []
        self.error: BaseException | None = None

    def add(self, process: FakeProcess) -> FakeProcess:
        self.processes.append(process)
        return process

    async def __call__(self, *cmd: str, **kwargs: Any) -> FakeProcess:
        self.calls.append((list(cmd), kwargs))
        if self.error is not None:
            raise self.error
        return self.processes.pop(0)


@pytest.fixture
def fake_exec():
    exec_ = FakeExec()
    with patch("asyncio.create_subprocess_exec", new=exec_):
        yield exec_


@pytest.fixture
def config(tmp_path) -> BridgeConfig:
    return BridgeConfig(
        cwd=str(tmp_path),
        monitor_logs=False,
        log_root=str(tmp_path / "logs"),
        terminate_grace_seconds=0.5,
        debounce_seconds=0.05,
        poll_interval=0.05,
        read_retry_interval=0.01,
    )
