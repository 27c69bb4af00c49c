"""One-shot invocations of the assistant CLI.

Each message spawns ``claude --print --output-format stream-json
--verbose`` in the session working directory, writes the message to
stdin and parses stdout incrementally. Continuity between invocations
comes from ``--resume`` with the token reported by the previous run.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .config import BridgeConfig
from .errors import (
    ContextLimitError,
    NotReadyError,
    ParseError,
    ProcessError,
    RunnerBusyError,
    SpawnError,
)
from .line_buffer import JsonLineBuffer
from .protocol import ProtocolEvent, ResultEvent, parse_line
from .raw_sink import NullRawSink, RawStreamSink

logger = logging.getLogger(__name__)

# Signature: async def handler(event: ProtocolEvent) -> None
EventHandler = Callable[[ProtocolEvent], Awaitable[None]]

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class InvocationResult:
    """Outcome of one finished invocation."""
    returncode: int | None = None
    resume_token: str | None = None
    result: ResultEvent | None = None
    stderr: str = ""
    cancelled: bool = False
    events: int = 0
    context_limited: bool = False


class StreamingInvocationRunner:
    """Runs the assistant CLI for one session, one invocation at a time."""

    def __init__(
        self,
        session_id: str,
        cwd: str,
        config: BridgeConfig,
        on_event: EventHandler | None = None,
        raw_sink: RawStreamSink | None = None,
        resume_token: str | None = None,
    ) -> None:
        if not cwd:
            raise ValueError("A working directory is required")
        self.session_id = session_id
        self.cwd = cwd
        self._config = config
        self._on_event = on_event
        self._raw_sink = raw_sink or NullRawSink()
        self._resume_token = resume_token
        self._process: asyncio.subprocess.Process | None = None
        self._busy = False
        self._disposed = False

    @property
    def resume_token(self) -> str | None:
        return self._resume_token

    @property
    def is_running(self) -> bool:
        return self._busy

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def build_command(self) -> list[str]:
        cmd = [
            self._config.command,
            "--print",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self._config.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        cmd.extend(self._config.extra_args)
        if self._resume_token:
            cmd.extend(["--resume", self._resume_token])
        return cmd

    async def invoke(self, text: str) -> InvocationResult:
        """Run one invocation with *text* as input and await its exit.

        Raises SpawnError, ProcessError or ContextLimitError. There is no
        timeout: the caller decides when to ``terminate()``.
        """
        if self._disposed:
            raise NotReadyError(self.session_id, "closed")
        if self._busy:
            raise RunnerBusyError(self.session_id)
        self._busy = True
        try:
            return await self._run(text)
        finally:
            self._busy = False
            self._process = None

    async def _run(self, text: str) -> InvocationResult:
        cmd = self.build_command()
        logger.info(
            "Session %s invoking %s (cwd=%s, resume=%s)",
            self.session_id[:8], cmd[0], self.cwd,
            self._resume_token or "<new>",
        )
        try:
            # create_subprocess_exec passes args as array, no shell.
            # The child gets its own process group so close can signal
            # every tool process it started.
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise SpawnError(
                self._config.command, f"'{cmd[0]}' CLI not found"
            ) from exc
        except OSError as exc:
            raise SpawnError(self._config.command, str(exc)) from exc

        self._process = proc
        stderr_task = asyncio.create_task(self._read_stderr(proc))
        result = InvocationResult()
        try:
            await self._write_input(proc, text)
            buffer = JsonLineBuffer()
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    await self._handle_line(line, result)
            for line in buffer.flush():
                await self._handle_line(line, result)
            result.returncode = await proc.wait()
        except BaseException:
            # No orphaned process may outlive a failed or cancelled read
            await self.terminate()
            stderr_task.cancel()
            raise
        result.stderr = await stderr_task
        result.resume_token = self._resume_token

        logger.info(
            "Session %s invocation finished (rc=%s, events=%d)",
            self.session_id[:8], result.returncode, result.events,
        )
        if self._disposed:
            result.cancelled = True
            return result
        if result.result is not None and result.result.is_context_limit:
            raise ContextLimitError(self.session_id, result.result.result or "")
        if result.returncode != 0:
            raise ProcessError(
                self.session_id, result.returncode or -1, result.stderr
            )
        return result

    @staticmethod
    async def _write_input(proc: asyncio.subprocess.Process, text: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(text.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            # Exit status and stderr tell the rest of the story.
            logger.warning("stdin closed early by assistant CLI: %s", exc)
        finally:
            proc.stdin.close()

    @staticmethod
    async def _read_stderr(proc: asyncio.subprocess.Process) -> str:
        if proc.stderr is None:
            return ""
        data = await proc.stderr.read()
        return data.decode("utf-8", errors="replace")

    async def _handle_line(self, line: str, result: InvocationResult) -> None:
        if self._disposed:
            return
        self._raw_sink.write(self.session_id, line)
        try:
            event = parse_line(line)
        except ParseError as exc:
            logger.debug(
                "Session %s skipped line: %s (%s)",
                self.session_id[:8], exc.reason, line[:200],
            )
            return

        result.events += 1
        if event.session_id and event.session_id != self._resume_token:
            logger.info(
                "Session %s resume token now %s",
                self.session_id[:8], event.session_id,
            )
            self._resume_token = event.session_id
        if isinstance(event, ResultEvent):
            result.result = event
        if self._on_event is not None:
            await self._on_event(event)

    async def terminate(self) -> bool:
        """Stop the running process group, escalating to SIGKILL.

        Returns True when a live process was signalled.
        """
        proc = self._process
        if proc is None or proc.returncode is not None:
            return False
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(
                proc.wait(), timeout=self._config.terminate_grace_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Session %s process %d ignored SIGTERM, killing",
                self.session_id[:8], proc.pid,
            )
            self._signal(proc, signal.SIGKILL)
            await proc.wait()
        logger.info(
            "Terminated assistant process for session %s (pid=%s)",
            self.session_id[:8], proc.pid,
        )
        return True

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            if sig == signal.SIGKILL:
                proc.kill()
            else:
                proc.terminate()

    def dispose(self) -> None:
        """Detach the runner; events from a live invocation are dropped."""
        self._disposed = True
        self._on_event = None
