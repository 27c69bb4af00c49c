"""Tail of the assistant CLI's on-disk conversation log.

The CLI appends every conversation to a JSONL file under
``~/.claude/projects/<encoded-cwd>/<conversation>.jsonl``. Watching that
file gives a second, independent view of the conversation, used to
recover messages and usage the stream missed.

Several sessions in one working directory share a project directory,
so a monitor only surfaces entries of its own conversation (the
``sessionId`` the CLI reports, which is also the resume token) and
stays silent until that id is known.

Change detection polls (mtime, size) of the conversation's log file.
Bursts of changes are debounced into a single flush, and file contents
are cached by mtime so an unchanged file is never re-read.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .config import AsyncCallback, BridgeConfig, fire_callback
from .errors import ParseError
from .models import AssistantText, ServiceMessage, TurnStatus, Usage
from .protocol import LogEntry, ToolUseBlock, derive_turn_status, parse_log_entry

logger = logging.getLogger(__name__)


@dataclass
class LogUpdate:
    """New material found in the conversation log during one flush."""
    session_id: str
    path: Path
    messages: list[AssistantText] = field(default_factory=list)
    service: ServiceMessage | None = None
    status: TurnStatus = TurnStatus.PROCESSING


def project_log_dir(root: str | Path, cwd: str) -> Path:
    """Directory where the CLI keeps the logs of conversations in *cwd*."""
    encoded = re.sub(r"[^a-zA-Z0-9]", "-", str(Path(cwd).expanduser().resolve()))
    return Path(root).expanduser() / encoded


def find_latest_log(root: str | Path) -> Path | None:
    """Most recently modified ``*.jsonl`` file below *root*, if any."""
    base = Path(root).expanduser()
    if not base.is_dir():
        return None
    latest: Path | None = None
    latest_mtime = -1.0
    for candidate in base.rglob("*.jsonl"):
        try:
            mtime = candidate.stat().st_mtime
        except OSError:
            # Removed between listing and stat
            continue
        if mtime > latest_mtime:
            latest, latest_mtime = candidate, mtime
    return latest


class LogContentCache:
    """Bounded path -> (content, mtime) cache with oldest-first eviction."""

    def __init__(self, max_entries: int = 10) -> None:
        self._max_entries = max(1, max_entries)
        self._entries: OrderedDict[Path, tuple[str, float]] = OrderedDict()

    def get(self, path: Path, mtime: float) -> str | None:
        entry = self._entries.get(path)
        if entry is None or entry[1] != mtime:
            return None
        self._entries.move_to_end(path)
        return entry[0]

    def put(self, path: Path, content: str, mtime: float) -> None:
        self._entries[path] = (content, mtime)
        self._entries.move_to_end(path)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Log cache evicted %s", evicted)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class LogTailMonitor:
    """Watches the conversation log of one session.

    Example:
        monitor = LogTailMonitor(session.id, session.cwd, config, on_update)
        async with monitor:
            ...
    """

    def __init__(
        self,
        session_id: str,
        cwd: str,
        config: BridgeConfig,
        on_update: AsyncCallback | None = None,
        *,
        since: datetime | None = None,
        cache: LogContentCache | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.cwd = cwd
        self._config = config
        self._root = Path(config.log_root).expanduser()
        self._on_update = on_update
        self._cache = cache or LogContentCache(config.cache_size)
        self._conversation_id = conversation_id
        # Entries at or before the watermark were already surfaced
        self._watermark = since
        self._path: Path | None = None
        self._watch_state: tuple[Path, float, int] | None = None
        self._pending: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[LogUpdate | None] | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @conversation_id.setter
    def conversation_id(self, value: str | None) -> None:
        if value == self._conversation_id:
            return
        logger.info(
            "Session %s now follows conversation %s", self.session_id[:8], value
        )
        self._conversation_id = value
        self._path = None
        self._watch_state = None

    @property
    def watermark(self) -> datetime | None:
        return self._watermark

    @property
    def cache(self) -> LogContentCache:
        return self._cache

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_pending_flush(self) -> bool:
        return self._pending is not None

    def locate(self) -> Path | None:
        """Select the conversation's log file.

        Falls back to the newest log of the project dir, then of the whole
        root; entries of other conversations are filtered out on read.
        """
        project_dir = project_log_dir(self._root, self.cwd)
        path: Path | None = None
        if self._conversation_id:
            named = project_dir / f"{self._conversation_id}.jsonl"
            if named.is_file():
                path = named
        if path is None and project_dir.is_dir():
            path = find_latest_log(project_dir)
        if path is None:
            path = find_latest_log(self._root)
        if path != self._path:
            logger.info(
                "Session %s now tailing %s", self.session_id[:8], path
            )
            self._path = path
        return path

    # ── Lifecycle ──

    async def start(self) -> None:
        if self._running:
            logger.warning("LogTailMonitor already running")
            return
        if self._watermark is None:
            self._watermark = datetime.now(timezone.utc)
        self._running = True
        self._check_changes(notify=False)
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "LogTailMonitor started for session %s (root=%s, interval=%.2fs)",
            self.session_id[:8], self._root, self._config.poll_interval,
        )

    async def stop(self) -> None:
        """Cancel polling and timers, and release cached state."""
        self._running = False
        self._cancel_pending()
        for task in (self._task, self._flush_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._flush_task = None
        self._cache.clear()
        self._watch_state = None
        self._path = None
        logger.info("LogTailMonitor stopped for session %s", self.session_id[:8])

    async def __aenter__(self) -> LogTailMonitor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ── Change detection ──

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.poll_interval)
            self._check_changes()

    def _check_changes(self, notify: bool = True) -> bool:
        path = self.locate()
        if path is None:
            return False
        try:
            stat = path.stat()
        except OSError as exc:
            logger.debug("Cannot stat %s: %s", path, exc)
            return False
        state = (path, stat.st_mtime, stat.st_size)
        if state == self._watch_state:
            return False
        self._watch_state = state
        if notify:
            self.notify_change()
        return True

    def notify_change(self) -> None:
        """Schedule a flush, replacing any flush still waiting."""
        loop = asyncio.get_running_loop()
        self._cancel_pending()
        self._pending = loop.call_later(
            self._config.debounce_seconds, self._on_debounce_elapsed
        )

    def _on_debounce_elapsed(self) -> None:
        self._pending = None
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    # ── Reading ──

    async def prime(self) -> LogUpdate | None:
        """Re-read the newest log right away and republish its usage.

        Called just after a message is sent, so the front-end shows the
        turn as processing before the first stream event arrives.
        """
        self._cancel_pending()
        self.locate()
        return await self.flush(force_processing=True)

    async def flush(self, force_processing: bool = False) -> LogUpdate | None:
        """Read the current log and publish anything new.

        Nothing is surfaced while the conversation id is unknown.
        """
        if not self._conversation_id:
            return None
        path = self._path or self.locate()
        if path is None:
            return None
        content = await self._read(path)
        if content is None:
            return None
        update = self._extract(path, content, force_processing)
        if update is not None:
            await fire_callback(
                self._on_update, update, context="log update callback"
            )
        return update

    async def _read(self, path: Path) -> str | None:
        attempts = max(1, self._config.read_retries)
        for attempt in range(1, attempts + 1):
            try:
                mtime = path.stat().st_mtime
                cached = self._cache.get(path, mtime)
                if cached is not None:
                    return cached
                content = path.read_text(encoding="utf-8", errors="replace")
                self._cache.put(path, content, mtime)
                return content
            except OSError as exc:
                logger.debug(
                    "Read of %s failed (attempt %d/%d): %s",
                    path, attempt, attempts, exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._config.read_retry_interval)
        logger.warning("Giving up reading %s this cycle", path)
        return None

    def _entries(self, content: str) -> list[LogEntry]:
        entries: list[LogEntry] = []
        for line in content.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(parse_log_entry(json.loads(line)))
            except (json.JSONDecodeError, ParseError) as exc:
                logger.debug("Skipping log line: %s", exc)
        return entries

    def _extract(
        self, path: Path, content: str, force_processing: bool
    ) -> LogUpdate | None:
        entries = self._entries(content)
        if not entries:
            return None
        if entries[0].is_summary:
            # A summary first line marks a finished prior conversation
            logger.debug("Ignoring non-resumable log %s", path)
            return None

        open_tools: set[str] = set()
        stop_reason: str | None = None
        latest_usage: Usage | None = None
        new_usage: Usage | None = None
        messages: list[AssistantText] = []
        newest = self._watermark

        for entry in entries:
            if entry.is_summary:
                continue
            if entry.session_id and entry.session_id != self._conversation_id:
                continue
            for result in entry.tool_results:
                open_tools.discard(result.tool_use_id)
            if entry.entry_type != "assistant":
                continue
            for block in entry.blocks:
                if isinstance(block, ToolUseBlock):
                    open_tools.add(block.id)
            stop_reason = entry.stop_reason
            if entry.usage is not None and not entry.usage.is_zero:
                latest_usage = entry.usage

            if entry.timestamp is None:
                continue
            if self._watermark is not None and entry.timestamp <= self._watermark:
                continue
            if newest is None or entry.timestamp > newest:
                newest = entry.timestamp
            if entry.text:
                messages.append(AssistantText(
                    session_id=self.session_id,
                    timestamp=entry.timestamp,
                    text=entry.text,
                    source="log",
                ))
            if entry.usage is not None and not entry.usage.is_zero:
                new_usage = entry.usage

        self._watermark = newest
        status = derive_turn_status(stop_reason, bool(open_tools))
        if force_processing:
            status = TurnStatus.PROCESSING

        usage = new_usage
        if usage is None and force_processing:
            usage = latest_usage
        service = None
        if usage is not None:
            service = ServiceMessage(
                session_id=self.session_id,
                usage=usage,
                status=status,
                open_tools=len(open_tools),
                source="log",
            )
        if not messages and service is None:
            return None
        return LogUpdate(
            session_id=self.session_id,
            path=path,
            messages=messages,
            service=service,
            status=status,
        )
