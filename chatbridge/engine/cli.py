"""CLI entry point for the session bridge.

Usage:
    chatbridge                          # interactive session loop
    chatbridge --cwd ~/project -m "Summarize the README"
    chatbridge --config chatbridge.yaml --json

Interactive commands:
    /new [name]    create a session and switch to it
    /switch ID     make another session active (id prefix accepted)
    /close ID      close a session
    /recover ID    return a failed session to ready
    /sessions      list sessions
    /health        print pool diagnostics
    /quit          close every session and exit
Any other input is sent to the active session.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.text import Text

from chatbridge.adapters.event_bus import EventBus
from chatbridge.adapters.events import (
    BridgeEvent,
    MessageReceived,
    ServiceInfoReceived,
    SessionClosed,
    SessionCreated,
    SessionStatusChanged,
    SessionSwitched,
    event_to_dict,
)
from chatbridge.shared.formatters.tool_call import format_tool_use

from .config import BridgeConfig
from .errors import BridgeError
from .models import AssistantText, ToolCallMessage, ToolStatus, UserMessage
from .pool import SessionPool
from .raw_sink import LoggingRawSink
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_TOOL_STYLES = {
    ToolStatus.PENDING: "yellow",
    ToolStatus.RUNNING: "yellow",
    ToolStatus.COMPLETED: "green",
    ToolStatus.ERROR: "red",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatbridge",
        description="Multi-session front-end for the Claude command-line assistant",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: environment only)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for new sessions (default: current dir)",
    )
    parser.add_argument(
        "--max-sessions",
        type=int,
        default=None,
        help="Maximum concurrent sessions (default: 2)",
    )
    parser.add_argument(
        "--resume",
        default=None,
        help="Continue an existing conversation by its resume token",
    )
    parser.add_argument(
        "--message", "-m",
        default=None,
        help="Send one message, print the reply and exit",
    )
    parser.add_argument(
        "--no-monitor",
        action="store_true",
        help="Do not tail the on-disk conversation log",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print events as JSON lines instead of formatted text",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def load_config(args: argparse.Namespace) -> BridgeConfig:
    config = BridgeConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.cwd is not None:
        config.cwd = args.cwd
    if args.max_sessions is not None:
        config.max_sessions = args.max_sessions
    if args.no_monitor:
        config.monitor_logs = False
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def configure_logging(config: BridgeConfig) -> None:
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    if not config.log_file:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%H:%M:%S",
        )
        return
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        config.log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)


def render_event(event: BridgeEvent) -> Text | None:
    """Human-readable line for *event*, or None when it is not shown."""
    sid = event.session_id[:8]
    if isinstance(event, SessionCreated):
        return Text(f"+ {event.name} [{sid}] in {event.cwd}", style="bold cyan")
    if isinstance(event, SessionClosed):
        return Text(f"- {event.name} [{sid}] closed", style="cyan")
    if isinstance(event, SessionSwitched):
        return Text(f"> active session [{sid}]", style="dim")
    if isinstance(event, SessionStatusChanged):
        if event.new_status != "error":
            return None
        return Text(f"! [{sid}] error: {event.error or 'unknown'}", style="bold red")
    if isinstance(event, MessageReceived):
        message = event.message
        if isinstance(message, UserMessage):
            return None
        if isinstance(message, AssistantText):
            return Text(message.text)
        if isinstance(message, ToolCallMessage) and message.tool is not None:
            tool = message.tool
            line = Text(
                f"[{tool.status.value}] {format_tool_use(tool.name, tool.input)}",
                style=_TOOL_STYLES.get(tool.status, ""),
            )
            if tool.result and not tool.is_open:
                line.append(f"\n  {tool.result}", style="dim")
            return line
        return None
    if isinstance(event, ServiceInfoReceived) and event.service is not None:
        service = event.service
        if service.status.value not in ("completed", "error"):
            return None
        usage = service.usage
        cost = f" ${service.cost_usd:.4f}" if service.cost_usd is not None else ""
        return Text(
            f"({service.status.value}: out={usage.output_tokens} "
            f"cache={usage.total_cache_tokens}{cost})",
            style="dim",
        )
    return None


class ConsoleFrontend:
    """Line-oriented loop driving a SessionPool."""

    def __init__(
        self,
        pool: SessionPool,
        console: Console | None = None,
        as_json: bool = False,
    ) -> None:
        self.pool = pool
        self.console = console or Console()
        self.as_json = as_json
        self._unsubscribe = pool.bus.subscribe(self.show)

    def show(self, event: BridgeEvent) -> None:
        if self.as_json:
            self.console.print(
                json.dumps(event_to_dict(event), default=str),
                markup=False, highlight=False, soft_wrap=True,
            )
            return
        text = render_event(event)
        if text is not None:
            self.console.print(text)

    def _resolve(self, prefix: str) -> str:
        matches = [s.id for s in self.pool.sessions if s.id.startswith(prefix)]
        if len(matches) != 1:
            raise BridgeError(f"No unique session matches '{prefix}'")
        return matches[0]

    async def handle(self, line: str) -> bool:
        """Execute one input line. Returns False when the loop should stop."""
        line = line.strip()
        if not line:
            return True
        if not line.startswith("/"):
            session = self.pool.active_session
            if session is None:
                session = await self.pool.create_session()
            await self.pool.send_message(session.id, line)
            return True

        command, _, argument = line.partition(" ")
        argument = argument.strip()
        if command == "/quit":
            return False
        if command == "/new":
            await self.pool.create_session(argument or None)
        elif command == "/switch":
            await self.pool.switch_session(self._resolve(argument))
        elif command == "/close":
            await self.pool.close_session(self._resolve(argument))
        elif command == "/recover":
            await self.pool.recover_session(self._resolve(argument))
        elif command == "/sessions":
            for session in self.pool.sessions:
                marker = "*" if session.id == self.pool.active_session_id else " "
                self.console.print(
                    f"{marker} {session.id[:8]} {session.name} "
                    f"[{session.status.value}] {session.cwd}",
                    markup=False,
                )
        elif command == "/health":
            self.console.print(self.pool.diagnostics(), markup=False)
        else:
            self.console.print(
                f"Unknown command: {command}", style="red", markup=False
            )
        return True

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, self.console.input, "» ")
            except EOFError:
                break
            try:
                if not await self.handle(line):
                    break
            except BridgeError as exc:
                self.console.print(str(exc), style="bold red", markup=False)

    def close(self) -> None:
        self._unsubscribe()


async def _run(args: argparse.Namespace, config: BridgeConfig) -> int:
    pool = SessionPool(
        config=config,
        bus=EventBus(),
        raw_sink=LoggingRawSink(config.raw_log_file),
    )
    frontend = ConsoleFrontend(pool, as_json=args.json)
    try:
        if args.message is not None:
            session = await pool.create_session(resume_token=args.resume)
            try:
                await pool.send_message(session.id, args.message)
            except BridgeError as exc:
                frontend.console.print(str(exc), style="bold red", markup=False)
                return 1
            return 0
        if args.resume:
            await pool.create_session(resume_token=args.resume)
        await frontend.run()
        return 0
    finally:
        frontend.close()
        await pool.shutdown()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config(args)
    configure_logging(config)
    logger.debug("chatbridge starting with %s", config)

    try:
        code = asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
