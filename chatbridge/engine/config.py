"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CHATBRIDGE_* env vars
or a YAML file (see ``yaml_config``).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Async callback used by background components to hand results back.
# Signature: async def callback(payload) -> None
AsyncCallback = Callable[[Any], Awaitable[None]]


async def fire_callback(
    callback: AsyncCallback | None,
    payload: Any,
    *,
    context: str = "callback",
) -> None:
    """Invoke an async callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(payload)
    except Exception:
        # Never let a consumer break a background loop
        logger.exception("%s raised", context)


def default_log_root() -> str:
    return str(Path.home() / ".claude" / "projects")


@dataclass
class BridgeConfig:
    """Session bridge configuration."""

    # Assistant CLI
    command: str = "claude"
    cwd: str = "."
    # Appended after the fixed stream-json flags.
    extra_args: list[str] = field(default_factory=list)
    skip_permissions: bool = False
    # Grace period between SIGTERM and SIGKILL when closing a session.
    terminate_grace_seconds: float = 5.0

    # Pool
    max_sessions: int = 2
    message_history_limit: int = 100
    # Non-blank lines kept from a tool result before truncation.
    truncate_lines: int = 10

    # Conversation log monitoring
    monitor_logs: bool = True
    log_root: str = field(default_factory=default_log_root)
    debounce_seconds: float = 0.2
    poll_interval: float = 0.25
    cache_size: int = 10
    read_retries: int = 3
    read_retry_interval: float = 0.05

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None
    # Optional rotating file receiving every raw protocol line.
    raw_log_file: str | None = None

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from CHATBRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CHATBRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: CHATBRIDGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug(
                "BridgeConfig.from_env: no CHATBRIDGE_* env vars set, using defaults"
            )

        defaults = cls()
        extra = os.getenv("CHATBRIDGE_EXTRA_ARGS", "")
        config = cls(
            command=os.getenv("CHATBRIDGE_COMMAND", defaults.command),
            cwd=os.getenv("CHATBRIDGE_CWD", defaults.cwd),
            extra_args=extra.split() if extra else [],
            skip_permissions=(
                os.getenv("CHATBRIDGE_SKIP_PERMISSIONS", "").lower()
                in _TRUE_VALUES
            ),
            terminate_grace_seconds=float(os.getenv(
                "CHATBRIDGE_TERMINATE_GRACE",
                str(defaults.terminate_grace_seconds),
            )),
            max_sessions=int(os.getenv(
                "CHATBRIDGE_MAX_SESSIONS", str(defaults.max_sessions)
            )),
            message_history_limit=int(os.getenv(
                "CHATBRIDGE_HISTORY_LIMIT",
                str(defaults.message_history_limit),
            )),
            truncate_lines=int(os.getenv(
                "CHATBRIDGE_TRUNCATE_LINES", str(defaults.truncate_lines)
            )),
            monitor_logs=(
                os.getenv("CHATBRIDGE_MONITOR_LOGS", "true").lower()
                in _TRUE_VALUES
            ),
            log_root=os.getenv("CHATBRIDGE_LOG_ROOT", defaults.log_root),
            debounce_seconds=float(os.getenv(
                "CHATBRIDGE_DEBOUNCE", str(defaults.debounce_seconds)
            )),
            poll_interval=float(os.getenv(
                "CHATBRIDGE_POLL_INTERVAL", str(defaults.poll_interval)
            )),
            cache_size=int(os.getenv(
                "CHATBRIDGE_CACHE_SIZE", str(defaults.cache_size)
            )),
            read_retries=int(os.getenv(
                "CHATBRIDGE_READ_RETRIES", str(defaults.read_retries)
            )),
            read_retry_interval=float(os.getenv(
                "CHATBRIDGE_READ_RETRY_INTERVAL",
                str(defaults.read_retry_interval),
            )),
            log_level=os.getenv("CHATBRIDGE_LOG_LEVEL", defaults.log_level),
            log_file=os.getenv("CHATBRIDGE_LOG_FILE") or None,
            raw_log_file=os.getenv("CHATBRIDGE_RAW_LOG_FILE") or None,
        )
        logger.info(
            "BridgeConfig.from_env: command=%s cwd=%s max_sessions=%d monitor=%s",
            config.command, config.cwd, config.max_sessions,
            config.monitor_logs,
        )
        return config
