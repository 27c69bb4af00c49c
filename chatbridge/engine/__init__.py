"""chatbridge engine: multi-session front-end for the Claude command-line assistant."""
from .models import (
    AssistantText,
    ServiceMessage,
    Session,
    SessionStatus,
    TimelineMessage,
    ToolCallMessage,
    ToolCallState,
    ToolStatus,
    TurnStatus,
    Usage,
    UserMessage,
)
from .config import BridgeConfig
from .errors import (
    BridgeError,
    CapacityError,
    ContextLimitError,
    NotFoundError,
    NotReadyError,
    ParseError,
    ProcessError,
    RunnerBusyError,
    SpawnError,
)

__all__ = [
    # Pool (lazy import to avoid circular deps)
    "SessionPool",
    # Models
    "AssistantText",
    "ServiceMessage",
    "Session",
    "SessionStatus",
    "TimelineMessage",
    "ToolCallMessage",
    "ToolCallState",
    "ToolStatus",
    "TurnStatus",
    "Usage",
    "UserMessage",
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Components (lazy import)
    "StreamingInvocationRunner",
    "InvocationResult",
    "TimelineProjector",
    "LogTailMonitor",
    "JsonLineBuffer",
    # Errors
    "BridgeError",
    "CapacityError",
    "ContextLimitError",
    "NotFoundError",
    "NotReadyError",
    "ParseError",
    "ProcessError",
    "RunnerBusyError",
    "SpawnError",
]


def __getattr__(name: str):
    if name == "SessionPool":
        from .pool import SessionPool
        return SessionPool
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "StreamingInvocationRunner":
        from .runner import StreamingInvocationRunner
        return StreamingInvocationRunner
    if name == "InvocationResult":
        from .runner import InvocationResult
        return InvocationResult
    if name == "TimelineProjector":
        from .projector import TimelineProjector
        return TimelineProjector
    if name == "LogTailMonitor":
        from .log_monitor import LogTailMonitor
        return LogTailMonitor
    if name == "JsonLineBuffer":
        from .line_buffer import JsonLineBuffer
        return JsonLineBuffer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
