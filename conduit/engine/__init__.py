"""Conduit engine: transport, demultiplexer, permissions and hooks."""
from .models import (
    AssistantMessage,
    ControlResponse,
    Decision,
    HookInvocation,
    InitMessage,
    PendingToolCall,
    PermissionMode,
    PermissionRequest,
    PermissionStalled,
    ResultMessage,
    SessionState,
    ToolCallState,
    ToolResult,
    ToolUseRequest,
    Verdict,
    capability_tool_name,
    split_capability_name,
    user_message,
)
from .config import SessionOptions, build_cli_command
from .errors import (
    BridgeError,
    CLINotFoundError,
    DecodeError,
    ProcessTerminated,
    StreamingModeRequired,
    TransportClosed,
)
from .hooks import HookContext, HookEvent, HookMatcher, HookPipeline
from .permissions import (
    PermissionEvaluator,
    PermissionRule,
    PermissionRules,
    ToolPermissionContext,
)
from .guards import AuditLog, CommandPolicy, RateLimiter, RepeatGuard

__all__ = [
    # Session (lazy import)
    "ControlSession",
    # Transport (lazy import)
    "SubprocessTransport",
    "MessageDemultiplexer",
    # Models
    "AssistantMessage",
    "ControlResponse",
    "Decision",
    "HookInvocation",
    "InitMessage",
    "PendingToolCall",
    "PermissionMode",
    "PermissionRequest",
    "PermissionStalled",
    "ResultMessage",
    "SessionState",
    "ToolCallState",
    "ToolResult",
    "ToolUseRequest",
    "Verdict",
    "capability_tool_name",
    "split_capability_name",
    "user_message",
    # Config
    "SessionOptions",
    "build_cli_command",
    "load_yaml_config",
    # Hooks and permissions
    "HookContext",
    "HookEvent",
    "HookMatcher",
    "HookPipeline",
    "PermissionEvaluator",
    "PermissionRule",
    "PermissionRules",
    "ToolPermissionContext",
    # Guards
    "AuditLog",
    "CommandPolicy",
    "RateLimiter",
    "RepeatGuard",
    # Errors
    "BridgeError",
    "CLINotFoundError",
    "DecodeError",
    "ProcessTerminated",
    "StreamingModeRequired",
    "TransportClosed",
]


def __getattr__(name: str):
    if name == "ControlSession":
        from .session import ControlSession
        return ControlSession
    if name == "SubprocessTransport":
        from .transport import SubprocessTransport
        return SubprocessTransport
    if name == "MessageDemultiplexer":
        from .demux import MessageDemultiplexer
        return MessageDemultiplexer
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
