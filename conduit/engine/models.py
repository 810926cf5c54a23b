"""Core data models for the control-protocol bridge.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    INITIALIZING = "initializing"
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    TERMINATED = "terminated"


class ToolCallState(str, Enum):
    """Evaluation stages of a single tool call."""
    REQUESTED = "requested"
    HOOK_EVALUATED = "hook_evaluated"
    RULE_EVALUATED = "rule_evaluated"
    MODE_EVALUATED = "mode_evaluated"
    CALLBACK_EVALUATED = "callback_evaluated"
    ALLOWED = "allowed"
    DENIED = "denied"
    STALLED = "stalled"
    ABANDONED = "abandoned"


TERMINAL_TOOL_CALL_STATES: frozenset[ToolCallState] = frozenset({
    ToolCallState.ALLOWED,
    ToolCallState.DENIED,
    ToolCallState.STALLED,
    ToolCallState.ABANDONED,
})


class PermissionMode(str, Enum):
    """Maps to the CLI's --permission-mode values."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"

    @classmethod
    def parse(cls, value: str | PermissionMode) -> PermissionMode:
        """Accept CLI values and the long-form aliases."""
        if isinstance(value, PermissionMode):
            return value
        cleaned = str(value or "").strip()
        aliases = {
            "": cls.DEFAULT,
            "auto-accept-edits": cls.ACCEPT_EDITS,
            "accept-edits": cls.ACCEPT_EDITS,
            "plan-only": cls.PLAN,
            "bypass-all": cls.BYPASS,
            "bypass": cls.BYPASS,
        }
        if cleaned in aliases:
            return aliases[cleaned]
        for mode in cls:
            if mode.value.lower() == cleaned.lower():
                return mode
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown permission mode '{value}'. Valid: {valid}")


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"
    NO_DECISION = "no_decision"


@dataclass(frozen=True)
class Verdict:
    """Outcome of one permission source, or of the whole pipeline.

    ``source`` names the stage that produced it: hook, rule, mode,
    callback, confirm, default or stall.
    """
    decision: Decision
    updated_input: dict[str, Any] | None = None
    reason: str = ""
    source: str = ""

    @classmethod
    def allow(
        cls,
        updated_input: dict[str, Any] | None = None,
        reason: str = "",
        source: str = "",
    ) -> Verdict:
        return cls(Decision.ALLOW, updated_input, reason, source)

    @classmethod
    def deny(cls, reason: str, source: str = "") -> Verdict:
        return cls(Decision.DENY, None, reason, source)

    @classmethod
    def ask(cls, reason: str = "", source: str = "") -> Verdict:
        return cls(Decision.ASK, None, reason, source)

    @classmethod
    def no_decision(cls) -> Verdict:
        return cls(Decision.NO_DECISION)

    @property
    def is_decisive(self) -> bool:
        return self.decision is not Decision.NO_DECISION

    def to_wire(self, original_input: dict[str, Any] | None = None) -> dict[str, Any]:
        """Render as the ``behavior`` payload the CLI expects."""
        if self.decision is Decision.ALLOW:
            return {
                "behavior": "allow",
                "updatedInput": (
                    self.updated_input
                    if self.updated_input is not None
                    else (original_input or {})
                ),
            }
        return {
            "behavior": "deny",
            "message": self.reason or "Permission denied",
        }


# ── Control messages ──
#
# One dataclass per message kind. ``raw`` keeps the decoded record so
# callers can reach fields this layer does not model.


@dataclass
class InitMessage:
    kind: ClassVar[str] = "init"
    session_id: str
    tools: list[str] = field(default_factory=list)
    model: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class AssistantMessage:
    kind: ClassVar[str] = "assistant"
    content: list[dict[str, Any]]
    model: str | None = None
    session_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def text(self) -> str:
        return "".join(
            str(block.get("text", ""))
            for block in self.content
            if block.get("type") == "text"
        )


@dataclass
class ToolUseRequest:
    kind: ClassVar[str] = "tool_use_request"
    tool_use_id: str
    tool_name: str
    tool_input: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ToolResult:
    kind: ClassVar[str] = "tool_result"
    tool_use_id: str
    tool_output: Any = None
    is_error: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class HookInvocation:
    kind: ClassVar[str] = "hook_invocation"
    request_id: str
    event: str
    payload: dict[str, Any]
    callback_id: str | None = None
    tool_use_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def tool_name(self) -> str | None:
        name = self.payload.get("tool_name")
        return str(name) if name else None


@dataclass
class PermissionRequest:
    kind: ClassVar[str] = "permission_request"
    request_id: str
    tool_use_id: str
    tool_name: str
    tool_input: dict[str, Any]
    suggestions: list[Any] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ResultMessage:
    kind: ClassVar[str] = "result"
    subtype: str
    is_error: bool = False
    result: str | None = None
    session_id: str | None = None
    num_turns: int = 0
    duration_ms: int = 0
    total_cost_usd: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ControlResponse:
    """Acknowledgement for a control request the client issued."""
    kind: ClassVar[str] = "control_response"
    request_id: str
    success: bool
    response: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


ControlMessage = Union[
    InitMessage,
    AssistantMessage,
    ToolUseRequest,
    ToolResult,
    HookInvocation,
    PermissionRequest,
    ResultMessage,
    ControlResponse,
]

ToolCallMessage = Union[ToolUseRequest, PermissionRequest]


@dataclass
class PermissionStalled:
    """Reported to the caller when an ``ask`` verdict found no resolver."""
    kind: ClassVar[str] = "permission_stalled"
    tool_use_id: str
    tool_name: str
    waited_seconds: float
    reason: str = ""


@dataclass
class PendingToolCall:
    """In-flight record for one tool invocation.

    Created when a tool-use or permission request is demultiplexed.
    Leaves the registry once resolved or abandoned.
    """
    tool_use_id: str
    tool_name: str
    original_input: dict[str, Any]
    request_id: str | None = None
    state: ToolCallState = ToolCallState.REQUESTED
    verdict: Verdict | None = None
    effective_input: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.monotonic)
    history: list[ToolCallState] = field(
        default_factory=lambda: [ToolCallState.REQUESTED]
    )
    task: asyncio.Future[Any] | None = field(default=None, repr=False)
    # Future an external resolver (confirm surface or resolve_tool_call)
    # completes while the call waits on an ``ask`` verdict.
    resolver: asyncio.Future[Verdict] | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.effective_input is None:
            self.effective_input = dict(self.original_input)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TOOL_CALL_STATES

    @property
    def answers_control_request(self) -> bool:
        return self.request_id is not None


def user_message(
    content: str | list[dict[str, Any]],
    *,
    session_id: str = "default",
    parent_tool_use_id: str | None = None,
) -> dict[str, Any]:
    """Build one user-turn fragment for a prompt producer."""
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": parent_tool_use_id,
        "session_id": session_id,
    }


CAPABILITY_PREFIX = "mcp"


def capability_tool_name(provider: str, name: str) -> str:
    """Composite name an external capability is exposed under."""
    return f"{CAPABILITY_PREFIX}__{provider}__{name}"


def split_capability_name(tool_name: str) -> tuple[str, str] | None:
    """Return (provider, capability) for a composite name, else None."""
    if not tool_name.startswith(f"{CAPABILITY_PREFIX}__"):
        return None
    parts = tool_name.split("__", 2)
    if len(parts) != 3 or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


def is_capability_tool(tool_name: str) -> bool:
    return split_capability_name(tool_name) is not None
