"""Session and tool-call state machines.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Session:

    INITIALIZING ──> ACTIVE ──┬──> INTERRUPTED ──> ACTIVE
                              │
                              └──> TERMINATED

    INITIALIZING ──> TERMINATED  (handshake never completed)

Tool call:

    REQUESTED ──> HOOK_EVALUATED ──┬──> RULE_EVALUATED ──> MODE_EVALUATED
                                   │                          │
                                   └──> (decisive) ───────────┤
                                                              v
                        CALLBACK_EVALUATED ──> ALLOWED | DENIED | STALLED

    Any non-terminal state ──> ABANDONED  (interrupt or stream closure)
"""
from __future__ import annotations

from .models import SessionState, ToolCallState

VALID_SESSION_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.INITIALIZING: {
        SessionState.ACTIVE,
        SessionState.INTERRUPTED,
        SessionState.TERMINATED,
    },
    SessionState.ACTIVE: {
        SessionState.INTERRUPTED,
        SessionState.TERMINATED,
    },
    SessionState.INTERRUPTED: {
        SessionState.ACTIVE,
        SessionState.TERMINATED,
    },
    SessionState.TERMINATED: set(),
}

_RESOLVED = {
    ToolCallState.ALLOWED,
    ToolCallState.DENIED,
    ToolCallState.STALLED,
    ToolCallState.ABANDONED,
}

VALID_TOOL_CALL_TRANSITIONS: dict[ToolCallState, set[ToolCallState]] = {
    ToolCallState.REQUESTED: {
        ToolCallState.HOOK_EVALUATED,
        ToolCallState.DENIED,  # evaluation failed outright
        ToolCallState.ABANDONED,
    },
    ToolCallState.HOOK_EVALUATED: {
        ToolCallState.RULE_EVALUATED,
        ToolCallState.MODE_EVALUATED,
    } | _RESOLVED,
    ToolCallState.RULE_EVALUATED: {
        ToolCallState.MODE_EVALUATED,
    } | _RESOLVED,
    ToolCallState.MODE_EVALUATED: {
        ToolCallState.CALLBACK_EVALUATED,
    } | _RESOLVED,
    ToolCallState.CALLBACK_EVALUATED: set(_RESOLVED),
    ToolCallState.ALLOWED: set(),
    ToolCallState.DENIED: set(),
    ToolCallState.STALLED: set(),
    ToolCallState.ABANDONED: set(),
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a session state transition. Raises ValueError if invalid."""
    _check(VALID_SESSION_TRANSITIONS, current, target)


def validate_tool_call_transition(
    current: ToolCallState, target: ToolCallState,
) -> None:
    """Validate a tool-call state transition. Raises ValueError if invalid."""
    _check(VALID_TOOL_CALL_TRANSITIONS, current, target)


def _check(table: dict, current, target) -> None:
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(
            sorted(s.value for s in allowed)
        ) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
