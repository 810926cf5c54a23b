"""Registry of in-flight tool calls.

Guarantees each PendingToolCall is resolved exactly once: the first
resolution wins, later attempts are refused and logged, and abandoned
calls can never be resolved afterwards.
"""
from __future__ import annotations

import logging

from .lifecycle import validate_tool_call_transition
from .models import (
    Decision,
    PendingToolCall,
    PermissionRequest,
    ToolCallMessage,
    ToolCallState,
    Verdict,
)

logger = logging.getLogger(__name__)


def advance(call: PendingToolCall, target: ToolCallState) -> None:
    """Move a call to ``target`` with validation."""
    validate_tool_call_transition(call.state, target)
    call.state = target
    call.history.append(target)


class ToolCallRegistry:
    """Tracks PendingToolCall records for one session."""

    def __init__(self) -> None:
        self._calls: dict[str, PendingToolCall] = {}
        self._resolved: dict[str, PendingToolCall] = {}

    def register(self, message: ToolCallMessage) -> PendingToolCall:
        """Create the pending record for a demultiplexed request."""
        if message.tool_use_id in self._calls:
            raise ValueError(
                f"Tool call {message.tool_use_id} is already pending"
            )
        call = PendingToolCall(
            tool_use_id=message.tool_use_id,
            tool_name=message.tool_name,
            original_input=dict(message.tool_input),
            request_id=(
                message.request_id
                if isinstance(message, PermissionRequest)
                else None
            ),
        )
        self._calls[call.tool_use_id] = call
        logger.debug(
            "Tool call registered id=%s tool=%s",
            call.tool_use_id, call.tool_name,
        )
        return call

    def get(self, tool_use_id: str) -> PendingToolCall | None:
        return self._calls.get(tool_use_id) or self._resolved.get(tool_use_id)

    def pending(self) -> list[PendingToolCall]:
        return list(self._calls.values())

    def __len__(self) -> int:
        return len(self._calls)

    def resolve(
        self,
        call: PendingToolCall,
        verdict: Verdict,
        *,
        stalled: bool = False,
    ) -> bool:
        """Record the final verdict. Returns False if already terminal."""
        if call.is_terminal:
            logger.warning(
                "Refusing second resolution of tool call %s (state=%s)",
                call.tool_use_id, call.state.value,
            )
            return False
        if stalled:
            target = ToolCallState.STALLED
        elif verdict.decision is Decision.ALLOW:
            target = ToolCallState.ALLOWED
        elif verdict.decision is Decision.DENY:
            target = ToolCallState.DENIED
        else:
            raise ValueError(
                f"Cannot resolve tool call with {verdict.decision.value} verdict"
            )
        advance(call, target)
        call.verdict = verdict
        if verdict.updated_input is not None:
            call.effective_input = dict(verdict.updated_input)
        self._retire(call)
        return True

    def abandon(self, call: PendingToolCall, reason: str = "") -> bool:
        """Mark an unresolved call abandoned. Returns False if terminal."""
        if call.is_terminal:
            return False
        advance(call, ToolCallState.ABANDONED)
        if call.task is not None and not call.task.done():
            call.task.cancel()
        if call.resolver is not None and not call.resolver.done():
            call.resolver.cancel()
        logger.info(
            "Tool call abandoned id=%s tool=%s reason=%s",
            call.tool_use_id, call.tool_name, reason or "-",
        )
        self._retire(call)
        return True

    def abandon_all(self, reason: str = "") -> list[PendingToolCall]:
        """Abandon every unresolved call. Returns the abandoned records."""
        abandoned = []
        for call in list(self._calls.values()):
            if self.abandon(call, reason):
                abandoned.append(call)
        return abandoned

    def _retire(self, call: PendingToolCall) -> None:
        self._calls.pop(call.tool_use_id, None)
        self._resolved[call.tool_use_id] = call
