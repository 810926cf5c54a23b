"""Hook pipeline: ordered, fault-isolated interceptors.

Hooks are registered per lifecycle event with an optional tool-name
regex. At dispatch time only registrations whose filter fully matches
the tool name (or that have no filter) run, in registration order,
and callbacks inside one registration run in list order.

Callback signature (same shape the CLI uses for SDK hooks):

    async def hook(input_data: dict, tool_use_id: str | None,
                   context: HookContext) -> dict | Verdict | None

A callback that raises or times out is logged and counted as "no
decision"; it never aborts the pipeline or the session.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Decision, Verdict

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    NOTIFICATION = "Notification"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    PRE_COMPACT = "PreCompact"
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"


@dataclass
class HookContext:
    """Per-invocation context handed to every callback.

    ``state`` belongs to the registration, not the call: it persists
    across invocations for the registration's lifetime. It has no
    locking; hooks shared by concurrent calls must synchronize
    themselves.
    """
    signal: asyncio.Event
    state: dict[str, Any]
    event: str
    tool_name: str | None = None


HookCallback = Callable[
    [dict[str, Any], str | None, HookContext],
    Awaitable[dict[str, Any] | Verdict | None],
]


@dataclass
class HookMatcher:
    """User-facing hook configuration entry (one per matcher)."""
    matcher: str | None = None
    hooks: list[HookCallback] = field(default_factory=list)
    timeout: float | None = None


@dataclass
class HookRegistration:
    event: str
    matcher: str | None
    callbacks: list[HookCallback]
    timeout: float | None = None
    state: dict[str, Any] = field(default_factory=dict)
    _pattern: re.Pattern[str] | None = field(default=None, init=False, repr=False)
    _literal: str | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        cleaned = (self.matcher or "").strip()
        if cleaned in ("", "*"):
            return
        try:
            self._pattern = re.compile(cleaned)
        except re.error:
            logger.warning(
                "Invalid hook matcher regex %r; using exact name match",
                cleaned,
            )
            self._literal = cleaned

    def matches(self, tool_name: str | None) -> bool:
        if self._pattern is None and self._literal is None:
            return True
        if tool_name is None:
            return False
        if self._literal is not None:
            return tool_name == self._literal
        return self._pattern.fullmatch(tool_name) is not None


@dataclass
class HookOutcome:
    """Aggregated result of one pipeline dispatch."""
    verdict: Verdict
    tool_input: dict[str, Any] | None = None
    outputs: list[dict[str, Any]] = field(default_factory=list)
    invoked: int = 0
    failures: int = 0

    def response_payload(self, event: str) -> dict[str, Any]:
        """Merge callback outputs into one reply for the CLI."""
        merged: dict[str, Any] = {}
        contexts: list[str] = []
        for output in self.outputs:
            for key, value in output.items():
                if key == "hookSpecificOutput":
                    continue
                merged[key] = value
            specific = output.get("hookSpecificOutput")
            if isinstance(specific, dict):
                extra = specific.get("additionalContext")
                if extra:
                    contexts.append(str(extra))
        specific_out: dict[str, Any] = {}
        if self.verdict.is_decisive and event == HookEvent.PRE_TOOL_USE.value:
            specific_out["permissionDecision"] = self.verdict.decision.value
            if self.verdict.reason:
                specific_out["permissionDecisionReason"] = self.verdict.reason
            if self.verdict.updated_input is not None:
                specific_out["updatedInput"] = self.verdict.updated_input
        if contexts:
            specific_out["additionalContext"] = "\n".join(contexts)
        if specific_out:
            specific_out["hookEventName"] = event
            merged["hookSpecificOutput"] = specific_out
        return merged


_DECISION_ALIASES = {
    "allow": Decision.ALLOW,
    "approve": Decision.ALLOW,
    "deny": Decision.DENY,
    "block": Decision.DENY,
    "ask": Decision.ASK,
}


def parse_hook_output(output: Any) -> tuple[Verdict, dict[str, Any]]:
    """Normalize a callback return value into (verdict, raw output map)."""
    if output is None:
        return Verdict.no_decision(), {}
    if isinstance(output, Verdict):
        return Verdict(
            output.decision,
            output.updated_input,
            output.reason,
            output.source or "hook",
        ), {}
    if not isinstance(output, dict):
        raise TypeError(
            f"Hook returned {type(output).__name__}, expected dict or Verdict"
        )
    if not output:
        return Verdict.no_decision(), {}

    specific = output.get("hookSpecificOutput")
    payload = specific if isinstance(specific, dict) else output
    raw_decision = payload.get("permissionDecision")
    reason = payload.get("permissionDecisionReason") or ""
    if raw_decision is None and "decision" in output:
        # Legacy top-level {"decision": "block", "reason": ...}
        raw_decision = output.get("decision")
        reason = output.get("reason") or reason
    updated = payload.get("updatedInput")
    if updated is not None and not isinstance(updated, dict):
        logger.warning("Ignoring non-dict updatedInput from hook: %r", updated)
        updated = None

    if raw_decision is None:
        if updated is not None:
            # Input rewrite without a decision still propagates.
            return Verdict(Decision.NO_DECISION, updated, "", "hook"), output
        return Verdict.no_decision(), output

    decision = _DECISION_ALIASES.get(str(raw_decision).lower())
    if decision is None:
        logger.warning("Unknown hook permissionDecision %r ignored", raw_decision)
        return Verdict(Decision.NO_DECISION, updated, "", "hook"), output
    if decision is Decision.DENY:
        return Verdict.deny(reason or "Denied by hook", source="hook"), output
    return Verdict(decision, updated, reason, "hook"), output


_RANK = {
    Decision.NO_DECISION: 0,
    Decision.ALLOW: 1,
    Decision.ASK: 2,
    Decision.DENY: 3,
}


class HookPipeline:
    """Ordered set of hook registrations keyed by event."""

    def __init__(self, default_timeout: float | None = 60.0) -> None:
        self._default_timeout = default_timeout
        self._registrations: dict[str, list[HookRegistration]] = {}
        self.failure_count = 0

    @classmethod
    def from_matchers(
        cls,
        hooks: dict[str, list[HookMatcher]] | None,
        default_timeout: float | None = 60.0,
    ) -> HookPipeline:
        pipeline = cls(default_timeout=default_timeout)
        for event, matchers in (hooks or {}).items():
            for matcher in matchers:
                pipeline.register(
                    event,
                    matcher.hooks,
                    matcher=matcher.matcher,
                    timeout=matcher.timeout,
                )
        return pipeline

    def register(
        self,
        event: str | HookEvent,
        callbacks: list[HookCallback] | HookCallback,
        *,
        matcher: str | None = None,
        timeout: float | None = None,
    ) -> HookRegistration:
        """Append a registration; order of calls is dispatch order."""
        event_name = event.value if isinstance(event, HookEvent) else str(event)
        if callable(callbacks):
            callbacks = [callbacks]
        registration = HookRegistration(
            event=event_name,
            matcher=matcher,
            callbacks=list(callbacks),
            timeout=timeout,
        )
        self._registrations.setdefault(event_name, []).append(registration)
        logger.debug(
            "Hook registered event=%s matcher=%s callbacks=%d",
            event_name, matcher or "*", len(registration.callbacks),
        )
        return registration

    def registrations(self, event: str | HookEvent) -> list[HookRegistration]:
        event_name = event.value if isinstance(event, HookEvent) else str(event)
        return list(self._registrations.get(event_name, []))

    def has_hooks(self, event: str | HookEvent) -> bool:
        return bool(self.registrations(event))

    def matching(
        self, event: str | HookEvent, tool_name: str | None,
    ) -> list[HookRegistration]:
        return [r for r in self.registrations(event) if r.matches(tool_name)]

    async def run(
        self,
        event: str | HookEvent,
        payload: dict[str, Any],
        *,
        tool_name: str | None = None,
        tool_use_id: str | None = None,
        signal: asyncio.Event | None = None,
    ) -> HookOutcome:
        """Dispatch ``event`` to every matching callback, serially.

        Deny is absorbing: the first deny stops the chain. Otherwise
        ask outranks allow. A callback's ``updatedInput`` replaces
        ``tool_input`` in the payload seen by later callbacks.
        If ``signal`` fires before every matching callback has run, the
        outcome is a deny.
        """
        event_name = event.value if isinstance(event, HookEvent) else str(event)
        signal = signal or asyncio.Event()
        current_input = payload.get("tool_input")
        input_rewritten = False
        best = Verdict.no_decision()
        outcome = HookOutcome(verdict=best)

        for registration in self.matching(event_name, tool_name):
            context = HookContext(
                signal=signal,
                state=registration.state,
                event=event_name,
                tool_name=tool_name,
            )
            for callback in registration.callbacks:
                if signal.is_set():
                    # Skipped hooks fail closed.
                    logger.debug("Hook dispatch for %s cancelled", event_name)
                    outcome.verdict = Verdict.deny(
                        f"{event_name} hooks cancelled", source="hook",
                    )
                    return outcome
                data = dict(payload)
                if current_input is not None:
                    data["tool_input"] = current_input
                outcome.invoked += 1
                verdict, raw = await self._invoke(
                    callback, data, tool_use_id, context,
                    registration.timeout,
                )
                if verdict is None:
                    outcome.failures += 1
                    continue
                if raw:
                    outcome.outputs.append(raw)
                if verdict.updated_input is not None:
                    current_input = verdict.updated_input
                    input_rewritten = True
                if verdict.decision is Decision.DENY:
                    logger.info(
                        "Hook denied event=%s tool=%s reason=%s",
                        event_name, tool_name, verdict.reason,
                    )
                    outcome.verdict = verdict
                    outcome.tool_input = current_input if input_rewritten else None
                    return outcome
                if _RANK[verdict.decision] > _RANK[best.decision]:
                    best = verdict

        if input_rewritten:
            outcome.tool_input = current_input
            best = Verdict(
                best.decision, current_input, best.reason, best.source or "hook",
            )
        outcome.verdict = best
        return outcome

    async def _invoke(
        self,
        callback: HookCallback,
        data: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
        timeout: float | None,
    ) -> tuple[Verdict | None, dict[str, Any]]:
        """Run one callback at the isolation boundary.

        Returns (None, {}) when the callback failed.
        """
        limit = timeout if timeout is not None else self._default_timeout
        name = getattr(callback, "__name__", type(callback).__name__)
        try:
            coro = callback(data, tool_use_id, context)
            if limit and limit > 0:
                result = await asyncio.wait_for(coro, timeout=limit)
            else:
                result = await coro
            return parse_hook_output(result)
        except asyncio.TimeoutError:
            self.failure_count += 1
            logger.warning(
                "Hook %s timed out after %.1fs (event=%s tool=%s)",
                name, limit, context.event, context.tool_name,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failure_count += 1
            logger.exception(
                "Hook %s failed (event=%s tool=%s); treating as no decision",
                name, context.event, context.tool_name,
            )
        return None, {}
