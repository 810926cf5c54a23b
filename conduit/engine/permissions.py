"""Permission evaluator: one verdict per tool call.

Sources are consulted in strict priority order and the first
decisive one wins:

    1. PreToolUse hooks       (deny absorbing, may rewrite input)
    2. static rules           (deny list, then allow list)
    3. permission mode        (bypass / acceptEdits / plan / default)
    4. can_use_tool callback  (lazy prompt producers only)
    5. default                -> ask

Rules are strictly higher priority than the mode. When a rule and
the mode disagree, the rule wins; no finer tie-break exists.
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from .hooks import HookEvent, HookPipeline
from .models import (
    Decision,
    PendingToolCall,
    PermissionMode,
    ToolCallState,
    Verdict,
    is_capability_tool,
)
from .tool_calls import advance

if TYPE_CHECKING:
    from conduit.adapters.permission_store import PermissionStore

logger = logging.getLogger(__name__)


@dataclass
class ToolPermissionContext:
    """Extra information passed to the can_use_tool callback."""
    tool_use_id: str
    session_id: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    suggestions: list[Any] = field(default_factory=list)
    signal: asyncio.Event | None = None


# Signature: async def can_use_tool(tool_name, tool_input, context)
# Returns a Verdict, {"behavior": "allow"|"deny", ...}, or one of
# "allow", "deny", "allow_always".
CanUseTool = Callable[
    [str, dict[str, Any], ToolPermissionContext],
    Awaitable[Any],
]

EDIT_TOOLS: frozenset[str] = frozenset({
    "Write", "Edit", "MultiEdit", "NotebookEdit",
})
READ_ONLY_TOOLS: frozenset[str] = frozenset({
    "Read", "Glob", "Grep", "LS", "NotebookRead",
    "TodoRead", "TodoWrite", "BashOutput",
})
NETWORK_TOOLS: frozenset[str] = frozenset({"WebFetch", "WebSearch"})
FILESYSTEM_COMMANDS: frozenset[str] = frozenset({
    "mkdir", "touch", "mv", "cp", "rm", "rmdir",
})
_TERMINAL_TOOLS: frozenset[str] = frozenset({"Bash", "bash", "shell"})
_SEGMENT_SPLIT_RE = re.compile(r"&&|\|\||;|\||&|\n")
_SUBSTITUTION_RE = re.compile(r"\$\(|`|<\(|>\(")
_RULE_RE = re.compile(r"^(?P<tool>[^()\s]+)\s*(?:\((?P<spec>.*)\))?$")


def primary_argument(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    """The input field a rule specifier is matched against."""
    if not isinstance(tool_input, dict):
        return None
    for key in ("command", "file_path", "notebook_path", "path", "url", "pattern", "query"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def command_segments(command: str) -> list[str]:
    """Split a shell command on control operators."""
    return [seg.strip() for seg in _SEGMENT_SPLIT_RE.split(command or "") if seg.strip()]


def has_substitution(command: str) -> bool:
    """True when ``command`` runs a nested command ($(..), backticks, <(..), >(..))."""
    return _SUBSTITUTION_RE.search(command or "") is not None


def _executable(segment: str) -> str:
    try:
        tokens = shlex.split(segment)
    except ValueError:
        tokens = segment.split()
    # Skip leading VAR=value assignments.
    while tokens and "=" in tokens[0] and not tokens[0].startswith("="):
        tokens = tokens[1:]
    return tokens[0].rsplit("/", 1)[-1] if tokens else ""


@dataclass(frozen=True)
class PermissionRule:
    """One ``Tool`` or ``Tool(specifier)`` rule."""
    tool: str
    specifier: str | None = None

    @classmethod
    def parse(cls, text: str) -> PermissionRule:
        cleaned = str(text or "").strip()
        match = _RULE_RE.match(cleaned)
        if not match:
            raise ValueError(f"Invalid permission rule: {text!r}")
        spec = match.group("spec")
        if spec is not None:
            spec = spec.strip() or None
        return cls(tool=match.group("tool"), specifier=spec)

    def __str__(self) -> str:
        if self.specifier is None:
            return self.tool
        return f"{self.tool}({self.specifier})"

    def matches(self, tool_name: str, tool_input: dict[str, Any]) -> bool:
        if not fnmatch.fnmatchcase(tool_name, self.tool):
            return False
        if self.specifier is None or self.specifier == "*":
            return True
        argument = primary_argument(tool_name, tool_input)
        if argument is None:
            return False
        if self.specifier.endswith(":*"):
            prefix = self.specifier[:-2]
            if tool_name in _TERMINAL_TOOLS:
                segments = command_segments(argument)
                return bool(segments) and all(
                    seg == prefix or seg.startswith(prefix + " ")
                    for seg in segments
                )
            return argument.startswith(prefix)
        return fnmatch.fnmatchcase(argument, self.specifier)

    def allows(self, tool_name: str, tool_input: dict[str, Any]) -> bool:
        """Like matches, but a scoped shell rule never allows nested commands."""
        if not self.matches(tool_name, tool_input):
            return False
        if self.specifier in (None, "*") or tool_name not in _TERMINAL_TOOLS:
            return True
        return not has_substitution(primary_argument(tool_name, tool_input) or "")


@dataclass
class PermissionRules:
    """Configuration-level allow and deny lists."""
    allow: list[PermissionRule] = field(default_factory=list)
    deny: list[PermissionRule] = field(default_factory=list)

    @classmethod
    def from_strings(
        cls,
        allow: list[str] | None = None,
        deny: list[str] | None = None,
    ) -> PermissionRules:
        return cls(
            allow=_parse_rules(allow or []),
            deny=_parse_rules(deny or []),
        )

    def __bool__(self) -> bool:
        return bool(self.allow or self.deny)

    def add_allow(self, rule: str) -> None:
        parsed = PermissionRule.parse(rule)
        if parsed not in self.allow:
            self.allow.append(parsed)

    def evaluate(self, tool_name: str, tool_input: dict[str, Any]) -> Verdict:
        for rule in self.deny:
            if rule.matches(tool_name, tool_input):
                return Verdict.deny(
                    f"Denied by permission rule {rule}", source="rule",
                )
        for rule in self.allow:
            if rule.allows(tool_name, tool_input):
                return Verdict.allow(
                    reason=f"Allowed by permission rule {rule}", source="rule",
                )
        return Verdict.no_decision()


def _parse_rules(items: list[str]) -> list[PermissionRule]:
    rules: list[PermissionRule] = []
    for item in items:
        try:
            rules.append(PermissionRule.parse(item))
        except ValueError:
            logger.warning("Invalid permission rule ignored: %s", item)
    return rules


def evaluate_mode(
    mode: PermissionMode, tool_name: str, tool_input: dict[str, Any],
) -> Verdict:
    """Decision contributed by the permission mode alone."""
    if mode is PermissionMode.BYPASS:
        return Verdict.allow(reason="bypassPermissions mode", source="mode")

    if mode is PermissionMode.PLAN:
        if tool_name in READ_ONLY_TOOLS:
            return Verdict.allow(reason="read-only tool in plan mode", source="mode")
        return Verdict.deny(
            f"{tool_name} is not permitted in plan mode", source="mode",
        )

    if tool_name in READ_ONLY_TOOLS:
        return Verdict.allow(reason="read-only tool", source="mode")

    if mode is PermissionMode.ACCEPT_EDITS:
        # Capability and network tools are never covered by acceptEdits.
        if is_capability_tool(tool_name) or tool_name in NETWORK_TOOLS:
            return Verdict.no_decision()
        if tool_name in EDIT_TOOLS:
            return Verdict.allow(reason="acceptEdits mode", source="mode")
        if tool_name in _TERMINAL_TOOLS:
            command = primary_argument(tool_name, tool_input) or ""
            segments = command_segments(command)
            if segments and not has_substitution(command) and all(
                _executable(seg) in FILESYSTEM_COMMANDS for seg in segments
            ):
                return Verdict.allow(
                    reason="filesystem command in acceptEdits mode", source="mode",
                )
    return Verdict.no_decision()


def normalize_callback_result(result: Any) -> tuple[Verdict, bool]:
    """Map a can_use_tool return value to (verdict, allow_always)."""
    if isinstance(result, Verdict):
        return Verdict(
            result.decision, result.updated_input, result.reason,
            result.source or "callback",
        ), False
    if isinstance(result, str):
        value = result.strip().lower()
        if value in ("allow_always", "allow_project", "allow_global"):
            return Verdict.allow(source="callback"), True
        if value == "allow":
            return Verdict.allow(source="callback"), False
        if value == "ask":
            return Verdict.ask(source="callback"), False
        return Verdict.deny("User denied tool call", source="callback"), False
    if isinstance(result, dict):
        behavior = str(result.get("behavior", "")).lower()
        if behavior == "allow":
            updated = result.get("updatedInput", result.get("updated_input"))
            if updated is not None and not isinstance(updated, dict):
                updated = None
            return Verdict.allow(updated, source="callback"), False
        if behavior == "deny":
            return Verdict.deny(
                str(result.get("message") or "Denied by permission callback"),
                source="callback",
            ), False
    if result is None:
        return Verdict.no_decision(), False
    raise TypeError(f"Unsupported can_use_tool result: {result!r}")


class PermissionEvaluator:
    """Runs the ordered decision pipeline for a PendingToolCall."""

    def __init__(
        self,
        hooks: HookPipeline | None = None,
        rules: PermissionRules | None = None,
        mode: PermissionMode = PermissionMode.DEFAULT,
        can_use_tool: CanUseTool | None = None,
        permission_store: PermissionStore | None = None,
    ) -> None:
        self._hooks = hooks or HookPipeline()
        self._rules = rules or PermissionRules()
        self._mode = PermissionMode.parse(mode)
        self._can_use_tool = can_use_tool
        self._permission_store = permission_store

    @property
    def mode(self) -> PermissionMode:
        return self._mode

    def set_mode(self, mode: PermissionMode | str) -> None:
        old = self._mode
        self._mode = PermissionMode.parse(mode)
        logger.info("Permission mode %s -> %s", old.value, self._mode.value)

    @property
    def rules(self) -> PermissionRules:
        return self._rules

    @property
    def hooks(self) -> HookPipeline:
        return self._hooks

    async def evaluate(
        self,
        call: PendingToolCall,
        *,
        callbacks_enabled: bool = True,
        session_id: str | None = None,
        signal: asyncio.Event | None = None,
        suggestions: list[Any] | None = None,
    ) -> Verdict:
        """Walk the pipeline, advancing ``call`` through its stages.

        Returns the first decisive verdict, or ``ask``. Does not
        resolve the call; the session does that once per call.
        """
        tool_name = call.tool_name

        # 1. Hooks
        outcome = await self._hooks.run(
            HookEvent.PRE_TOOL_USE,
            {
                "hook_event_name": HookEvent.PRE_TOOL_USE.value,
                "session_id": session_id,
                "tool_name": tool_name,
                "tool_input": call.effective_input,
                "permission_mode": self._mode.value,
            },
            tool_name=tool_name,
            tool_use_id=call.tool_use_id,
            signal=signal,
        )
        if outcome.tool_input is not None:
            call.effective_input = dict(outcome.tool_input)
        advance(call, ToolCallState.HOOK_EVALUATED)
        if outcome.verdict.is_decisive:
            return self._finish(call, outcome.verdict)

        tool_input = call.effective_input or {}

        # 2. Static rules
        if self._rules:
            verdict = self._rules.evaluate(tool_name, tool_input)
            advance(call, ToolCallState.RULE_EVALUATED)
            if verdict.is_decisive:
                return self._finish(call, verdict)

        # 3. Mode
        verdict = evaluate_mode(self._mode, tool_name, tool_input)
        advance(call, ToolCallState.MODE_EVALUATED)
        if verdict.is_decisive:
            return self._finish(call, verdict)

        # 4. Programmatic callback
        if self._can_use_tool is not None and callbacks_enabled:
            verdict = await self._run_callback(
                call, tool_input, session_id, signal, suggestions or [],
            )
            advance(call, ToolCallState.CALLBACK_EVALUATED)
            if verdict.is_decisive:
                return self._finish(call, verdict)

        # 5. Default
        return self._finish(
            call,
            Verdict.ask(f"{tool_name} requires confirmation", source="default"),
        )

    async def _run_callback(
        self,
        call: PendingToolCall,
        tool_input: dict[str, Any],
        session_id: str | None,
        signal: asyncio.Event | None,
        suggestions: list[Any],
    ) -> Verdict:
        context = ToolPermissionContext(
            tool_use_id=call.tool_use_id,
            session_id=session_id,
            permission_mode=self._mode,
            suggestions=suggestions,
            signal=signal,
        )
        try:
            result = await self._can_use_tool(call.tool_name, tool_input, context)
            verdict, always = normalize_callback_result(result)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "can_use_tool failed for %s; treating as no decision",
                call.tool_name,
            )
            return Verdict.no_decision()
        if always and verdict.decision is Decision.ALLOW:
            self.remember_allow(call.tool_name)
        return verdict

    def remember_allow(self, tool_name: str) -> None:
        """Add an "allow always" answer to the session and store."""
        self._rules.add_allow(tool_name)
        if self._permission_store is not None:
            self._permission_store.add_project(tool_name)

    def _finish(self, call: PendingToolCall, verdict: Verdict) -> Verdict:
        if verdict.decision is Decision.ALLOW and verdict.updated_input is None:
            if call.effective_input != call.original_input:
                verdict = Verdict(
                    verdict.decision,
                    call.effective_input,
                    verdict.reason,
                    verdict.source,
                )
        logger.info(
            "Permission verdict tool=%s id=%s decision=%s source=%s",
            call.tool_name,
            call.tool_use_id,
            verdict.decision.value,
            verdict.source or "-",
        )
        return verdict
