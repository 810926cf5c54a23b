"""Ready-made PreToolUse/PostToolUse hooks.

Each guard is an async callable with the hook signature
``(input_data, tool_use_id, context)`` and keeps its own state on
the instance, so one instance registered once has one lifetime.
"""
from __future__ import annotations

import collections
import json
import logging
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .hooks import HookContext

logger = logging.getLogger(__name__)

DEFAULT_BLACKLIST_PATTERNS: tuple[str, ...] = (
    r"(?:^|\&\&|\|\||;|&|\|)\s*rm(?:\s|$)",
    r"(?:^|\&\&|\|\||;|&|\|)\s*git\s+commit(?:\s|$)",
)


def _pre_tool_decision(decision: str, reason: str) -> dict[str, Any]:
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": decision,
            "permissionDecisionReason": reason,
        }
    }


def _command_of(input_data: dict[str, Any]) -> str:
    tool_input = input_data.get("tool_input") or {}
    if not isinstance(tool_input, dict):
        return ""
    command = (
        tool_input.get("command")
        or tool_input.get("cmd")
        or tool_input.get("script")
        or ""
    )
    return command.strip() if isinstance(command, str) else ""


def compile_patterns(patterns: list[str] | tuple[str, ...]) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        cleaned = str(pattern or "").strip()
        if not cleaned:
            continue
        try:
            compiled.append(re.compile(cleaned, re.IGNORECASE | re.MULTILINE))
        except re.error:
            logger.warning("Invalid command policy regex ignored: %s", cleaned)
    return compiled


class RateLimiter:
    """Sliding-window call limit per tool name.

    Denies once ``max_calls`` calls to the same tool were admitted in
    the last ``window_seconds``. Denied calls do not consume budget.
    """

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: dict[str, collections.deque[float]] = {}

    async def __call__(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
    ) -> dict[str, Any]:
        tool_name = str(input_data.get("tool_name") or context.tool_name or "")
        now = self._clock()
        window = self._calls.setdefault(tool_name, collections.deque())
        while window and now - window[0] >= self.window_seconds:
            window.popleft()
        if len(window) >= self.max_calls:
            logger.warning(
                "Rate limit hit tool=%s calls=%d window=%.0fs",
                tool_name, len(window), self.window_seconds,
            )
            return _pre_tool_decision(
                "deny",
                f"Rate limit exceeded for {tool_name}: "
                f"{self.max_calls} calls per {self.window_seconds:g}s",
            )
        window.append(now)
        return {}


class AuditLog:
    """Records every hook payload it sees; never decides.

    Writes JSON lines to ``path`` when given, and always keeps the
    records in memory on ``entries``.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path).expanduser() if path else None
        self.entries: list[dict[str, Any]] = []

    async def __call__(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
    ) -> dict[str, Any]:
        entry = {
            "ts": time.time(),
            "event": context.event,
            "tool_name": input_data.get("tool_name"),
            "tool_use_id": tool_use_id,
            "tool_input": input_data.get("tool_input"),
        }
        if "tool_response" in input_data:
            entry["tool_response"] = input_data["tool_response"]
        self.entries.append(entry)
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, default=str) + "\n")
        return {}


class CommandPolicy:
    """Whitelist/blacklist regex policy for shell commands.

    Blacklist hits are denied, whitelist hits allowed, anything else
    is left to later permission sources.
    """

    def __init__(
        self,
        whitelist: list[str] | None = None,
        blacklist: list[str] | None = None,
        *,
        include_defaults: bool = True,
    ) -> None:
        blacklist_patterns = list(DEFAULT_BLACKLIST_PATTERNS) if include_defaults else []
        blacklist_patterns.extend(blacklist or [])
        self._whitelist = compile_patterns(whitelist or [])
        self._blacklist = compile_patterns(blacklist_patterns)

    def evaluate(self, command: str) -> str:
        """Return "deny", "allow" or "none" for ``command``."""
        if not command:
            return "none"
        if any(p.search(command) for p in self._blacklist):
            return "deny"
        if any(p.search(command) for p in self._whitelist):
            return "allow"
        return "none"

    async def __call__(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
    ) -> dict[str, Any]:
        command = _command_of(input_data)
        decision = self.evaluate(command)
        if decision == "deny":
            return _pre_tool_decision(
                "deny", f"Command matches a blacklisted pattern: {command[:80]}",
            )
        if decision == "allow":
            return _pre_tool_decision("allow", "Whitelisted command")
        return {}


class RepeatGuard:
    """Denies the same shell command repeated too many times in a row."""

    def __init__(self, max_repeats: int = 3) -> None:
        self._max_repeats = max_repeats
        self._last_command: str | None = None
        self._repeat_count = 0

    def check(self, command: str) -> tuple[bool, int]:
        """Check a command. Returns (allowed, repeat_count)."""
        command = command.strip()
        if command == self._last_command:
            self._repeat_count += 1
        else:
            self._last_command = command
            self._repeat_count = 1
        return self._repeat_count <= self._max_repeats, self._repeat_count

    async def __call__(
        self,
        input_data: dict[str, Any],
        tool_use_id: str | None,
        context: HookContext,
    ) -> dict[str, Any]:
        command = _command_of(input_data)
        if not command:
            return {}
        allowed, count = self.check(command)
        if allowed:
            return {}
        return _pre_tool_decision(
            "deny",
            f"Blocked: the same command ran {count} times in a row. "
            f"Try a different approach.",
        )
