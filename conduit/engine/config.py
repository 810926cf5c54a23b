"""Session configuration loaded from code or environment variables.

All settings have sensible defaults. Override via CONDUIT_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from .hooks import HookMatcher
from .models import PendingToolCall, PermissionMode, Verdict
from .permissions import CanUseTool

if TYPE_CHECKING:
    from conduit.adapters.permission_store import PermissionStore

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Optional async confirmation surface for "ask" verdicts.
# Signature: async def callback(call: PendingToolCall) -> Verdict | str | None
# Returning None leaves the call unresolved (it will stall).
ConfirmCallback = Callable[[PendingToolCall], Awaitable[Verdict | str | None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, never letting it break the session."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _split_list(value: str | None) -> list[str]:
    """Split a comma-separated rule list, ignoring commas inside (...)."""
    if not value:
        return []
    items: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in value:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        if ch == "," and depth == 0:
            items.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    items.append("".join(current).strip())
    return [item for item in items if item]


@dataclass
class SessionOptions:
    """Options for one ControlSession."""

    cli_path: str = "claude"
    cwd: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    # Static permission rules, e.g. "Read", "Bash(npm test:*)".
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    # Resume an earlier session by its identifier.
    resume: str | None = None
    model: str | None = None
    # Merged over os.environ for the subprocess; never validated.
    env: dict[str, str] = field(default_factory=dict)
    extra_args: list[str] = field(default_factory=list)

    # Seconds an "ask" verdict may wait for a resolver before the call
    # is marked stalled. 0 stalls immediately when no resolver exists;
    # None waits indefinitely.
    permission_stall_timeout: float | None = 30.0
    # Grace window between prompt producer exhaustion and stdin close
    # when no terminal result has been observed.
    stream_close_timeout: float = 60.0
    # Per-callback hook timeout.
    hook_timeout: float = 60.0
    # Wait for the process to exit after stdin closes before SIGTERM.
    process_close_timeout: float = 5.0

    log_level: str = "INFO"

    hooks: dict[str, list[HookMatcher]] = field(default_factory=dict, repr=False)
    can_use_tool: CanUseTool | None = field(default=None, repr=False)
    confirm_callback: ConfirmCallback | None = field(default=None, repr=False)
    event_callback: EventCallback | None = field(default=None, repr=False)
    permission_store: PermissionStore | None = field(default=None, repr=False)
    # Test seam: replaces asyncio.create_subprocess_exec.
    process_factory: Callable[..., Awaitable[Any]] | None = field(
        default=None, repr=False,
    )

    def __post_init__(self) -> None:
        self.permission_mode = PermissionMode.parse(self.permission_mode)

    def add_hook(self, event: str, matcher: HookMatcher) -> None:
        self.hooks.setdefault(event, []).append(matcher)

    @classmethod
    def from_env(cls) -> SessionOptions:
        """Load options from CONDUIT_* environment variables."""
        conduit_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONDUIT_")
        }
        if conduit_vars:
            logger.info(
                "SessionOptions.from_env: CONDUIT_* env overrides: %s",
                ", ".join(sorted(conduit_vars)),
            )
        else:
            logger.debug("SessionOptions.from_env: no CONDUIT_* env vars set, using defaults")

        options = cls(
            cli_path=os.getenv("CONDUIT_CLI_PATH", cls.cli_path),
            cwd=os.getenv("CONDUIT_CWD") or None,
            permission_mode=PermissionMode.parse(
                os.getenv("CONDUIT_PERMISSION_MODE", PermissionMode.DEFAULT.value)
            ),
            allowed_tools=_split_list(os.getenv("CONDUIT_ALLOWED_TOOLS")),
            disallowed_tools=_split_list(os.getenv("CONDUIT_DISALLOWED_TOOLS")),
            model=os.getenv("CONDUIT_MODEL") or None,
            permission_stall_timeout=float(os.getenv(
                "CONDUIT_PERMISSION_STALL_TIMEOUT",
                str(cls.permission_stall_timeout),
            )),
            stream_close_timeout=float(os.getenv(
                "CONDUIT_STREAM_CLOSE_TIMEOUT",
                str(cls.stream_close_timeout),
            )),
            hook_timeout=float(os.getenv(
                "CONDUIT_HOOK_TIMEOUT", str(cls.hook_timeout)
            )),
            process_close_timeout=float(os.getenv(
                "CONDUIT_PROCESS_CLOSE_TIMEOUT",
                str(cls.process_close_timeout),
            )),
            log_level=os.getenv("CONDUIT_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SessionOptions.from_env: cli=%s mode=%s cwd=%s allow=%d deny=%d",
            options.cli_path, options.permission_mode.value,
            options.cwd or ".", len(options.allowed_tools),
            len(options.disallowed_tools),
        )
        return options


def build_cli_command(options: SessionOptions) -> list[str]:
    """Argument vector for the agent CLI in stream-json mode."""
    cmd = [
        options.cli_path,
        "--output-format", "stream-json",
        "--input-format", "stream-json",
        "--verbose",
        "--permission-mode", options.permission_mode.value,
    ]
    if options.model:
        cmd.extend(["--model", options.model])
    if options.resume:
        cmd.extend(["--resume", options.resume])
    if options.can_use_tool is not None or options.confirm_callback is not None:
        # Route the CLI's own permission prompts to us over the control protocol.
        cmd.extend(["--permission-prompt-tool", "stdio"])
    cmd.extend(options.extra_args)
    return cmd
