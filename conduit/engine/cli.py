"""CLI entry point for the control-protocol bridge.

Usage:
    conduit "Refactor utils.py and run the tests"
    conduit --mode acceptEdits --allow "Bash(npm test:*)" "Fix the failing test"
    conduit --prompt-file tasks/feature.md --config conduit.yaml --interactive
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from .config import SessionOptions
from .errors import BridgeError
from .models import (
    AssistantMessage,
    Decision,
    InitMessage,
    PendingToolCall,
    PermissionRequest,
    PermissionStalled,
    ResultMessage,
    ToolResult,
    ToolUseRequest,
    Verdict,
)
from .session import ControlSession
from .yaml_config import load_yaml_config

EXIT_OK = 0
EXIT_ERROR_RESULT = 1
EXIT_FATAL = 2

console = Console()
err_console = Console(stderr=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="conduit",
        description=(
            "Drive an agent CLI over its streaming control protocol "
            "with local permission rules and hooks"
        ),
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="The prompt to send (inline string)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file (.md, .txt, etc.)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML configuration file",
    )
    parser.add_argument(
        "--cli-path",
        default=None,
        help="Agent CLI binary (default: claude)",
    )
    parser.add_argument(
        "--mode",
        default=None,
        help="Permission mode: default, acceptEdits, plan, bypassPermissions",
    )
    parser.add_argument(
        "--allow",
        action="append",
        default=[],
        metavar="RULE",
        help='Allow rule, e.g. "Read" or "Bash(npm test:*)" (repeatable)',
    )
    parser.add_argument(
        "--deny",
        action="append",
        default=[],
        metavar="RULE",
        help="Deny rule (repeatable)",
    )
    parser.add_argument(
        "--resume",
        default=None,
        help="Resume an earlier session by id",
    )
    parser.add_argument(
        "--interactive", "-i",
        action="store_true",
        help="Ask on the terminal for tool calls no rule decides (no stall timeout)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    prompt = _resolve_prompt(args.prompt, args.prompt_file)

    try:
        options = _build_options(args)
    except (OSError, ValueError) as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(EXIT_FATAL)

    try:
        code = asyncio.run(_run(prompt, options))
    except KeyboardInterrupt:
        err_console.print("\nInterrupted.")
        code = EXIT_FATAL
    sys.exit(code)


def _build_options(args: argparse.Namespace) -> SessionOptions:
    options = SessionOptions.from_env()
    if args.config:
        options = load_yaml_config(args.config, base=options)
    if args.cli_path:
        options.cli_path = args.cli_path
    if args.mode:
        options.permission_mode = options.permission_mode.parse(args.mode)
    if args.resume:
        options.resume = args.resume
    options.allowed_tools.extend(args.allow)
    options.disallowed_tools.extend(args.deny)
    if args.interactive:
        options.confirm_callback = confirm_on_terminal
        # A terminal prompt cannot be withdrawn once shown, so never stall it.
        options.permission_stall_timeout = None
    return options


async def confirm_on_terminal(call: PendingToolCall) -> str:
    """Interactive confirmation surface for ``ask`` verdicts."""
    summary = _summarize_input(call.effective_input or {})
    question = f"Allow [bold]{call.tool_name}[/bold] {summary}?"
    # Confirm.ask blocks on stdin; keep the event loop running.
    allowed = await asyncio.to_thread(Confirm.ask, question, console=console)
    return "allow" if allowed else "deny"


def _summarize_input(tool_input: dict) -> str:
    for key in ("command", "file_path", "path", "url", "pattern"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value if len(value) <= 80 else value[:77] + "..."
    return ""


async def _run(prompt: str, options: SessionOptions) -> int:
    result: ResultMessage | None = None
    session = ControlSession(options)
    try:
        async for item in session.query(prompt):
            if isinstance(item, ResultMessage):
                result = item
            _render(session, item)
    except BridgeError as exc:
        err_console.print(f"[red]Fatal:[/red] {exc}")
        return EXIT_FATAL

    if result is None:
        err_console.print("[red]Fatal:[/red] stream ended without a result")
        return EXIT_FATAL
    return EXIT_ERROR_RESULT if result.is_error else EXIT_OK


def _render(session: ControlSession, item: object) -> None:
    if isinstance(item, InitMessage):
        console.print(
            f"[dim]session {item.session_id} model={item.model or '-'} "
            f"tools={len(item.tools)}[/dim]"
        )
    elif isinstance(item, AssistantMessage):
        text = item.text
        if text:
            console.print(escape(text))
    elif isinstance(item, (ToolUseRequest, PermissionRequest)):
        call = session.tool_calls.get(item.tool_use_id)
        verdict: Verdict | None = call.verdict if call is not None else None
        if verdict is None:
            state = call.state.value if call is not None else "unknown"
            console.print(f"[yellow]> {item.tool_name}[/yellow] ({state})")
        elif verdict.decision is Decision.ALLOW:
            console.print(f"[green]> {item.tool_name}[/green] allowed")
        else:
            console.print(
                f"[red]> {item.tool_name}[/red] denied: {escape(verdict.reason)}"
            )
    elif isinstance(item, ToolResult):
        if item.is_error:
            console.print(f"[red]  tool error[/red] {item.tool_use_id}")
    elif isinstance(item, PermissionStalled):
        console.print(
            f"[bold yellow]! {escape(item.reason)}[/bold yellow]"
        )
    elif isinstance(item, ResultMessage):
        style = "red" if item.is_error else "green"
        console.rule(f"[{style}]{item.subtype}[/{style}]")
        if item.result:
            console.print(escape(item.result))
        cost = (
            f" cost=${item.total_cost_usd:.4f}"
            if item.total_cost_usd is not None else ""
        )
        console.print(
            f"[dim]turns={item.num_turns} duration={item.duration_ms}ms{cost}[/dim]"
        )


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from inline arg or file. Exactly one must be provided."""
    if inline and file_path:
        err_console.print("Error: Provide either a prompt or --prompt-file, not both.")
        sys.exit(EXIT_FATAL)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            err_console.print(f"Error: Prompt file not found: {file_path}")
            sys.exit(EXIT_FATAL)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    err_console.print("Error: Provide a prompt or --prompt-file.")
    sys.exit(EXIT_FATAL)


if __name__ == "__main__":
    main()
