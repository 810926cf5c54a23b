"""Exception hierarchy for the control-protocol bridge.

Protocol-level failures only. Tool denials (rate limits, guard
hooks, rules) are verdicts, not exceptions, and never appear here.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class CLINotFoundError(BridgeError):
    """The configured agent CLI could not be executed."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(
            f"Agent CLI not found: '{command}'. "
            f"Install it or set CONDUIT_CLI_PATH."
        )


class TransportClosed(BridgeError):
    """Write attempted after the transport was shut down."""
    def __init__(self, reason: str = "transport is closed"):
        self.reason = reason
        super().__init__(reason)


class ProcessTerminated(BridgeError):
    """The subprocess exited while the session was still reading."""
    def __init__(self, exit_code: int | None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"Agent process terminated (exit code {exit_code})"
        if stderr:
            message = f"{message}\nstderr: {stderr}"
        super().__init__(message)


class DecodeError(BridgeError):
    """A stream line could not be decoded into a control message."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:117] + "..."
        super().__init__(f"Cannot decode control message ({reason}): {preview}")


class StreamingModeRequired(BridgeError):
    """A permission callback needs a lazy prompt producer."""
    def __init__(self) -> None:
        super().__init__(
            "can_use_tool requires an async iterable prompt; "
            "a single string prompt cannot answer mid-query callbacks"
        )
