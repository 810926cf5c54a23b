from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest


class FakeStdin:
    """Records every JSON line the transport writes."""

    def __init__(self, process: FakeProcess) -> None:
        self._process = process
        self._buffer = b""
        self.messages: list[dict[str, Any]] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            message = json.loads(line)
            self.messages.append(message)
            if self._process.responder is not None:
                self._process.responder(self._process, message)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True
        if self._process.exit_on_eof:
            self._process.exit(0)

    async def wait_closed(self) -> None:
        return None


class FakeProcess:
    """In-memory stand-in for asyncio.subprocess.Process."""

    pid = 4242

    def __init__(
        self,
        responder: Callable[[FakeProcess, dict[str, Any]], None] | None = None,
        *,
        exit_on_eof: bool = True,
        limit: int = 2 ** 16,
    ) -> None:
        self.responder = responder
        self.exit_on_eof = exit_on_eof
        self.stdin = FakeStdin(self)
        self.stdout = asyncio.StreamReader(limit=limit)
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def emit(self, record: dict[str, Any]) -> None:
        self.emit_raw(json.dumps(record))

    def emit_raw(self, text: str) -> None:
        if self.returncode is None:
            self.stdout.feed_data((text + "\n").encode("utf-8"))

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data((text + "\n").encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeCLI:
    """Process factory that scripts a FakeProcess.

    Actions queued before spawn (emit, stderr, exit) run as soon as
    the process exists.
    """

    def __init__(self) -> None:
        self.process: FakeProcess | None = None
        self.argv: list[str] | None = None
        self.kwargs: dict[str, Any] = {}
        self.responder: Callable[[FakeProcess, dict[str, Any]], None] | None = None
        self.exit_on_eof = True
        self.spawn_error: BaseException | None = None
        self._queued: list[Callable[[FakeProcess], None]] = []

    async def __call__(self, *argv: str, **kwargs: Any) -> FakeProcess:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.argv = list(argv)
        self.kwargs = kwargs
        self.process = FakeProcess(
            self.responder,
            exit_on_eof=self.exit_on_eof,
            limit=kwargs.get("limit", 2 ** 16),
        )
        for action in self._queued:
            action(self.process)
        self._queued.clear()
        return self.process

    def _run(self, action: Callable[[FakeProcess], None]) -> None:
        if self.process is None:
            self._queued.append(action)
        else:
            action(self.process)

    def emit(self, record: dict[str, Any]) -> None:
        self._run(lambda p: p.emit(record))

    def emit_raw(self, text: str) -> None:
        self._run(lambda p: p.emit_raw(text))

    def write_stderr(self, text: str) -> None:
        self._run(lambda p: p.write_stderr(text))

    def exit(self, code: int = 0) -> None:
        self._run(lambda p: p.exit(code))

    @property
    def sent(self) -> list[dict[str, Any]]:
        return self.process.stdin.messages if self.process is not None else []

    def sent_of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]


def init_record(session_id: str = "sess-1", tools: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "system",
        "subtype": "init",
        "session_id": session_id,
        "tools": tools or ["Read", "Write", "Bash"],
        "model": "test-model",
    }


def tool_use_record(tool_use_id: str, tool_name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "tool_use",
        "tool_use_id": tool_use_id,
        "tool_name": tool_name,
        "tool_input": tool_input,
    }


def result_record(session_id: str = "sess-1", is_error: bool = False) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "error_during_execution" if is_error else "success",
        "is_error": is_error,
        "result": "done",
        "session_id": session_id,
        "num_turns": 1,
        "duration_ms": 12,
    }


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_cli() -> FakeCLI:
    return FakeCLI()
