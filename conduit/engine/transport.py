"""Subprocess transport for the agent CLI control protocol.

Owns the child process and its stdin/stdout byte streams. Messages
are newline-delimited JSON in both directions.

WRITE-SIDE LIFETIME (the failure-prone part):

Tool use is a round trip. The CLI asks, the client answers on stdin,
the CLI resumes. stdin therefore cannot close after the prompt is
written; it stays open for the whole query. Shutdown is two-phase:

1. The consumer calls ``signal_input_done()`` as its first action on
   seeing the terminal result. "No more input will be sent."
2. The prompt pump closes stdin once the producer is exhausted AND
   phase 1 happened, or after ``stream_close_timeout`` seconds past
   producer exhaustion, whichever comes first.

Stopping reads and permitting the write side to close are separate
signals, so neither side waits on the other.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import os
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from typing import Any

from .errors import CLINotFoundError, ProcessTerminated, TransportClosed
from .models import user_message

logger = logging.getLogger(__name__)

PromptSource = str | AsyncIterable[dict[str, Any]]
ProcessFactory = Callable[..., Awaitable[Any]]

DEFAULT_STREAM_LIMIT = 1024 * 1024
STDERR_TAIL_LINES = 50


class SubprocessTransport:
    """Duplex newline-delimited JSON stream over a child process."""

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        stream_close_timeout: float = 60.0,
        process_close_timeout: float = 5.0,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
        process_factory: ProcessFactory | None = None,
        stderr_callback: Callable[[str], None] | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self._command = list(command)
        self._cwd = cwd
        self._env = env
        self._stream_close_timeout = stream_close_timeout
        self._process_close_timeout = process_close_timeout
        self._stream_limit = stream_limit
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._stderr_callback = stderr_callback

        self._process: Any = None
        self._write_lock = asyncio.Lock()
        self._input_done = asyncio.Event()
        self._producer_done = asyncio.Event()
        self._pump_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_lines: collections.deque[str] = collections.deque(
            maxlen=STDERR_TAIL_LINES
        )
        self._input_closed = False
        self._closing = False
        self._closed = False

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def is_open(self) -> bool:
        return self._process is not None and not self._closed

    @property
    def input_closed(self) -> bool:
        return self._input_closed

    @property
    def producer_done(self) -> bool:
        return self._producer_done.is_set()

    @property
    def exit_code(self) -> int | None:
        return None if self._process is None else self._process.returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)

    async def open(self, prompt_source: PromptSource) -> None:
        """Start the process and begin pumping the prompt into stdin."""
        if self._process is not None:
            raise RuntimeError("transport already opened")
        if self._closed:
            raise TransportClosed("transport was closed before open")

        logger.info(
            "Starting agent CLI: %s (cwd=%s)",
            " ".join(self._command), self._cwd or ".",
        )
        try:
            # create_subprocess_exec passes args as an array, no shell
            self._process = await self._process_factory(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._build_env(),
                limit=self._stream_limit,
            )
        except FileNotFoundError as exc:
            raise CLINotFoundError(self._command[0]) from exc
        except PermissionError as exc:
            raise CLINotFoundError(self._command[0]) from exc

        logger.debug("Agent CLI started pid=%s", getattr(self._process, "pid", "?"))
        if getattr(self._process, "stderr", None) is not None:
            self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        self._pump_task = asyncio.ensure_future(self._pump(prompt_source))

    def _build_env(self) -> dict[str, str] | None:
        """Pass credentials and overrides through untouched."""
        if not self._env:
            return None
        env = os.environ.copy()
        env.update(self._env)
        return env

    async def _pump(self, source: PromptSource) -> None:
        try:
            if isinstance(source, str):
                await self.send(user_message(source))
            else:
                async for fragment in source:
                    await self.send(fragment)
            self._producer_done.set()
            logger.debug("Prompt producer finished; waiting for input-done signal")

            timeout = self._stream_close_timeout
            if timeout and timeout > 0:
                try:
                    await asyncio.wait_for(self._input_done.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        "No terminal result %.1fs after prompt producer finished; "
                        "closing stdin",
                        timeout,
                    )
            else:
                await self._input_done.wait()
            await self.end_input()
        except TransportClosed as exc:
            logger.debug("Prompt pump stopped: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Prompt producer failed; closing stdin")
            await self.end_input()

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        try:
            while True:
                line = await stream.readline()
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").rstrip()
                self._stderr_lines.append(text)
                logger.debug("cli stderr: %s", text)
                if self._stderr_callback is not None:
                    self._stderr_callback(text)
        except asyncio.CancelledError:
            raise
        except (ValueError, OSError) as exc:
            logger.debug("stderr drain stopped: %s", exc)

    def signal_input_done(self) -> None:
        """Phase one of shutdown: no further input will be written."""
        if not self._input_done.is_set():
            logger.debug("Input-done signalled")
            self._input_done.set()

    async def send(self, message: dict[str, Any]) -> None:
        """Write one control message as a JSON line."""
        if self._closed or self._closing:
            raise TransportClosed("send after transport shutdown")
        if self._process is None:
            raise TransportClosed("transport is not open")
        if self._input_closed:
            raise TransportClosed("stdin already closed")
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._write_lock:
            stdin = self._process.stdin
            if stdin is None or stdin.is_closing():
                raise TransportClosed("stdin is closed")
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise TransportClosed(f"stdin write failed: {exc}") from exc
        logger.debug("Sent %s", message.get("type", "?"))

    async def end_input(self) -> None:
        """Close the write side. Idempotent."""
        if self._input_closed or self._process is None:
            return
        async with self._write_lock:
            if self._input_closed:
                return
            stdin = self._process.stdin
            if stdin is None:
                self._input_closed = True
                return
            try:
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            # Only mark closed once close() is certain to run.
            self._input_closed = True
            stdin.close()
            try:
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass
        logger.debug("stdin closed")

    async def read_lines(self) -> AsyncIterator[str]:
        """Yield stdout lines until EOF.

        EOF before close() means the process died under us, which
        surfaces as ProcessTerminated with the captured stderr.
        """
        if self._process is None:
            raise TransportClosed("transport is not open")
        stdout = self._process.stdout
        while True:
            raw = await self._read_line_unbounded(stdout)
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace")

        if self._closing or self._closed:
            return
        exit_code = await self._wait_for_exit()
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        logger.error("Agent CLI exited unexpectedly (exit code %s)", exit_code)
        raise ProcessTerminated(exit_code, self.stderr_tail)

    @staticmethod
    async def _read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
        """Read a full line from *stream* with no size limit.

        A single record (a large tool result) can exceed the reader
        limit; drain the buffered bytes and keep accumulating until
        the separator appears or EOF is reached.
        """
        chunks: list[bytes] = []
        while True:
            try:
                chunk = await stream.readuntil(b"\n")
                chunks.append(chunk)
                return b"".join(chunks)
            except asyncio.LimitOverrunError as exc:
                chunk = await stream.read(exc.consumed)
                chunks.append(chunk)
            except asyncio.IncompleteReadError as exc:
                chunks.append(exc.partial)
                return b"".join(chunks)

    async def _wait_for_exit(self) -> int | None:
        try:
            return await asyncio.wait_for(
                self._process.wait(), timeout=self._process_close_timeout,
            )
        except asyncio.TimeoutError:
            return self._process.returncode

    async def close(self) -> None:
        """Flush, end input, and release the process. Idempotent."""
        if self._closed or self._closing:
            return
        self._closing = True
        self.signal_input_done()
        try:
            if self._pump_task is not None and not self._pump_task.done():
                self._pump_task.cancel()
                try:
                    await self._pump_task
                except asyncio.CancelledError:
                    pass
            if self._process is None:
                return
            await self.end_input()
            await self._stop_process()
            if self._stderr_task is not None and not self._stderr_task.done():
                self._stderr_task.cancel()
                try:
                    await self._stderr_task
                except asyncio.CancelledError:
                    pass
        finally:
            self._closed = True
            self._closing = False
            logger.info("Transport closed (exit code %s)", self.exit_code)

    async def _stop_process(self) -> None:
        proc = self._process
        if proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._process_close_timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Agent CLI pid=%s did not exit after stdin closed; terminating",
                getattr(proc, "pid", "?"),
            )
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self._process_close_timeout)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning("Agent CLI pid=%s ignored SIGTERM; killing", getattr(proc, "pid", "?"))
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
