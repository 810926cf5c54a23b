"""Control session: one logical conversation with the agent CLI.

Wires the transport, demultiplexer, permission evaluator and hook
pipeline together and exposes the consuming loop:

    async with ControlSession(options) as session:
        async for message in session.query(prompt):
            ...

Every tool-use or permission request is registered as a
PendingToolCall, evaluated, and answered exactly once before the
request is reported to the caller. An ``ask`` verdict waits for a
resolver (confirm_callback or resolve_tool_call) for at most
``permission_stall_timeout`` seconds; after that the call is marked
stalled, the CLI receives a deny, and the caller receives a
PermissionStalled notice.

Shutdown is two-phase (see transport.py). On the terminal result the
loop signals input-done first, then stops reading, then closes.
"""
from __future__ import annotations

import asyncio
import collections
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from .config import SessionOptions, build_cli_command, fire_event
from .demux import MessageDemultiplexer
from .errors import BridgeError, DecodeError, StreamingModeRequired, TransportClosed
from .hooks import HookEvent, HookPipeline
from .lifecycle import validate_transition
from .models import (
    ControlMessage,
    ControlResponse,
    Decision,
    HookInvocation,
    InitMessage,
    PendingToolCall,
    PermissionMode,
    PermissionRequest,
    PermissionStalled,
    ResultMessage,
    SessionState,
    ToolCallMessage,
    ToolResult,
    Verdict,
)
from .permissions import (
    PermissionEvaluator,
    PermissionRules,
    normalize_callback_result,
)
from .tool_calls import ToolCallRegistry
from .transport import PromptSource, SubprocessTransport

logger = logging.getLogger(__name__)

SessionItem = ControlMessage | PermissionStalled


class ControlSession:
    """Owns one transport and answers the CLI's tool-call requests."""

    def __init__(
        self,
        options: SessionOptions | None = None,
        *,
        transport: SubprocessTransport | None = None,
    ) -> None:
        self._options = options or SessionOptions()
        self._transport = transport
        self._hooks = HookPipeline.from_matchers(
            self._options.hooks, default_timeout=self._options.hook_timeout,
        )
        rules = PermissionRules.from_strings(
            self._options.allowed_tools, self._options.disallowed_tools,
        )
        store = self._options.permission_store
        if store is not None:
            stored = store.load()
            persisted = PermissionRules.from_strings(stored.allow, stored.deny)
            rules.allow.extend(r for r in persisted.allow if r not in rules.allow)
            rules.deny.extend(r for r in persisted.deny if r not in rules.deny)
        self._evaluator = PermissionEvaluator(
            hooks=self._hooks,
            rules=rules,
            mode=self._options.permission_mode,
            can_use_tool=self._options.can_use_tool,
            permission_store=store,
        )
        self._calls = ToolCallRegistry()
        self._state = SessionState.INITIALIZING
        self._session_id: str | None = self._options.resume
        self._streaming = False
        self._started = False
        self._closed = False
        self._notices: collections.deque[PermissionStalled] = collections.deque()
        self._control_waiters: dict[str, asyncio.Future[ControlResponse]] = {}
        self._query_signal = asyncio.Event()
        self._request_counter = 0
        self.decode_errors: list[DecodeError] = []

    # ── Properties ──

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def evaluator(self) -> PermissionEvaluator:
        return self._evaluator

    @property
    def hooks(self) -> HookPipeline:
        return self._hooks

    @property
    def tool_calls(self) -> ToolCallRegistry:
        return self._calls

    @property
    def transport(self) -> SubprocessTransport | None:
        return self._transport

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    # ── Lifecycle ──

    async def __aenter__(self) -> ControlSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _transition(self, new_state: SessionState) -> None:
        """Transition to a new state with validation."""
        if new_state is self._state:
            return
        validate_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.info(
            "Session %s: %s -> %s",
            (self._session_id or "-")[:8],
            old.value,
            new_state.value,
        )
        await fire_event(self._options.event_callback, {
            "event": "session_state_changed",
            "session_id": self._session_id,
            "old_state": old.value,
            "new_state": new_state.value,
        })

    async def connect(self, prompt: PromptSource) -> None:
        """Spawn the CLI and start sending ``prompt``."""
        if self._started:
            raise RuntimeError("session already started; open a new session to resume")
        if self._closed:
            raise TransportClosed("session is closed")
        self._streaming = not isinstance(prompt, str)
        if self._options.can_use_tool is not None and not self._streaming:
            raise StreamingModeRequired()
        if self._transport is None:
            self._transport = SubprocessTransport(
                build_cli_command(self._options),
                cwd=self._options.cwd,
                env=self._options.env,
                stream_close_timeout=self._options.stream_close_timeout,
                process_close_timeout=self._options.process_close_timeout,
                process_factory=self._options.process_factory,
            )
        self._started = True
        await self._transport.open(prompt)

    async def query(self, prompt: PromptSource) -> AsyncIterator[SessionItem]:
        """Run one query and yield its messages; always closes on exit."""
        try:
            await self.connect(prompt)
            async for item in self.receive_response():
                yield item
        finally:
            await self.close()

    async def receive_response(self) -> AsyncIterator[SessionItem]:
        """Consume the stream until the terminal result.

        Fatal transport failures propagate after pending calls are
        abandoned and the session is marked terminated.
        """
        if self._transport is None:
            raise TransportClosed("session is not connected")
        demux = MessageDemultiplexer(
            on_tool_call=self._handle_tool_call,
            on_hook=self._handle_hook_invocation,
            on_control_response=self._handle_control_response,
            on_decode_error=self._handle_decode_error,
        )
        lines = self._transport.read_lines()
        try:
            async with aclosing(demux.stream(lines)) as messages:
                async for message in messages:
                    if isinstance(message, ResultMessage):
                        # Phase one of shutdown, before anything else.
                        self._transport.signal_input_done()
                        if message.session_id:
                            self._session_id = message.session_id
                        self._abandon_pending("query finished")
                        while self._notices:
                            yield self._notices.popleft()
                        logger.info(
                            "Query finished subtype=%s is_error=%s turns=%d",
                            message.subtype, message.is_error, message.num_turns,
                        )
                        yield message
                        return

                    if isinstance(message, InitMessage):
                        self._session_id = message.session_id
                        if self._state is not SessionState.ACTIVE:
                            await self._transition(SessionState.ACTIVE)
                    elif isinstance(message, ToolResult):
                        await self._run_post_tool_hooks(message)

                    yield message
                    while self._notices:
                        yield self._notices.popleft()
        except BridgeError as exc:
            logger.error("Session %s failed: %s", (self._session_id or "-")[:8], exc)
            self._abandon_pending(type(exc).__name__)
            await self._transition(SessionState.TERMINATED)
            raise
        finally:
            await lines.aclose()

    async def close(self) -> None:
        """Abandon unresolved calls, close the transport. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._query_signal.set()
        self._abandon_pending("session closed")
        try:
            if self._transport is not None:
                await self._transport.close()
        finally:
            for future in self._control_waiters.values():
                if not future.done():
                    future.set_exception(TransportClosed("session closed"))
            self._control_waiters.clear()
            await self._transition(SessionState.TERMINATED)

    # ── Control requests ──

    async def interrupt(self, *, wait: float | None = None) -> list[PendingToolCall]:
        """Abandon the in-progress turn.

        Every unresolved PendingToolCall is marked abandoned and will
        never be answered. Calls that arrive afterwards are evaluated
        with a fresh cancellation signal. Pass ``wait`` to await the
        CLI's acknowledgement; the stream must be consumed concurrently.
        Returns the abandoned calls.
        """
        abandoned = self._abandon_pending("interrupted")
        self._query_signal.set()
        self._query_signal = asyncio.Event()
        if self._state in (SessionState.INITIALIZING, SessionState.ACTIVE):
            await self._transition(SessionState.INTERRUPTED)
        request_id = await self._send_control_request(
            {"subtype": "interrupt"}, track=wait is not None,
        )
        if wait is not None:
            await self._await_control_response(request_id, wait)
        return abandoned

    async def set_permission_mode(
        self, mode: PermissionMode | str, *, wait: float | None = None,
    ) -> None:
        """Change the mode locally and tell the CLI."""
        self._evaluator.set_mode(mode)
        if self._transport is None or self._transport.input_closed:
            return
        request_id = await self._send_control_request(
            {"subtype": "set_permission_mode", "mode": self._evaluator.mode.value},
            track=wait is not None,
        )
        if wait is not None:
            await self._await_control_response(request_id, wait)

    def resolve_tool_call(self, tool_use_id: str, decision: Verdict | str | dict) -> bool:
        """Answer a call that is waiting on an ``ask`` verdict.

        Returns False when the call is unknown, not waiting, or
        already resolved.
        """
        call = self._calls.get(tool_use_id)
        if call is None or call.is_terminal:
            return False
        if call.resolver is None or call.resolver.done():
            return False
        verdict, always = normalize_callback_result(decision)
        if verdict.decision not in (Decision.ALLOW, Decision.DENY):
            return False
        if always and verdict.decision is Decision.ALLOW:
            self._evaluator.remember_allow(call.tool_name)
        call.resolver.set_result(
            Verdict(verdict.decision, verdict.updated_input, verdict.reason, "external")
        )
        return True

    async def _send_control_request(
        self, request: dict[str, Any], *, track: bool = True,
    ) -> str:
        """Write a control request; ``track`` registers an ack waiter."""
        if self._transport is None:
            raise TransportClosed("session is not connected")
        self._request_counter += 1
        request_id = f"req_{self._request_counter}_{uuid.uuid4().hex[:8]}"
        if track:
            self._control_waiters[request_id] = asyncio.get_running_loop().create_future()
        try:
            await self._transport.send({
                "type": "control_request",
                "request_id": request_id,
                "request": request,
            })
        except TransportClosed:
            self._control_waiters.pop(request_id, None)
            raise
        logger.info("Sent control request %s id=%s", request.get("subtype"), request_id)
        return request_id

    async def _await_control_response(
        self, request_id: str, timeout: float,
    ) -> ControlResponse:
        future = self._control_waiters.get(request_id)
        if future is None:
            raise KeyError(request_id)
        try:
            response = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        finally:
            self._control_waiters.pop(request_id, None)
        if not response.success:
            raise BridgeError(
                f"Control request {request_id} failed: {response.error or 'unknown error'}"
            )
        return response

    async def _handle_control_response(self, message: ControlResponse) -> None:
        future = self._control_waiters.get(message.request_id)
        if future is None:
            logger.debug("No pending request for control_response %s", message.request_id)
            return
        if not future.done():
            future.set_result(message)

    # ── Tool calls ──

    async def _handle_tool_call(self, message: ToolCallMessage) -> None:
        try:
            call = self._calls.register(message)
        except ValueError:
            logger.warning(
                "Ignoring duplicate request for pending tool call %s",
                message.tool_use_id,
            )
            return

        failures_before = self._hooks.failure_count
        call.task = asyncio.ensure_future(self._evaluator.evaluate(
            call,
            callbacks_enabled=self._streaming,
            session_id=self._session_id,
            signal=self._query_signal,
            suggestions=(
                message.suggestions if isinstance(message, PermissionRequest) else None
            ),
        ))
        try:
            verdict = await call.task
        except asyncio.CancelledError:
            if call.is_terminal:
                return
            raise
        except Exception:
            logger.exception("Permission evaluation failed for %s", call.tool_name)
            verdict = Verdict.deny(
                "Permission evaluation failed", source="error",
            )
        finally:
            call.task = None

        if self._hooks.failure_count > failures_before:
            await fire_event(self._options.event_callback, {
                "event": "hook_failed",
                "session_id": self._session_id,
                "tool_use_id": call.tool_use_id,
                "tool_name": call.tool_name,
                "failures": self._hooks.failure_count - failures_before,
            })
        if call.is_terminal:
            return

        stalled = False
        if verdict.decision is Decision.ASK:
            verdict, stalled = await self._await_resolution(call)
            if call.is_terminal:
                return
        await self._deliver(call, verdict, stalled=stalled)

    async def _await_resolution(
        self, call: PendingToolCall,
    ) -> tuple[Verdict, bool]:
        """Wait for a resolver; returns (verdict, stalled)."""
        loop = asyncio.get_running_loop()
        timeout = self._options.permission_stall_timeout
        started = loop.time()
        deadline = None if timeout is None else started + max(timeout, 0.0)

        call.resolver = loop.create_future()
        waiting: set[asyncio.Future[Any]] = {call.resolver}
        if self._options.confirm_callback is not None:
            waiting.add(asyncio.ensure_future(self._confirm(call)))
        await fire_event(self._options.event_callback, {
            "event": "permission_pending",
            "session_id": self._session_id,
            "tool_use_id": call.tool_use_id,
            "tool_name": call.tool_name,
            "tool_input": call.effective_input,
        })

        try:
            while waiting:
                remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
                done, waiting = await asyncio.wait(
                    waiting, timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    break
                if call.is_terminal:
                    return Verdict.no_decision(), False
                for future in done:
                    if future.cancelled():
                        continue
                    verdict = future.result()
                    if verdict is not None and verdict.decision in (
                        Decision.ALLOW, Decision.DENY,
                    ):
                        return verdict, False
        finally:
            for future in waiting:
                if not future.done():
                    future.cancel()
            call.resolver = None

        waited = loop.time() - started
        reason = (
            f"Permission stalled: no decision for {call.tool_name} "
            f"after {waited:.1f}s"
        )
        logger.warning("%s (tool_use_id=%s)", reason, call.tool_use_id)
        self._notices.append(PermissionStalled(
            tool_use_id=call.tool_use_id,
            tool_name=call.tool_name,
            waited_seconds=waited,
            reason=reason,
        ))
        await fire_event(self._options.event_callback, {
            "event": "permission_stalled",
            "session_id": self._session_id,
            "tool_use_id": call.tool_use_id,
            "tool_name": call.tool_name,
            "waited_seconds": waited,
        })
        return Verdict.deny(reason, source="stall"), True

    async def _confirm(self, call: PendingToolCall) -> Verdict | None:
        """Ask the interactive surface; None means no answer."""
        try:
            result = await self._options.confirm_callback(call)
            verdict, always = normalize_callback_result(result)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("confirm_callback failed for %s", call.tool_name)
            return None
        if always and verdict.decision is Decision.ALLOW:
            self._evaluator.remember_allow(call.tool_name)
        if verdict.decision not in (Decision.ALLOW, Decision.DENY):
            return None
        return Verdict(verdict.decision, verdict.updated_input, verdict.reason, "confirm")

    async def _deliver(
        self, call: PendingToolCall, verdict: Verdict, *, stalled: bool = False,
    ) -> None:
        """Resolve ``call`` and write the verdict back to the CLI."""
        if not self._calls.resolve(call, verdict, stalled=stalled):
            return
        reply = verdict.to_wire(call.effective_input)
        if call.answers_control_request:
            message = {
                "type": "control_response",
                "response": {
                    "subtype": "success",
                    "request_id": call.request_id,
                    "response": reply,
                },
            }
        else:
            message = {
                "type": "tool_permission",
                "tool_use_id": call.tool_use_id,
                **reply,
            }
        await self._transport.send(message)
        await fire_event(self._options.event_callback, {
            "event": "tool_call_resolved",
            "session_id": self._session_id,
            "tool_use_id": call.tool_use_id,
            "tool_name": call.tool_name,
            "state": call.state.value,
            "decision": verdict.decision.value,
            "source": verdict.source,
            "reason": verdict.reason,
        })

    def _abandon_pending(self, reason: str) -> list[PendingToolCall]:
        abandoned = self._calls.abandon_all(reason)
        if abandoned and self._options.event_callback is not None:
            for call in abandoned:
                asyncio.ensure_future(fire_event(self._options.event_callback, {
                    "event": "tool_call_abandoned",
                    "session_id": self._session_id,
                    "tool_use_id": call.tool_use_id,
                    "tool_name": call.tool_name,
                    "reason": reason,
                }))
        return abandoned

    # ── Hooks ──

    async def _handle_hook_invocation(self, message: HookInvocation) -> None:
        outcome = await self._hooks.run(
            message.event,
            message.payload,
            tool_name=message.tool_name,
            tool_use_id=message.tool_use_id,
            signal=self._query_signal,
        )
        await self._transport.send({
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": message.request_id,
                "response": outcome.response_payload(message.event),
            },
        })

    async def _run_post_tool_hooks(self, message: ToolResult) -> None:
        if not self._hooks.has_hooks(HookEvent.POST_TOOL_USE):
            return
        call = self._calls.get(message.tool_use_id)
        tool_name = call.tool_name if call is not None else None
        await self._hooks.run(
            HookEvent.POST_TOOL_USE,
            {
                "hook_event_name": HookEvent.POST_TOOL_USE.value,
                "session_id": self._session_id,
                "tool_name": tool_name,
                "tool_input": call.effective_input if call is not None else None,
                "tool_response": message.tool_output,
                "is_error": message.is_error,
            },
            tool_name=tool_name,
            tool_use_id=message.tool_use_id,
            signal=self._query_signal,
        )

    async def _handle_decode_error(self, error: DecodeError) -> None:
        self.decode_errors.append(error)
        await fire_event(self._options.event_callback, {
            "event": "decode_error",
            "session_id": self._session_id,
            "reason": error.reason,
        })
