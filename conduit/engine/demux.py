"""Message demultiplexer for the CLI's stream-json output.

Decodes newline-delimited JSON records into typed control messages
and routes them. Tool-call requests are handed to the permission
handler and awaited before they reach the caller's loop; hook
invocations go to the hook handler; acknowledgements for client
control requests are consumed here. Everything else passes through
in arrival order.

A malformed line raises DecodeError inside ``decode``; ``stream``
logs it, drops the line and keeps consuming.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .errors import DecodeError
from .models import (
    AssistantMessage,
    ControlMessage,
    ControlResponse,
    HookInvocation,
    InitMessage,
    PermissionRequest,
    ResultMessage,
    ToolCallMessage,
    ToolResult,
    ToolUseRequest,
)

logger = logging.getLogger(__name__)

ToolCallHandler = Callable[[ToolCallMessage], Awaitable[None]]
HookHandler = Callable[[HookInvocation], Awaitable[None]]
ControlResponseHandler = Callable[[ControlResponse], Awaitable[None]]
DecodeErrorHandler = Callable[[DecodeError], Awaitable[None]]


def _require(record: dict[str, Any], key: str, line: str) -> Any:
    value = record.get(key)
    if value is None or value == "":
        raise DecodeError(line, f"missing '{key}'")
    return value


def _as_dict(value: Any, key: str, line: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DecodeError(line, f"'{key}' must be an object")
    return value


def decode(line: str) -> ControlMessage:
    """Decode one stream line into a control message."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError as exc:
        raise DecodeError(line, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(record, dict):
        raise DecodeError(line, "record is not an object")

    msg_type = record.get("type")
    if msg_type == "system":
        if record.get("subtype") != "init":
            raise DecodeError(line, f"unsupported system subtype {record.get('subtype')!r}")
        return InitMessage(
            session_id=str(_require(record, "session_id", line)),
            tools=list(record.get("tools") or []),
            model=record.get("model"),
            raw=record,
        )

    if msg_type == "assistant":
        message = _as_dict(record.get("message"), "message", line)
        content = message.get("content", record.get("content"))
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        if not isinstance(content, list):
            raise DecodeError(line, "assistant content must be a list")
        return AssistantMessage(
            content=[block for block in content if isinstance(block, dict)],
            model=message.get("model"),
            session_id=record.get("session_id"),
            raw=record,
        )

    if msg_type == "tool_use":
        return ToolUseRequest(
            tool_use_id=str(_require(record, "tool_use_id", line)),
            tool_name=str(_require(record, "tool_name", line)),
            tool_input=_as_dict(record.get("tool_input"), "tool_input", line),
            raw=record,
        )

    if msg_type == "tool_result":
        return ToolResult(
            tool_use_id=str(_require(record, "tool_use_id", line)),
            tool_output=record.get("tool_output", record.get("content")),
            is_error=bool(record.get("is_error", False)),
            raw=record,
        )

    if msg_type == "control_request":
        return _decode_control_request(record, line)

    if msg_type == "control_response":
        response = _as_dict(record.get("response"), "response", line)
        return ControlResponse(
            request_id=str(_require(response, "request_id", line)),
            success=response.get("subtype") != "error",
            response=_as_dict(response.get("response"), "response", line),
            error=response.get("error"),
            raw=record,
        )

    if msg_type == "result":
        return ResultMessage(
            subtype=str(record.get("subtype") or "success"),
            is_error=bool(record.get("is_error", False)),
            result=record.get("result"),
            session_id=record.get("session_id"),
            num_turns=int(record.get("num_turns") or 0),
            duration_ms=int(record.get("duration_ms") or 0),
            total_cost_usd=record.get("total_cost_usd"),
            raw=record,
        )

    raise DecodeError(line, f"unknown message type {msg_type!r}")


def _decode_control_request(record: dict[str, Any], line: str) -> ControlMessage:
    request_id = str(_require(record, "request_id", line))
    request = _as_dict(record.get("request"), "request", line)
    subtype = request.get("subtype")
    if subtype == "can_use_tool":
        return PermissionRequest(
            request_id=request_id,
            # Older CLIs omit tool_use_id; the request id still correlates.
            tool_use_id=str(request.get("tool_use_id") or request_id),
            tool_name=str(_require(request, "tool_name", line)),
            tool_input=_as_dict(request.get("input"), "input", line),
            suggestions=list(request.get("permission_suggestions") or []),
            raw=record,
        )
    if subtype == "hook_callback":
        payload = _as_dict(request.get("input"), "input", line)
        event = payload.get("hook_event_name") or request.get("hook_event_name")
        if not event:
            raise DecodeError(line, "hook_callback without hook_event_name")
        return HookInvocation(
            request_id=request_id,
            event=str(event),
            payload=payload,
            callback_id=request.get("callback_id"),
            tool_use_id=request.get("tool_use_id"),
            raw=record,
        )
    raise DecodeError(line, f"unsupported control_request subtype {subtype!r}")


class MessageDemultiplexer:
    """Turns a line stream into a per-query message sequence."""

    def __init__(
        self,
        *,
        on_tool_call: ToolCallHandler | None = None,
        on_hook: HookHandler | None = None,
        on_control_response: ControlResponseHandler | None = None,
        on_decode_error: DecodeErrorHandler | None = None,
    ) -> None:
        self._on_tool_call = on_tool_call
        self._on_hook = on_hook
        self._on_control_response = on_control_response
        self._on_decode_error = on_decode_error
        self.decode_errors = 0
        self.messages_seen = 0

    async def stream(
        self, lines: AsyncIterator[str],
    ) -> AsyncIterator[ControlMessage]:
        """Yield decoded messages until a ResultMessage or end of input.

        Transport failures raised by ``lines`` propagate unchanged.
        """
        async for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                message = decode(line)
            except DecodeError as exc:
                self.decode_errors += 1
                logger.warning("Dropping undecodable stream line: %s", exc)
                if self._on_decode_error is not None:
                    await self._on_decode_error(exc)
                continue

            self.messages_seen += 1
            logger.debug("Demux %s", message.kind)

            if isinstance(message, ControlResponse):
                if self._on_control_response is not None:
                    await self._on_control_response(message)
                continue
            if isinstance(message, (ToolUseRequest, PermissionRequest)):
                if self._on_tool_call is not None:
                    await self._on_tool_call(message)
            elif isinstance(message, HookInvocation):
                if self._on_hook is not None:
                    await self._on_hook(message)

            yield message
            if isinstance(message, ResultMessage):
                return
