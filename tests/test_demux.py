from __future__ import annotations

import json

import pytest

from conduit.engine.demux import MessageDemultiplexer, decode
from conduit.engine.errors import DecodeError
from conduit.engine.models import (
    AssistantMessage,
    ControlResponse,
    HookInvocation,
    InitMessage,
    PermissionRequest,
    ResultMessage,
    ToolResult,
    ToolUseRequest,
)


async def _lines(*records):
    for record in records:
        yield record if isinstance(record, str) else json.dumps(record)


def test_decode_each_variant():
    assert isinstance(
        decode(json.dumps({"type": "system", "subtype": "init", "session_id": "s"})),
        InitMessage,
    )
    assistant = decode(json.dumps({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": "hi "}, {"type": "text", "text": "there"}]},
    }))
    assert isinstance(assistant, AssistantMessage)
    assert assistant.text == "hi there"

    tool_use = decode(json.dumps({
        "type": "tool_use", "tool_use_id": "tu", "tool_name": "Read",
        "tool_input": {"file_path": "a"},
    }))
    assert isinstance(tool_use, ToolUseRequest)
    assert tool_use.tool_input == {"file_path": "a"}

    assert isinstance(
        decode(json.dumps({"type": "tool_result", "tool_use_id": "tu", "content": "ok"})),
        ToolResult,
    )

    result = decode(json.dumps({"type": "result", "subtype": "success", "num_turns": 2}))
    assert isinstance(result, ResultMessage)
    assert result.num_turns == 2


def test_decode_control_requests():
    permission = decode(json.dumps({
        "type": "control_request",
        "request_id": "req-1",
        "request": {"subtype": "can_use_tool", "tool_name": "Bash", "input": {"command": "ls"}},
    }))
    assert isinstance(permission, PermissionRequest)
    assert permission.tool_use_id == "req-1"

    hook = decode(json.dumps({
        "type": "control_request",
        "request_id": "req-2",
        "request": {
            "subtype": "hook_callback",
            "callback_id": "cb-0",
            "input": {"hook_event_name": "PreToolUse", "tool_name": "Write"},
        },
    }))
    assert isinstance(hook, HookInvocation)
    assert hook.event == "PreToolUse"
    assert hook.tool_name == "Write"

    ack = decode(json.dumps({
        "type": "control_response",
        "response": {"subtype": "error", "request_id": "req_1", "error": "nope"},
    }))
    assert isinstance(ack, ControlResponse)
    assert not ack.success
    assert ack.error == "nope"


@pytest.mark.parametrize("line", [
    "not json",
    "[1, 2]",
    json.dumps({"type": "mystery"}),
    json.dumps({"type": "tool_use", "tool_name": "Bash"}),
    json.dumps({"type": "control_request", "request_id": "r", "request": {"subtype": "hook_callback", "input": {}}}),
])
def test_decode_rejects_malformed_lines(line):
    with pytest.raises(DecodeError):
        decode(line)


@pytest.mark.asyncio
async def test_stream_drops_bad_lines_and_stops_after_result():
    errors: list[DecodeError] = []

    async def on_error(exc):
        errors.append(exc)

    demux = MessageDemultiplexer(on_decode_error=on_error)
    messages = [
        m async for m in demux.stream(_lines(
            {"type": "system", "subtype": "init", "session_id": "s"},
            "{broken",
            "   ",
            {"type": "result", "subtype": "success"},
            {"type": "assistant", "message": {"content": "after the end"}},
        ))
    ]
    assert [m.kind for m in messages] == ["init", "result"]
    assert demux.decode_errors == 1
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_tool_calls_are_handled_before_being_yielded():
    order: list[str] = []

    async def on_tool_call(message):
        order.append(f"evaluate {message.tool_use_id}")

    async def on_control_response(message):
        order.append(f"ack {message.request_id}")

    demux = MessageDemultiplexer(
        on_tool_call=on_tool_call, on_control_response=on_control_response,
    )
    async for message in demux.stream(_lines(
        {"type": "tool_use", "tool_use_id": "tu-1", "tool_name": "Bash", "tool_input": {}},
        {"type": "control_response", "response": {"subtype": "success", "request_id": "r1"}},
        {"type": "tool_result", "tool_use_id": "tu-1", "content": "ok"},
    )):
        order.append(f"yield {message.kind}")

    assert order == [
        "evaluate tu-1",
        "yield tool_use_request",
        "ack r1",
        "yield tool_result",
    ]
