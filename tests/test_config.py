from __future__ import annotations

import pytest

from conduit.adapters.permission_store import PermissionStore
from conduit.engine.config import SessionOptions, _split_list, build_cli_command
from conduit.engine.guards import AuditLog, CommandPolicy, RateLimiter, RepeatGuard
from conduit.engine.models import PermissionMode
from conduit.engine.yaml_config import load_yaml_config


def test_from_env_reads_conduit_variables(monkeypatch):
    monkeypatch.setenv("CONDUIT_CLI_PATH", "/opt/agent")
    monkeypatch.setenv("CONDUIT_PERMISSION_MODE", "plan-only")
    monkeypatch.setenv("CONDUIT_ALLOWED_TOOLS", "Read, Bash(npm test:*),Grep")
    monkeypatch.setenv("CONDUIT_PERMISSION_STALL_TIMEOUT", "2.5")
    monkeypatch.setenv("CONDUIT_HOOK_TIMEOUT", "7")

    options = SessionOptions.from_env()
    assert options.cli_path == "/opt/agent"
    assert options.permission_mode is PermissionMode.PLAN
    assert options.allowed_tools == ["Read", "Bash(npm test:*)", "Grep"]
    assert options.permission_stall_timeout == 2.5
    assert options.hook_timeout == 7.0


def test_from_env_defaults(monkeypatch):
    for key in ("CONDUIT_CLI_PATH", "CONDUIT_PERMISSION_MODE", "CONDUIT_ALLOWED_TOOLS"):
        monkeypatch.delenv(key, raising=False)
    options = SessionOptions.from_env()
    assert options.cli_path == "claude"
    assert options.permission_mode is PermissionMode.DEFAULT
    assert options.stream_close_timeout == 60.0


def test_split_list_respects_parentheses():
    assert _split_list("Bash(git add, git commit:*), Read") == [
        "Bash(git add, git commit:*)", "Read",
    ]
    assert _split_list("") == []


def test_permission_mode_aliases():
    assert PermissionMode.parse("auto-accept-edits") is PermissionMode.ACCEPT_EDITS
    assert PermissionMode.parse("bypassPermissions") is PermissionMode.BYPASS
    with pytest.raises(ValueError):
        PermissionMode.parse("yolo")


def test_build_cli_command_extra_args():
    options = SessionOptions(cli_path="agent", extra_args=["--max-turns", "3"])
    cmd = build_cli_command(options)
    assert cmd[0] == "agent"
    assert cmd[-2:] == ["--max-turns", "3"]
    assert "--permission-prompt-tool" not in cmd


def test_load_yaml_config_builds_options_and_guards(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "secret")
    config = tmp_path / "conduit.yaml"
    config.write_text(
        """
session:
  cli_path: agent
  cwd: {cwd}
  permission_stall_timeout: 5
  env:
    API_KEY: "${{TEST_API_KEY}}"
permissions:
  mode: acceptEdits
  allow: [Read, "Bash(npm test:*)"]
  deny: "Bash(rm:*)"
  store: true
guards:
  command_policy:
    whitelist: ["^make"]
  repeat_guard:
    max_repeats: 2
  rate_limit:
    max_calls: 5
    window_seconds: 30
  audit_log: {{}}
""".format(cwd=tmp_path),
        encoding="utf-8",
    )

    options = load_yaml_config(config)
    assert options.cli_path == "agent"
    assert options.cwd == str(tmp_path)
    assert options.permission_stall_timeout == 5.0
    assert options.env == {"API_KEY": "secret"}
    assert options.permission_mode is PermissionMode.ACCEPT_EDITS
    assert options.allowed_tools == ["Read", "Bash(npm test:*)"]
    assert options.disallowed_tools == ["Bash(rm:*)"]
    assert isinstance(options.permission_store, PermissionStore)

    pre = options.hooks["PreToolUse"]
    kinds = [type(m.hooks[0]) for m in pre]
    assert kinds == [CommandPolicy, RepeatGuard, RateLimiter, AuditLog]
    assert pre[0].matcher == "Bash"
    assert pre[2].hooks[0].max_calls == 5
    assert isinstance(options.hooks["PostToolUse"][0].hooks[0], AuditLog)


def test_load_yaml_config_rejects_bad_sections(tmp_path):
    config = tmp_path / "bad.yaml"
    config.write_text("permissions: [not, a, mapping]\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(config)


def test_load_yaml_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")
