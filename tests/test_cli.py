from __future__ import annotations

import argparse

import pytest

from conduit.engine import cli
from conduit.engine.config import SessionOptions
from conduit.engine.models import PermissionMode

from conftest import FakeCLI, init_record, result_record, tool_use_record


def _options(fake_cli: FakeCLI) -> SessionOptions:
    return SessionOptions(
        cli_path="agent", process_factory=fake_cli,
        process_close_timeout=0.05, permission_stall_timeout=0.01,
    )


@pytest.mark.asyncio
async def test_run_returns_zero_and_prints_verdicts(fake_cli, capsys):
    fake_cli.emit(init_record())
    fake_cli.emit(tool_use_record("tu-1", "Read", {"file_path": "a"}))
    fake_cli.emit(tool_use_record("tu-2", "Bash", {"command": "make"}))
    fake_cli.emit(result_record())

    code = await cli._run("go", _options(fake_cli))
    out = capsys.readouterr().out
    assert code == cli.EXIT_OK
    assert "Read" in out
    assert "Permission stalled" in out


@pytest.mark.asyncio
async def test_run_exit_codes_for_error_result_and_fatal(fake_cli):
    fake_cli.emit(result_record(is_error=True))
    assert await cli._run("go", _options(fake_cli)) == cli.EXIT_ERROR_RESULT

    dead = FakeCLI()
    dead.exit(2)
    assert await cli._run("go", _options(dead)) == cli.EXIT_FATAL


def test_build_options_from_arguments(monkeypatch):
    monkeypatch.delenv("CONDUIT_ALLOWED_TOOLS", raising=False)
    args = argparse.Namespace(
        config=None, cli_path="agent", mode="plan", resume="abc",
        allow=["Read"], deny=["Bash(rm:*)"], interactive=True,
    )
    options = cli._build_options(args)
    assert options.cli_path == "agent"
    assert options.permission_mode is PermissionMode.PLAN
    assert options.resume == "abc"
    assert options.allowed_tools == ["Read"]
    assert options.disallowed_tools == ["Bash(rm:*)"]
    assert options.confirm_callback is cli.confirm_on_terminal
    assert options.permission_stall_timeout is None


def test_stall_timeout_kept_without_interactive(monkeypatch):
    monkeypatch.delenv("CONDUIT_PERMISSION_STALL_TIMEOUT", raising=False)
    args = argparse.Namespace(
        config=None, cli_path=None, mode=None, resume=None,
        allow=[], deny=[], interactive=False,
    )
    options = cli._build_options(args)
    assert options.confirm_callback is None
    assert options.permission_stall_timeout == SessionOptions().permission_stall_timeout


def test_prompt_file_and_inline_are_exclusive(tmp_path):
    prompt = tmp_path / "task.md"
    prompt.write_text("  do the thing \n", encoding="utf-8")
    assert cli._resolve_prompt(None, str(prompt)) == "do the thing"
    with pytest.raises(SystemExit):
        cli._resolve_prompt("inline", str(prompt))
    with pytest.raises(SystemExit):
        cli._resolve_prompt(None, None)
