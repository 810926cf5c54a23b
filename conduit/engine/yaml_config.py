"""YAML configuration loader.

Loads one YAML file into SessionOptions. Values not present in the
file keep their SessionOptions defaults; ``${VAR}`` references in
string values are expanded from the environment.

Example YAML:
    session:
      cli_path: claude
      cwd: /path/to/project
      model: sonnet
      permission_stall_timeout: 30
      stream_close_timeout: 60
      hook_timeout: 60
      env:
        ANTHROPIC_API_KEY: "${ANTHROPIC_API_KEY}"

    permissions:
      mode: acceptEdits
      allow: [Read, "Bash(npm test:*)"]
      deny: ["Bash(rm:*)"]
      store: true            # persist "allow always" answers

    guards:
      rate_limit:
        matcher: "*"
        max_calls: 10
        window_seconds: 60
      audit_log:
        path: ~/.conduit/audit.jsonl
      command_policy:
        whitelist: ["^npm (test|run lint)"]
        blacklist: ["curl .*\\| *sh"]
      repeat_guard:
        max_repeats: 3
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from conduit.adapters.permission_store import PermissionStore

from .config import SessionOptions
from .guards import AuditLog, CommandPolicy, RateLimiter, RepeatGuard
from .hooks import HookEvent, HookMatcher
from .models import PermissionMode

logger = logging.getLogger(__name__)

_SESSION_FLOATS = (
    "permission_stall_timeout",
    "stream_close_timeout",
    "hook_timeout",
    "process_close_timeout",
)


def _expand(value: Any) -> Any:
    """Expand ${VAR} references in every string of a parsed tree."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    return value


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _string_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list of strings")
    return [str(v) for v in value]


def build_guard_hooks(guards: dict[str, Any]) -> dict[str, list[HookMatcher]]:
    """Turn a ``guards`` section into hook matchers.

    Pre-tool guards are registered in a fixed order: command_policy,
    repeat_guard, rate_limit. The audit log sees both PreToolUse and
    PostToolUse.
    """
    hooks: dict[str, list[HookMatcher]] = {}
    pre = HookEvent.PRE_TOOL_USE.value
    post = HookEvent.POST_TOOL_USE.value

    if "command_policy" in guards:
        cfg = guards["command_policy"] or {}
        policy = CommandPolicy(
            whitelist=_string_list(cfg.get("whitelist"), "whitelist"),
            blacklist=_string_list(cfg.get("blacklist"), "blacklist"),
            include_defaults=bool(cfg.get("include_defaults", True)),
        )
        hooks.setdefault(pre, []).append(
            HookMatcher(matcher=cfg.get("matcher", "Bash"), hooks=[policy])
        )

    if "repeat_guard" in guards:
        cfg = guards["repeat_guard"] or {}
        guard = RepeatGuard(max_repeats=int(cfg.get("max_repeats", 3)))
        hooks.setdefault(pre, []).append(
            HookMatcher(matcher=cfg.get("matcher", "Bash"), hooks=[guard])
        )

    if "rate_limit" in guards:
        cfg = guards["rate_limit"] or {}
        limiter = RateLimiter(
            max_calls=int(cfg.get("max_calls", 10)),
            window_seconds=float(cfg.get("window_seconds", 60.0)),
        )
        hooks.setdefault(pre, []).append(
            HookMatcher(matcher=cfg.get("matcher"), hooks=[limiter])
        )

    if "audit_log" in guards:
        cfg = guards["audit_log"] or {}
        audit = AuditLog(path=cfg.get("path"))
        for event in (pre, post):
            hooks.setdefault(event, []).append(
                HookMatcher(matcher=cfg.get("matcher"), hooks=[audit])
            )

    unknown = sorted(set(guards) - {
        "command_policy", "repeat_guard", "rate_limit", "audit_log",
    })
    if unknown:
        logger.warning("Ignoring unknown guards: %s", ", ".join(unknown))
    return hooks


def load_yaml_config(
    path: str | Path,
    base: SessionOptions | None = None,
) -> SessionOptions:
    """Load and parse a YAML config file into SessionOptions.

    ``base`` supplies values the file does not set (for example the
    result of SessionOptions.from_env()).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    raw = _expand(raw)

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    options = base or SessionOptions()

    # ── Session ──
    session = _section(raw, "session")
    for key in ("cli_path", "cwd", "model", "resume", "log_level"):
        if session.get(key) is not None:
            setattr(options, key, str(session[key]))
    for key in _SESSION_FLOATS:
        if session.get(key) is not None:
            setattr(options, key, float(session[key]))
    if session.get("env"):
        options.env.update({str(k): str(v) for k, v in session["env"].items()})
    if session.get("extra_args"):
        options.extra_args.extend(_string_list(session["extra_args"], "extra_args"))

    # ── Permissions ──
    permissions = _section(raw, "permissions")
    if permissions.get("mode") is not None:
        options.permission_mode = PermissionMode.parse(str(permissions["mode"]))
    options.allowed_tools.extend(_string_list(permissions.get("allow"), "allow"))
    options.disallowed_tools.extend(_string_list(permissions.get("deny"), "deny"))
    if permissions.get("store") and options.permission_store is None:
        options.permission_store = PermissionStore(project_dir=options.cwd or Path.cwd())

    # ── Guards ──
    for event, matchers in build_guard_hooks(_section(raw, "guards")).items():
        for matcher in matchers:
            options.add_hook(event, matcher)

    logger.info(
        "load_yaml_config: mode=%s allow=%d deny=%d hook_events=%d",
        options.permission_mode.value,
        len(options.allowed_tools),
        len(options.disallowed_tools),
        len(options.hooks),
    )
    return options
