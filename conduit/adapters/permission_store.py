"""Persistent storage for static permission rules.

Stores allow/deny rule lists at two levels:
- Global: ~/.conduit/permissions.json (applies to all projects)
- Project: <project>/.conduit/permissions.json (per-project)

File format: {"allow": [...], "deny": [...]}. A bare JSON list is
read as an allow list.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".conduit"
DIRNAME = ".conduit"
FILENAME = "permissions.json"


@dataclass
class StoredRules:
    allow: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)

    def merge(self, other: StoredRules) -> StoredRules:
        return StoredRules(
            allow=_dedupe(self.allow + other.allow),
            deny=_dedupe(self.deny + other.deny),
        )


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _rule_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        logger.warning("Ignoring non-list permission rules: %r", value)
        return []
    return [str(v) for v in value]


class PermissionStore:
    """Load and save permission rules."""

    def __init__(
        self,
        project_dir: Path | str | None = None,
        global_dir: Path | str | None = None,
    ) -> None:
        self._global_path = Path(global_dir or GLOBAL_DIR) / FILENAME
        self._project_path = (
            Path(project_dir) / DIRNAME / FILENAME if project_dir else None
        )

    @property
    def global_path(self) -> Path:
        return self._global_path

    @property
    def project_path(self) -> Path | None:
        return self._project_path

    def load(self) -> StoredRules:
        """Load all rules (global + project merged)."""
        rules = self._load_file(self._global_path)
        if self._project_path:
            rules = rules.merge(self._load_file(self._project_path))
        return rules

    def add_project(self, rule: str, *, deny: bool = False) -> None:
        """Add a rule to the project-level file."""
        if not self._project_path:
            # No project context, fall back to global
            self.add_global(rule, deny=deny)
            return
        self._add_to_file(self._project_path, rule, deny=deny)

    def add_global(self, rule: str, *, deny: bool = False) -> None:
        """Add a rule to the global file."""
        self._add_to_file(self._global_path, rule, deny=deny)

    @staticmethod
    def _load_file(path: Path) -> StoredRules:
        if not path.exists():
            return StoredRules()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
            return StoredRules()
        if isinstance(data, list):
            return StoredRules(allow=_rule_list(data))
        if isinstance(data, dict):
            return StoredRules(
                allow=_rule_list(data.get("allow")),
                deny=_rule_list(data.get("deny")),
            )
        logger.warning("Ignoring unexpected permission file format in %s", path)
        return StoredRules()

    @staticmethod
    def _add_to_file(path: Path, rule: str, *, deny: bool) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = PermissionStore._load_file(path)
        target = existing.deny if deny else existing.allow
        if rule in target:
            return
        target.append(rule)
        payload = {"allow": existing.allow, "deny": existing.deny}
        try:
            path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError:
            logger.warning("Failed to write %s", path)
        else:
            logger.info("Saved %s rule %s to %s", "deny" if deny else "allow", rule, path)
