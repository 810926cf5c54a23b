"""Adapters package - persistence that sits beside the engine."""
from __future__ import annotations

from .permission_store import PermissionStore, StoredRules

__all__ = [
    "PermissionStore",
    "StoredRules",
]
