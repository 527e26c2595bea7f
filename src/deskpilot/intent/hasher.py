"""
Deskpilot Intent Hasher

Canonical hashing of (tool, params) pairs. Used to match a user's
confirmation with the exact pending action it confirms, and to build
lock keys and duplicate checks.

Hashes are independent of dict key order at every nesting level.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_params(params: dict[str, Any] | None) -> str:
    """Deterministic compact JSON for a parameter mapping."""
    return json.dumps(
        params or {},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def canonical_intent(tool: str, params: dict[str, Any] | None) -> str:
    return json.dumps(
        {"tool": tool, "params": params or {}},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def generate_intent_hash(tool: str, params: dict[str, Any] | None) -> str:
    """SHA-256 hex digest of the canonical intent."""
    return hashlib.sha256(canonical_intent(tool, params).encode("utf-8")).hexdigest()


def verify_intent_match(
    tool1: str,
    params1: dict[str, Any] | None,
    tool2: str,
    params2: dict[str, Any] | None,
) -> bool:
    """Exact match on tool name and full parameter set."""
    return generate_intent_hash(tool1, params1) == generate_intent_hash(tool2, params2)
