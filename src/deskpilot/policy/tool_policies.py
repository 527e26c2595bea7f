"""
Deskpilot Tool Policy Engine

Static risk rules per tool name. Destructive tools get a confidence
cap ("confidence floor") and always require an explicit confirmation
round-trip before they run.

The default table ships with the engine; deployments can override it
with ``ToolPolicyEngine.from_mapping`` or ``ToolPolicyEngine.from_json_file``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from deskpilot.core.models import ToolPolicy
from deskpilot.logging import get_logger
from deskpilot.policy.phrases import detect_implied_destructive_intent, is_confirmation

logger = get_logger("deskpilot.policy")

TOOL_POLICIES: dict[str, ToolPolicy] = {
    # High-risk destructive tools
    "cancel_order": ToolPolicy(max_confidence=6, is_destructive=True, requires_confirmation=True),
    "refund": ToolPolicy(max_confidence=5, is_destructive=True, requires_confirmation=True),
    "delete_account": ToolPolicy(max_confidence=4, is_destructive=True, requires_confirmation=True),
    "delete_booking": ToolPolicy(max_confidence=5, is_destructive=True, requires_confirmation=True),
    # Medium-risk action tools
    "book_appointment": ToolPolicy(max_confidence=7),
    "update_profile": ToolPolicy(max_confidence=7),
    "place_order": ToolPolicy(max_confidence=7),
    # Read-only tools
    "get_order_status": ToolPolicy(max_confidence=9),
    "check_inventory": ToolPolicy(max_confidence=9),
    "search_products": ToolPolicy(max_confidence=9),
    "get_account_info": ToolPolicy(max_confidence=9),
}

DEFAULT_POLICY = ToolPolicy(is_destructive=False, max_confidence=10, requires_confirmation=False)


class ToolPolicyEngine:
    """Lookup and enforcement of per-tool risk policies."""

    def __init__(
        self,
        policies: dict[str, ToolPolicy] | None = None,
        default: ToolPolicy = DEFAULT_POLICY,
    ):
        self._policies = dict(TOOL_POLICIES if policies is None else policies)
        self._default = default

    @classmethod
    def from_mapping(cls, data: dict[str, Any], *, merge: bool = True) -> ToolPolicyEngine:
        """Build an engine from a plain mapping of tool name to policy fields.

        Accepts both snake_case and the camelCase keys used by admin exports
        (``maxConfidence``, ``isDestructive``, ``requiresConfirmation``).
        A ``"default"`` entry replaces the permissive default policy.
        """
        policies = dict(TOOL_POLICIES) if merge else {}
        default = DEFAULT_POLICY
        for name, fields in data.items():
            policy = _policy_from_fields(fields)
            if name == "default":
                default = policy
            else:
                policies[name] = policy
        return cls(policies, default=default)

    @classmethod
    def from_json_file(cls, path: str | Path, *, merge: bool = True) -> ToolPolicyEngine:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_mapping(data, merge=merge)

    @property
    def default_policy(self) -> ToolPolicy:
        return self._default

    def get_tool_policy(self, name: str) -> ToolPolicy:
        return self._policies.get(name, self._default)

    def is_destructive_tool(self, name: str) -> bool:
        return self.get_tool_policy(name).is_destructive

    def requires_confirmation(self, name: str) -> bool:
        policy = self.get_tool_policy(name)
        return policy.is_destructive or policy.requires_confirmation

    def apply_confidence_floor(self, name: str, confidence: int) -> int:
        """Cap a destructive tool's confidence at its policy maximum."""
        policy = self.get_tool_policy(name)
        if not policy.is_destructive:
            return confidence
        effective = min(confidence, policy.max_confidence)
        if effective < confidence:
            logger.debug(
                "Confidence floor applied: %s -> %s", confidence, effective,
                extra={"tool_name": name},
            )
        return effective

    def get_destructive_tools(self) -> list[str]:
        return sorted(name for name, policy in self._policies.items() if policy.is_destructive)

    def policies(self) -> dict[str, ToolPolicy]:
        return dict(self._policies)

    # Phrase heuristics are locale-based, not table-based; exposed here
    # so callers only need one object.
    detect_implied_destructive_intent = staticmethod(detect_implied_destructive_intent)
    is_confirmation = staticmethod(is_confirmation)


def _policy_from_fields(fields: dict[str, Any]) -> ToolPolicy:
    return ToolPolicy(
        is_destructive=bool(fields.get("is_destructive", fields.get("isDestructive", False))),
        max_confidence=int(fields.get("max_confidence", fields.get("maxConfidence", 10))),
        requires_confirmation=bool(
            fields.get("requires_confirmation", fields.get("requiresConfirmation", False))
        ),
    )


# ─── Module-level helpers over the default table ─────────────

_default_engine = ToolPolicyEngine()


def get_tool_policy(name: str) -> ToolPolicy:
    return _default_engine.get_tool_policy(name)


def is_destructive_tool(name: str) -> bool:
    return _default_engine.is_destructive_tool(name)


def apply_confidence_floor(name: str, confidence: int) -> int:
    return _default_engine.apply_confidence_floor(name, confidence)


def get_destructive_tools() -> list[str]:
    return _default_engine.get_destructive_tools()
