"""Tool risk policies and locale phrase heuristics."""

from deskpilot.policy.phrases import detect_implied_destructive_intent, is_confirmation
from deskpilot.policy.tool_policies import (
    DEFAULT_POLICY,
    TOOL_POLICIES,
    ToolPolicyEngine,
    apply_confidence_floor,
    get_destructive_tools,
    get_tool_policy,
    is_destructive_tool,
)

__all__ = [
    "DEFAULT_POLICY",
    "TOOL_POLICIES",
    "ToolPolicyEngine",
    "apply_confidence_floor",
    "detect_implied_destructive_intent",
    "get_destructive_tools",
    "get_tool_policy",
    "is_confirmation",
    "is_destructive_tool",
]
