"""
Deskpilot Reason Codes

Closed registry of audit tags. Every terminal decision of the engine
carries exactly one code from this registry; an unregistered code is a
programming error and fails validation.

The emitter stamps a Decision once and mirrors it to the audit sink.
"""

from __future__ import annotations

from typing import Any

from deskpilot.core.models import AuditEntry, ReasonCategory, ReasonCode
from deskpilot.exceptions import InvalidReasonCodeError, ReasonCodeAlreadySetError
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.audit")

REASON_CODE_CATEGORIES: dict[ReasonCategory, frozenset[ReasonCode]] = {
    ReasonCategory.SUCCESS: frozenset({
        ReasonCode.EXECUTED_SUCCESSFULLY,
        ReasonCode.RESPONDED_SUCCESSFULLY,
    }),
    ReasonCategory.BLOCKED: frozenset({
        ReasonCode.MISSING_PARAM,
        ReasonCode.DESTRUCTIVE_NO_CONFIRM,
        ReasonCode.LOW_CONFIDENCE,
        ReasonCode.TOOL_NOT_FOUND,
        ReasonCode.CONFIDENCE_FLOOR_APPLIED,
        ReasonCode.TOOL_NOT_ENABLED,
        ReasonCode.INTEGRATION_NOT_CONFIGURED,
        ReasonCode.PLACEHOLDER_DETECTED,
        ReasonCode.EXECUTION_BUSY,
    }),
    ReasonCategory.EDGE_CASE: frozenset({
        ReasonCode.CONTEXT_LOOP_DETECTED,
        ReasonCode.PENDING_INTENT_MISMATCH,
        ReasonCode.PENDING_INTENT_EXPIRED,
        ReasonCode.IMPLIED_DESTRUCTIVE_INTENT,
        ReasonCode.CONFIRMATION_RECEIVED,
        ReasonCode.AWAITING_CONFIRMATION,
        ReasonCode.DUPLICATE_BLOCKED,
    }),
    ReasonCategory.SYSTEM: frozenset({
        ReasonCode.ASSESSMENT_COMPLETED,
        ReasonCode.ASSESSMENT_PARSE_FAILED,
        ReasonCode.CONTEXT_FETCHED,
        ReasonCode.ASK_USER,
        ReasonCode.PROCEED,
        ReasonCode.TOOL_FAILED,
        ReasonCode.EMPTY_RESULT,
        ReasonCode.MAX_ITERATIONS_REACHED,
        ReasonCode.ESCALATED_TO_HUMAN,
    }),
}

REASON_CODE_DESCRIPTIONS: dict[ReasonCode, str] = {
    ReasonCode.EXECUTED_SUCCESSFULLY: "Tool executed successfully",
    ReasonCode.RESPONDED_SUCCESSFULLY: "Response generated successfully",
    ReasonCode.MISSING_PARAM: "Required parameter(s) missing",
    ReasonCode.DESTRUCTIVE_NO_CONFIRM: "Destructive action attempted without confirmation",
    ReasonCode.LOW_CONFIDENCE: "Confidence level too low to proceed",
    ReasonCode.TOOL_NOT_FOUND: "Tool does not exist or was hallucinated",
    ReasonCode.CONFIDENCE_FLOOR_APPLIED: "Confidence capped by tool policy",
    ReasonCode.TOOL_NOT_ENABLED: "Tool not enabled for this client",
    ReasonCode.INTEGRATION_NOT_CONFIGURED: "Required integration not configured",
    ReasonCode.PLACEHOLDER_DETECTED: "Placeholder values detected in tool parameters",
    ReasonCode.EXECUTION_BUSY: "Identical execution already in progress",
    ReasonCode.CONTEXT_LOOP_DETECTED: "AI repeatedly requesting more context",
    ReasonCode.PENDING_INTENT_MISMATCH: "Confirmation does not match pending action",
    ReasonCode.PENDING_INTENT_EXPIRED: "Pending action expired before confirmation",
    ReasonCode.IMPLIED_DESTRUCTIVE_INTENT: "Message implies destructive intent",
    ReasonCode.CONFIRMATION_RECEIVED: "User confirmed pending action",
    ReasonCode.AWAITING_CONFIRMATION: "Waiting for user confirmation",
    ReasonCode.DUPLICATE_BLOCKED: "Action already completed in this conversation",
    ReasonCode.ASSESSMENT_COMPLETED: "Self-assessment completed",
    ReasonCode.ASSESSMENT_PARSE_FAILED: "Self-assessment could not be parsed",
    ReasonCode.CONTEXT_FETCHED: "Additional context fetched",
    ReasonCode.ASK_USER: "Asking user for clarification",
    ReasonCode.PROCEED: "Proceeding with action",
    ReasonCode.TOOL_FAILED: "Tool execution failed",
    ReasonCode.EMPTY_RESULT: "Tool returned no usable data",
    ReasonCode.MAX_ITERATIONS_REACHED: "Reasoning iteration limit reached",
    ReasonCode.ESCALATED_TO_HUMAN: "Escalated to human agent",
}

_CATEGORY_BY_CODE: dict[ReasonCode, ReasonCategory] = {
    code: category
    for category, codes in REASON_CODE_CATEGORIES.items()
    for code in codes
}


def validate_reason_code(code: ReasonCode | str) -> ReasonCode:
    """Return the registered code, or raise InvalidReasonCodeError."""
    if isinstance(code, ReasonCode) and code in _CATEGORY_BY_CODE:
        return code
    try:
        resolved = ReasonCode(code)
    except ValueError:
        raise InvalidReasonCodeError(str(code)) from None
    if resolved not in _CATEGORY_BY_CODE:
        raise InvalidReasonCodeError(str(code))
    return resolved


def is_valid_reason_code(code: ReasonCode | str) -> bool:
    try:
        validate_reason_code(code)
    except InvalidReasonCodeError:
        return False
    return True


def reason_code_category(code: ReasonCode | str) -> ReasonCategory:
    return _CATEGORY_BY_CODE[validate_reason_code(code)]


def describe_reason_code(code: ReasonCode | str) -> str:
    return REASON_CODE_DESCRIPTIONS[validate_reason_code(code)]


def codes_in_category(category: ReasonCategory | str) -> list[ReasonCode]:
    return sorted(REASON_CODE_CATEGORIES[ReasonCategory(category)], key=lambda c: c.value)


# ─── Decisions ───────────────────────────────────────────────

class Decision:
    """A single terminal decision. Its reason code is write-once."""

    def __init__(self, conversation_id: str = "", label: str = ""):
        self.conversation_id = conversation_id
        self.label = label
        self._reason_code: ReasonCode | None = None

    @property
    def reason_code(self) -> ReasonCode | None:
        return self._reason_code

    @property
    def is_stamped(self) -> bool:
        return self._reason_code is not None

    def stamp(self, code: ReasonCode | str) -> ReasonCode:
        resolved = validate_reason_code(code)
        if self._reason_code is not None:
            raise ReasonCodeAlreadySetError(self._reason_code.value, resolved.value)
        self._reason_code = resolved
        return resolved


class ReasonCodeEmitter:
    """Validates codes, stamps decisions and appends to the audit sink.

    The sink is any object with ``async append(AuditEntry)``.
    """

    def __init__(self, sink: Any):
        self._sink = sink

    async def emit(
        self,
        decision: Decision,
        code: ReasonCode | str,
        content: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ReasonCode:
        """Stamp ``decision`` with ``code`` and record it."""
        resolved = decision.stamp(code)
        await self._append(decision.conversation_id, "decision", resolved, content, metadata)
        return resolved

    async def record(
        self,
        conversation_id: str,
        code: ReasonCode | str,
        content: str = "",
        metadata: dict[str, Any] | None = None,
        event_type: str = "internal",
    ) -> ReasonCode:
        """Record a non-terminal event (context fetched, assessment parsed...)."""
        resolved = validate_reason_code(code)
        await self._append(conversation_id, event_type, resolved, content, metadata)
        return resolved

    async def _append(
        self,
        conversation_id: str,
        event_type: str,
        code: ReasonCode,
        content: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        entry = AuditEntry(
            conversation_id=conversation_id,
            event_type=event_type,
            content=content or describe_reason_code(code),
            reason_code=code,
            metadata=metadata or {},
        )
        logger.debug(
            entry.content,
            extra={"conversation_id": conversation_id, "reason_code": code.value},
        )
        await self._sink.append(entry)
