"""
Deskpilot Custom Exceptions

Structured exception hierarchy for the tool execution engine.
All Deskpilot-specific exceptions inherit from DeskpilotError.

These are raised at the seams inside the engine (normalizer, guard,
collaborators) and converted into structured results at the public
entry points. No public entry point lets them escape.

Exception hierarchy:
    DeskpilotError
    +-- ValidationError              (missing/invalid tool parameters)
    +-- PolicyBlockError             (destructive-no-confirm, low confidence)
    +-- ConcurrencyBlockError        (lock busy, duplicate)
    |   +-- LockBusyError            (another holder owns the dedup lock)
    +-- IntegrationError             (missing/misconfigured credentials)
    +-- ExecutionError               (webhook failure, empty result)
    |   +-- WebhookTimeoutError      (deadline exceeded)
    +-- ProviderError                (LLM collaborator failure)
    +-- InvalidReasonCodeError       (code not in the registry)
    +-- ReasonCodeAlreadySetError    (decision already stamped)
    +-- IllegalTransitionError       (state machine misuse)
"""

from __future__ import annotations


class DeskpilotError(Exception):
    """Base exception for all Deskpilot errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ValidationError(DeskpilotError):
    """Raised when tool parameters are missing or invalid.

    Recovered locally: the model is told to re-ask the user.
    """

    def __init__(self, tool_name: str, errors: list[str], missing: list[str] | None = None):
        super().__init__(
            f"Invalid parameters for '{tool_name}': {'; '.join(errors)}",
            details={"tool_name": tool_name, "errors": errors, "missing": missing or []},
        )
        self.tool_name = tool_name
        self.errors = errors
        self.missing = missing or []


class PolicyBlockError(DeskpilotError):
    """Raised when a risk policy prevents execution."""

    def __init__(self, tool_name: str, reason_code: str, message: str):
        super().__init__(
            message,
            details={"tool_name": tool_name, "reason_code": reason_code},
        )
        self.tool_name = tool_name
        self.reason_code = reason_code


class ConcurrencyBlockError(DeskpilotError):
    """Base for lock-busy and duplicate conditions."""

    pass


class LockBusyError(ConcurrencyBlockError):
    """Raised when the dedup lock for a key is already held."""

    def __init__(self, key: str):
        super().__init__(f"Execution already in progress for lock '{key}'", details={"key": key})
        self.key = key


class IntegrationError(DeskpilotError):
    """Raised when a required integration cannot be resolved.

    Surfaced to the end user as configuration guidance.
    """

    def __init__(self, client_id: str, message: str, missing: list[str] | None = None):
        super().__init__(
            message,
            details={"client_id": client_id, "missing": missing or []},
        )
        self.client_id = client_id
        self.missing = missing or []


class ExecutionError(DeskpilotError):
    """Raised when a webhook invocation fails."""

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Tool '{tool_name}' execution failed: {message}",
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name


class WebhookTimeoutError(ExecutionError):
    """Raised when a webhook call exceeds its deadline.

    The downstream side effect may still have happened.
    """

    pass


class ProviderError(DeskpilotError):
    """Raised when the LLM collaborator fails."""

    def __init__(self, provider_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Provider '{provider_name}' error: {message}",
            details={"provider_name": provider_name, **(details or {})},
        )
        self.provider_name = provider_name


class InvalidReasonCodeError(DeskpilotError):
    """Raised when a code outside the reason-code registry is emitted."""

    def __init__(self, code: str):
        super().__init__(f"Unregistered reason code: {code!r}", details={"code": code})
        self.code = code


class ReasonCodeAlreadySetError(DeskpilotError):
    """Raised when a decision that already carries a reason code is stamped again."""

    def __init__(self, existing: str, attempted: str):
        super().__init__(
            f"Reason code already set to {existing}, refusing {attempted}",
            details={"existing": existing, "attempted": attempted},
        )
        self.existing = existing
        self.attempted = attempted


class IllegalTransitionError(DeskpilotError):
    """Raised when the execution state machine is driven out of order."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Illegal transition {current} -> {target}",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target = target
