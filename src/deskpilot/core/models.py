"""
Deskpilot Core Data Models

All shared types used across the engine. This module is the foundation
that every other component imports from; it must have zero internal
dependencies beyond pydantic.
"""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ─── Enums ───────────────────────────────────────────────────

class ReasonCategory(str, Enum):
    """Grouping of reason codes for analytics."""
    SUCCESS = "success"
    BLOCKED = "blocked"
    EDGE_CASE = "edge_case"
    SYSTEM = "system"


class ReasonCode(str, Enum):
    """Closed vocabulary of audit tags attached to every decision."""
    # success
    EXECUTED_SUCCESSFULLY = "EXECUTED_SUCCESSFULLY"
    RESPONDED_SUCCESSFULLY = "RESPONDED_SUCCESSFULLY"
    # blocked
    MISSING_PARAM = "MISSING_PARAM"
    DESTRUCTIVE_NO_CONFIRM = "DESTRUCTIVE_NO_CONFIRM"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    CONFIDENCE_FLOOR_APPLIED = "CONFIDENCE_FLOOR_APPLIED"
    TOOL_NOT_ENABLED = "TOOL_NOT_ENABLED"
    INTEGRATION_NOT_CONFIGURED = "INTEGRATION_NOT_CONFIGURED"
    PLACEHOLDER_DETECTED = "PLACEHOLDER_DETECTED"
    EXECUTION_BUSY = "EXECUTION_BUSY"
    # edge cases
    CONTEXT_LOOP_DETECTED = "CONTEXT_LOOP_DETECTED"
    PENDING_INTENT_MISMATCH = "PENDING_INTENT_MISMATCH"
    PENDING_INTENT_EXPIRED = "PENDING_INTENT_EXPIRED"
    IMPLIED_DESTRUCTIVE_INTENT = "IMPLIED_DESTRUCTIVE_INTENT"
    CONFIRMATION_RECEIVED = "CONFIRMATION_RECEIVED"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    DUPLICATE_BLOCKED = "DUPLICATE_BLOCKED"
    # system
    ASSESSMENT_COMPLETED = "ASSESSMENT_COMPLETED"
    ASSESSMENT_PARSE_FAILED = "ASSESSMENT_PARSE_FAILED"
    CONTEXT_FETCHED = "CONTEXT_FETCHED"
    ASK_USER = "ASK_USER"
    PROCEED = "PROCEED"
    TOOL_FAILED = "TOOL_FAILED"
    EMPTY_RESULT = "EMPTY_RESULT"
    MAX_ITERATIONS_REACHED = "MAX_ITERATIONS_REACHED"
    ESCALATED_TO_HUMAN = "ESCALATED_TO_HUMAN"


class ExecutionState(str, Enum):
    """Lifecycle of a single tool execution attempt."""
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    DUPLICATE = "DUPLICATE"
    RESPONSE_GENERATED = "RESPONSE_GENERATED"
    DONE = "DONE"


class ExecutionStatus(str, Enum):
    """Status column of a persisted execution record."""
    EXECUTED = "executed"
    FAILED = "failed"
    BLOCKED = "blocked"
    DUPLICATE = "duplicate"


# ─── Assessment ──────────────────────────────────────────────

class Assessment(BaseModel):
    """Structured decision extracted from one LLM turn. Never mutated."""
    model_config = ConfigDict(frozen=True)

    confidence: int = Field(default=0, ge=0, le=10)
    tool_call: str | None = None
    tool_params: dict[str, Any] = Field(default_factory=dict)
    ask_user: str | None = None
    context_fetch: list[str] | None = None
    is_destructive: bool = False
    needs_confirmation: bool = False
    missing_params: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @property
    def wants_context(self) -> bool:
        return bool(self.context_fetch)


# ─── Policy ──────────────────────────────────────────────────

class ToolPolicy(BaseModel):
    """Static per-tool risk configuration."""
    model_config = ConfigDict(frozen=True)

    is_destructive: bool = False
    max_confidence: int = Field(default=10, ge=0, le=10)
    requires_confirmation: bool = False


class PendingIntent(BaseModel):
    """A hashed proposal awaiting user confirmation."""
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)
    hash: str
    conversation_id: str
    timestamp: float = Field(default_factory=time.time)

    def age_seconds(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def is_expired(self, ttl_seconds: float, now: float | None = None) -> bool:
        return self.age_seconds(now) > ttl_seconds


# ─── Tenants & tools ─────────────────────────────────────────

class Client(BaseModel):
    """A tenant of the support platform."""
    id: str
    name: str = ""
    language: str = "en"
    business_info: dict[str, Any] = Field(default_factory=dict)
    llm_provider: str | None = None
    model_name: str | None = None


class Conversation(BaseModel):
    """One end-user conversation with a tenant's assistant."""
    id: str
    client_id: str
    last_message: str = ""


class ClientTool(BaseModel):
    """A tool enabled for a client, backed by a webhook workflow."""
    tool_name: str
    description: str = ""
    parameters_schema: dict[str, Any] = Field(default_factory=dict)
    webhook_url: str = ""
    required_integrations: list[str] = Field(default_factory=list)
    integration_mapping: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @property
    def required_params(self) -> list[str]:
        return list(self.parameters_schema.get("required", []) or [])

    def to_prompt_schema(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "description": self.description,
            "parameters_schema": self.parameters_schema,
        }


class ToolCall(BaseModel):
    """A native function-calling request from the model."""
    id: str = Field(default_factory=lambda: f"call-{uuid.uuid4().hex[:8]}")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


# ─── Execution records ───────────────────────────────────────

class ToolExecutionRecord(BaseModel):
    """Append-only audit record of one completed execution attempt."""
    id: str = Field(default_factory=lambda: f"exec-{uuid.uuid4().hex[:10]}")
    conversation_id: str
    tool_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: bool = False
    execution_time_ms: float = 0.0
    status: ExecutionStatus = ExecutionStatus.FAILED
    reason_code: ReasonCode | None = None
    error_reason: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditEntry(BaseModel):
    """An entry in the append-only debug/message trail."""
    id: str = Field(default_factory=lambda: f"au-{uuid.uuid4().hex[:8]}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    conversation_id: str = ""
    event_type: str = ""
    content: str = ""
    reason_code: ReasonCode | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ─── Results ─────────────────────────────────────────────────

class ToolExecutionResult(BaseModel):
    """Outcome of execute_tool()."""
    executed: bool = False
    result: Any = None
    final_response: str | None = None
    error: str | None = None
    blocked: bool = False
    duplicate: bool = False
    busy: bool = False
    empty_result: bool = False
    missing_params: list[str] = Field(default_factory=list)
    reason_code: ReasonCode | None = None
    state: ExecutionState = ExecutionState.RECEIVED
    pending_intent_hash: str | None = None


class StandardToolCallResult(BaseModel):
    """Outcome of execute_standard_tool_call()."""
    success: bool = False
    name: str = ""
    error: str | None = None
    blocked: bool = False
    duplicate: bool = False
    busy: bool = False
    execution_time_ms: float = 0.0
    reason_code: ReasonCode | None = None


class ReasoningMetrics(BaseModel):
    """Per-turn counters reported with every adaptive reply."""
    is_adaptive: bool = True
    context_fetch_count: int = 0
    llm_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class TurnResult(BaseModel):
    """Final output of one adaptive reasoning turn."""
    response: str
    tool_executed: bool = False
    tool_result: Any = None
    reason_code: ReasonCode
    reasoning_metrics: ReasoningMetrics = Field(default_factory=ReasoningMetrics)
