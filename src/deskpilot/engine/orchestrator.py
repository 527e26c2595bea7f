"""
Deskpilot Tool Execution Orchestrator

Turns a tool decision into a guarded webhook call. Two entry points:

- execute_tool(): the assessment path. Validates, enforces risk policy
  (confirmation handshake for destructive tools, confidence gate),
  serializes per (conversation, tool, params), suppresses duplicates,
  resolves credentials, invokes the webhook and asks the model to
  summarize the result.
- execute_standard_tool_call(): the native function-calling path. Same
  guards, but the outcome is fed back to the model as a ``tool`` message
  instead of being phrased for the customer.

Every call ends with exactly one reason code and a structured result.
No exception leaves either entry point.
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import BaseModel, Field

from deskpilot.audit.reason_codes import Decision, ReasonCodeEmitter
from deskpilot.collaborators import (
    AuditSink,
    CredentialResolver,
    LLMCollaborator,
    ToolWebhook,
    WebhookResult,
)
from deskpilot.config import EngineSettings
from deskpilot.core.models import (
    Assessment,
    Client,
    ClientTool,
    Conversation,
    ExecutionState,
    ExecutionStatus,
    PendingIntent,
    ReasonCode,
    ReasoningMetrics,
    StandardToolCallResult,
    ToolCall,
    ToolExecutionRecord,
    ToolExecutionResult,
)
from deskpilot.engine.formatting import (
    basic_format_tool_result,
    format_response_for_llm,
    truncate_result_for_record,
)
from deskpilot.engine.normalizer import (
    missing_required,
    normalize_tool_arguments,
    validate_tool_arguments,
)
from deskpilot.engine.responder import generate_tool_result_response
from deskpilot.engine.state import ExecutionTrace
from deskpilot.exceptions import IntegrationError, LockBusyError
from deskpilot.guard.dedup import DedupGuard
from deskpilot.intent.hasher import generate_intent_hash, verify_intent_match
from deskpilot.logging import get_logger
from deskpilot.policy.tool_policies import ToolPolicyEngine
from deskpilot.storage.executions import ExecutionRepository
from deskpilot.storage.shared import SharedStore

logger = get_logger("deskpilot.engine.orchestrator")

S = ExecutionState

# ─── Canned texts ────────────────────────────────────────────

DUPLICATE_RESPONSE = "This action was already completed earlier in this conversation."
DUPLICATE_TOOL_MESSAGE = (
    "This action was already completed earlier in this conversation. No need to repeat it."
)
BUSY_TOOL_MESSAGE = (
    "This action is already being processed. Please wait for the current execution to complete."
)
EMPTY_RESULT_ERROR = (
    "The tool returned an empty response. This usually indicates a workflow configuration "
    "issue. Please check the workflow and integration settings."
)
TOOL_UNAVAILABLE_RESPONSE = (
    "I apologize, but I don't have access to that capability. Let me help you another way."
)
LOW_CONFIDENCE_RESPONSE = (
    "I want to make sure I get this right. Could you confirm exactly what you would like me to do?"
)
UNEXPECTED_ERROR = "Tool execution failed unexpectedly."


def pending_intent_key(conversation_id: str) -> str:
    return f"pending-intent:{conversation_id}"


def confirmation_question(tool_name: str, params: dict[str, Any]) -> str:
    """Deterministic question asking the customer to approve a destructive action."""
    action = tool_name.replace("_", " ")
    details = ", ".join(f"{k}: {v}" for k, v in params.items() if v not in (None, ""))
    target = f"{action} ({details})" if details else action
    return f'Just to confirm: do you want me to {target}? Please reply "yes" to confirm.'


def _is_empty(data: Any) -> bool:
    if data is None:
        return True
    if isinstance(data, str):
        return not data.strip()
    if isinstance(data, (dict, list, tuple, set)):
        return not data
    return False


class ExecutionOptions(BaseModel):
    """Per-call context for execute_tool()."""
    client: Client | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)
    # Set when the call comes from a user confirming a stored pending intent
    confirmed_intent: PendingIntent | None = None
    # Turn counters that the result summary call is charged to
    metrics: ReasoningMetrics | None = None


class ToolOrchestrator:
    """Runs tool calls through validation, policy, guard and webhook."""

    def __init__(
        self,
        llm: LLMCollaborator,
        webhook: ToolWebhook,
        credentials: CredentialResolver,
        executions: ExecutionRepository,
        store: SharedStore,
        audit: AuditSink,
        policies: ToolPolicyEngine | None = None,
        settings: EngineSettings | None = None,
    ):
        self._llm = llm
        self._webhook = webhook
        self._credentials = credentials
        self._executions = executions
        self._store = store
        self._policies = policies or ToolPolicyEngine()
        self._settings = settings or EngineSettings()
        self._guard = DedupGuard(store, executions, self._settings.effective_lock_ttl_seconds)
        self._emitter = ReasonCodeEmitter(audit)

    @property
    def policies(self) -> ToolPolicyEngine:
        return self._policies

    @property
    def emitter(self) -> ReasonCodeEmitter:
        return self._emitter

    # ─── Pending intents ─────────────────────────────────────

    async def store_pending_intent(
        self, conversation_id: str, tool_name: str, params: dict[str, Any],
    ) -> PendingIntent:
        intent = PendingIntent(
            tool=tool_name,
            params=params,
            hash=generate_intent_hash(tool_name, params),
            conversation_id=conversation_id,
        )
        await self._store.set(
            pending_intent_key(conversation_id),
            intent.model_dump_json(),
            self._settings.pending_intent_ttl_seconds,
        )
        logger.info(
            "Pending intent stored",
            extra={"conversation_id": conversation_id, "tool_name": tool_name},
        )
        return intent

    async def take_pending_intent(self, conversation_id: str) -> PendingIntent | None:
        """Atomically consume the conversation's pending intent, if any."""
        raw = await self._store.get_and_delete(pending_intent_key(conversation_id))
        if raw is None:
            return None
        try:
            return PendingIntent.model_validate_json(raw)
        except ValueError:
            logger.warning(
                "Discarding unreadable pending intent",
                extra={"conversation_id": conversation_id},
            )
            return None

    def is_intent_expired(self, intent: PendingIntent) -> bool:
        return intent.is_expired(self._settings.pending_intent_ttl_seconds)

    # ─── Shared steps ────────────────────────────────────────

    async def _append_record(
        self,
        conversation_id: str,
        tool_name: str,
        params: dict[str, Any],
        status: ExecutionStatus,
        reason_code: ReasonCode,
        *,
        result: Any = None,
        success: bool = False,
        execution_time_ms: float = 0.0,
        error_reason: str | None = None,
    ) -> ToolExecutionRecord:
        record = ToolExecutionRecord(
            conversation_id=conversation_id,
            tool_name=tool_name,
            params=params,
            result=truncate_result_for_record(
                result,
                self._settings.tool_result_max_chars,
                self._settings.tool_result_preview_chars,
            ),
            success=success,
            execution_time_ms=execution_time_ms,
            status=status,
            reason_code=reason_code,
            error_reason=error_reason,
        )
        return await self._executions.append(record)

    async def _resolve_credentials(self, client_id: str, tool: ClientTool) -> dict[str, Any]:
        if not tool.required_integrations:
            return {}
        try:
            return await asyncio.wait_for(
                self._credentials.resolve(
                    client_id, tool.integration_mapping, tool.required_integrations,
                ),
                timeout=self._settings.credential_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise IntegrationError(
                client_id,
                f"Credential lookup timed out after {self._settings.credential_timeout_seconds}s",
            ) from e

    async def _call_webhook(self, tool: ClientTool, params: dict[str, Any], credentials: dict[str, Any]) -> WebhookResult:
        try:
            return await asyncio.wait_for(
                self._webhook.execute(
                    tool.webhook_url,
                    params,
                    credentials or None,
                    timeout=self._settings.webhook_timeout_seconds,
                ),
                timeout=self._settings.webhook_deadline_seconds,
            )
        except asyncio.TimeoutError:
            deadline_ms = int(self._settings.webhook_deadline_seconds * 1000)
            logger.error("Webhook deadline exceeded", extra={"tool_name": tool.tool_name})
            return WebhookResult(
                success=False,
                error=f"Tool execution timed out after {deadline_ms}ms",
                execution_time_ms=float(deadline_ms),
                timed_out=True,
            )

    @staticmethod
    def _find_tool(tools: list[ClientTool], name: str) -> ClientTool | None:
        return next((t for t in tools if t.tool_name == name), None)

    # ─── Assessment path ─────────────────────────────────────

    async def execute_tool(
        self,
        assessment: Assessment,
        conversation_id: str,
        client_id: str,
        tools: list[ClientTool],
        options: ExecutionOptions | None = None,
    ) -> ToolExecutionResult:
        """Execute the tool named by ``assessment``. Never raises."""
        options = options or ExecutionOptions()
        tool_name = assessment.tool_call or ""
        trace = ExecutionTrace(tool_name=tool_name, conversation_id=conversation_id)
        decision = Decision(conversation_id, label=f"execute_tool:{tool_name}")

        try:
            return await self._execute_tool(
                assessment, conversation_id, client_id, tools, options, trace, decision,
            )
        except Exception as e:
            logger.exception(
                "Tool execution crashed",
                extra={"conversation_id": conversation_id, "tool_name": tool_name, "state": trace.state.value},
            )
            code = await self._stamp_failure(decision, str(e))
            return ToolExecutionResult(error=str(e) or UNEXPECTED_ERROR, reason_code=code, state=S.FAILED)

    async def _stamp_failure(self, decision: Decision, message: str) -> ReasonCode:
        if decision.is_stamped:
            return decision.reason_code  # type: ignore[return-value]
        try:
            return await self._emitter.emit(decision, ReasonCode.TOOL_FAILED, content=message)
        except Exception:
            logger.exception("Failed to record TOOL_FAILED", extra={"conversation_id": decision.conversation_id})
            return ReasonCode.TOOL_FAILED

    async def _execute_tool(
        self,
        assessment: Assessment,
        conversation_id: str,
        client_id: str,
        tools: list[ClientTool],
        options: ExecutionOptions,
        trace: ExecutionTrace,
        decision: Decision,
    ) -> ToolExecutionResult:
        tool_name = assessment.tool_call
        log_extra = {"conversation_id": conversation_id, "client_id": client_id, "tool_name": tool_name}

        async def done(code: ReasonCode, content: str = "", responded: bool = False, **fields: Any) -> ToolExecutionResult:
            await self._emitter.emit(decision, code, content=content, metadata={"tool_name": tool_name})
            trace.finish(responded=responded)
            logger.info("Tool decision: %s", code.value, extra={**log_extra, "reason_code": code.value})
            return ToolExecutionResult(reason_code=code, state=trace.outcome or trace.state, **fields)

        # RECEIVED → VALIDATED
        tool = self._find_tool(tools, tool_name) if tool_name else None
        if tool is None or not tool.enabled:
            code = ReasonCode.TOOL_NOT_ENABLED if tool is not None else ReasonCode.TOOL_NOT_FOUND
            trace.advance(S.BLOCKED, code)
            return await done(
                code,
                f"Tool {tool_name!r} is not available",
                responded=True,
                blocked=True,
                error=f'Tool "{tool_name}" not found' if tool is None else f'Tool "{tool_name}" is not enabled',
                final_response=TOOL_UNAVAILABLE_RESPONSE,
            )

        params = normalize_tool_arguments(assessment.tool_params, tool)
        missing = missing_required(tool, params)
        if missing:
            trace.advance(S.BLOCKED, ReasonCode.MISSING_PARAM)
            return await done(
                ReasonCode.MISSING_PARAM,
                f"Missing parameters: {', '.join(missing)}",
                blocked=True,
                missing_params=missing,
                error="; ".join(f"Missing required parameter: {p}" for p in missing),
            )
        trace.advance(S.VALIDATED)

        # Risk policy
        policy = self._policies.get_tool_policy(tool_name)
        destructive = policy.is_destructive or assessment.is_destructive
        needs_confirmation = destructive or policy.requires_confirmation or assessment.needs_confirmation
        authorized = await self._check_confirmation(options.confirmed_intent, conversation_id, tool_name, params)

        # A confirmed intent authorizes the call regardless of the cap
        effective = assessment.confidence
        if not authorized:
            effective = self._policies.apply_confidence_floor(tool_name, assessment.confidence)
            if effective < assessment.confidence:
                await self._emitter.record(
                    conversation_id,
                    ReasonCode.CONFIDENCE_FLOOR_APPLIED,
                    metadata={"tool_name": tool_name, "from": assessment.confidence, "to": effective},
                )

        if needs_confirmation and not authorized:
            intent = await self.store_pending_intent(conversation_id, tool_name, params)
            await self._emitter.record(
                conversation_id,
                ReasonCode.AWAITING_CONFIRMATION,
                metadata={"tool_name": tool_name, "intent_hash": intent.hash},
            )
            trace.advance(S.BLOCKED, ReasonCode.DESTRUCTIVE_NO_CONFIRM)
            return await done(
                ReasonCode.DESTRUCTIVE_NO_CONFIRM,
                responded=True,
                blocked=True,
                error="Confirmation required",
                final_response=confirmation_question(tool_name, params),
                pending_intent_hash=intent.hash,
            )

        if not authorized and effective < self._settings.min_confidence_for_action:
            trace.advance(S.BLOCKED, ReasonCode.LOW_CONFIDENCE)
            return await done(
                ReasonCode.LOW_CONFIDENCE,
                f"Effective confidence {effective} below {self._settings.min_confidence_for_action}",
                responded=True,
                blocked=True,
                error="Confidence too low to act",
                final_response=assessment.ask_user or LOW_CONFIDENCE_RESPONSE,
            )

        # VALIDATED → LOCK_ACQUIRED
        try:
            async with self._guard.lock(conversation_id, tool_name, params):
                trace.advance(S.LOCK_ACQUIRED)
                return await self._execute_locked(
                    tool, params, conversation_id, client_id, options, trace, done,
                )
        except LockBusyError:
            # No record: the holder will write one
            await self._emitter.emit(decision, ReasonCode.EXECUTION_BUSY, metadata={"tool_name": tool_name})
            trace.advance(S.DONE)
            return ToolExecutionResult(
                busy=True,
                error="Execution already in progress",
                final_response=BUSY_TOOL_MESSAGE,
                reason_code=ReasonCode.EXECUTION_BUSY,
                state=S.DONE,
            )

    async def _check_confirmation(
        self,
        intent: PendingIntent | None,
        conversation_id: str,
        tool_name: str,
        params: dict[str, Any],
    ) -> bool:
        """True only for an unexpired intent of this conversation matching (tool, params)."""
        if intent is None:
            return False
        if self.is_intent_expired(intent):
            await self._emitter.record(
                conversation_id, ReasonCode.PENDING_INTENT_EXPIRED, metadata={"tool_name": intent.tool},
            )
            return False
        if intent.conversation_id != conversation_id or not verify_intent_match(
            intent.tool, intent.params, tool_name, params,
        ):
            await self._emitter.record(
                conversation_id,
                ReasonCode.PENDING_INTENT_MISMATCH,
                metadata={"expected": intent.hash, "actual": generate_intent_hash(tool_name, params)},
            )
            return False
        return True

    async def _execute_locked(
        self,
        tool: ClientTool,
        params: dict[str, Any],
        conversation_id: str,
        client_id: str,
        options: ExecutionOptions,
        trace: ExecutionTrace,
        done,
    ) -> ToolExecutionResult:
        tool_name = tool.tool_name

        if await self._guard.is_duplicate_execution(conversation_id, tool_name, params):
            trace.advance(S.DUPLICATE, ReasonCode.DUPLICATE_BLOCKED)
            await self._append_record(
                conversation_id, tool_name, params, ExecutionStatus.DUPLICATE, ReasonCode.DUPLICATE_BLOCKED,
            )
            return await done(
                ReasonCode.DUPLICATE_BLOCKED,
                responded=True,
                executed=True,
                duplicate=True,
                result={"message": DUPLICATE_RESPONSE},
                final_response=DUPLICATE_RESPONSE,
            )

        try:
            credentials = await self._resolve_credentials(client_id, tool)
        except IntegrationError as e:
            trace.advance(S.FAILED, ReasonCode.INTEGRATION_NOT_CONFIGURED)
            return await done(
                ReasonCode.INTEGRATION_NOT_CONFIGURED,
                str(e),
                error=f"Integration error: {e}",
            )

        trace.advance(S.EXECUTING)
        result = await self._call_webhook(tool, params, credentials)

        if result.blocked:
            trace.advance(S.BLOCKED, ReasonCode.PLACEHOLDER_DETECTED)
            await self._append_record(
                conversation_id, tool_name, params, ExecutionStatus.BLOCKED, ReasonCode.PLACEHOLDER_DETECTED,
                error_reason=result.error,
            )
            return await done(ReasonCode.PLACEHOLDER_DETECTED, result.error or "", blocked=True, error=result.error)

        if not result.success:
            trace.advance(S.FAILED, ReasonCode.TOOL_FAILED)
            await self._append_record(
                conversation_id, tool_name, params, ExecutionStatus.FAILED, ReasonCode.TOOL_FAILED,
                result=result.data, execution_time_ms=result.execution_time_ms, error_reason=result.error,
            )
            return await done(ReasonCode.TOOL_FAILED, result.error or "", error=result.error)

        if _is_empty(result.data):
            trace.advance(S.FAILED, ReasonCode.EMPTY_RESULT)
            await self._append_record(
                conversation_id, tool_name, params, ExecutionStatus.FAILED, ReasonCode.EMPTY_RESULT,
                result=result.data, execution_time_ms=result.execution_time_ms, error_reason=EMPTY_RESULT_ERROR,
            )
            return await done(ReasonCode.EMPTY_RESULT, error=EMPTY_RESULT_ERROR, empty_result=True)

        trace.advance(S.SUCCEEDED, ReasonCode.EXECUTED_SUCCESSFULLY)
        await self._append_record(
            conversation_id, tool_name, params, ExecutionStatus.EXECUTED, ReasonCode.EXECUTED_SUCCESSFULLY,
            result=result.data, success=True, execution_time_ms=result.execution_time_ms,
        )

        spent = options.metrics is not None and options.metrics.llm_calls >= self._settings.max_iterations
        if options.client is not None and not spent:
            final_response = await generate_tool_result_response(
                self._llm,
                tool_name,
                params,
                result.data,
                options.client,
                options.history,
                max_tokens=self._settings.reprompt_max_tokens,
                temperature=self._settings.default_temperature,
                metrics=options.metrics,
            )
        else:
            final_response = basic_format_tool_result(result.data)

        return await done(
            ReasonCode.EXECUTED_SUCCESSFULLY,
            executed=True,
            result=result.data,
            final_response=final_response,
        )

    # ─── Native function-calling path ────────────────────────

    async def execute_standard_tool_call(
        self,
        tool_call: ToolCall,
        client: Client,
        conversation: Conversation,
        messages: list[dict[str, Any]],
        tools: list[ClientTool],
    ) -> StandardToolCallResult:
        """Execute a native tool call and append its ``tool`` message. Never raises."""
        decision = Decision(conversation.id, label=f"tool_call:{tool_call.name}")
        try:
            outcome, content = await self._standard_tool_call(tool_call, client, conversation, tools, decision)
        except Exception as e:
            logger.exception(
                "Tool call crashed",
                extra={"conversation_id": conversation.id, "tool_name": tool_call.name},
            )
            code = await self._stamp_failure(decision, str(e))
            outcome = StandardToolCallResult(
                name=tool_call.name, error=str(e) or UNEXPECTED_ERROR, reason_code=code,
            )
            content = f"Error: {UNEXPECTED_ERROR}"

        messages.append({"role": "tool", "content": content, "tool_call_id": tool_call.id})
        return outcome

    async def _standard_tool_call(
        self,
        tool_call: ToolCall,
        client: Client,
        conversation: Conversation,
        tools: list[ClientTool],
        decision: Decision,
    ) -> tuple[StandardToolCallResult, str]:
        name = tool_call.name
        conversation_id = conversation.id
        log_extra = {"conversation_id": conversation_id, "client_id": client.id, "tool_name": name}
        logger.info("Executing tool call", extra=log_extra)

        async def stamp(code: ReasonCode, content: str = "") -> ReasonCode:
            return await self._emitter.emit(decision, code, content=content, metadata={"tool_name": name})

        tool = self._find_tool(tools, name)
        if tool is None or not tool.enabled:
            code = ReasonCode.TOOL_NOT_FOUND if tool is None else ReasonCode.TOOL_NOT_ENABLED
            message = f'Error: Tool "{name}" is not available'
            await self._append_record(
                conversation_id, name, tool_call.arguments, ExecutionStatus.FAILED, code,
                result={"error": "Tool not found"}, error_reason=message,
            )
            await stamp(code, message)
            return StandardToolCallResult(name=name, error=message, reason_code=code), message

        args = normalize_tool_arguments(tool_call.arguments, tool)
        errors = validate_tool_arguments(tool, args)
        if errors:
            details = "; ".join(errors)
            message = (
                f"TOOL CALL REJECTED: {details}. You MUST ask the user for the missing or invalid "
                "information before calling this tool again. Do not use placeholder values."
            )
            await self._append_record(
                conversation_id, name, args, ExecutionStatus.BLOCKED, ReasonCode.MISSING_PARAM,
                result={"error": errors}, error_reason=details,
            )
            code = await stamp(ReasonCode.MISSING_PARAM, details)
            logger.warning("Invalid arguments: %s", details, extra=log_extra)
            return StandardToolCallResult(name=name, error=message, blocked=True, reason_code=code), message

        try:
            async with self._guard.lock(conversation_id, name, args):
                return await self._standard_locked(tool, args, client, conversation_id, stamp)
        except LockBusyError:
            code = await stamp(ReasonCode.EXECUTION_BUSY)
            return StandardToolCallResult(
                name=name, error="Execution already in progress", busy=True, reason_code=code,
            ), BUSY_TOOL_MESSAGE

    async def _standard_locked(
        self,
        tool: ClientTool,
        args: dict[str, Any],
        client: Client,
        conversation_id: str,
        stamp,
    ) -> tuple[StandardToolCallResult, str]:
        name = tool.tool_name

        if await self._guard.is_duplicate_execution(conversation_id, name, args):
            await self._append_record(
                conversation_id, name, args, ExecutionStatus.DUPLICATE, ReasonCode.DUPLICATE_BLOCKED,
            )
            code = await stamp(ReasonCode.DUPLICATE_BLOCKED)
            return StandardToolCallResult(
                success=True, name=name, duplicate=True, reason_code=code,
            ), DUPLICATE_TOOL_MESSAGE

        try:
            credentials = await self._resolve_credentials(client.id, tool)
        except IntegrationError as e:
            code = await stamp(ReasonCode.INTEGRATION_NOT_CONFIGURED, str(e))
            return StandardToolCallResult(name=name, error=str(e), reason_code=code), (
                f"Error: {e}. Please configure the required integrations in the admin panel."
            )

        result = await self._call_webhook(tool, args, credentials)

        if result.blocked:
            await self._append_record(
                conversation_id, name, args, ExecutionStatus.BLOCKED, ReasonCode.PLACEHOLDER_DETECTED,
                error_reason=result.error,
            )
            code = await stamp(ReasonCode.PLACEHOLDER_DETECTED, result.error or "")
            return StandardToolCallResult(
                name=name,
                error=result.error,
                blocked=True,
                execution_time_ms=result.execution_time_ms,
                reason_code=code,
            ), (
                f"TOOL BLOCKED: {result.error} Do not use placeholder values - "
                "ask the user for the actual information."
            )

        if result.success and _is_empty(result.data):
            status, code, success, error = (
                ExecutionStatus.FAILED, ReasonCode.EMPTY_RESULT, False, EMPTY_RESULT_ERROR,
            )
        elif result.success:
            status, code, success, error = (
                ExecutionStatus.EXECUTED, ReasonCode.EXECUTED_SUCCESSFULLY, True, None,
            )
        else:
            status, code, success, error = (
                ExecutionStatus.FAILED, ReasonCode.TOOL_FAILED, False, result.error,
            )

        await self._append_record(
            conversation_id, name, args, status, code,
            result=result.data,
            success=success,
            execution_time_ms=result.execution_time_ms,
            error_reason=error,
        )
        await stamp(code, error or "")
        logger.info(
            "Tool %s %s (%.0fms)",
            name,
            "succeeded" if success else "failed",
            result.execution_time_ms,
            extra={"conversation_id": conversation_id, "tool_name": name, "reason_code": code.value},
        )

        content = format_response_for_llm(result.data) if success else (error or "Tool execution failed.")
        return StandardToolCallResult(
            success=success,
            name=name,
            error=error,
            execution_time_ms=result.execution_time_ms,
            reason_code=code,
        ), content
