"""
Deskpilot Adaptive Reasoner

One user turn in adaptive mode:

1. A bare confirmation ("yes", "ok", "כן") consumes the conversation's
   pending intent and executes it.
2. Otherwise the model answers with a visible reply plus an
   ``<assessment>`` block describing what it wants to do.
3. Requests for business context are served from the tenant's
   business info, at most ``max_context_fetches`` times, then the full
   document is injected once.
4. A tool decision goes through the orchestrator; missing parameters
   make the model phrase a natural follow-up question.

Every LLM call counts toward ``max_iterations`` for the turn.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from deskpilot.assessment.parser import AssessmentError, split_response, visible_response
from deskpilot.audit.reason_codes import Decision
from deskpilot.collaborators import LLMCollaborator
from deskpilot.config import EngineSettings
from deskpilot.context.fetcher import (
    ContextLoopGuard,
    build_context_block,
    fetch_context,
    fetch_full_context,
    format_context_for_prompt,
    valid_context_keys,
)
from deskpilot.core.models import (
    Assessment,
    Client,
    ClientTool,
    ReasonCode,
    ReasoningMetrics,
    TurnResult,
)
from deskpilot.engine.orchestrator import ExecutionOptions, ToolOrchestrator
from deskpilot.logging import get_logger
from deskpilot.policy.phrases import detect_implied_destructive_intent, is_confirmation

logger = get_logger("deskpilot.engine.reasoner")

MISSING_PARAMS_FALLBACK = (
    "I need some more information to help you. Could you please provide a few more details?"
)
ESCALATION_RESPONSE = (
    "I apologize, but I need to connect you with a team member who can better assist with "
    "this request. Someone will be with you shortly."
)
TOOL_FAILED_RESPONSE = (
    "I'm sorry, I couldn't complete that request right now. Please try again in a moment."
)
INTEGRATION_RESPONSE = (
    "I'm sorry, I can't do that right now because the service isn't fully set up yet. "
    "Please contact the business directly."
)
PLACEHOLDER_RESPONSE = "Could you share the exact details so I can complete this for you?"
BUSY_RESPONSE = "I'm already working on that request. It will be done in a moment."
MAX_ITERATIONS_RESPONSE = (
    "I'm sorry, I wasn't able to finish that request. Could you try rephrasing it?"
)
PARSE_FAILED_FALLBACK = "I'm sorry, could you rephrase that?"

ADAPTIVE_PROMPT_TEMPLATE = """You are a friendly customer support person for {client_name}. Keep responses SHORT (1-2 sentences) and reply in the customer's language.

## AVAILABLE TOOLS
{tools}

## SELF-ASSESSMENT
After your reply, ALWAYS append exactly one assessment block. The customer never sees it.

<assessment>
{{"confidence": 0-10, "tool_call": "tool_name" or null, "tool_params": {{}}, "ask_user": "question" or null, "needs_more_context": ["key"] or null, "is_destructive": false, "needs_confirmation": false, "missing_params": [], "reasoning": "short explanation"}}
</assessment>

## RULES
1. Call a tool only when the customer asks for an action or for data you don't already have.
2. Never make up parameter values. If a required parameter is missing, put the question in ask_user and list the parameter in missing_params.
3. Set is_destructive for anything that cancels, refunds or deletes.
4. If you need business information to answer, request it with needs_more_context using only these keys: {context_keys}.
5. One tool per turn maximum."""


def build_adaptive_system_prompt(client: Client, tools: list[ClientTool]) -> str:
    schemas = [t.to_prompt_schema() for t in tools if t.enabled]
    prompt = ADAPTIVE_PROMPT_TEMPLATE.format(
        client_name=client.name or "this business",
        tools=json.dumps(schemas, indent=2, ensure_ascii=False) if schemas else "None",
        context_keys=", ".join(valid_context_keys()),
    )
    if client.language == "he":
        prompt += "\n\n## LANGUAGE\nAlways reply in Hebrew."
    custom = (client.business_info or {}).get("custom_instructions")
    if custom:
        prompt += f"\n\n## Client-Specific Instructions\n{custom}"
    return prompt


def build_missing_params_prompt(tool_name: str, missing: list[str]) -> str:
    return (
        f'The tool "{tool_name}" requires additional information that the customer hasn\'t '
        f"provided yet. The following parameters are missing: {', '.join(missing)}. Please ask "
        "the customer for this information in a natural, friendly way in their language. Do not "
        "mention technical parameter names - ask naturally (e.g., instead of \"customerName\", "
        "ask \"What is your name?\")."
    )


class IterationLimitReached(Exception):
    """Internal signal: the turn used up its LLM call budget."""


@dataclass
class _Turn:
    conversation_id: str
    client: Client
    history: list[dict[str, Any]]
    metrics: ReasoningMetrics = field(default_factory=ReasoningMetrics)
    last_visible: str = ""


class AdaptiveReasoner:
    """Runs adaptive turns on top of a ToolOrchestrator."""

    def __init__(
        self,
        llm: LLMCollaborator,
        orchestrator: ToolOrchestrator,
        settings: EngineSettings | None = None,
    ):
        self._llm = llm
        self._orchestrator = orchestrator
        self._settings = settings or EngineSettings()
        self._emitter = orchestrator.emitter

    async def process_message(
        self,
        conversation_id: str,
        user_message: str,
        client: Client,
        history: list[dict[str, Any]] | None,
        tools: list[ClientTool],
    ) -> TurnResult:
        """Produce the assistant reply for one user message. Never raises."""
        recent = [*(history or []), {"role": "user", "content": user_message}]
        turn = _Turn(
            conversation_id=conversation_id,
            client=client,
            history=recent[-self._settings.context_message_count:],
        )
        extra = {"conversation_id": conversation_id, "client_id": client.id}

        try:
            code, response, executed, tool_result = await self._run(turn, user_message, tools)
        except IterationLimitReached:
            logger.warning("Iteration limit reached", extra=extra)
            code, response, executed, tool_result = (
                ReasonCode.MAX_ITERATIONS_REACHED,
                turn.last_visible or MAX_ITERATIONS_RESPONSE,
                False,
                None,
            )
        except Exception:
            logger.exception("Adaptive turn failed, escalating", extra=extra)
            code, response, executed, tool_result = (
                ReasonCode.ESCALATED_TO_HUMAN, ESCALATION_RESPONSE, False, None,
            )

        try:
            await self._emitter.emit(
                Decision(conversation_id, label="turn"),
                code,
                content=response,
                metadata={"scope": "turn", "tool_executed": executed},
            )
        except Exception:
            logger.exception("Failed to record turn decision", extra=extra)

        logger.info("Turn finished: %s", code.value, extra={**extra, "reason_code": code.value})
        return TurnResult(
            response=response,
            tool_executed=executed,
            tool_result=tool_result,
            reason_code=code,
            reasoning_metrics=turn.metrics,
        )

    # ─── Turn steps ──────────────────────────────────────────

    async def _run(
        self,
        turn: _Turn,
        user_message: str,
        tools: list[ClientTool],
    ) -> tuple[ReasonCode, str, bool, Any]:
        language = turn.client.language or "en"

        if is_confirmation(user_message, language):
            confirmed = await self._handle_confirmation(turn, tools)
            if confirmed is not None:
                return confirmed

        system_prompt = build_adaptive_system_prompt(turn.client, tools)
        visible, assessment = await self._assess(turn, system_prompt)
        if assessment is None:
            return ReasonCode.ASSESSMENT_PARSE_FAILED, visible or PARSE_FAILED_FALLBACK, False, None

        visible, assessment = await self._negotiate_context(turn, system_prompt, visible, assessment)
        if assessment is None:
            return ReasonCode.ASSESSMENT_PARSE_FAILED, visible or PARSE_FAILED_FALLBACK, False, None

        if assessment.tool_call:
            return await self._run_tool(turn, user_message, language, visible, assessment, tools)

        if assessment.ask_user:
            return ReasonCode.ASK_USER, assessment.ask_user, False, None

        return ReasonCode.RESPONDED_SUCCESSFULLY, visible or PARSE_FAILED_FALLBACK, False, None

    async def _handle_confirmation(
        self, turn: _Turn, tools: list[ClientTool],
    ) -> tuple[ReasonCode, str, bool, Any] | None:
        pending = await self._orchestrator.take_pending_intent(turn.conversation_id)
        if pending is None:
            return None
        if self._orchestrator.is_intent_expired(pending):
            await self._emitter.record(
                turn.conversation_id,
                ReasonCode.PENDING_INTENT_EXPIRED,
                metadata={"tool_name": pending.tool, "age_seconds": round(pending.age_seconds(), 1)},
            )
            return None

        await self._emitter.record(
            turn.conversation_id,
            ReasonCode.CONFIRMATION_RECEIVED,
            metadata={"tool_name": pending.tool, "intent_hash": pending.hash},
        )
        result = await self._orchestrator.execute_tool(
            Assessment(confidence=10, tool_call=pending.tool, tool_params=pending.params),
            turn.conversation_id,
            turn.client.id,
            tools,
            ExecutionOptions(
                client=turn.client, history=turn.history, confirmed_intent=pending, metrics=turn.metrics,
            ),
        )
        response = (
            result.final_response if result.executed and result.final_response
            else f"I encountered an error: {result.error}"
        )
        return ReasonCode.CONFIRMATION_RECEIVED, response, result.executed, result.result

    async def _chat(self, turn: _Turn, system_prompt: str, max_tokens: int | None = None) -> str:
        if turn.metrics.llm_calls >= self._settings.max_iterations:
            raise IterationLimitReached()
        turn.metrics.llm_calls += 1
        reply = await self._llm.chat(
            [{"role": "system", "content": system_prompt}, *turn.history],
            max_tokens=max_tokens or self._settings.default_max_tokens,
            temperature=self._settings.default_temperature,
            provider=turn.client.llm_provider,
            model=turn.client.model_name,
        )
        turn.metrics.input_tokens += reply.tokens.input
        turn.metrics.output_tokens += reply.tokens.output
        turn.metrics.cost += reply.cost
        return reply.content or ""

    async def _assess(self, turn: _Turn, system_prompt: str) -> tuple[str, Assessment | None]:
        content = await self._chat(turn, system_prompt)
        visible, parsed = split_response(content)
        turn.last_visible = visible or turn.last_visible

        if isinstance(parsed, AssessmentError):
            await self._emitter.record(
                turn.conversation_id,
                ReasonCode.ASSESSMENT_PARSE_FAILED,
                content=parsed.reason,
                metadata={"raw": parsed.raw[:500]},
            )
            logger.warning(
                "Assessment parse failed: %s", parsed.reason,
                extra={"conversation_id": turn.conversation_id},
            )
            return visible, None

        assessment = parsed.assessment
        await self._emitter.record(
            turn.conversation_id,
            ReasonCode.ASSESSMENT_COMPLETED,
            content=assessment.reasoning,
            metadata=assessment.model_dump(),
            event_type="assessment",
        )
        return visible, assessment

    async def _negotiate_context(
        self,
        turn: _Turn,
        system_prompt: str,
        visible: str,
        assessment: Assessment,
    ) -> tuple[str, Assessment | None]:
        guard = ContextLoopGuard(self._settings.max_context_fetches)
        client = turn.client
        injected = ""

        while assessment is not None and assessment.wants_context:
            if not guard.allow_fetch():
                injected += format_context_for_prompt({"all": fetch_full_context(client)}, client.name)
                await self._emitter.record(
                    turn.conversation_id,
                    ReasonCode.CONTEXT_LOOP_DETECTED,
                    content="Context fetch limit reached - loaded full context",
                    metadata={"requested": assessment.context_fetch},
                )
                visible, assessment = await self._assess(turn, system_prompt + injected)
                break

            requested = assessment.context_fetch or []
            result = fetch_context(client, requested)
            injected += build_context_block(result, client.name)
            await self._emitter.record(
                turn.conversation_id,
                ReasonCode.CONTEXT_FETCHED,
                content=(
                    f"Context fetched (attempt {guard.count}): requested={', '.join(requested)}, "
                    f"found={', '.join(result.context) or 'none'}, missing={', '.join(result.missing) or 'none'}"
                ),
                metadata={"requested": requested, "fetched": list(result.context), "missing": result.missing},
            )
            visible, assessment = await self._assess(turn, system_prompt + injected)

            if result.missing and not result.found_any:
                # Model has been told nothing is available; stop asking
                break

        turn.metrics.context_fetch_count = guard.count
        return visible, assessment

    async def _run_tool(
        self,
        turn: _Turn,
        user_message: str,
        language: str,
        visible: str,
        assessment: Assessment,
        tools: list[ClientTool],
    ) -> tuple[ReasonCode, str, bool, Any]:
        if not assessment.is_destructive and detect_implied_destructive_intent(user_message, language):
            assessment = assessment.model_copy(update={"is_destructive": True})
            await self._emitter.record(
                turn.conversation_id,
                ReasonCode.IMPLIED_DESTRUCTIVE_INTENT,
                metadata={"tool_name": assessment.tool_call},
            )

        result = await self._orchestrator.execute_tool(
            assessment,
            turn.conversation_id,
            turn.client.id,
            tools,
            ExecutionOptions(client=turn.client, history=turn.history, metrics=turn.metrics),
        )
        code = result.reason_code or ReasonCode.TOOL_FAILED

        if code == ReasonCode.MISSING_PARAM:
            return code, await self._ask_for_missing(turn, assessment.tool_call, result.missing_params), False, None

        if result.executed:
            return code, result.final_response or visible, True, result.result

        if result.busy:
            return code, BUSY_RESPONSE, False, None

        if result.final_response:
            # confirmation question, low confidence, unknown tool
            return code, result.final_response, False, None

        if code == ReasonCode.INTEGRATION_NOT_CONFIGURED:
            return code, INTEGRATION_RESPONSE, False, None

        if code == ReasonCode.PLACEHOLDER_DETECTED:
            return code, assessment.ask_user or PLACEHOLDER_RESPONSE, False, None

        return code, TOOL_FAILED_RESPONSE, False, None

    async def _ask_for_missing(self, turn: _Turn, tool_name: str, missing: list[str]) -> str:
        try:
            content = await self._chat(
                turn,
                build_missing_params_prompt(tool_name, missing),
                max_tokens=self._settings.reprompt_max_tokens,
            )
        except IterationLimitReached:
            raise
        except Exception as e:
            logger.warning(
                "Missing-params reprompt failed: %s", e,
                extra={"conversation_id": turn.conversation_id, "tool_name": tool_name},
            )
            return MISSING_PARAMS_FALLBACK
        return visible_response(content).strip() or MISSING_PARAMS_FALLBACK
