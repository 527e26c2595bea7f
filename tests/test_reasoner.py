"""Tests for the adaptive reasoner.

Each test scripts the LLM replies for one or more user turns and checks
the reply, the reason code and the audit trail.
"""

import json

import pytest
from conftest import assessed, chat

from deskpilot.config import EngineSettings
from deskpilot.core.models import PendingIntent, ReasonCode
from deskpilot.engine.orchestrator import confirmation_question, pending_intent_key
from deskpilot.engine.reasoner import (
    ESCALATION_RESPONSE,
    INTEGRATION_RESPONSE,
    MISSING_PARAMS_FALLBACK,
    AdaptiveReasoner,
    build_adaptive_system_prompt,
    build_missing_params_prompt,
)
from deskpilot.intent.hasher import generate_intent_hash

CONV = "conv-1"


def system_prompt_of(llm, call_index: int) -> str:
    messages = llm.chat.await_args_list[call_index].args[0]
    return messages[0]["content"]


# ─── Prompts ───────────────────────────────────────────────


class TestPrompts:
    def test_adaptive_prompt_lists_enabled_tools(self, client, tools, order_status_tool):
        disabled = order_status_tool.model_copy(update={"tool_name": "hidden_tool", "enabled": False})
        prompt = build_adaptive_system_prompt(client, [*tools, disabled])
        assert "Pizza Palace" in prompt
        assert '"tool_name": "cancel_order"' in prompt
        assert "hidden_tool" not in prompt
        assert "policies.returns" in prompt
        assert "<assessment>" in prompt

    def test_hebrew_and_custom_instructions(self, client):
        he_client = client.model_copy(update={
            "language": "he",
            "business_info": {"custom_instructions": "Always mention the weekly special."},
        })
        prompt = build_adaptive_system_prompt(he_client, [])
        assert "Always reply in Hebrew." in prompt
        assert "## Client-Specific Instructions\nAlways mention the weekly special." in prompt

    def test_missing_params_prompt(self):
        prompt = build_missing_params_prompt("book_appointment", ["customerName", "date"])
        assert "customerName, date" in prompt
        assert '"book_appointment"' in prompt


# ─── Plain turns ───────────────────────────────────────────


class TestConversationalTurns:
    @pytest.mark.asyncio
    async def test_plain_reply(self, reasoner, llm, client, tools, audit):
        llm.chat.return_value = chat(assessed("Hi! How can I help?", confidence=10, tool_call=None))
        turn = await reasoner.process_message(CONV, "hello", client, [], tools)

        assert turn.reason_code == ReasonCode.RESPONDED_SUCCESSFULLY
        assert turn.response == "Hi! How can I help?"
        assert not turn.tool_executed
        assert turn.reasoning_metrics.llm_calls == 1
        assert turn.reasoning_metrics.input_tokens == 100
        assert turn.reasoning_metrics.output_tokens == 20
        assert turn.reasoning_metrics.cost == pytest.approx(0.001)

        last = audit.get_entries(CONV)[-1]
        assert last.reason_code == ReasonCode.RESPONDED_SUCCESSFULLY
        assert last.metadata["scope"] == "turn"
        assert ReasonCode.ASSESSMENT_COMPLETED in audit.reason_codes(CONV)

    @pytest.mark.asyncio
    async def test_history_window(self, reasoner, llm, client, tools):
        llm.chat.return_value = chat(assessed("ok", confidence=10))
        history = [{"role": "user", "content": f"m{i}"} for i in range(10)]
        await reasoner.process_message(CONV, "latest", client, history, tools)
        messages = llm.chat.await_args.args[0]
        # system prompt + last 5 messages
        assert len(messages) == 6
        assert messages[-1] == {"role": "user", "content": "latest"}

    @pytest.mark.asyncio
    async def test_ask_user(self, reasoner, llm, client, tools):
        llm.chat.return_value = chat(assessed(
            "Let me check.", confidence=4, tool_call=None, ask_user="What is your order number?",
        ))
        turn = await reasoner.process_message(CONV, "where is my order", client, [], tools)
        assert turn.reason_code == ReasonCode.ASK_USER
        assert turn.response == "What is your order number?"

    @pytest.mark.asyncio
    async def test_parse_failure_uses_visible_text(self, reasoner, llm, client, tools, audit):
        llm.chat.return_value = chat("We open at 10am.")
        turn = await reasoner.process_message(CONV, "when do you open", client, [], tools)
        assert turn.reason_code == ReasonCode.ASSESSMENT_PARSE_FAILED
        assert turn.response == "We open at 10am."

    @pytest.mark.asyncio
    async def test_provider_failure_escalates(self, reasoner, llm, client, tools):
        llm.chat.side_effect = RuntimeError("provider down")
        turn = await reasoner.process_message(CONV, "hello", client, [], tools)
        assert turn.reason_code == ReasonCode.ESCALATED_TO_HUMAN
        assert turn.response == ESCALATION_RESPONSE


# ─── Tool turns ────────────────────────────────────────────


class TestToolTurns:
    @pytest.mark.asyncio
    async def test_read_only_tool_executes(self, reasoner, llm, client, tools, webhook):
        llm.chat.side_effect = [
            chat(assessed("Checking.", confidence=9, tool_call="get_order_status", tool_params={"orderId": "123"})),
            chat("Order 123 is out for delivery."),
        ]
        turn = await reasoner.process_message(CONV, "where is order 123?", client, [], tools)
        assert turn.reason_code == ReasonCode.EXECUTED_SUCCESSFULLY
        assert turn.response == "Order 123 is out for delivery."
        assert turn.tool_executed
        assert turn.tool_result == {"message": "Order cancelled", "orderId": "123"}
        webhook.execute.assert_awaited_once()
        # Assessment plus the result summary
        assert turn.reasoning_metrics.llm_calls == 2
        assert turn.reasoning_metrics.input_tokens == 200
        assert turn.reasoning_metrics.output_tokens == 40

    @pytest.mark.asyncio
    async def test_destructive_confirm_flow(self, reasoner, llm, client, tools, webhook, audit, store):
        llm.chat.side_effect = [
            chat(assessed("I'll cancel it.", confidence=9, tool_call="cancel_order", tool_params={"orderId": "123"})),
            chat("Done! Order 123 has been cancelled."),
        ]

        first = await reasoner.process_message(CONV, "Please cancel order 123", client, [], tools)
        assert first.reason_code == ReasonCode.DESTRUCTIVE_NO_CONFIRM
        assert first.response == confirmation_question("cancel_order", {"orderId": "123"})
        assert ReasonCode.IMPLIED_DESTRUCTIVE_INTENT in audit.reason_codes(CONV)
        webhook.execute.assert_not_awaited()

        second = await reasoner.process_message(CONV, "yes", client, [], tools)
        assert second.reason_code == ReasonCode.CONFIRMATION_RECEIVED
        assert second.tool_executed
        assert second.response == "Done! Order 123 has been cancelled."
        webhook.execute.assert_awaited_once()
        assert second.reasoning_metrics.llm_calls == 1
        assert await store.get(pending_intent_key(CONV)) is None

    @pytest.mark.asyncio
    async def test_implied_destructive_intent_flagged(self, reasoner, llm, client, tools, audit, webhook):
        # Model under-reports: it treats a "get rid of" request as a plain lookup
        llm.chat.return_value = chat(assessed(
            "Sure.", confidence=9, tool_call="get_order_status", tool_params={"orderId": "5"},
        ))
        turn = await reasoner.process_message(CONV, "I want to get rid of order 5", client, [], tools)
        assert turn.reason_code == ReasonCode.DESTRUCTIVE_NO_CONFIRM
        assert ReasonCode.IMPLIED_DESTRUCTIVE_INTENT in audit.reason_codes(CONV)
        webhook.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_yes_does_not_execute_twice(self, reasoner, llm, client, tools, webhook):
        llm.chat.side_effect = [
            chat(assessed("Cancelling.", confidence=9, tool_call="cancel_order", tool_params={"orderId": "1"})),
            chat("Cancelled."),
            chat(assessed("Anything else?", confidence=10)),
        ]
        await reasoner.process_message(CONV, "cancel order 1", client, [], tools)
        await reasoner.process_message(CONV, "yes", client, [], tools)
        third = await reasoner.process_message(CONV, "yes", client, [], tools)
        assert third.reason_code == ReasonCode.RESPONDED_SUCCESSFULLY
        assert webhook.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_confirmation_falls_through(self, reasoner, llm, client, tools, webhook, store, audit):
        stale = PendingIntent(
            tool="cancel_order",
            params={"orderId": "1"},
            hash=generate_intent_hash("cancel_order", {"orderId": "1"}),
            conversation_id=CONV,
            timestamp=0.0,
        )
        await store.set(pending_intent_key(CONV), stale.model_dump_json(), 300)
        llm.chat.return_value = chat(assessed("What would you like me to confirm?", confidence=10))

        turn = await reasoner.process_message(CONV, "yes", client, [], tools)
        assert turn.reason_code == ReasonCode.RESPONDED_SUCCESSFULLY
        assert ReasonCode.PENDING_INTENT_EXPIRED in audit.reason_codes(CONV)
        webhook.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_params_reprompt(self, reasoner, llm, client, tools, settings):
        llm.chat.side_effect = [
            chat(assessed("Let me check.", confidence=8, tool_call="get_order_status", tool_params={})),
            chat("Sure! What's your order number?"),
        ]
        turn = await reasoner.process_message(CONV, "where is my order", client, [], tools)
        assert turn.reason_code == ReasonCode.MISSING_PARAM
        assert turn.response == "Sure! What's your order number?"
        reprompt = llm.chat.await_args_list[1]
        assert reprompt.kwargs["max_tokens"] == settings.reprompt_max_tokens
        assert "orderId" in system_prompt_of(llm, 1)

    @pytest.mark.asyncio
    async def test_missing_params_reprompt_failure(self, reasoner, llm, client, tools):
        llm.chat.side_effect = [
            chat(assessed("Let me check.", confidence=8, tool_call="get_order_status", tool_params={})),
            RuntimeError("provider down"),
        ]
        turn = await reasoner.process_message(CONV, "where is my order", client, [], tools)
        assert turn.reason_code == ReasonCode.MISSING_PARAM
        assert turn.response == MISSING_PARAMS_FALLBACK

    @pytest.mark.asyncio
    async def test_integration_not_configured(self, reasoner, llm, client, tools):
        other = client.model_copy(update={"id": "client-2"})
        llm.chat.return_value = chat(assessed(
            "Booking.", confidence=9, tool_call="book_appointment",
            tool_params={"customerName": "Dana", "date": "2099-01-01"},
        ))
        turn = await reasoner.process_message(CONV, "book me in", other, [], tools)
        assert turn.reason_code == ReasonCode.INTEGRATION_NOT_CONFIGURED
        assert turn.response == INTEGRATION_RESPONSE


# ─── Context negotiation ───────────────────────────────────


class TestContextNegotiation:
    @pytest.mark.asyncio
    async def test_fetch_then_answer(self, reasoner, llm, client, tools, audit):
        llm.chat.side_effect = [
            chat(assessed("Let me check.", confidence=3, needs_more_context=["policies.returns"])),
            chat(assessed("You can get a refund within 14 days.", confidence=9)),
        ]
        turn = await reasoner.process_message(CONV, "what is your return policy?", client, [], tools)

        assert turn.reason_code == ReasonCode.RESPONDED_SUCCESSFULLY
        assert turn.response == "You can get a refund within 14 days."
        assert turn.reasoning_metrics.context_fetch_count == 1
        assert turn.reasoning_metrics.llm_calls == 2
        assert "Refunds within 14 days with receipt." in system_prompt_of(llm, 1)
        assert ReasonCode.CONTEXT_FETCHED in audit.reason_codes(CONV)

    @pytest.mark.asyncio
    async def test_loop_guard_injects_full_context(self, reasoner, llm, client, tools, audit):
        wants_more = chat(assessed("Checking.", confidence=3, needs_more_context=["contact.phone"]))
        llm.chat.side_effect = [
            wants_more,
            wants_more,
            wants_more,
            chat(assessed("Call us at 03-555-1234, we're open 10:00-22:00.", confidence=9)),
        ]
        turn = await reasoner.process_message(CONV, "how can I reach you?", client, [], tools)

        assert turn.response == "Call us at 03-555-1234, we're open 10:00-22:00."
        assert turn.reasoning_metrics.context_fetch_count == 2
        assert turn.reasoning_metrics.llm_calls == 4
        assert ReasonCode.CONTEXT_LOOP_DETECTED in audit.reason_codes(CONV)
        # Full document was injected on the final call
        assert "Family pizzeria since 1998." in system_prompt_of(llm, 3)

    @pytest.mark.asyncio
    async def test_unavailable_context_stops_fetching(self, reasoner, llm, client, tools):
        llm.chat.side_effect = [
            chat(assessed("Checking.", confidence=3, needs_more_context=["policies.privacy"])),
            chat(assessed("I don't have that information.", confidence=8, needs_more_context=["policies.privacy"])),
        ]
        turn = await reasoner.process_message(CONV, "privacy policy?", client, [], tools)
        assert turn.response == "I don't have that information."
        assert llm.chat.await_count == 2
        assert "## Context Not Available" in system_prompt_of(llm, 1)

    @pytest.mark.asyncio
    async def test_iteration_limit(self, llm, orchestrator, client, tools):
        reasoner = AdaptiveReasoner(llm, orchestrator, EngineSettings(max_iterations=2))
        llm.chat.return_value = chat(assessed("Still looking.", confidence=2, needs_more_context=["contact.phone"]))
        turn = await reasoner.process_message(CONV, "phone?", client, [], tools)
        assert turn.reason_code == ReasonCode.MAX_ITERATIONS_REACHED
        assert turn.response == "Still looking."
        assert llm.chat.await_count == 2


class TestAssessmentAudit:
    @pytest.mark.asyncio
    async def test_assessment_recorded_with_metadata(self, reasoner, llm, client, tools, audit):
        llm.chat.return_value = chat(assessed("Hi", confidence=7, reasoning="greeting"))
        await reasoner.process_message(CONV, "hi", client, [], tools)
        entry = audit.get_entries(CONV, reason_code=ReasonCode.ASSESSMENT_COMPLETED)[0]
        assert entry.event_type == "assessment"
        assert entry.content == "greeting"
        assert json.loads(json.dumps(entry.metadata))["confidence"] == 7
