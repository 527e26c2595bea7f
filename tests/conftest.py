"""Shared fixtures for Deskpilot tests."""

import json
from unittest.mock import AsyncMock

import pytest

from deskpilot.audit.trail import AuditTrail
from deskpilot.collaborators import ChatResult, TokenUsage, WebhookResult
from deskpilot.config import EngineSettings
from deskpilot.core.models import Client, ClientTool, Conversation
from deskpilot.engine.orchestrator import ToolOrchestrator
from deskpilot.engine.reasoner import AdaptiveReasoner
from deskpilot.integrations.resolver import StaticCredentialResolver
from deskpilot.storage.executions import InMemoryExecutionRepository
from deskpilot.storage.shared import InMemorySharedStore


def chat(content: str, input_tokens: int = 100, output_tokens: int = 20, cost: float = 0.001) -> ChatResult:
    """Build a ChatResult as returned by the LLM collaborator."""
    return ChatResult(content=content, tokens=TokenUsage(input=input_tokens, output=output_tokens), cost=cost)


def assessed(visible: str, **fields) -> str:
    """An LLM reply with a visible part and an assessment block."""
    return f"{visible}\n<assessment>{json.dumps(fields)}</assessment>"


@pytest.fixture
def settings():
    return EngineSettings(
        webhook_timeout_seconds=1.0,
        webhook_max_retries=1,
        webhook_retry_base_delay=0.0,
        credential_timeout_seconds=1.0,
    )


@pytest.fixture
def client():
    return Client(
        id="client-1",
        name="Pizza Palace",
        language="en",
        business_info={
            "contact": {"phone": "03-555-1234", "email": "hello@pizzapalace.co.il", "hours": "10:00-22:00"},
            "policies": {"returns": "Refunds within 14 days with receipt."},
            "about": {"description": "Family pizzeria since 1998."},
        },
    )


@pytest.fixture
def conversation(client):
    return Conversation(id="conv-1", client_id=client.id)


@pytest.fixture
def cancel_order_tool():
    return ClientTool(
        tool_name="cancel_order",
        description="Cancel an existing order",
        parameters_schema={
            "type": "object",
            "properties": {"orderId": {"type": "string"}, "reason": {"type": "string"}},
            "required": ["orderId"],
        },
        webhook_url="webhook/cancel-order",
    )


@pytest.fixture
def order_status_tool():
    return ClientTool(
        tool_name="get_order_status",
        description="Look up an order",
        parameters_schema={
            "type": "object",
            "properties": {"orderId": {"type": "string"}},
            "required": ["orderId"],
        },
        webhook_url="webhook/order-status",
    )


@pytest.fixture
def booking_tool():
    return ClientTool(
        tool_name="book_appointment",
        description="Book an appointment",
        parameters_schema={
            "type": "object",
            "properties": {
                "customerName": {"type": "string"},
                "date": {"type": "string"},
                "guests": {"type": "integer"},
            },
            "required": ["customerName", "date"],
        },
        webhook_url="webhook/book",
        required_integrations=["booking_api"],
        integration_mapping={"booking_api": "calendly"},
    )


@pytest.fixture
def tools(cancel_order_tool, order_status_tool, booking_tool):
    return [cancel_order_tool, order_status_tool, booking_tool]


@pytest.fixture
def store():
    return InMemorySharedStore()


@pytest.fixture
def executions():
    return InMemoryExecutionRepository()


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture
def credentials():
    return StaticCredentialResolver({
        "client-1": {"calendly": {"api_url": "https://api.calendly.com", "api_key": "ck-1"}},
    })


@pytest.fixture
def llm():
    """LLM collaborator; tests set ``return_value`` or ``side_effect``."""
    mock = AsyncMock()
    mock.chat = AsyncMock(return_value=chat("Your order is on its way."))
    return mock


@pytest.fixture
def webhook():
    mock = AsyncMock()
    mock.execute = AsyncMock(return_value=WebhookResult(
        success=True,
        data={"message": "Order cancelled", "orderId": "123"},
        execution_time_ms=42.0,
        status_code=200,
    ))
    return mock


@pytest.fixture
def orchestrator(llm, webhook, credentials, executions, store, audit, settings):
    return ToolOrchestrator(
        llm=llm,
        webhook=webhook,
        credentials=credentials,
        executions=executions,
        store=store,
        audit=audit,
        settings=settings,
    )


@pytest.fixture
def reasoner(llm, orchestrator, settings):
    return AdaptiveReasoner(llm, orchestrator, settings)
