"""Deskpilot quickstart: one support turn against a tenant's tools.

Needs ANTHROPIC_API_KEY and a webhook runner at DESKPILOT_WEBHOOK_BASE_URL.
"""

from deskpilot import Client, ClientTool, Deskpilot, EngineSettings

client = Client(
    id="pizza-palace",
    name="Pizza Palace",
    business_info={"contact": {"phone": "03-555-1234", "hours": "10:00-22:00"}},
)
tools = [
    ClientTool(
        tool_name="get_order_status",
        description="Look up an order by its id",
        parameters_schema={
            "type": "object",
            "properties": {"orderId": {"type": "string"}},
            "required": ["orderId"],
        },
        webhook_url="webhook/order-status",
    ),
]

engine = Deskpilot(EngineSettings.from_env())
turn = engine.process_message_sync("demo-1", "Where is order 123?", client, [], tools)

print(f"Reason: {turn.reason_code.value}")
print(f"Tool executed: {turn.tool_executed}")
print(f"LLM calls: {turn.reasoning_metrics.llm_calls}")
print(f"\n{turn.response}")
