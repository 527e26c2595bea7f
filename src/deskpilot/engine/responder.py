"""
Deskpilot Tool Result Responder

After a successful execution the model is asked, in a constrained
prompt that contains only the tool name, parameters and result, to tell
the customer what happened. Any failure falls back to the templated
summary so raw JSON never reaches the end user.
"""

from __future__ import annotations

import json
from typing import Any

from deskpilot.collaborators import LLMCollaborator
from deskpilot.core.models import Client, ReasoningMetrics
from deskpilot.engine.formatting import basic_format_tool_result
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.engine.responder")

HISTORY_MESSAGES = 3

RESULT_PROMPT_TEMPLATE = """You are a helpful customer service assistant. A tool was just executed and you need to communicate the result to the customer in a natural, friendly way in their language.

Tool executed: {tool_name}
Parameters used: {params}

Tool result:
{result}

Instructions:
1. Summarize the result naturally for the customer
2. Do NOT expose raw data, JSON, or technical details
3. Use the customer's language (match the language from the conversation)
4. Be concise but complete
5. If the result indicates success, confirm it clearly
6. If the result indicates an error or issue, explain it helpfully"""


def build_result_prompt(tool_name: str, params: dict[str, Any], result: Any) -> str:
    return RESULT_PROMPT_TEMPLATE.format(
        tool_name=tool_name,
        params=json.dumps(params, indent=2, ensure_ascii=False, default=str),
        result=json.dumps(result, indent=2, ensure_ascii=False, default=str),
    )


async def generate_tool_result_response(
    llm: LLMCollaborator,
    tool_name: str,
    params: dict[str, Any],
    result: Any,
    client: Client,
    history: list[dict[str, Any]] | None = None,
    *,
    max_tokens: int = 512,
    temperature: float = 0.3,
    metrics: ReasoningMetrics | None = None,
) -> str:
    """Natural-language summary of a tool result, with a templated fallback.

    When ``metrics`` is given the call and its usage are added to it.
    """
    messages = [
        {"role": "system", "content": build_result_prompt(tool_name, params, result)},
        *(history or [])[-HISTORY_MESSAGES:],
    ]
    if metrics is not None:
        metrics.llm_calls += 1
    try:
        reply = await llm.chat(
            messages,
            max_tokens=max_tokens,
            temperature=temperature,
            provider=client.llm_provider,
            model=client.model_name,
        )
    except Exception as e:
        logger.warning(
            "Result summary failed, using template: %s",
            e,
            extra={"tool_name": tool_name, "client_id": client.id},
        )
        return basic_format_tool_result(result)

    if metrics is not None:
        metrics.input_tokens += reply.tokens.input
        metrics.output_tokens += reply.tokens.output
        metrics.cost += reply.cost

    content = (reply.content or "").strip()
    return content or basic_format_tool_result(result)
