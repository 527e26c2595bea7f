"""
Deskpilot OpenAI Provider

Wraps the OpenAI chat completions API behind the unified LLMProvider
interface. Also works with OpenAI-compatible APIs (Azure, Groq,
Together...) via ``base_url``.

Requires: ``pip install 'deskpilot[openai]'``
"""

from __future__ import annotations

import json
from typing import Any

from deskpilot.providers.base import ContentBlock, LLMProvider, LLMResponse, ProviderConfig

_STOP_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
    "content_filter": "end_turn",
}


class OpenAIProvider(LLMProvider):
    """OpenAI and OpenAI-compatible provider."""

    DEFAULT_MODEL = "gpt-4o"

    def __init__(self, config: ProviderConfig | None = None, client: Any = None):
        super().__init__(config or ProviderConfig(
            model=self.DEFAULT_MODEL,
            input_cost_per_mtok=2.5,
            output_cost_per_mtok=10.0,
        ))
        self._client = client or self._create_client()

    def _create_client(self) -> Any:
        """Create the OpenAI async client. Imports openai lazily."""
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise ImportError(
                "OpenAI provider requires the 'openai' package. Install with: pip install 'deskpilot[openai]'"
            ) from e

        kwargs: dict[str, Any] = {"timeout": self._config.timeout_seconds}
        if self._config.api_key:
            kwargs["api_key"] = self._config.api_key
        if self._config.base_url:
            kwargs["base_url"] = self._config.base_url
        return AsyncOpenAI(**kwargs)

    async def _create_message_impl(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        max_tokens: int = 2048,
        system: str | None = None,
        tools: list[dict] | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        oai_messages: list[dict[str, Any]] = []
        if system:
            oai_messages.append({"role": "system", "content": system})
        oai_messages.extend(messages)

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": oai_messages,
        }
        if tools:
            kwargs["tools"] = self._convert_tools(tools)
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self._client.chat.completions.create(**kwargs)
        return self._to_response(response)

    @staticmethod
    def _convert_tools(tools: list[dict]) -> list[dict]:
        """Anthropic-style tool schema → OpenAI function calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {}),
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _to_response(response: Any) -> LLMResponse:
        choice = response.choices[0] if response.choices else None
        if not choice:
            return LLMResponse()

        blocks: list[ContentBlock] = []
        msg = choice.message
        if msg.content:
            blocks.append(ContentBlock(type="text", text=msg.content))
        for tc in msg.tool_calls or []:
            blocks.append(ContentBlock(
                type="tool_use",
                tool_name=tc.function.name,
                tool_input=json.loads(tc.function.arguments or "{}"),
                tool_use_id=tc.id,
            ))

        usage = response.usage
        return LLMResponse(
            content=blocks,
            stop_reason=_STOP_REASONS.get(choice.finish_reason or "stop", "end_turn"),
            model=response.model or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
