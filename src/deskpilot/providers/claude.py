"""
Deskpilot Claude Provider

Wraps the Anthropic SDK (anthropic.AsyncAnthropic) behind the unified
LLMProvider interface. This is the default provider for tenants that
do not configure one.

OpenAI-style ``system`` messages inside the message list are lifted
into Anthropic's ``system`` parameter.
"""

from __future__ import annotations

from typing import Any

import anthropic

from deskpilot.providers.base import ContentBlock, LLMProvider, LLMResponse, ProviderConfig


class ClaudeProvider(LLMProvider):
    """Anthropic Claude provider via the official SDK.

    Falls back to the ANTHROPIC_API_KEY env var if no key is provided.
    """

    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    def __init__(
        self,
        config: ProviderConfig | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        super().__init__(config or ProviderConfig(
            model=self.DEFAULT_MODEL,
            input_cost_per_mtok=3.0,
            output_cost_per_mtok=15.0,
        ))
        self._client = client or anthropic.AsyncAnthropic(
            api_key=self._config.api_key or None,
            timeout=self._config.timeout_seconds,
        )

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        return self._client

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
        system_parts = [system] if system else []
        chat_messages = []
        for msg in messages:
            if msg.get("role") == "system":
                system_parts.append(str(msg.get("content", "")))
            else:
                chat_messages.append({"role": msg["role"], "content": msg.get("content", "")})

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": chat_messages,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if tools:
            kwargs["tools"] = tools
        if temperature is not None:
            kwargs["temperature"] = temperature

        response = await self._client.messages.create(**kwargs)
        return self._to_response(response)

    @staticmethod
    def _to_response(response: Any) -> LLMResponse:
        """Convert an Anthropic API response to LLMResponse."""
        blocks: list[ContentBlock] = []
        for block in response.content:
            if block.type == "text":
                blocks.append(ContentBlock(type="text", text=block.text))
            elif block.type == "tool_use":
                blocks.append(ContentBlock(
                    type="tool_use",
                    tool_name=block.name,
                    tool_input=block.input,
                    tool_use_id=block.id,
                ))

        return LLMResponse(
            content=blocks,
            stop_reason=response.stop_reason or "end_turn",
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    @classmethod
    def from_client(cls, client: anthropic.AsyncAnthropic, model: str | None = None) -> ClaudeProvider:
        config = ProviderConfig(model=model or cls.DEFAULT_MODEL)
        return cls(config=config, client=client)
