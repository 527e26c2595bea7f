"""
Deskpilot LLM Provider Base

Abstract interface for LLM providers. Every tenant picks its own
provider and model, so the engine only ever talks to this interface.

Key design decisions:
- Async-first
- Retry with exponential backoff built into the base class
- Each attempt bounded by ``timeout_seconds``
- Provider-agnostic response model (LLMResponse)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from deskpilot.exceptions import ProviderError
from deskpilot.logging import get_logger

logger = get_logger("deskpilot.providers")


class ContentBlock(BaseModel):
    """A single content block in an LLM response."""
    type: str = "text"  # "text" or "tool_use"
    text: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)
    tool_use_id: str = ""


class LLMResponse(BaseModel):
    """Unified response from any LLM provider."""
    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str = "end_turn"
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if b.type == "text")

    @property
    def tool_calls(self) -> list[ContentBlock]:
        return [b for b in self.content if b.type == "tool_use"]


class ProviderConfig(BaseModel):
    """Configuration for an LLM provider."""
    api_key: str | None = None
    model: str = ""
    base_url: str | None = None
    max_retries: int = 3
    timeout_seconds: float = 60.0
    retry_base_delay: float = 1.0  # exponential backoff base (1s, 2s, 4s)
    # USD per million tokens, used for per-call cost reporting
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Subclasses implement ``_create_message_impl``; the base class wraps
    it with a per-attempt deadline and retry with exponential backoff.
    """

    def __init__(self, config: ProviderConfig | None = None):
        self._config = config or ProviderConfig()

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self._config.input_cost_per_mtok
            + output_tokens * self._config.output_cost_per_mtok
        ) / 1_000_000

    @abstractmethod
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
        ...

    async def create_message(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int = 2048,
        system: str | None = None,
        tools: list[dict] | None = None,
        temperature: float | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Create a message with a deadline per attempt and retry with backoff.

        Raises:
            ProviderError: after every attempt failed.
        """
        last_error: Exception | None = None
        for attempt in range(self._config.max_retries):
            try:
                return await asyncio.wait_for(
                    self._create_message_impl(
                        messages,
                        model=model or self._config.model,
                        max_tokens=max_tokens,
                        system=system,
                        tools=tools,
                        temperature=temperature,
                    ),
                    timeout=self._config.timeout_seconds,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "LLM call failed (attempt %d/%d): %s",
                    attempt + 1, self._config.max_retries, e,
                    extra={"provider": self.name},
                )
                if attempt < self._config.max_retries - 1:
                    await asyncio.sleep(self._config.retry_base_delay * (2 ** attempt))

        raise ProviderError(
            self.name,
            f"failed after {self._config.max_retries} attempts: {last_error}",
        ) from last_error
