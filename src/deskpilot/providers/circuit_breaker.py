"""
Deskpilot Circuit Breaker

Wraps a provider so a failing LLM backend fails fast instead of
holding every conversation for the full retry budget.

States:
- CLOSED: normal operation
- OPEN: provider failing, calls rejected immediately
- HALF_OPEN: cooldown elapsed, next call is a trial call

Transitions:
- CLOSED → OPEN after N consecutive failures
- OPEN → HALF_OPEN after the recovery timeout
- HALF_OPEN → CLOSED on success, → OPEN on failure
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any

from deskpilot.exceptions import ProviderError
from deskpilot.logging import get_logger
from deskpilot.providers.base import LLMProvider, LLMResponse, ProviderConfig

logger = get_logger("deskpilot.providers")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerProvider(LLMProvider):
    """LLM provider with circuit breaker protection."""

    def __init__(
        self,
        provider: LLMProvider,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        config: ProviderConfig | None = None,
    ):
        super().__init__(config or provider.config)
        self._provider = provider
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self._recovery_timeout:
                return CircuitState.HALF_OPEN
        return self._state

    @property
    def wrapped_provider(self) -> LLMProvider:
        return self._provider

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return self._provider.estimate_cost(input_tokens, output_tokens)

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
        async with self._lock:
            if self.state == CircuitState.OPEN:
                raise ProviderError(
                    self._provider.name,
                    f"circuit open after {self._failure_count} failures, "
                    f"cooldown {self._recovery_timeout}s",
                )

        try:
            response = await self._provider._create_message_impl(
                messages,
                model=model,
                max_tokens=max_tokens,
                system=system,
                tools=tools,
                temperature=temperature,
            )
        except Exception:
            async with self._lock:
                self._failure_count += 1
                self._last_failure_time = time.monotonic()
                if self._failure_count >= self._failure_threshold:
                    if self._state != CircuitState.OPEN:
                        logger.warning("Circuit opened", extra={"provider": self._provider.name})
                    self._state = CircuitState.OPEN
            raise

        async with self._lock:
            self._failure_count = 0
            self._state = CircuitState.CLOSED
        return response

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
