"""
Deskpilot External Collaborators

Interfaces of the services the engine consumes but does not own:
the LLM, the tool webhooks, the integration credential store, the
audit/message log and the execution history.

Concrete implementations:
- ProviderChatAdapter (here): LLMCollaborator over any LLMProvider
- HttpToolWebhook (deskpilot.webhooks.client)
- StaticCredentialResolver (deskpilot.integrations.resolver)
- AuditTrail, LoggingAuditSink (deskpilot.audit.trail)
- InMemory/SqlExecutionRepository (deskpilot.storage.executions)
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from deskpilot.core.models import AuditEntry
from deskpilot.exceptions import ProviderError
from deskpilot.logging import get_logger
from deskpilot.providers.base import LLMProvider

logger = get_logger("deskpilot.collaborators")


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


class ChatResult(BaseModel):
    """Reply of one LLM chat call."""
    content: str = ""
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0


class WebhookResult(BaseModel):
    """Outcome of one webhook invocation."""
    success: bool = False
    data: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0
    blocked: bool = False
    timed_out: bool = False
    status_code: int | None = None


# ─── Protocols ───────────────────────────────────────────────

@runtime_checkable
class LLMCollaborator(Protocol):
    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        provider: str | None = None,
        model: str | None = None,
    ) -> ChatResult:
        ...


@runtime_checkable
class ToolWebhook(Protocol):
    async def execute(
        self,
        url: str,
        params: dict[str, Any],
        credentials: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> WebhookResult:
        ...


@runtime_checkable
class CredentialResolver(Protocol):
    async def resolve(
        self,
        client_id: str,
        mapping: dict[str, str],
        required: list[str],
    ) -> dict[str, Any]:
        """Return credentials keyed by integration key. Raises IntegrationError."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    async def append(self, entry: AuditEntry) -> Any:
        ...


# ─── Provider adapter ────────────────────────────────────────

class ProviderChatAdapter:
    """LLMCollaborator backed by LLMProvider instances.

    A tenant may name its own provider/model; unknown names fall back to
    the default provider.
    """

    def __init__(
        self,
        provider: LLMProvider,
        providers: dict[str, LLMProvider] | None = None,
        timeout_seconds: float | None = None,
    ):
        self._default = provider
        self._providers = {k.lower(): v for k, v in (providers or {}).items()}
        self._timeout = timeout_seconds

    def _select(self, provider: str | None) -> LLMProvider:
        if provider and provider.lower() in self._providers:
            return self._providers[provider.lower()]
        return self._default

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int = 2048,
        temperature: float = 0.3,
        provider: str | None = None,
        model: str | None = None,
    ) -> ChatResult:
        selected = self._select(provider)
        system_parts = [str(m.get("content", "")) for m in messages if m.get("role") == "system"]
        chat_messages = [m for m in messages if m.get("role") != "system"]
        if not chat_messages:
            # Anthropic requires at least one user turn
            chat_messages = [{"role": "user", "content": "Please continue."}]

        call = selected.create_message(
            chat_messages,
            max_tokens=max_tokens,
            system="\n\n".join(system_parts) or None,
            temperature=temperature,
            model=model,
        )
        try:
            if self._timeout is not None:
                response = await asyncio.wait_for(call, timeout=self._timeout)
            else:
                response = await call
        except asyncio.TimeoutError as e:
            raise ProviderError(selected.name, f"timed out after {self._timeout}s") from e

        return ChatResult(
            content=response.text,
            tokens=TokenUsage(input=response.input_tokens, output=response.output_tokens),
            cost=selected.estimate_cost(response.input_tokens, response.output_tokens),
        )
