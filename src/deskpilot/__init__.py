"""
Deskpilot: Tool Execution & Adaptive Reasoning Engine

Turns an LLM's self-assessment into a safely executed webhook call,
with risk policies, confirmation handshakes for destructive actions,
duplicate/concurrency suppression and bounded context negotiation.

Usage:
    from deskpilot import Deskpilot

    engine = Deskpilot()
    turn = await engine.process_message(
        conversation_id="c-1",
        user_message="Please cancel order 123",
        client=client,
        history=[],
        tools=tools,
    )

    # Shared state in Redis, execution history in PostgreSQL:
    engine = Deskpilot(settings=EngineSettings(
        redis_url="redis://localhost:6379/0",
        database_url="postgresql://localhost/deskpilot",
    ))
"""

from __future__ import annotations

import asyncio
from typing import Any

from deskpilot.assessment.parser import AssessmentError, AssessmentOk, parse_assessment
from deskpilot.audit.trail import AuditTrail
from deskpilot.collaborators import (
    AuditSink,
    CredentialResolver,
    LLMCollaborator,
    ProviderChatAdapter,
    ToolWebhook,
)
from deskpilot.config import EngineSettings
from deskpilot.core.models import (
    Assessment,
    Client,
    ClientTool,
    Conversation,
    ReasonCode,
    StandardToolCallResult,
    ToolCall,
    ToolExecutionResult,
    TurnResult,
)
from deskpilot.engine.orchestrator import ExecutionOptions, ToolOrchestrator
from deskpilot.engine.reasoner import AdaptiveReasoner
from deskpilot.integrations.resolver import StaticCredentialResolver
from deskpilot.policy.tool_policies import ToolPolicyEngine
from deskpilot.storage.executions import (
    ExecutionRepository,
    InMemoryExecutionRepository,
    SqlExecutionRepository,
)
from deskpilot.storage.shared import InMemorySharedStore, RedisSharedStore, SharedStore
from deskpilot.webhooks.client import HttpToolWebhook

__version__ = "0.1.0"

__all__ = [
    # Main API
    "Deskpilot",
    "__version__",
    # Config
    "EngineSettings",
    # Models
    "Assessment",
    "Client",
    "ClientTool",
    "Conversation",
    "ReasonCode",
    "StandardToolCallResult",
    "ToolCall",
    "ToolExecutionResult",
    "TurnResult",
    # Parsing
    "AssessmentError",
    "AssessmentOk",
    "parse_assessment",
    # Engine
    "AdaptiveReasoner",
    "ExecutionOptions",
    "ToolOrchestrator",
    "ToolPolicyEngine",
    # Collaborators
    "AuditTrail",
    "HttpToolWebhook",
    "ProviderChatAdapter",
    "StaticCredentialResolver",
    # Storage
    "InMemoryExecutionRepository",
    "InMemorySharedStore",
    "RedisSharedStore",
    "SqlExecutionRepository",
]


class Deskpilot:
    """Wires the engine from EngineSettings. This is the public API.

    Every collaborator can be injected; anything left out is built from
    settings:
    - shared store: Redis when ``redis_url`` is set, else in-process
    - execution history: SQL (sqlite/postgres) via ``database_url``
    - LLM: Claude through ProviderChatAdapter
    - webhooks: HttpToolWebhook against ``webhook_base_url``
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        llm: LLMCollaborator | None = None,
        webhook: ToolWebhook | None = None,
        credentials: CredentialResolver | None = None,
        executions: ExecutionRepository | None = None,
        store: SharedStore | None = None,
        audit: AuditSink | None = None,
        policies: ToolPolicyEngine | None = None,
        api_key: str | None = None,
    ):
        self.settings = settings or EngineSettings()
        s = self.settings

        if llm is None:
            from deskpilot.providers import create_provider
            llm = ProviderChatAdapter(
                create_provider("claude", api_key=api_key, timeout_seconds=s.llm_timeout_seconds),
                timeout_seconds=s.llm_timeout_seconds,
            )
        if store is None:
            store = RedisSharedStore.from_url(s.redis_url) if s.redis_url else InMemorySharedStore()
        if executions is None:
            executions = SqlExecutionRepository(s.database_url)

        self._llm = llm
        self._store = store
        self._executions = executions
        self._webhook = webhook or HttpToolWebhook(
            s.webhook_base_url,
            timeout=s.webhook_timeout_seconds,
            max_attempts=s.webhook_max_retries,
            retry_base_delay=s.webhook_retry_base_delay,
        )
        self.audit = audit if audit is not None else AuditTrail()
        self.orchestrator = ToolOrchestrator(
            llm=self._llm,
            webhook=self._webhook,
            credentials=credentials or StaticCredentialResolver(),
            executions=self._executions,
            store=self._store,
            audit=self.audit,
            policies=policies,
            settings=s,
        )
        self.reasoner = AdaptiveReasoner(self._llm, self.orchestrator, s)

    @property
    def executions(self) -> ExecutionRepository:
        return self._executions

    async def process_message(
        self,
        conversation_id: str,
        user_message: str,
        client: Client,
        history: list[dict[str, Any]] | None,
        tools: list[ClientTool],
    ) -> TurnResult:
        return await self.reasoner.process_message(conversation_id, user_message, client, history, tools)

    async def execute_tool(
        self,
        assessment: Assessment,
        conversation_id: str,
        client_id: str,
        tools: list[ClientTool],
        options: ExecutionOptions | None = None,
    ) -> ToolExecutionResult:
        return await self.orchestrator.execute_tool(assessment, conversation_id, client_id, tools, options)

    async def execute_standard_tool_call(
        self,
        tool_call: ToolCall,
        client: Client,
        conversation: Conversation,
        messages: list[dict[str, Any]],
        tools: list[ClientTool],
    ) -> StandardToolCallResult:
        return await self.orchestrator.execute_standard_tool_call(
            tool_call, client, conversation, messages, tools,
        )

    async def close(self) -> None:
        """Release network clients and database handles."""
        await self._store.close()
        if isinstance(self._webhook, HttpToolWebhook):
            await self._webhook.aclose()
        if isinstance(self._executions, SqlExecutionRepository):
            self._executions.close()

    def process_message_sync(
        self,
        conversation_id: str,
        user_message: str,
        client: Client,
        history: list[dict[str, Any]] | None,
        tools: list[ClientTool],
    ) -> TurnResult:
        """Synchronous wrapper for process_message(). Convenience for scripts."""
        return asyncio.run(self.process_message(conversation_id, user_message, client, history, tools))
