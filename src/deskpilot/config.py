"""
Deskpilot Engine Configuration

Runtime knobs for the tool execution engine. Defaults mirror the
production constants; every field can be overridden from the
environment with a ``DESKPILOT_`` prefix.

Usage:
    settings = EngineSettings.from_env()
    settings = EngineSettings(max_context_fetches=3)
"""

from __future__ import annotations

import math
import os
from typing import Any

from pydantic import BaseModel, Field

ENV_PREFIX = "DESKPILOT_"

# Slack added on top of the slowest locked section
LOCK_TTL_MARGIN_SECONDS = 5


class EngineSettings(BaseModel):
    """Limits, thresholds and timeouts for one engine instance."""

    # Reasoning loop
    max_context_fetches: int = Field(default=2, ge=0)
    min_confidence_for_action: int = Field(default=7, ge=0, le=10)
    max_iterations: int = Field(default=10, ge=1)
    context_message_count: int = Field(default=5, ge=1)

    # LLM calls
    default_max_tokens: int = 2048
    reprompt_max_tokens: int = 512
    default_temperature: float = 0.3
    llm_timeout_seconds: float = 60.0

    # Tool execution
    webhook_timeout_seconds: float = Field(default=30.0, gt=0)
    webhook_max_retries: int = Field(default=3, ge=1)
    webhook_retry_base_delay: float = 1.0
    webhook_base_url: str = "http://localhost:5678/"
    credential_timeout_seconds: float = Field(default=10.0, gt=0)

    # Shared state
    lock_ttl_seconds: int = Field(default=60, ge=1)
    pending_intent_ttl_seconds: int = Field(default=300, ge=1)

    # Result bounds
    tool_result_max_chars: int = 5000
    tool_result_preview_chars: int = 2000

    # Backends
    redis_url: str | None = None
    database_url: str = ":memory:"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> EngineSettings:
        """Build settings from ``DESKPILOT_*`` environment variables.

        Unknown variables are ignored; values are coerced by pydantic.
        """
        source = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name in cls.model_fields:
            value = source.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls(**overrides)

    @property
    def webhook_deadline_seconds(self) -> float:
        """Worst-case wall time of one webhook call, retries and backoff included."""
        backoff = sum(
            self.webhook_retry_base_delay * (2 ** i) for i in range(self.webhook_max_retries - 1)
        )
        return self.webhook_timeout_seconds * self.webhook_max_retries + backoff

    @property
    def effective_lock_ttl_seconds(self) -> int:
        """Dedup lock TTL, raised so the lock outlives credential lookup plus the webhook deadline.

        ``lock_ttl_seconds`` is a floor. With the defaults the webhook alone
        may run for 93s, so the effective TTL is 108s.
        """
        needed = self.credential_timeout_seconds + self.webhook_deadline_seconds + LOCK_TTL_MARGIN_SECONDS
        return max(self.lock_ttl_seconds, math.ceil(needed))
