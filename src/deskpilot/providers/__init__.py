"""
Deskpilot LLM Provider Abstraction

Tenants choose a provider and model; the engine talks to all of them
through LLMProvider.

Usage:
    from deskpilot.providers import create_provider

    provider = create_provider("claude")
    response = await provider.create_message(messages=[...])
"""

from deskpilot.providers.base import ContentBlock, LLMProvider, LLMResponse, ProviderConfig
from deskpilot.providers.circuit_breaker import CircuitBreakerProvider, CircuitState
from deskpilot.providers.claude import ClaudeProvider

__all__ = [
    "CircuitBreakerProvider",
    "CircuitState",
    "ClaudeProvider",
    "ContentBlock",
    "LLMProvider",
    "LLMResponse",
    "ProviderConfig",
    "create_provider",
]


def create_provider(
    name: str = "claude",
    *,
    api_key: str | None = None,
    model: str | None = None,
    timeout_seconds: float = 60.0,
    circuit_breaker: bool = False,
) -> LLMProvider:
    """Create an LLM provider by name ("claude"/"anthropic" or "openai")."""
    name_lower = name.lower()

    if name_lower in ("claude", "anthropic"):
        provider: LLMProvider = ClaudeProvider(ProviderConfig(
            api_key=api_key,
            model=model or ClaudeProvider.DEFAULT_MODEL,
            timeout_seconds=timeout_seconds,
            input_cost_per_mtok=3.0,
            output_cost_per_mtok=15.0,
        ))
    elif name_lower == "openai":
        from deskpilot.providers.openai import OpenAIProvider
        provider = OpenAIProvider(ProviderConfig(
            api_key=api_key,
            model=model or OpenAIProvider.DEFAULT_MODEL,
            timeout_seconds=timeout_seconds,
            input_cost_per_mtok=2.5,
            output_cost_per_mtok=10.0,
        ))
    else:
        raise ValueError(f"Unknown provider: {name}. Supported: claude, openai")

    if circuit_breaker:
        return CircuitBreakerProvider(provider)
    return provider
