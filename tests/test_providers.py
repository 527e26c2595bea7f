"""Tests for the LLM provider abstraction layer.

Tests cover the base models, the Claude provider with a mocked
Anthropic client, the circuit breaker, the factory and the chat
adapter the engine talks to.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from deskpilot.collaborators import ChatResult, LLMCollaborator, ProviderChatAdapter
from deskpilot.exceptions import ProviderError
from deskpilot.providers import (
    CircuitBreakerProvider,
    CircuitState,
    ClaudeProvider,
    ContentBlock,
    LLMProvider,
    LLMResponse,
    ProviderConfig,
    create_provider,
)


def anthropic_response(text: str = "OK", input_tokens: int = 10, output_tokens: int = 5) -> MagicMock:
    mock_response = MagicMock()
    text_block = MagicMock()
    text_block.type = "text"
    text_block.text = text
    mock_response.content = [text_block]
    mock_response.stop_reason = "end_turn"
    mock_response.model = "claude-sonnet-4-20250514"
    mock_response.usage = MagicMock(input_tokens=input_tokens, output_tokens=output_tokens)
    return mock_response


def make_claude(side_effect=None, return_value=None, **config) -> ClaudeProvider:
    client = MagicMock()
    client.messages = MagicMock()
    client.messages.create = AsyncMock(side_effect=side_effect, return_value=return_value)
    config.setdefault("model", ClaudeProvider.DEFAULT_MODEL)
    config.setdefault("retry_base_delay", 0.0)
    return ClaudeProvider(ProviderConfig(**config), client=client)


# ─── ContentBlock / LLMResponse ────────────────────────────


class TestLLMResponse:
    def test_text_block_defaults(self):
        block = ContentBlock(text="Hello")
        assert block.type == "text"
        assert block.tool_input == {}

    def test_text_joins_text_blocks(self):
        response = LLMResponse(content=[
            ContentBlock(type="text", text="Hello "),
            ContentBlock(type="tool_use", tool_name="lookup", tool_use_id="t1"),
            ContentBlock(type="text", text="world"),
        ])
        assert response.text == "Hello world"

    def test_tool_calls(self):
        response = LLMResponse(content=[
            ContentBlock(type="text", text="Let me check"),
            ContentBlock(type="tool_use", tool_name="get_order_status", tool_input={"orderId": "1"}),
        ])
        assert len(response.tool_calls) == 1
        assert response.tool_calls[0].tool_input == {"orderId": "1"}

    def test_empty_response(self):
        response = LLMResponse()
        assert response.text == ""
        assert response.tool_calls == []
        assert response.stop_reason == "end_turn"


# ─── ProviderConfig ────────────────────────────────────────


class TestProviderConfig:
    def test_defaults(self):
        config = ProviderConfig()
        assert config.max_retries == 3
        assert config.timeout_seconds == 60.0
        assert config.retry_base_delay == 1.0

    def test_cost_estimate(self):
        provider = make_claude(input_cost_per_mtok=3.0, output_cost_per_mtok=15.0)
        assert provider.estimate_cost(1_000_000, 0) == pytest.approx(3.0)
        assert provider.estimate_cost(1000, 1000) == pytest.approx(0.018)


# ─── ClaudeProvider ────────────────────────────────────────


class TestClaudeProvider:
    def test_to_response_text(self):
        result = ClaudeProvider._to_response(anthropic_response("Hello, world!"))
        assert isinstance(result, LLMResponse)
        assert result.text == "Hello, world!"
        assert result.input_tokens == 10
        assert result.output_tokens == 5

    def test_to_response_tool_use(self):
        mock_response = anthropic_response()
        tool_block = MagicMock()
        tool_block.type = "tool_use"
        tool_block.name = "cancel_order"
        tool_block.input = {"orderId": "123"}
        tool_block.id = "tool-abc"
        mock_response.content = [tool_block]
        mock_response.stop_reason = "tool_use"

        result = ClaudeProvider._to_response(mock_response)
        assert result.stop_reason == "tool_use"
        assert result.tool_calls[0].tool_name == "cancel_order"
        assert result.tool_calls[0].tool_use_id == "tool-abc"

    def test_from_client(self):
        client = MagicMock()
        provider = ClaudeProvider.from_client(client, model="claude-3-haiku-20240307")
        assert provider.client is client
        assert provider.model == "claude-3-haiku-20240307"

    @pytest.mark.asyncio
    async def test_system_messages_lifted(self):
        provider = make_claude(return_value=anthropic_response("Response"))
        result = await provider.create_message(
            [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hello"},
            ],
            system="You are a support agent.",
            temperature=0.2,
        )
        assert result.text == "Response"
        kwargs = provider.client.messages.create.call_args.kwargs
        assert kwargs["system"] == "You are a support agent.\n\nBe brief."
        assert kwargs["messages"] == [{"role": "user", "content": "Hello"}]
        assert kwargs["temperature"] == 0.2
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        provider = make_claude(side_effect=[RuntimeError("overloaded"), anthropic_response("Recovered")])
        result = await provider.create_message([{"role": "user", "content": "Hi"}])
        assert result.text == "Recovered"
        assert provider.client.messages.create.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_with_provider_error(self):
        provider = make_claude(side_effect=RuntimeError("API down"), max_retries=2)
        with pytest.raises(ProviderError, match="failed after 2 attempts"):
            await provider.create_message([{"role": "user", "content": "Hi"}])
        assert provider.client.messages.create.await_count == 2


# ─── CircuitBreaker ────────────────────────────────────────


class TestCircuitBreaker:
    def test_initial_state_closed(self):
        cb = CircuitBreakerProvider(make_claude(), failure_threshold=3)
        assert cb.state == CircuitState.CLOSED
        assert isinstance(cb.wrapped_provider, ClaudeProvider)

    @pytest.mark.asyncio
    async def test_success_stays_closed(self):
        cb = CircuitBreakerProvider(make_claude(return_value=anthropic_response("OK")), failure_threshold=3)
        result = await cb.create_message([{"role": "user", "content": "test"}])
        assert result.text == "OK"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failures_open_circuit(self):
        provider = make_claude(side_effect=RuntimeError("API down"), max_retries=1)
        cb = CircuitBreakerProvider(provider, failure_threshold=2, recovery_timeout=60.0)

        for _ in range(2):
            with pytest.raises(ProviderError):
                await cb.create_message([{"role": "user", "content": "test"}])
        assert cb.state == CircuitState.OPEN

        # Open circuit rejects without touching the backend
        with pytest.raises(ProviderError, match="circuit open"):
            await cb.create_message([{"role": "user", "content": "test"}])
        assert provider.client.messages.create.await_count == 2

    @pytest.mark.asyncio
    async def test_half_open_trial_call_closes(self):
        provider = make_claude(side_effect=[RuntimeError("down"), anthropic_response("back")], max_retries=1)
        cb = CircuitBreakerProvider(provider, failure_threshold=1, recovery_timeout=0.0)

        with pytest.raises(ProviderError):
            await cb.create_message([{"role": "user", "content": "test"}])
        assert cb.state == CircuitState.HALF_OPEN

        result = await cb.create_message([{"role": "user", "content": "test"}])
        assert result.text == "back"
        assert cb.state == CircuitState.CLOSED

    def test_reset(self):
        cb = CircuitBreakerProvider(make_claude(), failure_threshold=3)
        cb._state = CircuitState.OPEN
        cb._failure_count = 5
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb._failure_count == 0


# ─── Factory ──────────────────────────────────────────────


class TestProviderFactory:
    def test_create_claude(self):
        provider = create_provider("claude", api_key="sk-test")
        assert isinstance(provider, ClaudeProvider)
        assert provider.model == ClaudeProvider.DEFAULT_MODEL

    def test_create_anthropic_alias_with_model(self):
        provider = create_provider("Anthropic", api_key="sk-test", model="claude-3-haiku-20240307")
        assert isinstance(provider, ClaudeProvider)
        assert provider.model == "claude-3-haiku-20240307"

    def test_circuit_breaker_wrapping(self):
        provider = create_provider("claude", api_key="sk-test", circuit_breaker=True)
        assert isinstance(provider, CircuitBreakerProvider)

    def test_unknown_provider_raises(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            create_provider("unknown_llm")


# ─── ProviderChatAdapter ───────────────────────────────────


class TestProviderChatAdapter:
    def _provider(self, text: str = "Hi there", name: str = "default") -> MagicMock:
        provider = MagicMock(spec=LLMProvider)
        provider.name = name
        provider.create_message = AsyncMock(return_value=LLMResponse(
            content=[ContentBlock(text=text)], input_tokens=100, output_tokens=20,
        ))
        provider.estimate_cost = MagicMock(return_value=0.0006)
        return provider

    def test_satisfies_collaborator_protocol(self):
        assert isinstance(ProviderChatAdapter(self._provider()), LLMCollaborator)

    @pytest.mark.asyncio
    async def test_chat_splits_system_and_reports_usage(self):
        provider = self._provider()
        adapter = ProviderChatAdapter(provider)
        result = await adapter.chat(
            [{"role": "system", "content": "Rules"}, {"role": "user", "content": "Hello"}],
            max_tokens=500,
            model="claude-3-haiku-20240307",
        )
        assert isinstance(result, ChatResult)
        assert result.content == "Hi there"
        assert result.tokens.input == 100
        assert result.tokens.output == 20
        assert result.cost == 0.0006

        args, kwargs = provider.create_message.call_args
        assert args[0] == [{"role": "user", "content": "Hello"}]
        assert kwargs["system"] == "Rules"
        assert kwargs["max_tokens"] == 500
        assert kwargs["model"] == "claude-3-haiku-20240307"

    @pytest.mark.asyncio
    async def test_system_only_gets_user_turn(self):
        provider = self._provider()
        await ProviderChatAdapter(provider).chat([{"role": "system", "content": "Rules"}])
        args, _ = provider.create_message.call_args
        assert args[0] == [{"role": "user", "content": "Please continue."}]

    @pytest.mark.asyncio
    async def test_tenant_provider_selected(self):
        default = self._provider("from default")
        openai = self._provider("from openai", name="OpenAIProvider")
        adapter = ProviderChatAdapter(default, providers={"OpenAI": openai})

        assert (await adapter.chat([{"role": "user", "content": "x"}], provider="openai")).content == "from openai"
        assert (await adapter.chat([{"role": "user", "content": "x"}], provider="mistral")).content == "from default"

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_error(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        provider = self._provider()
        provider.create_message = slow
        adapter = ProviderChatAdapter(provider, timeout_seconds=0.01)
        with pytest.raises(ProviderError, match="timed out"):
            await adapter.chat([{"role": "user", "content": "x"}])
