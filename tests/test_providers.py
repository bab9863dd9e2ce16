"""Tests for the provider table, request building and the response types the agent consumes."""

import os

import pytest

from hakimi.providers.base import LLMResponse, ToolCallRequest
from hakimi.providers.litellm_provider import LiteLLMProvider
from hakimi.providers.registry import PROVIDERS, find_by_model, find_by_name, resolve


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for spec in PROVIDERS:
        monkeypatch.delenv(spec.env_key, raising=False)
        if spec.api_base_env:
            monkeypatch.delenv(spec.api_base_env, raising=False)


# =============================================================================
# Provider table
# =============================================================================


class TestRegistry:
    def test_model_keywords(self):
        assert find_by_model("kimi-k2.5").name == "moonshot"
        assert find_by_model("claude-sonnet-4").name == "anthropic"
        assert find_by_model("llama-3") is None

    def test_gateways_are_never_matched_by_model(self):
        assert find_by_model("openrouter-something") is None

    def test_qualify_adds_prefix_once(self):
        moonshot = find_by_name("moonshot")

        assert moonshot.qualify("kimi-k2.5") == "moonshot/kimi-k2.5"
        assert moonshot.qualify("moonshot/kimi-k2.5") == "moonshot/kimi-k2.5"

    def test_explicit_gateway_route_is_kept(self):
        assert find_by_name("moonshot").qualify("openrouter/moonshotai/kimi-k2") == "openrouter/moonshotai/kimi-k2"

    def test_gateway_prefixes_everything(self):
        assert find_by_name("openrouter").qualify("anthropic/claude-3") == "openrouter/anthropic/claude-3"

    def test_no_prefix_means_unchanged(self):
        assert find_by_name("openai").qualify("gpt-4o") == "gpt-4o"

    def test_resolve_order(self):
        assert resolve("kimi-k2.5", provider_name="vllm").name == "vllm"
        assert resolve("kimi-k2.5", api_key="sk-or-v1-abc").name == "openrouter"
        assert resolve("kimi-k2.5", api_base="https://openrouter.ai/api/v1").name == "openrouter"
        assert resolve("kimi-k2.5", provider_name="moonshot").name == "moonshot"

    def test_model_overrides(self):
        moonshot = find_by_name("moonshot")

        assert moonshot.overrides_for("Kimi-K2.5") == {"temperature": 1.0}
        assert moonshot.overrides_for("kimi-k2") == {}


# =============================================================================
# LiteLLM request building
# =============================================================================


class TestLiteLLMProvider:
    def test_standard_provider_request(self):
        provider = LiteLLMProvider(api_key="sk-moon", default_model="kimi-k2.5")

        kwargs = provider._build_request([{"role": "user", "content": "hi"}], None, "kimi-k2.5", 100, 0.2)

        assert kwargs["model"] == "moonshot/kimi-k2.5"
        assert kwargs["temperature"] == 1.0
        assert kwargs["api_key"] == "sk-moon"
        assert "tools" not in kwargs

    def test_environment_for_standard_provider(self):
        LiteLLMProvider(api_key="sk-moon", default_model="kimi-k2.5")

        assert os.environ["MOONSHOT_API_KEY"] == "sk-moon"
        assert os.environ["MOONSHOT_API_BASE"] == "https://api.moonshot.ai/v1"

    def test_gateway_takes_over_every_model(self):
        provider = LiteLLMProvider(api_key="sk-or-v1-abc", default_model="anthropic/claude-3")

        kwargs = provider._build_request([], [{"type": "function"}], "deepseek-chat", 100, 0.7)

        assert kwargs["model"] == "openrouter/deepseek-chat"
        assert kwargs["tool_choice"] == "auto"

    def test_unknown_model_is_passed_through(self):
        provider = LiteLLMProvider(default_model="llama-3")

        assert provider._build_request([], None, "llama-3", 10, 0.5)["model"] == "llama-3"
        assert provider.get_default_model() == "llama-3"


# =============================================================================
# Response types
# =============================================================================


class TestResponses:
    def test_tool_call_round_trips_into_history(self):
        response = LLMResponse(
            content=None,
            tool_calls=[ToolCallRequest(id="c1", name="send_message", arguments={"message": "你好"})],
            reasoning_content="thinking",
        )

        msg = response.to_assistant_message()

        assert msg["role"] == "assistant"
        assert msg["content"] == ""
        assert msg["tool_calls"][0]["function"] == {"name": "send_message", "arguments": '{"message": "你好"}'}
        assert msg["reasoning_content"] == "thinking"

    def test_plain_answer_has_no_tool_calls_key(self):
        assert LLMResponse(content="ok").to_assistant_message() == {"role": "assistant", "content": "ok"}

    def test_failure(self):
        response = LLMResponse.failure("Error calling LLM: 401")

        assert response.is_error
        assert not response.has_tool_calls
