# =============================================================================
# Unit Tests - LLM Provider Resolution
# =============================================================================
#
# No network: SDK clients are constructed (which does not connect) and
# their transport methods are replaced with in-process fakes.
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import pytest

from app.services import llm as llm_module
from app.services.llm import (
    AnthropicProvider,
    ModelConfig,
    OpenAICompatibleProvider,
    ProviderError,
    _parse_provider_id,
    create_provider,
    create_provider_from_id,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def _no_ambient_keys(monkeypatch):
    """Tests must not pick up keys from the developer's .env."""
    monkeypatch.setattr(llm_module.settings, "llm_api_key", None)
    monkeypatch.setattr(llm_module.settings, "anthropic_api_key", "")
    monkeypatch.setattr(llm_module.settings, "openai_api_key", "")
    monkeypatch.setattr(llm_module.settings, "llm_base_url", None)


class TestParseProviderId:
    def test_simple(self):
        assert _parse_provider_id("anthropic/claude-sonnet-4-6") == (
            "anthropic", "claude-sonnet-4-6", None,
        )

    def test_model_with_colon(self):
        assert _parse_provider_id("ollama/qwen3:4b") == ("ollama", "qwen3:4b", None)

    def test_base_url(self):
        assert _parse_provider_id(
            "openai_compatible/deepseek-chat@https://api.deepseek.com/v1",
        ) == ("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

    @pytest.mark.parametrize("provider_id", ["no-slash", "bogus/model"])
    def test_invalid(self, provider_id):
        with pytest.raises(ValueError):
            _parse_provider_id(provider_id)


class TestCreateProvider:
    """ModelConfig → provider instance."""

    def test_anthropic(self):
        provider = create_provider(ModelConfig(
            provider="anthropic", model="claude-sonnet-4-6", api_key="sk-test",
        ))
        assert isinstance(provider, AnthropicProvider)
        assert provider.model_id == "claude-sonnet-4-6"

    def test_provider_name_case_insensitive(self):
        provider = create_provider(ModelConfig(
            provider="Anthropic", model="m", api_key="sk-test",
        ))
        assert isinstance(provider, AnthropicProvider)

    def test_alias_uses_default_base_url(self):
        provider = create_provider(ModelConfig(
            provider="deepseek", model="deepseek-chat", api_key="sk-test",
        ))
        assert isinstance(provider, OpenAICompatibleProvider)
        assert str(provider._client.base_url).startswith("https://api.deepseek.com/v1")

    def test_explicit_base_url_wins(self):
        provider = create_provider(ModelConfig(
            provider="deepseek", model="m",
            base_url="https://proxy.example/v1", api_key="sk-test",
        ))
        assert str(provider._client.base_url).startswith("https://proxy.example/v1")

    def test_local_runtime_needs_no_key(self):
        provider = create_provider(ModelConfig(provider="ollama", model="qwen3:4b"))
        assert provider.model_id == "qwen3:4b"
        assert str(provider._client.base_url).startswith("http://localhost:11434/v1")

    @pytest.mark.parametrize("provider", ["anthropic", "openai_compatible", "deepseek"])
    def test_missing_key(self, provider):
        with pytest.raises(ValueError, match="API key"):
            create_provider(ModelConfig(provider=provider, model="m"))

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            create_provider(ModelConfig(provider="acme", model="m", api_key="k"))

    def test_from_id(self):
        provider = create_provider_from_id("ollama/llama3.1:8b")
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider.model_id == "llama3.1:8b"


# ---------------------------------------------------------------------------
# Test: complete() against fake transports
# ---------------------------------------------------------------------------


class _FakeCompletions:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.result


def _request():
    return httpx.Request("POST", "https://api.example/v1/chat")


class TestOpenAICompatibleComplete:
    def _provider(self, completions):
        provider = OpenAICompatibleProvider(api_key="sk-test", model="m")
        provider._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
        return provider

    def test_system_prompt_prepended(self):
        completions = _FakeCompletions(result=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="hello"))],
            usage=SimpleNamespace(prompt_tokens=7, completion_tokens=3),
            model="m-2024",
        ))
        response = _run(self._provider(completions).complete(
            [{"role": "user", "content": "hi"}], system="be brief", temperature=0.0,
        ))

        assert completions.kwargs["messages"][0] == {"role": "system", "content": "be brief"}
        assert completions.kwargs["temperature"] == 0.0
        assert response.content == "hello"
        assert response.total_tokens == 10
        assert response.model == "m-2024"

    def test_missing_usage(self):
        completions = _FakeCompletions(result=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))],
            usage=None,
            model=None,
        ))
        response = _run(self._provider(completions).complete([]))
        assert response.content == ""
        assert response.total_tokens == 0
        assert response.model == "m"

    def test_sdk_error_wrapped(self):
        from openai import APIConnectionError

        completions = _FakeCompletions(error=APIConnectionError(request=_request()))
        with pytest.raises(ProviderError):
            _run(self._provider(completions).complete([]))


class TestAnthropicComplete:
    def _provider(self, messages):
        provider = AnthropicProvider(api_key="sk-test", model="claude-test")
        provider._client = SimpleNamespace(messages=messages)
        return provider

    def test_system_is_top_level_kwarg(self):
        messages = _FakeCompletions(result=SimpleNamespace(
            content=[
                SimpleNamespace(type="thinking", text="..."),
                SimpleNamespace(type="text", text="answer"),
            ],
            usage=SimpleNamespace(input_tokens=4, output_tokens=6),
            model="claude-test",
        ))
        response = _run(self._provider(messages).complete(
            [{"role": "user", "content": "hi"}], system="be brief",
        ))

        assert messages.kwargs["system"] == "be brief"
        assert all(m["role"] != "system" for m in messages.kwargs["messages"])
        assert response.content == "answer"
        assert response.total_tokens == 10

    def test_sdk_error_wrapped(self):
        from anthropic import APIConnectionError

        messages = _FakeCompletions(error=APIConnectionError(request=_request()))
        with pytest.raises(ProviderError, match="Anthropic"):
            _run(self._provider(messages).complete([]))
