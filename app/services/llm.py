# =============================================================================
# Multi-Provider LLM Abstraction - The Model Capability
# =============================================================================
#
# The search engine consumes exactly one capability from the outside
# world: "prompt in, text + token usage out". This module provides that
# capability behind a Protocol, with concrete implementations for
# Anthropic (Claude) and OpenAI-compatible APIs (OpenAI, DeepSeek, Kimi,
# Ollama, LM Studio, vLLM, ...).
#
# DESIGN DECISION: Provider chosen once, at the boundary.
# The API layer resolves a ModelConfig into a provider instance and
# passes that single object down. The segmenter, scheduler, runner and
# synthesizer never branch on provider identity.
#
# DESIGN DECISION: All SDK failures surface as ProviderError.
# Network, auth and rate-limit errors from either SDK are wrapped so the
# engine handles them uniformly (retry once, then a zero-confidence
# result).
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        - Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider - Any OpenAI-compatible API
#   ├── create_provider()        - ModelConfig → provider (per request)
#   ├── get_llm_provider()       - Singleton factory, reads from config
#   └── create_provider_from_id() - "type/model@base_url" → provider
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from app.config import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A model call failed (network, auth, rate limit, timeout)."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """One model reply, in the same shape whichever SDK produced it."""

    content: str           # Reply text ("" if the model returned none)
    model: str             # Model that actually served the call
    input_tokens: int      # Prompt tokens billed
    output_tokens: int     # Completion tokens billed

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ModelConfig:
    """
    Per-request model selection.

    `provider` is either a provider type ("anthropic",
    "openai_compatible") or one of the aliases in _PROVIDER_ALIASES.
    """

    provider: str
    model: str
    base_url: str | None = None
    api_key: str | None = None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    The model capability consumed by the engine.

    `model_id` participates in the query fingerprint, so two providers
    serving different models never share cache entries.
    """

    model_id: str

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Send one chat turn and return the reply.

        Args:
            messages: Chat history, each {"role": ..., "content": ...}.
            system: Instructions for the model, kept out of `messages`.
            temperature: Sampling temperature; None uses llm_temperature.
            max_tokens: Reply length cap; None uses llm_max_tokens.

        Raises:
            ProviderError: the call could not be completed.
        """
        ...


def _require_key(candidates: tuple[str | None, ...], missing: str) -> str:
    for key in candidates:
        if key:
            return key
    raise ValueError(missing)


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Claude through the native Anthropic SDK.

    The Messages API takes the system prompt as its own `system=`
    argument; it is never sent as a chat message.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        key = _require_key(
            (api_key, settings.llm_api_key, settings.anthropic_api_key),
            "No Anthropic API key configured. Set LLM_API_KEY or "
            "ANTHROPIC_API_KEY in .env",
        )
        self._client = AsyncAnthropic(api_key=key)
        self.model_id = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self.model_id)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from anthropic import APIError

        request: dict = {
            "model": self.model_id,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                self._temperature if temperature is None else temperature
            ),
        }
        if system:
            request["system"] = system

        try:
            reply = await self._client.messages.create(**request)
        except APIError as e:
            raise ProviderError(f"Anthropic call failed: {e}") from e

        # First text block; thinking and tool blocks carry no answer
        text = next(
            (block.text for block in reply.content if block.type == "text"), "",
        )
        return LLMResponse(
            content=text,
            model=reply.model,
            input_tokens=reply.usage.input_tokens,
            output_tokens=reply.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenAI, DeepSeek, Ollama, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Any endpoint speaking the OpenAI chat completions API.

    Local runtimes (Ollama, LM Studio, vLLM, llama.cpp) serve the same
    API under /v1 and ignore the key, so create_provider passes a
    placeholder for them.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        key = _require_key(
            (api_key, settings.llm_api_key, settings.openai_api_key),
            "No API key configured for OpenAI-compatible provider. "
            "Set LLM_API_KEY in .env",
        )
        endpoint = base_url or settings.llm_base_url
        # base_url=None lets the SDK use its default endpoint
        self._client = AsyncOpenAI(api_key=key, base_url=endpoint)
        self.model_id = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, endpoint=%s)",
            self.model_id, endpoint or "SDK default",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from openai import APIError

        chat = [{"role": "system", "content": system}] if system else []
        chat.extend(messages)

        try:
            reply = await self._client.chat.completions.create(
                model=self.model_id,
                messages=chat,
                max_tokens=max_tokens or self._max_tokens,
                temperature=(
                    self._temperature if temperature is None else temperature
                ),
            )
        except APIError as e:
            raise ProviderError(f"OpenAI-compatible call failed: {e}") from e

        usage = reply.usage
        return LLMResponse(
            content=reply.choices[0].message.content or "",
            model=reply.model or self.model_id,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Provider Resolution
# ---------------------------------------------------------------------------
# Aliases map the provider names users pick in the UI onto the two
# implementations. The base URL is a default only; an explicit base_url
# in the ModelConfig wins.
# ---------------------------------------------------------------------------

_PROVIDER_TYPES = {"anthropic", "openai_compatible"}

_PROVIDER_ALIASES: dict[str, str | None] = {
    "openai": None,  # SDK default endpoint
    "deepseek": "https://api.deepseek.com/v1",
    "moonshot": "https://api.moonshot.cn/v1",
    "kimi": "https://api.moonshot.cn/v1",
    "ollama": "http://localhost:11434/v1",
    "lmstudio": "http://localhost:1234/v1",
    "vllm": "http://localhost:8000/v1",
    "gguf": "http://localhost:8080/v1",
    "onnx": "http://localhost:8081/v1",
}

# Local runtimes accept any key
_LOCAL_PROVIDERS = {"ollama", "lmstudio", "vllm", "gguf", "onnx"}


def _supported() -> list[str]:
    return sorted(_PROVIDER_TYPES | set(_PROVIDER_ALIASES))


def create_provider(
    config: ModelConfig,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build a fresh provider instance from a ModelConfig.

    Raises:
        ValueError: Unknown provider or missing API key. This is the
            "model cannot be reached" failure surfaced to the caller.
    """
    provider = config.provider.lower()

    if provider == "anthropic":
        return AnthropicProvider(api_key=config.api_key, model=config.model)

    if provider == "openai_compatible":
        return OpenAICompatibleProvider(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
        )

    if provider not in _PROVIDER_ALIASES:
        raise ValueError(
            f"Unknown provider '{config.provider}'. Supported: {_supported()}"
        )

    api_key = config.api_key
    if api_key is None and provider in _LOCAL_PROVIDERS:
        api_key = provider
    return OpenAICompatibleProvider(
        api_key=api_key,
        model=config.model,
        base_url=config.base_url or _PROVIDER_ALIASES[provider],
    )


_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    The provider for requests that bring no model configuration.

    Built on first use from settings and reused afterwards; the SDK
    clients pool their own connections.
    """
    global _provider
    if _provider is None:
        _provider = create_provider(ModelConfig(
            provider=settings.llm_provider,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
        ))
    return _provider


def _parse_provider_id(
    provider_id: str,
) -> tuple[str, str, str | None]:
    """
    Split "provider/model[@base_url]" into its parts.

        "anthropic/claude-sonnet-4-6"  → ("anthropic", "claude-sonnet-4-6", None)
        "ollama/qwen3:4b"              → ("ollama", "qwen3:4b", None)
        "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"
            → ("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

    Raises:
        ValueError: no "/" separator, or an unknown provider.
    """
    provider, sep, rest = provider_id.partition("/")
    if not sep:
        raise ValueError(
            f"Invalid provider_id '{provider_id}'. "
            "Expected 'provider/model' or 'provider/model@base_url'"
        )

    model, _, base_url = rest.partition("@")
    if provider not in _PROVIDER_TYPES and provider not in _PROVIDER_ALIASES:
        raise ValueError(
            f"Unknown provider type '{provider}'. Supported: {_supported()}"
        )
    return provider, model, base_url or None


def create_provider_from_id(
    provider_id: str,
    api_key: str | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """Create a fresh, non-singleton provider from a provider ID string."""
    provider, model, base_url = _parse_provider_id(provider_id)
    return create_provider(ModelConfig(
        provider=provider, model=model, base_url=base_url, api_key=api_key,
    ))
