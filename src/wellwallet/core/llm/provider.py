"""LLM provider protocol used by the query interpreter."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-4o",
}


@dataclass
class ProviderResponse:
    """Response from an LLM provider."""

    content: str
    input_tokens: int
    output_tokens: int
    model: str
    latency_ms: float


@runtime_checkable
class LLMProvider(Protocol):
    """Text in, text out. ``json_output`` asks the model for one JSON object."""

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = 512,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> ProviderResponse: ...


def create_provider(
    provider_name: str,
    api_key: str = "",
    model: str = "",
) -> LLMProvider:
    """Create an LLM provider by name ("anthropic", "openai" or "mock").

    Raises:
        ValueError: For an unknown provider name.
    """
    if provider_name == "anthropic":
        from wellwallet.core.llm.providers.anthropic import AnthropicProvider

        return AnthropicProvider(api_key=api_key, model=model or DEFAULT_MODELS["anthropic"])
    elif provider_name == "openai":
        from wellwallet.core.llm.providers.openai import OpenAIProvider

        return OpenAIProvider(api_key=api_key, model=model or DEFAULT_MODELS["openai"])
    elif provider_name == "mock":
        from wellwallet.core.llm.providers.mock import MockProvider

        return MockProvider()
    else:
        raise ValueError(f"Unknown LLM provider: {provider_name}")
