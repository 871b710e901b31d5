"""LLM provider implementations."""

from wellwallet.core.llm.providers.anthropic import AnthropicProvider
from wellwallet.core.llm.providers.mock import MockProvider
from wellwallet.core.llm.providers.openai import OpenAIProvider

__all__ = ["AnthropicProvider", "MockProvider", "OpenAIProvider"]
