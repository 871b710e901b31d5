"""OpenAI GPT provider."""

from __future__ import annotations

import time

from wellwallet.core.llm.provider import DEFAULT_MODELS, ProviderResponse


class OpenAIProvider:
    """OpenAI provider using the chat completions API."""

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["openai"]) -> None:
        import openai

        self.client = openai.AsyncOpenAI(api_key=api_key)
        self.model = model

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = 512,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> ProviderResponse:
        extra = {"response_format": {"type": "json_object"}} if json_output else {}

        start = time.monotonic()
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system_message},
                {"role": "user", "content": user_message},
            ],
            **extra,
        )
        elapsed_ms = (time.monotonic() - start) * 1000

        choice = response.choices[0] if response.choices else None
        content = (choice.message.content or "") if choice else ""
        usage = response.usage
        return ProviderResponse(
            content=content,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=self.model,
            latency_ms=elapsed_ms,
        )
