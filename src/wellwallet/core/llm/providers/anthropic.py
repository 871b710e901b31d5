"""Anthropic Claude provider."""

from __future__ import annotations

import time

from wellwallet.core.llm.provider import DEFAULT_MODELS, ProviderResponse


class AnthropicProvider:
    """Claude provider using the Anthropic SDK.

    JSON output is requested by prefilling the assistant turn with ``{``;
    the prefill is put back in front of the returned text.
    """

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["anthropic"]) -> None:
        import anthropic

        self.client = anthropic.AsyncAnthropic(api_key=api_key)
        self.model = model

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = 512,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> ProviderResponse:
        messages = [{"role": "user", "content": user_message}]
        if json_output:
            messages.append({"role": "assistant", "content": "{"})

        start = time.monotonic()
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_message,
            messages=messages,
        )
        elapsed_ms = (time.monotonic() - start) * 1000

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return ProviderResponse(
            content="{" + text if json_output else text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=self.model,
            latency_ms=elapsed_ms,
        )
