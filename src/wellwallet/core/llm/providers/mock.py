"""Mock LLM provider for tests and offline runs."""

from __future__ import annotations

from collections import deque

from wellwallet.core.llm.provider import ProviderResponse


class MockProvider:
    """Returns queued responses in order, then repeats the last one."""

    def __init__(self, *responses: str) -> None:
        self._responses = deque(responses or ('{"resourceType": "Patient", "mode": "either"}',))
        self.calls: list[tuple[str, str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def generate(
        self,
        system_message: str,
        user_message: str,
        max_tokens: int = 512,
        temperature: float = 0.0,
        json_output: bool = False,
    ) -> ProviderResponse:
        self.calls.append((system_message, user_message))
        content = self._responses.popleft() if len(self._responses) > 1 else self._responses[0]
        return ProviderResponse(
            content=content,
            input_tokens=len(system_message.split()) + len(user_message.split()),
            output_tokens=len(content.split()),
            model="mock",
            latency_ms=0.0,
        )
