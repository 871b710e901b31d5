"""Query interpreters: free text in, validated query plan out."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from wellwallet.domains.records.query.plan import QueryPlan

if TYPE_CHECKING:
    from wellwallet.core.config.settings import Settings
    from wellwallet.core.llm.provider import LLMProvider
    from wellwallet.domains.records.catalog import ResourceCatalog

logger = logging.getLogger(__name__)


@runtime_checkable
class QueryInterpreter(Protocol):
    """Turns a question about a patient's records into a ``QueryPlan``.

    Implementations raise ``InterpretationError`` when they cannot.
    """

    async def interpret(self, text: str, patient_id: str) -> QueryPlan:
        ...


def create_interpreter(
    settings: Settings,
    catalog: ResourceCatalog,
    provider: LLMProvider | None = None,
) -> QueryInterpreter:
    """Build the interpreter selected by ``settings.query_interpreter``.

    An LLM interpreter without a provider or API key falls back to the
    keyword interpreter.
    """
    from wellwallet.domains.records.interpreter.keyword import KeywordQueryInterpreter

    if settings.query_interpreter != "llm":
        return KeywordQueryInterpreter(catalog)

    if provider is None:
        api_key = {
            "anthropic": settings.anthropic_api_key,
            "openai": settings.openai_api_key,
        }.get(settings.llm_provider, "")
        if settings.llm_provider != "mock" and not api_key:
            logger.warning(
                "LLM interpreter requested but no %s API key is set; "
                "using keyword interpreter",
                settings.llm_provider,
            )
            return KeywordQueryInterpreter(catalog)

        from wellwallet.core.llm.provider import create_provider

        model = {
            "anthropic": settings.anthropic_model,
            "openai": settings.openai_model,
        }.get(settings.llm_provider, "")
        provider = create_provider(settings.llm_provider, api_key=api_key, model=model)

    from wellwallet.domains.records.interpreter.llm import LLMQueryInterpreter

    return LLMQueryInterpreter(provider, catalog)
