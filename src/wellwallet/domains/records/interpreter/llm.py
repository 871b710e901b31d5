"""LLM-backed interpreter: asks a model for a JSON query plan."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from wellwallet.core.llm.provider import LLMProvider
from wellwallet.domains.records.catalog import ResourceCatalog
from wellwallet.domains.records.errors import InterpretationError, UnrecognizedPlanError
from wellwallet.domains.records.query.plan import (
    QueryPlan,
    parse_query_plan,
    plan_json_schema,
)

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

_SYSTEM_TEMPLATE = """\
You convert a person's question about their own health records into a query plan.

Answer with exactly one JSON object and nothing else. It must validate against
this JSON schema:

{schema}

Rules:
- resourceType is one of: {resource_types}.
- mode is "either" when the question is about the person's own stored records,
  "remote" when it needs fresh data from the server, "local" only when told to stay offline.
- Put LOINC codes in filters.codeSearch.codes when the question names a test.
  Known terms: {terms}.
- "recent" or "latest" means sort "-date" with limit 10.
- recordIndex is 0-based: "record 3" is recordIndex 2.
- Omit every filter the question does not ask for.
"""


class LLMQueryInterpreter:
    """Interpreter that delegates plan extraction to an ``LLMProvider``.

    The model's output is validated like any other plan; output that is not
    a valid plan raises ``InterpretationError``. The patient identifier is
    never sent to the model.
    """

    def __init__(
        self,
        provider: LLMProvider,
        catalog: ResourceCatalog,
        *,
        max_tokens: int = 512,
    ) -> None:
        self._provider = provider
        self._catalog = catalog
        self._max_tokens = max_tokens
        self._system = _SYSTEM_TEMPLATE.format(
            schema=json.dumps(plan_json_schema(), separators=(",", ":")),
            resource_types=", ".join(catalog.names),
            terms="; ".join(f"{t.name}: {', '.join(t.codes)}" for t in catalog.terms),
        )

    async def interpret(self, text: str, patient_id: str) -> QueryPlan:
        if not text.strip():
            raise InterpretationError("Empty query")

        try:
            response = await self._provider.generate(
                system_message=self._system,
                user_message=text,
                max_tokens=self._max_tokens,
                temperature=0.0,
                json_output=True,
            )
        except Exception as exc:
            raise InterpretationError(f"Interpreter model call failed: {exc}") from exc

        logger.info(
            "Interpreter model=%s tokens=%d+%d latency=%.0fms",
            response.model,
            response.input_tokens,
            response.output_tokens,
            response.latency_ms,
        )
        try:
            return parse_query_plan(_extract_json(response.content))
        except UnrecognizedPlanError as exc:
            raise InterpretationError(f"Model produced an invalid plan: {exc}") from exc


def _extract_json(content: str) -> Any:
    match = _JSON_OBJECT_RE.search(content)
    if not match:
        raise InterpretationError("Model response contained no JSON object")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise InterpretationError(f"Model response was not valid JSON: {exc}") from exc
