"""Server-Sent-Events framing for gateway responses.

The gateway answers every POST with a ``text/event-stream`` body whose
``data:`` lines carry JSON-RPC response envelopes. Some deployments reply
with plain ``application/json``; both are accepted.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

from wellwallet.core.gateway.models import ResponseEnvelope

logger = logging.getLogger(__name__)


class FramingError(ValueError):
    """Raised when a response body cannot be decoded into envelopes."""


def iter_event_data(body: str) -> Iterator[str]:
    """Yield the joined ``data`` field of each event in an SSE body.

    Multiple ``data:`` lines inside one event are joined with newlines;
    events are separated by blank lines. Comment lines (``:``) and other
    fields (``event``, ``id``, ``retry``) are ignored.
    """
    buffer: list[str] = []
    for raw_line in body.splitlines():
        line = raw_line.rstrip("\r")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            buffer.append(value)
    if buffer:
        yield "\n".join(buffer)


def decode_envelopes(body: str, content_type: str = "") -> list[ResponseEnvelope]:
    """Decode every JSON-RPC response envelope contained in a response body."""
    if "application/json" in content_type.lower():
        chunks = [body]
    else:
        chunks = list(iter_event_data(body))

    envelopes: list[ResponseEnvelope] = []
    for chunk in chunks:
        if not chunk.strip():
            continue
        try:
            parsed: Any = json.loads(chunk)
        except json.JSONDecodeError as exc:
            raise FramingError(f"Invalid JSON in event data: {exc}") from exc

        # JSON-RPC batches arrive as arrays.
        items = parsed if isinstance(parsed, list) else [parsed]
        for item in items:
            if not isinstance(item, dict):
                raise FramingError(
                    f"Expected JSON-RPC object, got {type(item).__name__}"
                )
            if "result" not in item and "error" not in item:
                # Server-initiated notification or request riding the stream.
                logger.debug("Skipping non-response event: %s", item.get("method"))
                continue
            envelopes.append(ResponseEnvelope.from_dict(item))
    return envelopes


def match_response(
    envelopes: list[ResponseEnvelope], request_id: int
) -> ResponseEnvelope | None:
    """Return the envelope answering ``request_id`` regardless of arrival order."""
    for envelope in envelopes:
        if envelope.id == request_id or str(envelope.id) == str(request_id):
            return envelope
    return None
