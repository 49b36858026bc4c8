"""Parsers for provider streaming wire formats.

Two formats are consumed:

    Server-Sent Events, one JSON object per ``data:`` line, ending with
    ``data: [DONE]``:

        data: {"choices":[{"delta":{"content":"Hello"}}]}
        data: [DONE]

    Newline-delimited JSON, one object per line, no terminator:

        {"candidates":[{"content":{"parts":[{"text":"Hello"}]}}]}

Fragments that are not valid JSON objects are logged and skipped; the rest
of the stream is still delivered.
"""

import json
from typing import Any, AsyncIterator, Optional

from pydantic import ValidationError

from chatstream.core.logging import get_logger
from chatstream.llm.models import StreamChunk, Usage

logger = get_logger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
MAX_LOGGED_FRAGMENT = 200


def _decode(fragment: str, provider: str) -> Optional[dict]:
    try:
        parsed = json.loads(fragment)
    except json.JSONDecodeError as e:
        logger.warning(
            "Skipping malformed stream chunk",
            provider=provider,
            error=str(e),
            fragment=fragment[:MAX_LOGGED_FRAGMENT],
        )
        return None
    if not isinstance(parsed, dict):
        logger.warning(
            "Skipping non-object stream chunk",
            provider=provider,
            fragment=fragment[:MAX_LOGGED_FRAGMENT],
        )
        return None
    return parsed


async def iter_sse_events(lines: AsyncIterator[str], provider: str) -> AsyncIterator[dict]:
    """Decode ``data:`` lines until ``[DONE]`` or end of input."""
    async for line in lines:
        line = line.strip()
        # Blank keep-alives, comments, "event:" and "id:" fields
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        data = line[len(SSE_DATA_PREFIX):].strip()
        if data == SSE_DONE:
            return
        parsed = _decode(data, provider)
        if parsed is not None:
            yield parsed


async def iter_ndjson(lines: AsyncIterator[str], provider: str) -> AsyncIterator[dict]:
    """Decode one JSON object per non-blank line until end of input."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        parsed = _decode(line, provider)
        if parsed is not None:
            yield parsed


def _skip(reason: str, fragment: Any) -> None:
    logger.warning(
        "Skipping malformed stream chunk",
        reason=reason,
        fragment=str(fragment)[:MAX_LOGGED_FRAGMENT],
    )


def _first(items: Any) -> dict:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _usage_from(data: Any) -> Optional[Usage]:
    if data is None:
        return None
    try:
        return Usage.model_validate(data)
    except ValidationError:
        _skip("invalid usage", data)
        return None


async def openai_chunks(events: AsyncIterator[dict]) -> AsyncIterator[StreamChunk]:
    """
    Normalise OpenAI-style chat completion chunks.

    Yields a chunk per content delta (and per usage report), then one final
    ``is_complete`` chunk carrying the last usage seen. Parts of an event
    with the wrong shape are skipped.
    """
    usage = None
    async for event in events:
        delta = _first(event.get("choices")).get("delta") or {}
        if not isinstance(delta, dict):
            _skip("delta is not an object", event)
            delta = {}
        content = delta.get("content")
        if content is not None and not isinstance(content, str):
            _skip("non-text content", event)
            content = None

        chunk_usage = _usage_from(event.get("usage"))
        if chunk_usage is not None:
            usage = chunk_usage
        if content or chunk_usage is not None:
            yield StreamChunk(content=content or "", usage=chunk_usage)
    yield StreamChunk(content="", is_complete=True, usage=usage)


def _vertex_usage(metadata: Any) -> Optional[Usage]:
    if not isinstance(metadata, dict):
        return None
    return _usage_from(
        {
            "prompt_tokens": metadata.get("promptTokenCount", 0),
            "completion_tokens": metadata.get("candidatesTokenCount", 0),
            "total_tokens": metadata.get("totalTokenCount", 0),
        }
    )


async def vertex_chunks(events: AsyncIterator[dict]) -> AsyncIterator[StreamChunk]:
    """Normalise Vertex AI ``streamGenerateContent`` objects."""
    usage = None
    async for event in events:
        content = _first(event.get("candidates")).get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            parts = []
        texts = [p.get("text") for p in parts if isinstance(p, dict)]
        if len(texts) != len(parts) or any(t is not None and not isinstance(t, str) for t in texts):
            _skip("malformed content parts", event)
        text = "".join(t for t in texts if isinstance(t, str))
        if text:
            yield StreamChunk(content=text)

        event_usage = _vertex_usage(event.get("usageMetadata"))
        if event_usage is not None:
            usage = event_usage
    yield StreamChunk(content="", is_complete=True, usage=usage)
