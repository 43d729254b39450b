"""Helpers for the Ollama-compatible `/api/chat` and `/api/tags` endpoints."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi.responses import StreamingResponse

from .chat_client import Batch
from .errors import BridgeError
from .models import ModelInfo
from .stream_chunks import NormalizedMessage

LOG = logging.getLogger(__name__)


def created_at(created: int | None) -> str:
    """Render an epoch-seconds `created` value (or now) as ISO-8601 UTC."""
    if created is None:
        moment = datetime.now(timezone.utc)
    else:
        moment = datetime.fromtimestamp(created, tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


def ndjson_line(payload: dict[str, Any]) -> bytes:
    """Encode one NDJSON line."""
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def to_ollama_chunk(message: NormalizedMessage, *, model: str) -> dict[str, Any]:
    """Convert one normalized message to an Ollama chat stream object."""
    ollama_message: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        ollama_message["tool_calls"] = [
            {"function": {"name": tc.name, "arguments": tc.arguments}} for tc in message.tool_calls
        ]
    payload: dict[str, Any] = {
        "model": message.model or model,
        "created_at": created_at(message.created),
        "message": ollama_message,
        "done": message.done,
    }
    if message.done:
        payload["done_reason"] = message.done_reason or "stop"
        payload["prompt_eval_count"] = message.prompt_eval_count or 0
        payload["eval_count"] = message.eval_count or 0
        if message.error:
            payload["error"] = message.error
    return payload


def build_error_payload(message: str, *, code: str) -> dict[str, Any]:
    """Build an Ollama-style error response payload."""
    return {"error": message, "code": code}


async def ollama_ndjson_stream(
    batches: AsyncGenerator[Batch, None],
    *,
    model: str,
    first: Batch | None = None,
) -> AsyncGenerator[bytes, None]:
    """Render normalized batches as NDJSON lines, one line per message.

    Failures after the first byte was sent cannot change the HTTP status, so
    they are reported as one trailing `{"error": ...}` line.
    """
    try:
        if first is not None:
            for message in first[0]:
                yield ndjson_line(to_ollama_chunk(message, model=model))
        async for batch, _marker in batches:
            for message in batch:
                yield ndjson_line(to_ollama_chunk(message, model=model))
    except BridgeError as exc:
        LOG.warning("chat stream failed after start model=%s error=%s", model, exc)
        yield ndjson_line(build_error_payload(str(exc), code=exc.__class__.__name__))
    finally:
        await batches.aclose()


def build_ndjson_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build the streaming response used by `/api/chat`."""
    return StreamingResponse(
        stream,
        media_type="application/x-ndjson",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


def ollama_tags(models: list[ModelInfo]) -> dict[str, Any]:
    """Render the model catalog in `/api/tags` shape."""
    now = created_at(None)
    return {
        "models": [
            {
                "name": model.id,
                "model": model.id,
                "modified_at": now,
                "size": 0,
                "digest": f"copilot-{model.id}",
                "details": {
                    "parameter_size": "unknown",
                    "family": model.vendor or "GitHub Copilot",
                    "families": ["GitHub Copilot"],
                    "format": "Copilot API",
                    "description": model.name,
                },
            }
            for model in models
        ]
    }
