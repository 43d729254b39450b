"""Conversion of Ollama-style chat requests into Copilot chat payloads."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

LOG = logging.getLogger(__name__)

# Ollama option name -> OpenAI request field.
_OPTION_FIELDS = {
    "temperature": "temperature",
    "top_p": "top_p",
    "num_predict": "max_tokens",
    "stop": "stop",
    "seed": "seed",
    "presence_penalty": "presence_penalty",
    "frequency_penalty": "frequency_penalty",
}


def has_images(messages: list[Any]) -> bool:
    """Return whether any message carries Ollama `images`."""
    return any(isinstance(msg, dict) and msg.get("images") for msg in messages)


def _image_part(image: str) -> dict[str, Any]:
    """Wrap one base64 image (or data URL) as an `image_url` content part."""
    url = image if image.startswith("data:") else f"data:image/jpeg;base64,{image}"
    return {"type": "image_url", "image_url": {"url": url}}


def _with_image_content(message: dict[str, Any]) -> dict[str, Any]:
    """Turn `content` + `images` into an OpenAI content part list."""
    content = message.get("content")
    parts: list[dict[str, Any]] = []
    if isinstance(content, str) and content:
        parts.append({"type": "text", "text": content})
    elif isinstance(content, list):
        parts.extend(item for item in content if isinstance(item, dict))
    parts.extend(_image_part(str(image)) for image in message.get("images") or [])
    updated = {key: value for key, value in message.items() if key != "images"}
    updated["content"] = parts
    return updated


def _openai_tool_calls(tool_calls: list[Any]) -> list[dict[str, Any]]:
    """Serialize Ollama tool calls (object arguments) to OpenAI tool calls."""
    out: list[dict[str, Any]] = []
    for tc in tool_calls:
        if not isinstance(tc, dict):
            continue
        fn = tc.get("function") or {}
        arguments = fn.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments if arguments is not None else {}, ensure_ascii=False)
        out.append(
            {
                "id": tc.get("id") or f"call_{uuid.uuid4().hex}",
                "type": "function",
                "function": {"name": fn.get("name"), "arguments": arguments},
            }
        )
    return out


def prepare_messages(messages: list[Any]) -> list[dict[str, Any]]:
    """Normalize Ollama chat messages into the upstream message format."""
    prepared: list[dict[str, Any]] = []
    open_call_ids: list[str] = []

    for msg in messages:
        if not isinstance(msg, dict):
            continue
        updated = dict(msg)

        if updated.get("images"):
            updated = _with_image_content(updated)
        else:
            updated.pop("images", None)

        if updated.get("role") == "assistant" and updated.get("tool_calls"):
            updated["tool_calls"] = _openai_tool_calls(updated["tool_calls"])
            open_call_ids = [tc["id"] for tc in updated["tool_calls"]]
            if updated.get("content") is None:
                updated["content"] = ""
        elif updated.get("role") == "tool" and not updated.get("tool_call_id"):
            if open_call_ids:
                updated["tool_call_id"] = open_call_ids.pop(0)
            else:
                LOG.debug("tool message without a matching tool call id")

        prepared.append(updated)

    return prepared


def map_options(
    options: dict[str, Any] | None,
    *,
    default_temperature: float | None = None,
    default_max_tokens: int | None = None,
) -> dict[str, Any]:
    """Map Ollama `options` to OpenAI request fields, dropping unknown keys."""
    mapped: dict[str, Any] = {}
    if default_temperature is not None:
        mapped["temperature"] = default_temperature
    if default_max_tokens is not None:
        mapped["max_tokens"] = default_max_tokens
    for key, value in (options or {}).items():
        field = _OPTION_FIELDS.get(key)
        if field is None or value is None:
            continue
        mapped[field] = value
    return mapped


def build_chat_payload(
    messages: list[Any],
    *,
    model: str,
    tools: list[dict[str, Any]] | None = None,
    options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the upstream chat completion request body."""
    payload: dict[str, Any] = dict(options or {})
    payload["model"] = model
    payload["messages"] = prepare_messages(messages)
    if tools:
        payload["tools"] = tools
    payload["stream"] = True
    return payload
