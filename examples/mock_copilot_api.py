"""Local stand-in for the Copilot token and chat APIs.

Run with `uvicorn examples.mock_copilot_api:app --port 10000` and point
`token_exchange_url` at `http://127.0.0.1:10000/copilot_internal/v2/token`.
Streams are deliberately fragmented so that SSE frames and UTF-8 characters
span multiple body chunks.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-copilot-api")

TOKEN_LIFETIME_SECONDS = 1500


@app.get("/copilot_internal/v2/token")
async def token(request: Request) -> JSONResponse:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer ") or auth == "Bearer bad":
        return JSONResponse({"message": "Bad credentials"}, status_code=401)
    base = str(request.base_url).rstrip("/")
    return JSONResponse(
        {
            "token": f"tid=mock;exp={int(time.time()) + TOKEN_LIFETIME_SECONDS}",
            "expires_at": int(time.time()) + TOKEN_LIFETIME_SECONDS,
            "refresh_in": TOKEN_LIFETIME_SECONDS - 300,
            "endpoints": {"api": base},
        }
    )


@app.get("/models")
async def models() -> JSONResponse:
    return JSONResponse(
        {
            "data": [
                {"id": "gpt-4o-2024-05-13", "name": "GPT 4o", "vendor": "Azure OpenAI", "version": "gpt-4o-2024-05-13"},
                {"id": "gpt-4o-2024-11-20", "name": "GPT 4o", "vendor": "Azure OpenAI", "version": "gpt-4o-2024-11-20"},
                {"id": "claude-3.5-sonnet", "name": "Claude 3.5 Sonnet", "vendor": "Anthropic", "version": "claude-3.5-sonnet"},
            ]
        }
    )


def _chunk(model: str, created: int, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
    return {
        "id": f"chatcmpl-{created}",
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


@app.post("/chat/completions")
async def chat_completions(request: Request):
    if not request.headers.get("authorization", "").startswith("Bearer tid="):
        return JSONResponse({"error": {"message": "unauthorized"}}, status_code=401)
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    tools: list[dict[str, Any]] = payload.get("tools") or []
    model = payload.get("model") or "gpt-4o-2024-11-20"
    created = int(time.time())

    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
    last_tool = next((m for m in reversed(messages) if m.get("role") == "tool"), None)
    user_text = last_user.get("content") if isinstance(last_user.get("content"), str) else ""

    frames: list[dict[str, Any]] = [_chunk(model, created, {"role": "assistant", "content": ""})]
    if last_tool is None and "add" in user_text.lower() and tools:
        tool_name = tools[0].get("function", {}).get("name", "add")
        arguments = json.dumps({"a": 2, "b": 3})
        call_id = f"call_{uuid.uuid4().hex}"
        frames.append(
            _chunk(
                model,
                created,
                {"tool_calls": [{"index": 0, "id": call_id, "type": "function", "function": {"name": tool_name, "arguments": ""}}]},
            )
        )
        for ch in arguments:
            frames.append(_chunk(model, created, {"tool_calls": [{"index": 0, "function": {"arguments": ch}}]}))
        frames.append(_chunk(model, created, {}, "tool_calls"))
    else:
        text = f"Tool result: {last_tool.get('content')}" if last_tool else "Grüße from the mock"
        for word in text.split(" "):
            frames.append(_chunk(model, created, {"content": word + " "}))
        frames.append(_chunk(model, created, {}, "stop"))
    frames[-1]["usage"] = {"prompt_tokens": len(messages), "completion_tokens": len(frames) - 1}

    body = "".join(f"data: {json.dumps(frame, ensure_ascii=False)}\n\n" for frame in frames) + "data: [DONE]\n\n"

    async def gen():
        raw = body.encode("utf-8")
        step = 7
        for start in range(0, len(raw), step):
            yield raw[start : start + step]

    return StreamingResponse(gen(), media_type="text/event-stream")
