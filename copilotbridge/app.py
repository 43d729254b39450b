"""HTTP application for the copilotbridge service.

This module exposes an Ollama-compatible API backed by GitHub Copilot chat:
- `/api/chat` streaming and non-streaming chat,
- `/api/tags` model listing,
- `/api/auth/*` sign-in management.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .bridge_service import BridgeService
from .chat_handlers import (
    build_ndjson_response,
    ollama_ndjson_stream,
    ollama_tags,
    to_ollama_chunk,
)
from .config import BridgeConfig, load_config
from .errors import AuthenticationError, BridgeError, TransportError
from .json_helpers import to_bounded_json
from .logging_utils import setup_logging

LOG = logging.getLogger(__name__)


def service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:11434")
    return parsed.hostname, parsed.port


def _http_error(exc: BridgeError) -> HTTPException:
    """Map bridge errors to HTTP errors."""
    if isinstance(exc, AuthenticationError):
        return HTTPException(status_code=401, detail=f"Authentication required: {exc}")
    if isinstance(exc, TransportError):
        return HTTPException(status_code=502, detail=f"Upstream error: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    config_path: str | None = None,
    *,
    cfg: BridgeConfig | None = None,
    service: BridgeService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    cfg = cfg or (service.cfg if service else load_config(config_path))
    setup_logging(cfg.logging)
    service = service or BridgeService(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        try:
            await service.start()
        except BridgeError as exc:
            LOG.error("bridge startup incomplete, sign-in endpoints stay available: %s", exc)
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="copilotbridge", version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service and credential state."""
        return JSONResponse(
            {
                "service": "copilotbridge",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "credential_state": service.credentials.state.value,
            }
        )

    @app.get("/")
    async def root() -> PlainTextResponse:
        """Liveness check used by Ollama clients."""
        return PlainTextResponse("Ollama is running")

    @app.get("/api/tags")
    async def api_tags() -> JSONResponse:
        """Ollama-compatible model listing endpoint."""
        try:
            models = await service.catalog.list_models()
        except BridgeError as exc:
            raise _http_error(exc) from exc
        return JSONResponse(ollama_tags(models))

    @app.post("/api/chat")
    async def api_chat(request: Request):
        """Ollama-compatible chat endpoint."""
        payload = await request.json()
        LOG.debug("incoming chat request payload=%s", to_bounded_json(payload))
        messages = payload.get("messages") if isinstance(payload, dict) else None
        if not isinstance(messages, list) or not messages:
            raise HTTPException(status_code=400, detail="Messages array is required and must not be empty")

        kwargs = service.chat_arguments(payload)
        model = service.chat.resolve_model(kwargs["model"])
        stream = payload.get("stream", True) is not False

        if not stream:
            try:
                message = await service.chat.complete(messages, **kwargs)
            except BridgeError as exc:
                raise _http_error(exc) from exc
            return JSONResponse(to_ollama_chunk(message, model=model))

        batches = service.chat.stream_chat(messages, **kwargs)
        try:
            first = await batches.__anext__()
        except StopAsyncIteration:
            first = None
        except BridgeError as exc:
            await batches.aclose()
            raise _http_error(exc) from exc
        return build_ndjson_response(ollama_ndjson_stream(batches, model=model, first=first))

    @app.get("/api/auth/status")
    async def auth_status() -> JSONResponse:
        """Return combined sign-in and token status."""
        status = await service.credentials.status()
        return JSONResponse(status.to_dict())

    @app.post("/api/auth/signin")
    async def auth_signin(request: Request) -> JSONResponse:
        """Run device-code sign-in; the code is logged for the operator."""
        body = await request.body()
        force = False
        if body:
            data = await request.json()
            force = bool(isinstance(data, dict) and data.get("force"))
        try:
            status = await service.credentials.sign_in(force=force)
        except BridgeError as exc:
            raise _http_error(exc) from exc
        service.credentials.start_renewal()
        return JSONResponse(status.to_dict())

    @app.post("/api/auth/signout")
    async def auth_signout() -> JSONResponse:
        """Sign out and forget the local credential."""
        try:
            signed_out = await service.credentials.sign_out()
        except BridgeError as exc:
            raise _http_error(exc) from exc
        return JSONResponse({"signed_out": signed_out})

    return app
