"""Streaming chat requests against Copilot with normalized output."""

from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import replace
from typing import Any, AsyncGenerator, Awaitable, Callable

from .config import BridgeConfig
from .credentials import CredentialManager
from .errors import AuthenticationError
from .framing import ChunkReassembler
from .message_preparation import build_chat_payload, has_images
from .models import read_selected_model
from .stream_chunks import DeltaNormalizer, NormalizedMessage
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

MARKER_DATA = "data"
MARKER_END = "end"

Batch = tuple[list[NormalizedMessage], str]
Sink = Callable[[list[NormalizedMessage], str], "Awaitable[None] | None"]


def _normalize_frames(normalizer: DeltaNormalizer, frames: list[str]) -> list[NormalizedMessage]:
    """Run completed frames through the normalizer, keeping arrival order."""
    messages: list[NormalizedMessage] = []
    for frame in frames:
        message = normalizer.normalize(frame)
        if message is not None:
            messages.append(message)
    return messages


class ChatClient:
    """Drive one upstream chat stream per call and deliver normalized batches."""

    def __init__(self, cfg: BridgeConfig, credentials: CredentialManager, upstream: UpstreamClient) -> None:
        self.cfg = cfg
        self.credentials = credentials
        self.upstream = upstream

    def resolve_model(self, model: str | None) -> str:
        """Return the requested model, else the saved selection, else `default_model`."""
        if model and model.strip():
            return model.strip()
        selected = read_selected_model(self.cfg.resolved_copilot_config_dir())
        if selected:
            return selected
        return str(self.cfg.default_model)

    async def stream_chat(
        self,
        messages: list[Any],
        *,
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> AsyncGenerator[Batch, None]:
        """Yield `(messages, marker)` batches: one per upstream chunk, then `"end"`.

        Raises `AuthenticationError` before any network call when no valid
        credential can be obtained, and `TransportError` when the upstream
        rejects the request or the connection fails.
        """
        credential = await self.credentials.ensure_valid()
        if not credential.endpoint:
            raise AuthenticationError("could not determine API endpoint from credential")

        trace_id = uuid.uuid4().hex[:12]
        payload = build_chat_payload(
            messages,
            model=self.resolve_model(model),
            tools=tools,
            options=options,
        )
        reassembler = ChunkReassembler()
        normalizer = DeltaNormalizer()

        stream = self.upstream.stream_chat_completion(
            credential,
            payload,
            vision=has_images(messages),
            trace_id=trace_id,
        )
        try:
            async for chunk in stream:
                batch = _normalize_frames(normalizer, reassembler.feed(chunk))
                if batch:
                    yield batch, MARKER_DATA
        finally:
            await stream.aclose()

        final = _normalize_frames(normalizer, reassembler.flush())
        terminal = normalizer.finish()
        if terminal is not None:
            final.append(terminal)
        if normalizer.dropped_frames:
            LOG.warning("chat stream trace=%s dropped %s malformed frames", trace_id, normalizer.dropped_frames)
        yield final, MARKER_END

    async def send_streaming_request(
        self,
        messages: list[Any],
        sink: Sink,
        *,
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        """Stream a chat request into a sync or async `sink(messages, marker)`."""
        async for batch, marker in self.stream_chat(messages, model=model, tools=tools, options=options):
            result = sink(batch, marker)
            if inspect.isawaitable(result):
                await result

    async def complete(
        self,
        messages: list[Any],
        *,
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
    ) -> NormalizedMessage:
        """Collect a whole stream into one terminal message carrying all content."""
        parts: list[str] = []
        terminal: NormalizedMessage | None = None
        first_model: str | None = None
        async for batch, _marker in self.stream_chat(messages, model=model, tools=tools, options=options):
            for message in batch:
                if message.done:
                    terminal = message
                    continue
                parts.append(message.content)
                first_model = first_model or message.model
        if terminal is None:
            terminal = NormalizedMessage(done=True, done_reason="stop")
        return replace(terminal, content="".join(parts), model=terminal.model or first_model)

