"""Client wrapper for the GitHub Copilot HTTP APIs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .config import BridgeConfig
from .credentials import Credential
from .errors import AuthenticationError, TransportError
from .json_helpers import to_bounded_json

LOG = logging.getLogger(__name__)

_USER_AGENT = "github-copilot"


class UpstreamClient:
    """Thin async HTTP client for token exchange, model listing and chat."""

    def __init__(self, cfg: BridgeConfig) -> None:
        """Create an upstream client from bridge configuration."""
        self.cfg = cfg
        self._timeout = httpx.Timeout(connect=10.0, read=300.0, write=120.0, pool=10.0)
        self._short_timeout = httpx.Timeout(cfg.token_exchange_timeout_seconds)
        self._client = httpx.AsyncClient(timeout=self._short_timeout)

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh HTTP client for one streaming request."""
        return httpx.AsyncClient(timeout=self._timeout)

    def _api_headers(self, credential: Credential) -> dict[str, str]:
        """Build headers for calls against the Copilot API endpoint."""
        editor = self.cfg.editor
        return {
            "Authorization": f"Bearer {credential.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": _USER_AGENT,
            "Copilot-Integration-Id": editor.integration_id,
            "Editor-Version": editor.editor_version_header,
        }

    @staticmethod
    def _endpoint(credential: Credential) -> str:
        """Return the API base URL bound to a credential."""
        if not credential.endpoint:
            raise AuthenticationError("credential carries no API endpoint")
        return credential.endpoint.rstrip("/")

    async def exchange_token(self, oauth_token: str) -> Credential:
        """Exchange the long-lived OAuth token for a short-lived API credential."""
        headers = {
            "Authorization": f"Bearer {oauth_token}",
            "Accept": "application/json",
            "User-Agent": _USER_AGENT,
        }
        LOG.debug("requesting copilot token url=%s", self.cfg.token_exchange_url)
        try:
            response = await self._client.get(self.cfg.token_exchange_url, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"token exchange request failed: {exc}") from exc
        if response.status_code != 200:
            raise TransportError(
                "token exchange returned non-success status",
                status=response.status_code,
                body=response.text,
            )
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("token exchange response is not an object")
        return Credential.from_token_response(data)

    async def list_models(self, credential: Credential) -> dict[str, Any]:
        """Fetch the raw model catalog."""
        url = f"{self._endpoint(credential)}/models"
        LOG.debug("forwarding upstream request method=GET url=%s", url)
        try:
            response = await self._client.get(url, headers=self._api_headers(credential))
        except httpx.HTTPError as exc:
            raise TransportError(f"model listing request failed: {exc}") from exc
        if response.status_code != 200:
            raise TransportError(
                "model listing returned non-success status",
                status=response.status_code,
                body=response.text,
            )
        return response.json()

    async def stream_chat_completion(
        self,
        credential: Credential,
        payload: dict[str, Any],
        *,
        vision: bool = False,
        trace_id: str | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """Run one streaming chat completion and yield raw body chunks as received."""
        url = f"{self._endpoint(credential)}/chat/completions"
        headers = self._api_headers(credential)
        headers["Accept"] = "text/event-stream"
        if vision:
            headers["Copilot-Vision-Request"] = "true"
        req_payload = dict(payload)
        req_payload["stream"] = True
        started = time.monotonic()
        tag = trace_id or "-"
        LOG.debug(
            "upstream stream start trace=%s method=POST url=%s payload=%s",
            tag,
            url,
            to_bounded_json(req_payload),
        )

        stream_client = self._build_client()
        response: httpx.Response | None = None
        chunk_count = 0
        try:
            try:
                response = await stream_client.send(
                    stream_client.build_request("POST", url, headers=headers, json=req_payload),
                    stream=True,
                )
            except httpx.HTTPError as exc:
                raise TransportError(f"chat request failed: {exc}") from exc

            if response.status_code != 200:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise TransportError(
                    "chat request returned non-success status",
                    status=response.status_code,
                    body=body,
                )

            try:
                async for chunk in response.aiter_bytes():
                    chunk_count += 1
                    yield chunk
            except httpx.HTTPError as exc:
                raise TransportError(f"chat stream interrupted: {exc}") from exc
        except asyncio.CancelledError:
            LOG.debug(
                "upstream stream cancelled trace=%s elapsed=%.3fs chunks=%s",
                tag,
                time.monotonic() - started,
                chunk_count,
            )
            raise
        finally:
            if response is not None:
                await response.aclose()
            await stream_client.aclose()
            LOG.debug(
                "upstream stream closed trace=%s elapsed=%.3fs chunks=%s",
                tag,
                time.monotonic() - started,
                chunk_count,
            )
