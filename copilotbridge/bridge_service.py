"""Runtime container wiring the language server, credentials and chat client."""

from __future__ import annotations

import logging
from typing import Any

from .chat_client import ChatClient
from .config import BridgeConfig
from .credentials import AuthStatus, CredentialManager
from .errors import BridgeError
from .lsp_client import AuthorizationClient, LSPClient
from .message_preparation import map_options
from .models import ModelCatalog
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.5
DEFAULT_MAX_TOKENS = 8192


class BridgeService:
    """Own every long-lived collaborator of one bridge process."""

    def __init__(
        self,
        cfg: BridgeConfig,
        *,
        authorizer: AuthorizationClient | None = None,
        upstream: UpstreamClient | None = None,
    ) -> None:
        """Initialize service with config-bound clients."""
        self.cfg = cfg
        self.authorizer = authorizer or LSPClient(cfg)
        self.upstream = upstream or UpstreamClient(cfg)
        self.credentials = CredentialManager(cfg, self.authorizer, self.upstream)
        self.chat = ChatClient(cfg, self.credentials, self.upstream)
        self.catalog = ModelCatalog(self.credentials, self.upstream)

    async def start(self) -> AuthStatus:
        """Start the authorizer, fetch a first token and begin renewal."""
        await self.authorizer.start()
        status = await self.credentials.status()
        if not status.authenticated:
            LOG.warning("not signed in; POST /api/auth/signin or run `copilotbridge signin`")
        else:
            try:
                await self.credentials.ensure_valid()
            except BridgeError as exc:
                LOG.warning("initial token exchange failed user=%s error=%s", status.user, exc)
            status = await self.credentials.status()
            LOG.info("signed in as user=%s token_valid=%s", status.user, status.token_valid)
        self.credentials.start_renewal()
        return status

    async def close(self) -> None:
        """Stop renewal and release clients."""
        await self.credentials.stop_renewal()
        await self.authorizer.close()
        await self.upstream.close()

    @staticmethod
    def chat_arguments(request_payload: dict[str, Any]) -> dict[str, Any]:
        """Extract `ChatClient` keyword arguments from an Ollama chat request."""
        options = request_payload.get("options")
        return {
            "model": request_payload.get("model"),
            "tools": request_payload.get("tools") or None,
            "options": map_options(
                options if isinstance(options, dict) else None,
                default_temperature=DEFAULT_TEMPERATURE,
                default_max_tokens=DEFAULT_MAX_TOKENS,
            ),
        }
