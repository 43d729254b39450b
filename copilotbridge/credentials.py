"""Copilot bearer credential storage and lifecycle management.

The chat API accepts a short-lived token obtained by exchanging the long-lived
OAuth token the language server stores after device-code sign-in. The
`CredentialManager` keeps that short-lived token fresh: on demand before each
request and periodically from a background task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import webbrowser
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .config import BridgeConfig
from .errors import AuthenticationError, BridgeError
from .json_helpers import read_json_object

if TYPE_CHECKING:
    from .lsp_client import AuthorizationClient
    from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

_OAUTH_FILES = ("apps.json", "hosts.json")
_MIN_RENEWAL_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class Credential:
    """Short-lived bearer token plus the API endpoint it is valid for."""

    token: str
    endpoint: str | None = None
    expires_at: float | None = None
    refresh_in: float | None = None

    @classmethod
    def from_token_response(cls, data: dict[str, Any]) -> "Credential":
        """Build a credential from the token exchange JSON body."""
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise ValueError("token exchange response has no token")
        endpoints = data.get("endpoints")
        endpoint = endpoints.get("api") if isinstance(endpoints, dict) else None
        expires_at = data.get("expires_at")
        refresh_in = data.get("refresh_in")
        return cls(
            token=token,
            endpoint=str(endpoint).rstrip("/") if endpoint else None,
            expires_at=float(expires_at) if isinstance(expires_at, (int, float)) else None,
            refresh_in=float(refresh_in) if isinstance(refresh_in, (int, float)) else None,
        )

    def remaining(self, now: float) -> float | None:
        """Seconds until expiry, or None when the token never expires."""
        if self.expires_at is None:
            return None
        return self.expires_at - now

    def is_valid(self, now: float, min_remaining: float = 0.0) -> bool:
        """Return whether the token is still usable for `min_remaining` seconds."""
        remaining = self.remaining(now)
        if remaining is None:
            return True
        return remaining > min_remaining


class CredentialStore:
    """Holder of the current credential, replaced by value and never mutated."""

    def __init__(self, credential: Credential | None = None) -> None:
        self._current = credential

    @property
    def current(self) -> Credential | None:
        """Return the current credential snapshot."""
        return self._current

    def replace(self, credential: Credential) -> None:
        """Swap in a new credential."""
        self._current = credential

    def clear(self) -> None:
        """Forget the current credential."""
        self._current = None


class CredentialState(str, Enum):
    """Observable lifecycle states of the credential manager."""

    NO_CREDENTIAL = "no_credential"
    AUTHORIZING = "authorizing"
    VALID = "valid"
    RENEWING = "renewing"
    EXPIRED = "expired"


@dataclass
class AuthStatus:
    """Combined view of collaborator sign-in and local token validity."""

    user: str | None
    authenticated: bool
    collaborator_status: str
    token_valid: bool
    expires_at: float | None
    state: CredentialState

    def to_dict(self) -> dict[str, Any]:
        """Render as a JSON-friendly dict."""
        out = asdict(self)
        out["state"] = self.state.value
        return out


def read_oauth_token(config_dir: Path) -> str | None:
    """Find the first `github.com:*` OAuth token stored by the language server."""
    for name in _OAUTH_FILES:
        data = read_json_object(config_dir / name)
        if not data:
            continue
        for key, entry in data.items():
            if key.startswith("github.com") and isinstance(entry, dict) and entry.get("oauth_token"):
                return str(entry["oauth_token"])
    return None


class CredentialManager:
    """Own sign-in, sign-out and renewal of the Copilot bearer credential."""

    def __init__(
        self,
        cfg: BridgeConfig,
        authorizer: AuthorizationClient,
        exchanger: UpstreamClient,
        *,
        store: CredentialStore | None = None,
        oauth_token_loader: Callable[[], str | None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.authorizer = authorizer
        self.exchanger = exchanger
        self.store = store or CredentialStore()
        self._oauth_token_loader = oauth_token_loader or (
            lambda: read_oauth_token(cfg.resolved_copilot_config_dir())
        )
        self._clock = clock
        self._renewing = 0
        self._authorizing = 0
        self._renewal_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> CredentialState:
        """Compute the lifecycle state from in-flight work and the stored credential."""
        if self._authorizing:
            return CredentialState.AUTHORIZING
        if self._renewing:
            return CredentialState.RENEWING
        credential = self.store.current
        if credential is None:
            return CredentialState.NO_CREDENTIAL
        if credential.is_valid(self._clock()):
            return CredentialState.VALID
        return CredentialState.EXPIRED

    async def ensure_valid(self, min_remaining: float = 0.0) -> Credential:
        """Return a credential valid for `min_remaining` seconds, renewing if needed."""
        credential = self.store.current
        if credential is not None and credential.is_valid(self._clock(), min_remaining):
            return credential
        return await self.renew()

    async def renew(self) -> Credential:
        """Exchange the OAuth token for a fresh credential and store it."""
        self._renewing += 1
        try:
            try:
                oauth_token = self._oauth_token_loader()
            except (OSError, ValueError) as exc:
                raise AuthenticationError(f"cannot read OAuth token: {exc}") from exc
            if not oauth_token:
                raise AuthenticationError("no OAuth token found, sign in first")

            try:
                credential = await self.exchanger.exchange_token(oauth_token)
            except BridgeError as exc:
                raise AuthenticationError(f"token exchange failed: {exc}") from exc
            except ValueError as exc:
                raise AuthenticationError(f"token exchange returned malformed data: {exc}") from exc
        finally:
            self._renewing -= 1

        self.store.replace(credential)
        LOG.info(
            "copilot token renewed endpoint=%s expires_at=%s refresh_in=%s",
            credential.endpoint,
            credential.expires_at,
            credential.refresh_in,
        )
        return credential

    async def status(self) -> AuthStatus:
        """Query the collaborator and combine it with local token state."""
        try:
            remote = await self.authorizer.check_status()
        except BridgeError as exc:
            LOG.warning("authorization status check failed: %s", exc)
            remote = {"status": "Error"}
        user = remote.get("user") or None
        credential = self.store.current
        return AuthStatus(
            user=user,
            authenticated=bool(user),
            collaborator_status=str(remote.get("status") or "Unknown"),
            token_valid=credential is not None and credential.is_valid(self._clock()),
            expires_at=credential.expires_at if credential else None,
            state=self.state,
        )

    async def sign_in(self, force: bool = False) -> AuthStatus:
        """Sign in via the device-code flow when needed, then fetch a token."""
        current = await self.status()
        if current.authenticated and current.token_valid and not force:
            LOG.info("already signed in as user=%s", current.user)
            return current

        if not current.authenticated:
            self._authorizing += 1
            try:
                await self._device_code_sign_in()
            finally:
                self._authorizing -= 1

        if not current.token_valid or force:
            await self.renew()

        final = await self.status()
        if not final.authenticated or not final.token_valid:
            raise AuthenticationError("sign-in did not yield a valid credential")
        return final

    async def _device_code_sign_in(self) -> None:
        """Drive `signInInitiate` / `signInConfirm` with the collaborator."""
        LOG.info("starting GitHub Copilot device-code sign-in")
        initiated = await self.authorizer.sign_in_initiate()
        user_code = initiated.get("userCode")
        verification_uri = initiated.get("verificationUri")
        if not user_code or not verification_uri:
            raise AuthenticationError("invalid sign-in response from authorizer")

        LOG.warning("open %s and enter the one-time code %s", verification_uri, user_code)
        if self.cfg.open_browser:
            opened = await asyncio.to_thread(webbrowser.open, str(verification_uri))
            if not opened:
                LOG.info("could not open a browser for %s", verification_uri)

        confirmed = await self.authorizer.sign_in_confirm(str(user_code))
        if str(confirmed.get("status") or "").lower() != "ok":
            error = confirmed.get("error")
            detail = error.get("message") if isinstance(error, dict) else None
            raise AuthenticationError(f"authentication failed: {detail or 'unknown error'}")
        LOG.info("signed in as user=%s", confirmed.get("user"))

    async def sign_out(self) -> bool:
        """Drop the local credential and sign out; False when nobody was signed in."""
        remote = await self.authorizer.check_status(local_checks_only=True)
        user = remote.get("user")
        had_credential = self.store.current is not None
        self.store.clear()
        if not user:
            LOG.info("not currently signed in")
            return had_credential
        await self.authorizer.sign_out()
        LOG.info("signed out user=%s", user)
        return True

    def renewal_interval(self) -> float:
        """Seconds until the next renewal tick, always shorter than the token lifetime."""
        interval = float(self.cfg.token_renewal_interval_seconds or 300.0)
        credential = self.store.current
        if credential is not None:
            if credential.refresh_in:
                interval = min(interval, credential.refresh_in)
            remaining = credential.remaining(self._clock())
            if remaining is not None and remaining > 0:
                interval = min(interval, remaining / 2)
        return max(interval, _MIN_RENEWAL_INTERVAL_SECONDS)

    def start_renewal(self) -> None:
        """Start the background renewal task if it is not running."""
        if self._renewal_task is not None and not self._renewal_task.done():
            return
        self._renewal_task = asyncio.create_task(self._renewal_loop())

    async def stop_renewal(self) -> None:
        """Cancel the background renewal task."""
        task = self._renewal_task
        self._renewal_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _renewal_loop(self) -> None:
        """Renew ahead of expiry forever; failures wait for the next tick."""
        margin = float(self.cfg.renew_before_expiry_seconds or 0.0)
        while True:
            await asyncio.sleep(self.renewal_interval())
            try:
                await self.ensure_valid(min_remaining=margin)
            except BridgeError as exc:
                LOG.warning("background token renewal failed, retrying next interval: %s", exc)
            except Exception:
                LOG.exception("background token renewal crashed, retrying next interval")
