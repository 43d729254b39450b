import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from copilotbridge.config import BridgeConfig
from copilotbridge.credentials import (
    Credential,
    CredentialManager,
    CredentialState,
    CredentialStore,
    read_oauth_token,
)
from copilotbridge.errors import AuthenticationError, TransportError
from copilotbridge.lsp_client import AuthorizationClient

NOW = 1_700_000_000.0


def _make_cfg(**overrides: object) -> BridgeConfig:
    raw: dict[str, object] = {"open_browser": False}
    raw.update(overrides)
    return BridgeConfig.model_validate(raw)


class _FakeAuthorizer(AuthorizationClient):
    def __init__(self, user: str | None = "octocat", confirm_status: str = "OK") -> None:
        self.user = user
        self.confirm_status = confirm_status
        self.calls: list[str] = []

    async def check_status(self, *, local_checks_only: bool = False) -> dict[str, Any]:
        self.calls.append("checkStatus")
        if self.user:
            return {"status": "OK", "user": self.user}
        return {"status": "NotSignedIn"}

    async def sign_in_initiate(self) -> dict[str, Any]:
        self.calls.append("signInInitiate")
        return {"userCode": "ABCD-1234", "verificationUri": "https://github.com/login/device"}

    async def sign_in_confirm(self, user_code: str) -> dict[str, Any]:
        self.calls.append(f"signInConfirm:{user_code}")
        if self.confirm_status == "OK":
            self.user = "octocat"
            return {"status": "OK", "user": "octocat"}
        return {"status": self.confirm_status, "error": {"message": "denied"}}

    async def sign_out(self) -> dict[str, Any]:
        self.calls.append("signOut")
        self.user = None
        return {"status": "NotSignedIn"}


class _FakeExchanger:
    def __init__(self, *, fail_with: Exception | None = None, lifetime: float = 1500.0) -> None:
        self.fail_with = fail_with
        self.lifetime = lifetime
        self.calls = 0

    async def exchange_token(self, oauth_token: str) -> Credential:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        return Credential(
            token=f"tid=fresh-{self.calls}",
            endpoint="https://api.individual.githubcopilot.com",
            expires_at=NOW + self.lifetime,
            refresh_in=self.lifetime - 300,
        )


def _manager(
    *,
    authorizer: _FakeAuthorizer | None = None,
    exchanger: _FakeExchanger | None = None,
    credential: Credential | None = None,
    oauth_token: str | None = "gho_token",
    cfg: BridgeConfig | None = None,
) -> CredentialManager:
    return CredentialManager(
        cfg or _make_cfg(),
        authorizer or _FakeAuthorizer(),
        exchanger or _FakeExchanger(),
        store=CredentialStore(credential),
        oauth_token_loader=lambda: oauth_token,
        clock=lambda: NOW,
    )


def test_valid_credential_is_returned_without_exchange() -> None:
    exchanger = _FakeExchanger()
    current = Credential(token="tid=ok", endpoint="https://e", expires_at=NOW + 600)
    manager = _manager(exchanger=exchanger, credential=current)

    assert asyncio.run(manager.ensure_valid()) is current
    assert exchanger.calls == 0
    assert manager.state is CredentialState.VALID


def test_expired_credential_triggers_exactly_one_exchange() -> None:
    exchanger = _FakeExchanger()
    manager = _manager(exchanger=exchanger, credential=Credential(token="old", endpoint="https://e", expires_at=NOW - 1))
    assert manager.state is CredentialState.EXPIRED

    credential = asyncio.run(manager.ensure_valid())

    assert exchanger.calls == 1
    assert credential.token == "tid=fresh-1"
    assert manager.store.current is credential
    assert manager.state is CredentialState.VALID


def test_min_remaining_renews_credential_close_to_expiry() -> None:
    exchanger = _FakeExchanger()
    manager = _manager(exchanger=exchanger, credential=Credential(token="old", expires_at=NOW + 60))

    asyncio.run(manager.ensure_valid(min_remaining=120))

    assert exchanger.calls == 1


def test_rejected_exchange_keeps_store_and_raises_authentication_error() -> None:
    previous = Credential(token="old", endpoint="https://e", expires_at=NOW - 1)
    exchanger = _FakeExchanger(fail_with=TransportError("denied", status=401, body='{"message":"Bad credentials"}'))
    manager = _manager(exchanger=exchanger, credential=previous)

    with pytest.raises(AuthenticationError) as exc_info:
        asyncio.run(manager.ensure_valid())

    assert "401" in str(exc_info.value)
    assert manager.store.current is previous
    assert manager.state is CredentialState.EXPIRED


def test_missing_oauth_token_raises_without_exchange() -> None:
    exchanger = _FakeExchanger()
    manager = _manager(exchanger=exchanger, oauth_token=None)

    with pytest.raises(AuthenticationError):
        asyncio.run(manager.ensure_valid())
    assert exchanger.calls == 0
    assert manager.state is CredentialState.NO_CREDENTIAL


def test_malformed_exchange_response_raises_authentication_error() -> None:
    manager = _manager(exchanger=_FakeExchanger(fail_with=ValueError("token exchange response has no token")))

    with pytest.raises(AuthenticationError):
        asyncio.run(manager.renew())
    assert manager.store.current is None


def test_sign_in_is_noop_when_signed_in_with_valid_token() -> None:
    authorizer = _FakeAuthorizer()
    exchanger = _FakeExchanger()
    manager = _manager(
        authorizer=authorizer,
        exchanger=exchanger,
        credential=Credential(token="tid=ok", endpoint="https://e", expires_at=NOW + 600),
    )

    status = asyncio.run(manager.sign_in())

    assert status.authenticated is True
    assert status.token_valid is True
    assert exchanger.calls == 0
    assert "signInInitiate" not in authorizer.calls


def test_sign_in_force_fetches_new_token() -> None:
    exchanger = _FakeExchanger()
    manager = _manager(
        exchanger=exchanger,
        credential=Credential(token="tid=ok", endpoint="https://e", expires_at=NOW + 600),
    )

    asyncio.run(manager.sign_in(force=True))

    assert exchanger.calls == 1
    assert manager.store.current.token == "tid=fresh-1"


def test_sign_in_runs_device_code_flow_when_not_signed_in() -> None:
    authorizer = _FakeAuthorizer(user=None)
    exchanger = _FakeExchanger()
    manager = _manager(authorizer=authorizer, exchanger=exchanger)

    status = asyncio.run(manager.sign_in())

    assert "signInInitiate" in authorizer.calls
    assert "signInConfirm:ABCD-1234" in authorizer.calls
    assert status.user == "octocat"
    assert status.token_valid is True
    assert exchanger.calls == 1


def test_sign_in_fails_when_confirmation_is_rejected() -> None:
    authorizer = _FakeAuthorizer(user=None, confirm_status="Failed")
    manager = _manager(authorizer=authorizer)

    with pytest.raises(AuthenticationError, match="denied"):
        asyncio.run(manager.sign_in())
    assert manager.state is CredentialState.NO_CREDENTIAL


def test_sign_out_clears_store_and_is_idempotent() -> None:
    authorizer = _FakeAuthorizer()
    manager = _manager(authorizer=authorizer, credential=Credential(token="tid=ok", expires_at=NOW + 600))

    assert asyncio.run(manager.sign_out()) is True
    assert manager.store.current is None
    assert "signOut" in authorizer.calls
    assert asyncio.run(manager.sign_out()) is False
    assert authorizer.calls.count("signOut") == 1


def test_renewal_interval_is_shorter_than_token_lifetime() -> None:
    cfg = _make_cfg(token_renewal_interval_seconds=300)
    assert _manager(cfg=cfg).renewal_interval() == 300

    short = Credential(token="t", expires_at=NOW + 100, refresh_in=90)
    assert _manager(cfg=cfg, credential=short).renewal_interval() == 50

    almost_gone = Credential(token="t", expires_at=NOW + 2)
    assert _manager(cfg=cfg, credential=almost_gone).renewal_interval() == 5


def test_renewal_loop_survives_failures(monkeypatch) -> None:
    exchanger = _FakeExchanger(fail_with=TransportError("down"))
    manager = _manager(exchanger=exchanger)
    monkeypatch.setattr(manager, "renewal_interval", lambda: 0.001)

    async def scenario() -> None:
        manager.start_renewal()
        await asyncio.sleep(0.05)
        exchanger.fail_with = None
        await asyncio.sleep(0.05)
        await manager.stop_renewal()

    asyncio.run(scenario())

    assert exchanger.calls >= 2
    assert manager.store.current is not None
    assert manager.store.current.token.startswith("tid=fresh-")


def test_credential_from_token_response() -> None:
    credential = Credential.from_token_response(
        {
            "token": "tid=abc",
            "expires_at": 1700001500,
            "refresh_in": 1200,
            "endpoints": {"api": "https://api.individual.githubcopilot.com/"},
        }
    )

    assert credential.endpoint == "https://api.individual.githubcopilot.com"
    assert credential.expires_at == 1700001500.0
    assert credential.is_valid(1700001000.0)
    assert not credential.is_valid(1700001000.0, min_remaining=600)
    with pytest.raises(ValueError):
        Credential.from_token_response({"expires_at": 1})


def test_read_oauth_token_prefers_apps_json(tmp_path: Path) -> None:
    (tmp_path / "hosts.json").write_text(json.dumps({"github.com": {"oauth_token": "from-hosts"}}), encoding="utf-8")
    assert read_oauth_token(tmp_path) == "from-hosts"

    (tmp_path / "apps.json").write_text(
        json.dumps({"github.com:Iv1.b507a08c87ecfe98": {"user": "octocat", "oauth_token": "from-apps"}}),
        encoding="utf-8",
    )
    assert read_oauth_token(tmp_path) == "from-apps"


def test_read_oauth_token_returns_none_without_files(tmp_path: Path) -> None:
    assert read_oauth_token(tmp_path) is None


class _SlowExchanger(_FakeExchanger):
    def __init__(self, delays: list[float], failing_calls: set[int] | None = None) -> None:
        super().__init__()
        self.delays = delays
        self.failing_calls = failing_calls or set()
        self.completed: list[str] = []

    async def exchange_token(self, oauth_token: str) -> Credential:
        credential = await super().exchange_token(oauth_token)
        number = self.calls
        await asyncio.sleep(self.delays[number - 1])
        if number in self.failing_calls:
            raise TransportError("denied", status=401)
        self.completed.append(credential.token)
        return credential


def test_concurrent_renewals_are_last_writer_wins_and_state_recovers() -> None:
    exchanger = _SlowExchanger(delays=[0.03, 0.0])
    manager = _manager(exchanger=exchanger, credential=Credential(token="old", endpoint="https://e", expires_at=NOW - 1))
    observed: list[CredentialState] = []

    async def scenario() -> None:
        pending = asyncio.gather(manager.ensure_valid(), manager.ensure_valid())
        await asyncio.sleep(0.01)
        observed.append(manager.state)
        await pending

    asyncio.run(scenario())

    assert exchanger.calls == 2
    assert exchanger.completed == ["tid=fresh-2", "tid=fresh-1"]
    assert manager.store.current.token == "tid=fresh-1"
    assert observed == [CredentialState.RENEWING]
    assert manager.state is CredentialState.VALID


def test_state_is_recomputed_after_overlapping_renewal_failure() -> None:
    exchanger = _SlowExchanger(delays=[0.02, 0.0], failing_calls={2})
    manager = _manager(exchanger=exchanger, credential=Credential(token="old", endpoint="https://e", expires_at=NOW - 1))

    async def scenario() -> list[object]:
        return await asyncio.gather(manager.ensure_valid(), manager.ensure_valid(), return_exceptions=True)

    first, second = asyncio.run(scenario())

    assert isinstance(first, Credential)
    assert isinstance(second, AuthenticationError)
    assert manager.store.current is first
    assert manager.state is CredentialState.VALID


def test_authorizing_state_is_reported_during_device_flow() -> None:
    authorizer = _FakeAuthorizer(user=None)
    manager = _manager(authorizer=authorizer)
    seen: list[CredentialState] = []
    confirm = authorizer.sign_in_confirm

    async def observing_confirm(user_code: str) -> dict[str, Any]:
        seen.append(manager.state)
        return await confirm(user_code)

    authorizer.sign_in_confirm = observing_confirm

    asyncio.run(manager.sign_in())

    assert seen == [CredentialState.AUTHORIZING]
    assert manager.state is CredentialState.VALID
