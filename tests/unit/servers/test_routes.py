"""HTTP-level tests for the connect endpoints (ASGITransport, no network)."""

from __future__ import annotations

import hmac
import json
import time
from hashlib import sha256
from unittest.mock import AsyncMock

import httpx
import pytest

from tink_connect.core.claims import MemoryClaimStore
from tink_connect.core.errors import ProviderError
from tink_connect.core.models import TokenResponse
from tink_connect.core.service import ConnectService
from tink_connect.core.state import StateTokenCodec
from tink_connect.core.sync import LoggingAccountSyncer
from tink_connect.servers.app import create_app
from tink_connect.servers.context import AppContext
from tink_connect.servers.routes import header_authenticator, log_webhook_event
from tink_connect.utils.environment import Settings

WEBHOOK_SECRET = "whsec-test"


class StubProvider:
    def __init__(self) -> None:
        self.flows = 0
        self.fail_connect = False

    async def user_access_token_flow(self, user_id: str, *, scope: str) -> TokenResponse:
        self.flows += 1
        return TokenResponse(access_token="user-token", expires_in=7200, scope=scope)

    async def get_client_token(self, scope: str = "authorization:grant") -> TokenResponse:
        if self.fail_connect:
            raise ProviderError("Tink client token returned 401", context="Tink client token", status_code=401)
        return TokenResponse(access_token="client-token", expires_in=1800)

    async def create_delegated_grant(self, client_token: str, *, user_id: str, id_hint: str) -> str:
        return "delegated-code"

    def build_link_url(self, code: str, *, market: str, locale: str, state: str) -> str:
        return f"https://link.test/?authorization_code={code}&market={market}&locale={locale}&state={state}"


def _settings(**overrides) -> Settings:
    values = {
        "state_secret": "state-secret",
        "tink_client_id": "client-id",
        "tink_client_secret": "client-secret",
        "tink_redirect_uri": "https://api.app.test/api/tink/callback",
        "tink_webhook_secret": WEBHOOK_SECRET,
        "client_url": "https://app.test",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def provider() -> StubProvider:
    return StubProvider()


@pytest.fixture()
def codec() -> StateTokenCodec:
    return StateTokenCodec("state-secret")


@pytest.fixture()
def webhook_handler() -> AsyncMock:
    return AsyncMock()


def _app(provider, codec, webhook_handler, **settings_overrides):
    claims = MemoryClaimStore()
    service = ConnectService(
        codec=codec, claims=claims, provider=provider, syncer=LoggingAccountSyncer()
    )
    context = AppContext(
        settings=_settings(**settings_overrides),
        service=service,
        claims=claims,
        authenticator=header_authenticator,
        webhook_handler=webhook_handler,
    )
    return create_app(context=context)


@pytest.fixture()
def app(provider, codec, webhook_handler):
    return _app(provider, codec, webhook_handler)


@pytest.fixture()
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as c:
        yield c


# --------------------------------------------------------------------------- #
# Callback                                                                    #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_callback_success_redirects_to_accounts(client, codec, provider, app) -> None:
    state = codec.create("user-1")
    resp = await client.get("/api/tink/callback", params={"code": "abc123", "state": state})

    assert resp.status_code == 302
    assert resp.headers["location"] == "https://app.test/accounts?connected=true"

    # a second delivery of the same code is answered without a new exchange
    again = await client.get("/api/tink/callback", params={"code": "abc123", "state": state})
    assert again.headers["location"] == "https://app.test/accounts?connected=true"
    assert provider.flows == 1
    await app.state.context.service.background.drain()


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("params", "reason"),
    [
        ({"error": "access_denied"}, "oauth_failed"),
        ({}, "missing_code"),
        ({"code": "abc123", "state": "bogus.state"}, "invalid_state"),
        ([("code", "a"), ("code", "b"), ("state", "s")], "invalid_parameters"),
    ],
)
async def test_callback_failures_redirect_with_reason(client, params, reason) -> None:
    resp = await client.get("/api/tink/callback", params=params)
    assert resp.status_code == 302
    assert resp.headers["location"] == f"https://app.test/accounts?error={reason}"


# --------------------------------------------------------------------------- #
# Connect                                                                     #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_connect_requires_authenticated_user(client) -> None:
    resp = await client.post("/api/tink/connect", json={})
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_connect_returns_link(client, codec) -> None:
    resp = await client.post(
        "/api/tink/connect",
        json={"market": "SE", "locale": "sv_SE"},
        headers={"X-Authenticated-User": "user-1"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Redirect user to this URL to connect their bank account"
    assert "market=SE" in body["url"]
    state = body["url"].split("state=", 1)[1]
    assert codec.verify(state).user_id == "user-1"


@pytest.mark.anyio
async def test_connect_defaults_market_and_locale(client) -> None:
    resp = await client.post("/api/tink/connect", headers={"X-Authenticated-User": "user-1"})
    assert resp.status_code == 200
    assert "market=FR&locale=en_US" in resp.json()["url"]


@pytest.mark.anyio
@pytest.mark.parametrize("content", [b"{not json", b"[1, 2]", b'{"market": 7}'])
async def test_connect_rejects_bad_body(client, content) -> None:
    resp = await client.post(
        "/api/tink/connect",
        content=content,
        headers={"X-Authenticated-User": "user-1", "Content-Type": "application/json"},
    )
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_connect_provider_failure_is_502(client, provider) -> None:
    provider.fail_connect = True
    resp = await client.post("/api/tink/connect", headers={"X-Authenticated-User": "user-1"})
    assert resp.status_code == 502
    assert resp.json() == {"error": "Failed to generate connection URL"}


# --------------------------------------------------------------------------- #
# Webhook                                                                     #
# --------------------------------------------------------------------------- #
def _signed(body: bytes, secret: str = WEBHOOK_SECRET, ts: int | None = None) -> str:
    ts = int(time.time()) if ts is None else ts
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + body, sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.mark.anyio
async def test_webhook_valid_signature_dispatches(client, webhook_handler) -> None:
    body = json.dumps({"event": "refresh:finished", "context": {"userId": "u1"}}).encode()
    resp = await client.post(
        "/api/webhook/tink", content=body, headers={"X-Tink-Signature": _signed(body)}
    )
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    webhook_handler.assert_awaited_once()
    assert webhook_handler.await_args.args[0]["event"] == "refresh:finished"


@pytest.mark.anyio
async def test_webhook_missing_signature(client, webhook_handler) -> None:
    resp = await client.post("/api/webhook/tink", content=b"{}")
    assert resp.status_code == 400
    webhook_handler.assert_not_awaited()


@pytest.mark.anyio
async def test_webhook_bad_signature(client, webhook_handler) -> None:
    body = b'{"event": "x"}'
    resp = await client.post(
        "/api/webhook/tink", content=body, headers={"X-Tink-Signature": _signed(body, "wrong")}
    )
    assert resp.status_code == 401
    webhook_handler.assert_not_awaited()


@pytest.mark.anyio
async def test_webhook_invalid_payload(client) -> None:
    body = b'{"no_event": true}'
    resp = await client.post(
        "/api/webhook/tink", content=body, headers={"X-Tink-Signature": _signed(body)}
    )
    assert resp.status_code == 400


@pytest.mark.anyio
async def test_webhook_non_ascii_timestamp_is_unauthorized(client, webhook_handler) -> None:
    resp = await client.post(
        "/api/webhook/tink", content=b"{}", headers={"X-Tink-Signature": b"t=\xb2,v1=abcd"}
    )
    assert resp.status_code == 401
    webhook_handler.assert_not_awaited()


@pytest.mark.anyio
@pytest.mark.parametrize("context", ["not-an-object", ["u1"], None, 42])
async def test_default_webhook_handler_tolerates_odd_context(provider, codec, context) -> None:
    app = _app(provider, codec, log_webhook_event)
    body = json.dumps({"event": "refresh:finished", "context": context}).encode()
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as c:
        resp = await c.post(
            "/api/webhook/tink", content=body, headers={"X-Tink-Signature": _signed(body)}
        )
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


@pytest.mark.anyio
async def test_webhook_without_secret_is_unavailable(provider, codec, webhook_handler) -> None:
    app = _app(provider, codec, webhook_handler, tink_webhook_secret=None)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as c:
        resp = await c.post("/api/webhook/tink", content=b"{}", headers={"X-Tink-Signature": "t=1,v1=00"})
    assert resp.status_code == 503


# --------------------------------------------------------------------------- #
# Health and correlation                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_healthz_reports_claim_store(client) -> None:
    resp = await client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "claim_store": {"reachable": True, "processing": 0}}


@pytest.mark.anyio
async def test_healthz_before_startup_is_503() -> None:
    app = create_app(_settings())
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as c:
        resp = await c.get("/healthz")
    assert resp.status_code == 503


@pytest.mark.anyio
async def test_correlation_id_is_echoed_or_generated(client) -> None:
    echoed = await client.get("/healthz", headers={"X-Correlation-ID": "req-123"})
    assert echoed.headers["X-Correlation-ID"] == "req-123"

    generated = await client.get("/healthz", headers={"X-Correlation-ID": "bad id with spaces"})
    assert generated.headers["X-Correlation-ID"] != "bad id with spaces"
    assert len(generated.headers["X-Correlation-ID"]) == 32


@pytest.mark.parametrize("debug", [True, False])
def test_debug_setting_controls_starlette_debug(debug: bool) -> None:
    assert create_app(_settings(debug=debug)).debug is debug


def test_injected_context_debug_setting(provider, codec, webhook_handler) -> None:
    assert _app(provider, codec, webhook_handler, debug=True).debug is True
