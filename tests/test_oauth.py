# Tests for the OAuth relay: PKCE, single-use tables, upstream exchange, endpoints.

import base64
import hashlib
import secrets
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from starlette.testclient import TestClient

from kanka_mcp.backend import kanka_server_factory
from kanka_mcp.core import GatewayConfig, create_http_app
from kanka_mcp.core.errors import ConfigurationError, OAuthError, UpstreamError
from kanka_mcp.core.oauth import (
    IssuedCode,
    OAuthRelay,
    OAuthStore,
    PendingAuthorization,
    s256_challenge,
    verify_pkce,
)

UPSTREAM_TOKENS = {
    "token_type": "Bearer",
    "access_token": "kanka-access",
    "refresh_token": "kanka-refresh",
    "expires_in": 31536000,
}


def _make_pkce_pair():
    """Generate a PKCE code_verifier and code_challenge pair."""
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class FakeProvider:
    """Upstream token endpoint backed by httpx.MockTransport."""

    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = UPSTREAM_TOKENS if payload is None else payload
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(self.status, json=self.payload)

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def config():
    return GatewayConfig(
        client_id="kanka-client",
        client_secret="kanka-secret",
        redirect_uri="https://gateway.example/oauth/callback",
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def relay(config, provider):
    return OAuthRelay(config, http_client=provider.client())


def _authorize_params(**overrides):
    params = {
        "response_type": "code",
        "client_id": "claude",
        "redirect_uri": "https://client.example/cb",
        "state": "client-state",
    }
    params.update(overrides)
    return params


# ===================== PKCE =====================


class TestVerifyPkce:
    def test_s256_match(self):
        verifier, challenge = _make_pkce_pair()
        assert verify_pkce(verifier, challenge, "S256") is True

    def test_s256_mismatch(self):
        _, challenge = _make_pkce_pair()
        assert verify_pkce("wrong-verifier", challenge, "S256") is False

    def test_s256_helper_matches_rfc_example(self):
        # RFC 7636 appendix B
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert s256_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_plain(self):
        assert verify_pkce("abc", "abc", "plain") is True
        assert verify_pkce("abc", "abd", "plain") is False

    def test_missing_method_means_plain(self):
        assert verify_pkce("abc", "abc", None) is True
        assert verify_pkce("abc", "abc", "") is True

    def test_unknown_method_fails_closed(self):
        verifier, challenge = _make_pkce_pair()
        assert verify_pkce(verifier, challenge, "unknown-method") is False
        assert verify_pkce(challenge, challenge, "S512") is False

    def test_no_challenge_always_passes(self):
        assert verify_pkce(None, None, "S256") is True
        assert verify_pkce("anything", "", "unknown-method") is True

    def test_challenge_without_verifier_fails(self):
        _, challenge = _make_pkce_pair()
        assert verify_pkce(None, challenge, "S256") is False
        assert verify_pkce("", challenge, "plain") is False


# ===================== Store =====================


class TestOAuthStore:
    def test_pending_is_single_use(self):
        store = OAuthStore()
        store.add_pending(PendingAuthorization(request_id="r1", client_redirect_uri="https://c/cb"))
        assert store.pop_pending("r1") is not None
        assert store.pop_pending("r1") is None

    def test_code_is_single_use(self):
        store = OAuthStore()
        store.add_code(IssuedCode(code="c1", access_token="a"))
        assert store.get_code("c1") is not None
        assert store.consume_code("c1") is not None
        assert store.consume_code("c1") is None
        assert store.get_code("c1") is None

    def test_cleanup_expired(self):
        now = [1000.0]
        store = OAuthStore(ttl_seconds=600, clock=lambda: now[0])
        store.add_pending(PendingAuthorization(request_id="old", client_redirect_uri="https://c/cb"))
        store.add_code(IssuedCode(code="old", access_token="a"))
        now[0] += 500
        store.add_code(IssuedCode(code="fresh", access_token="b"))
        now[0] += 200

        assert store.cleanup_expired() == 2
        assert store.pending_count == 0
        assert store.get_code("old") is None
        assert store.get_code("fresh") is not None

    def test_zero_ttl_keeps_everything(self):
        now = [0.0]
        store = OAuthStore(ttl_seconds=0, clock=lambda: now[0])
        store.add_code(IssuedCode(code="c", access_token="a"))
        now[0] += 10**6
        assert store.cleanup_expired() == 0
        assert store.code_count == 1


# ===================== Relay =====================


class TestAuthorizationStart:
    def test_redirects_upstream_with_request_id_as_state(self, relay, config):
        url = relay.start_authorization(_authorize_params(), "https://gateway.example")
        assert url.startswith(config.authorize_url)
        params = _query(url)
        assert params["client_id"] == "kanka-client"
        assert params["redirect_uri"] == "https://gateway.example/oauth/callback"
        assert params["response_type"] == "code"
        # The caller's own state is kept, not forwarded
        assert params["state"] != "client-state"
        assert relay.store.pop_pending(params["state"]).client_state == "client-state"

    def test_rejects_non_code_response_type(self, relay):
        with pytest.raises(OAuthError) as exc_info:
            relay.start_authorization(_authorize_params(response_type="token"))
        assert exc_info.value.status_code == 400
        assert exc_info.value.to_oauth()["error_description"] == "Invalid OAuth authorization request"
        assert relay.store.pending_count == 0

    def test_rejects_missing_redirect_uri(self, relay):
        params = _authorize_params()
        del params["redirect_uri"]
        with pytest.raises(OAuthError):
            relay.start_authorization(params)
        assert relay.store.pending_count == 0

    def test_unconfigured_upstream(self):
        relay = OAuthRelay(GatewayConfig())
        params = _authorize_params()
        del params["client_id"]
        with pytest.raises(ConfigurationError) as exc_info:
            relay.start_authorization(params)
        assert exc_info.value.status_code == 500
        assert relay.store.pending_count == 0

    def test_per_request_override_wins(self, relay):
        url = relay.start_authorization(
            _authorize_params(kanka_client_id="override", scope="read"),
            "https://gateway.example",
        )
        params = _query(url)
        assert params["client_id"] == "override"
        assert params["scope"] == "read"

    def test_caller_client_id_used_as_last_resort(self):
        relay = OAuthRelay(GatewayConfig())
        url = relay.start_authorization(_authorize_params(), "https://gw.example")
        params = _query(url)
        assert params["client_id"] == "claude"
        assert params["redirect_uri"] == "https://gw.example/oauth/callback"

    def test_login_url_has_no_state(self, relay):
        params = _query(relay.login_url({}, "https://gateway.example"))
        assert "state" not in params
        assert params["client_id"] == "kanka-client"
        assert relay.store.pending_count == 0


class TestAuthorizationCallback:
    @pytest.mark.asyncio
    async def test_relayed_flow_mints_code(self, relay, provider):
        verifier, challenge = _make_pkce_pair()
        url = relay.start_authorization(
            _authorize_params(code_challenge=challenge, code_challenge_method="S256"),
        )
        request_id = _query(url)["state"]

        result = await relay.complete_authorization({"code": "upstream-code", "state": request_id})

        assert result.tokens is None
        assert result.redirect_url.startswith("https://client.example/cb?")
        params = _query(result.redirect_url)
        assert params["state"] == "client-state"
        minted = params["code"]
        assert minted != "upstream-code"
        assert "kanka-access" not in result.redirect_url

        sent = provider.requests[0]
        assert sent["grant_type"] == "authorization_code"
        assert sent["code"] == "upstream-code"
        assert sent["client_secret"] == "kanka-secret"
        assert relay.store.pending_count == 0

        tokens = await relay.exchange_token({
            "grant_type": "authorization_code",
            "code": minted,
            "code_verifier": verifier,
        })
        assert tokens == UPSTREAM_TOKENS

    @pytest.mark.asyncio
    async def test_state_omitted_when_caller_sent_none(self, relay):
        url = relay.start_authorization(_authorize_params(state=""))
        result = await relay.complete_authorization({"code": "c", "state": _query(url)["state"]})
        assert "state" not in _query(result.redirect_url)

    @pytest.mark.asyncio
    async def test_degraded_mode_returns_tokens(self, relay):
        result = await relay.complete_authorization({"code": "upstream-code"})
        assert result.redirect_url is None
        assert result.tokens["access_token"] == "kanka-access"
        assert result.tokens["refresh_token"] == "kanka-refresh"

    @pytest.mark.asyncio
    async def test_pending_request_used_once(self, relay):
        url = relay.start_authorization(_authorize_params())
        request_id = _query(url)["state"]
        first = await relay.complete_authorization({"code": "c1", "state": request_id})
        assert first.redirect_url is not None

        second = await relay.complete_authorization({"code": "c2", "state": request_id})
        assert second.redirect_url is None
        assert relay.store.code_count == 1

    @pytest.mark.asyncio
    async def test_upstream_error_parameter_surfaced(self, relay, provider):
        with pytest.raises(OAuthError) as exc_info:
            await relay.complete_authorization({"error": "access_denied", "error_description": "User said no"})
        assert exc_info.value.to_oauth() == {"error": "access_denied", "error_description": "User said no"}
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_missing_code(self, relay):
        with pytest.raises(OAuthError) as exc_info:
            await relay.complete_authorization({"state": "whatever"})
        assert exc_info.value.to_oauth()["error_description"] == "Missing code parameter"

    @pytest.mark.asyncio
    async def test_failed_exchange_does_not_restore_pending(self, config):
        provider = FakeProvider(status=400, payload={"error": "invalid_grant"})
        relay = OAuthRelay(config, http_client=provider.client())
        url = relay.start_authorization(_authorize_params())

        with pytest.raises(UpstreamError) as exc_info:
            await relay.complete_authorization({"code": "bad", "state": _query(url)["state"]})

        assert exc_info.value.status_code == 400
        assert exc_info.value.to_oauth()["details"] == {"error": "invalid_grant"}
        assert relay.store.pending_count == 0
        assert relay.store.code_count == 0

    @pytest.mark.asyncio
    async def test_callback_needs_client_secret(self, provider):
        relay = OAuthRelay(GatewayConfig(client_id="id-only"), http_client=provider.client())
        with pytest.raises(ConfigurationError):
            await relay.complete_authorization({"code": "c"}, "https://gw.example")
        assert provider.requests == []


class TestTokenExchange:
    async def _issue(self, relay, **params):
        url = relay.start_authorization(_authorize_params(**params))
        result = await relay.complete_authorization({"code": "u", "state": _query(url)["state"]})
        return _query(result.redirect_url)["code"]

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, relay):
        code = await self._issue(relay)
        await relay.exchange_token({"grant_type": "authorization_code", "code": code})
        with pytest.raises(OAuthError) as exc_info:
            await relay.exchange_token({"grant_type": "authorization_code", "code": code})
        assert exc_info.value.to_oauth() == {"error": "invalid_grant", "error_description": "Invalid or expired code"}

    @pytest.mark.asyncio
    async def test_bad_verifier_keeps_code(self, relay):
        verifier, challenge = _make_pkce_pair()
        code = await self._issue(relay, code_challenge=challenge, code_challenge_method="S256")

        with pytest.raises(OAuthError) as exc_info:
            await relay.exchange_token({
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": "not-the-verifier",
            })
        assert exc_info.value.description == "Invalid code_verifier"

        tokens = await relay.exchange_token({
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
        })
        assert tokens["access_token"] == "kanka-access"

    @pytest.mark.asyncio
    async def test_missing_code(self, relay):
        with pytest.raises(OAuthError) as exc_info:
            await relay.exchange_token({"grant_type": "authorization_code"})
        assert exc_info.value.description == "Missing code"

    @pytest.mark.asyncio
    async def test_expired_code(self, config, provider):
        now = [0.0]
        relay = OAuthRelay(
            config,
            store=OAuthStore(ttl_seconds=600, clock=lambda: now[0]),
            http_client=provider.client(),
        )
        code = await self._issue(relay)
        now[0] += 601
        with pytest.raises(OAuthError) as exc_info:
            await relay.exchange_token({"grant_type": "authorization_code", "code": code})
        assert exc_info.value.oauth_error == "invalid_grant"

    @pytest.mark.asyncio
    async def test_refresh_forwarded(self, relay, provider):
        tokens = await relay.exchange_token({"grant_type": "refresh_token", "refresh_token": "old-refresh"})
        assert tokens == UPSTREAM_TOKENS
        sent = provider.requests[0]
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "old-refresh"
        assert sent["client_id"] == "kanka-client"

    @pytest.mark.asyncio
    async def test_refresh_without_secret_makes_no_upstream_call(self, provider):
        relay = OAuthRelay(GatewayConfig(client_id="id-only"), http_client=provider.client())
        with pytest.raises(ConfigurationError):
            await relay.exchange_token({"grant_type": "refresh_token", "refresh_token": "r"})
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_refresh_requires_token(self, relay):
        with pytest.raises(OAuthError) as exc_info:
            await relay.exchange_token({"grant_type": "refresh_token"})
        assert exc_info.value.description == "Missing refresh_token"

    @pytest.mark.asyncio
    async def test_refresh_upstream_failure_relayed(self, config):
        provider = FakeProvider(status=401, payload={"message": "Unauthenticated."})
        relay = OAuthRelay(config, http_client=provider.client())
        with pytest.raises(UpstreamError) as exc_info:
            await relay.exchange_token({"grant_type": "refresh_token", "refresh_token": "r"})
        assert exc_info.value.status_code == 401
        assert exc_info.value.body == {"message": "Unauthenticated."}

    @pytest.mark.asyncio
    async def test_unsupported_grant(self, relay):
        with pytest.raises(OAuthError) as exc_info:
            await relay.exchange_token({"grant_type": "password"})
        assert exc_info.value.oauth_error == "unsupported_grant_type"


# ===================== HTTP endpoints =====================


@pytest.fixture
def http(config, provider, kanka_client):
    relay = OAuthRelay(config, http_client=provider.client())
    app = create_http_app(config, kanka_server_factory(kanka_client), relay=relay)
    with TestClient(app) as client:
        yield client


class TestOAuthEndpoints:
    def test_discovery_document(self, http):
        resp = http.get("/.well-known/oauth-authorization-server")
        assert resp.status_code == 200
        doc = resp.json()
        assert doc["issuer"] == "http://testserver"
        assert doc["authorization_endpoint"] == "http://testserver/oauth/authorize"
        assert doc["token_endpoint"] == "http://testserver/oauth/token"
        assert doc["response_types_supported"] == ["code"]
        assert doc["grant_types_supported"] == ["authorization_code", "refresh_token"]
        assert doc["code_challenge_methods_supported"] == ["S256", "plain"]

    def test_invalid_authorize_request(self, http):
        resp = http.get("/oauth/authorize", params=_authorize_params(response_type="token"), follow_redirects=False)
        assert resp.status_code == 400
        assert resp.json() == {
            "error": "invalid_request",
            "error_description": "Invalid OAuth authorization request",
        }

    def test_full_flow_over_http(self, http):
        verifier, challenge = _make_pkce_pair()
        resp = http.get(
            "/oauth/authorize",
            params=_authorize_params(code_challenge=challenge, code_challenge_method="S256"),
            follow_redirects=False,
        )
        assert resp.status_code == 302
        request_id = _query(resp.headers["location"])["state"]

        resp = http.get("/oauth/callback", params={"code": "up", "state": request_id}, follow_redirects=False)
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("https://client.example/cb")
        code = _query(location)["code"]

        resp = http.post("/oauth/token", data={
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": verifier,
        })
        assert resp.status_code == 200
        assert resp.json()["access_token"] == "kanka-access"
        assert resp.headers["cache-control"] == "no-store"

        resp = http.post("/oauth/token", json={"grant_type": "authorization_code", "code": code})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_grant"

    def test_callback_degraded_mode(self, http):
        resp = http.get("/oauth/callback", params={"code": "up"})
        assert resp.status_code == 200
        assert resp.json()["access_token"] == "kanka-access"

    def test_callback_error_param(self, http):
        resp = http.get("/oauth/callback", params={"error": "access_denied"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "access_denied"}

    def test_login_redirect(self, http, config):
        resp = http.get("/oauth/login", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"].startswith(config.authorize_url)

    def test_token_malformed_json(self, http):
        resp = http.post(
            "/oauth/token",
            content=b"{oops",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == -32700

    def test_refresh_without_configuration(self, kanka_client):
        provider = FakeProvider()
        config = GatewayConfig()
        relay = OAuthRelay(config, http_client=provider.client())
        app = create_http_app(config, kanka_server_factory(kanka_client), relay=relay)
        with TestClient(app) as client:
            resp = client.post("/oauth/token", data={"grant_type": "refresh_token", "refresh_token": "r"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "server_error", "error_description": "OAuth client not configured"}
        assert provider.requests == []

    def test_unsupported_grant(self, http):
        resp = http.post("/oauth/token", data={"grant_type": "password"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "unsupported_grant_type"
