# ============================================================================
# KANKA MCP - OAUTH RELAY
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Authorization-code relay (RFC 6749 + PKCE, RFC 7636) in front of the
# Kanka identity provider.
#
# FLOW:
#   1. /oauth/authorize  → PendingAuthorization stored, user agent sent
#                          upstream with state=<request_id>
#   2. /oauth/callback   → upstream code exchanged for tokens, an opaque
#                          IssuedCode minted, caller redirected with it
#   3. /oauth/token      → IssuedCode (+ code_verifier) traded for the
#                          credential bundle; or refresh_token forwarded
#
# Both tables are single-use: an entry is removed the moment it is consumed,
# and never restored. Entries older than the TTL are swept on every
# operation and treated as absent.
# ============================================================================

import base64
import hashlib
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx

from .config import GatewayConfig
from .errors import ConfigurationError, OAuthError, UpstreamError

logger = logging.getLogger(__name__)

__all__ = [
    "UpstreamClient",
    "PendingAuthorization",
    "IssuedCode",
    "OAuthStore",
    "CallbackResult",
    "OAuthRelay",
    "verify_pkce",
    "s256_challenge",
]

DEFAULT_TIMEOUT = 30.0


# ============================================================================
# MODELS
# ============================================================================

@dataclass
class UpstreamClient:
    """Identity provider client configuration resolved for one request."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    scope: str = ""


@dataclass
class PendingAuthorization:
    """One in-flight authorization start, keyed by the state sent upstream."""

    request_id: str
    client_redirect_uri: str
    client_state: str = ""
    code_challenge: str = ""
    code_challenge_method: str = ""
    upstream: UpstreamClient = field(default_factory=UpstreamClient)
    created_at: float = 0.0


@dataclass
class IssuedCode:
    """Intermediary code handed to the caller in place of upstream tokens."""

    code: str
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "Bearer"
    code_challenge: str = ""
    code_challenge_method: str = ""
    created_at: float = 0.0

    def to_token_response(self) -> dict[str, Any]:
        return {
            "token_type": self.token_type,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
        }


@dataclass
class CallbackResult:
    """Either a redirect back to the caller or, in degraded mode, raw tokens."""

    redirect_url: str | None = None
    tokens: dict[str, Any] | None = None


# ============================================================================
# PKCE
# ============================================================================

def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str | None, challenge: str | None, method: str | None) -> bool:
    """Check a code_verifier against the stored challenge.

    No stored challenge always passes. A missing method means "plain".
    Unknown methods fail closed.
    """
    if not challenge:
        return True
    if not verifier:
        return False
    if not method or method == "plain":
        return secrets.compare_digest(verifier, challenge)
    if method == "S256":
        return secrets.compare_digest(s256_challenge(verifier), challenge)
    return False


# ============================================================================
# STORE
# ============================================================================

class OAuthStore:
    """In-memory tables for pending requests and issued codes.

    Lives for the process only. Mutated from the event loop thread, so the
    pop-then-use sequences below cannot interleave.
    """

    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}
        self._codes: dict[str, IssuedCode] = {}

    def now(self) -> float:
        return self._clock()

    def add_pending(self, pending: PendingAuthorization) -> None:
        pending.created_at = self.now()
        self._pending[pending.request_id] = pending

    def pop_pending(self, request_id: str) -> PendingAuthorization | None:
        return self._pending.pop(request_id, None)

    def add_code(self, issued: IssuedCode) -> None:
        issued.created_at = self.now()
        self._codes[issued.code] = issued

    def get_code(self, code: str) -> IssuedCode | None:
        return self._codes.get(code)

    def consume_code(self, code: str) -> IssuedCode | None:
        return self._codes.pop(code, None)

    def cleanup_expired(self) -> int:
        """Drop entries older than the TTL. Returns how many were removed."""
        if self.ttl_seconds <= 0:
            return 0
        cutoff = self.now() - self.ttl_seconds
        expired_pending = [k for k, v in self._pending.items() if v.created_at < cutoff]
        expired_codes = [k for k, v in self._codes.items() if v.created_at < cutoff]
        for key in expired_pending:
            del self._pending[key]
        for key in expired_codes:
            del self._codes[key]
        removed = len(expired_pending) + len(expired_codes)
        if removed:
            logger.debug("Swept %d expired OAuth entries", removed)
        return removed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def code_count(self) -> int:
        return len(self._codes)


# ============================================================================
# RELAY
# ============================================================================

def _first(key: str, *sources: Mapping[str, Any] | None) -> str:
    for source in sources:
        if not source:
            continue
        value = source.get(key)
        if value:
            return str(value)
    return ""


def _with_query(url: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


class OAuthRelay:
    """Stateful proxy for the authorization-code and refresh-token grants."""

    def __init__(
        self,
        config: GatewayConfig,
        store: OAuthStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.config = config
        self.store = store if store is not None else OAuthStore(config.oauth_code_ttl_seconds)
        self.timeout = timeout
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ====================================================================
    # CONFIGURATION
    # ====================================================================

    def resolve_upstream(
        self,
        query: Mapping[str, Any] | None,
        form: Mapping[str, Any] | None = None,
        fallback: UpstreamClient | None = None,
        base_url: str = "",
    ) -> UpstreamClient:
        """Work out which identity provider client to use for this request.

        Explicit kanka_* override > process default > caller's client_id >
        stored fallback. The redirect defaults to this gateway's callback.
        """
        fallback = fallback or UpstreamClient()
        client_id = (
            _first("kanka_client_id", query, form)
            or self.config.client_id
            or _first("client_id", query, form)
            or fallback.client_id
        )
        client_secret = (
            _first("kanka_client_secret", query, form)
            or self.config.client_secret
            or fallback.client_secret
        )
        redirect_uri = (
            _first("kanka_redirect_uri", query, form)
            or self.config.redirect_uri
            or fallback.redirect_uri
            or (f"{base_url.rstrip('/')}/oauth/callback" if base_url else "")
        )
        scope = _first("scope", query, form) or fallback.scope
        return UpstreamClient(client_id, client_secret, redirect_uri, scope)

    def discovery_document(self, base_url: str) -> dict[str, Any]:
        base = base_url.rstrip("/")
        return {
            "issuer": base,
            "authorization_endpoint": f"{base}/oauth/authorize",
            "token_endpoint": f"{base}/oauth/token",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "scopes_supported": [],
            "code_challenge_methods_supported": ["S256", "plain"],
            "token_endpoint_auth_methods_supported": ["none"],
        }

    def _upstream_authorize_url(self, upstream: UpstreamClient, state: str = "") -> str:
        params = {
            "client_id": upstream.client_id,
            "redirect_uri": upstream.redirect_uri,
            "response_type": "code",
        }
        if state:
            params["state"] = state
        if upstream.scope:
            params["scope"] = upstream.scope
        return _with_query(self.config.authorize_url, params)

    # ====================================================================
    # AUTHORIZATION START
    # ====================================================================

    def start_authorization(self, query: Mapping[str, Any], base_url: str = "") -> str:
        """Record a pending request and return the upstream authorize URL."""
        self.store.cleanup_expired()

        if query.get("response_type") != "code" or not query.get("redirect_uri"):
            raise OAuthError("invalid_request", "Invalid OAuth authorization request")

        upstream = self.resolve_upstream(query, base_url=base_url)
        if not upstream.client_id or not upstream.redirect_uri:
            raise ConfigurationError()

        pending = PendingAuthorization(
            request_id=secrets.token_urlsafe(32),
            client_redirect_uri=str(query["redirect_uri"]),
            client_state=_first("state", query),
            code_challenge=_first("code_challenge", query),
            code_challenge_method=_first("code_challenge_method", query),
            upstream=upstream,
        )
        self.store.add_pending(pending)
        logger.info(
            "OAuth authorization started (pkce=%s)",
            pending.code_challenge_method or ("plain" if pending.code_challenge else "none"),
        )
        return self._upstream_authorize_url(upstream, state=pending.request_id)

    def login_url(self, query: Mapping[str, Any], base_url: str = "") -> str:
        """Direct login: straight to the provider, no pending request."""
        upstream = self.resolve_upstream(query, base_url=base_url)
        if not upstream.client_id or not upstream.redirect_uri:
            raise ConfigurationError()
        return self._upstream_authorize_url(upstream)

    # ====================================================================
    # CALLBACK
    # ====================================================================

    async def complete_authorization(self, query: Mapping[str, Any], base_url: str = "") -> CallbackResult:
        self.store.cleanup_expired()

        error = _first("error", query)
        if error:
            logger.warning("OAuth provider returned error: %s", error)
            raise OAuthError(error, _first("error_description", query) or None)

        code = _first("code", query)
        if not code:
            raise OAuthError("invalid_request", "Missing code parameter")

        state = _first("state", query)
        pending = self.store.pop_pending(state) if state else None

        if pending is not None:
            upstream = pending.upstream
        else:
            logger.info("OAuth callback without a pending request; returning tokens directly")
            upstream = self.resolve_upstream(query, base_url=base_url)

        if not upstream.client_id or not upstream.client_secret or not upstream.redirect_uri:
            raise ConfigurationError()

        form = {
            "grant_type": "authorization_code",
            "client_id": upstream.client_id,
            "client_secret": upstream.client_secret,
            "redirect_uri": upstream.redirect_uri,
            "code": code,
        }
        if upstream.scope:
            form["scope"] = upstream.scope
        data = await self._request_token(form, "Token exchange failed")

        if pending is None:
            return CallbackResult(tokens={
                "token_type": data.get("token_type"),
                "access_token": data.get("access_token"),
                "refresh_token": data.get("refresh_token"),
                "expires_in": data.get("expires_in"),
            })

        issued = IssuedCode(
            code=secrets.token_urlsafe(32),
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            code_challenge=pending.code_challenge,
            code_challenge_method=pending.code_challenge_method,
        )
        self.store.add_code(issued)

        params = {"code": issued.code}
        if pending.client_state:
            params["state"] = pending.client_state
        return CallbackResult(redirect_url=_with_query(pending.client_redirect_uri, params))

    # ====================================================================
    # TOKEN ENDPOINT
    # ====================================================================

    async def exchange_token(
        self,
        form: Mapping[str, Any],
        query: Mapping[str, Any] | None = None,
        base_url: str = "",
    ) -> dict[str, Any]:
        self.store.cleanup_expired()
        grant_type = form.get("grant_type")

        if grant_type == "authorization_code":
            return self._exchange_code(form)
        if grant_type == "refresh_token":
            return await self._refresh(form, query, base_url)
        raise OAuthError("unsupported_grant_type", "Unsupported grant_type")

    def _exchange_code(self, form: Mapping[str, Any]) -> dict[str, Any]:
        code = form.get("code")
        if not code or not isinstance(code, str):
            raise OAuthError("invalid_request", "Missing code")

        issued = self.store.get_code(code)
        if issued is None:
            raise OAuthError("invalid_grant", "Invalid or expired code")

        verifier = form.get("code_verifier")
        if not verify_pkce(verifier if isinstance(verifier, str) else None,
                           issued.code_challenge, issued.code_challenge_method):
            logger.warning("OAuth token exchange rejected: PKCE verification failed")
            raise OAuthError("invalid_grant", "Invalid code_verifier")

        self.store.consume_code(code)
        return issued.to_token_response()

    async def _refresh(
        self,
        form: Mapping[str, Any],
        query: Mapping[str, Any] | None,
        base_url: str,
    ) -> dict[str, Any]:
        refresh_token = form.get("refresh_token")
        if not refresh_token or not isinstance(refresh_token, str):
            raise OAuthError("invalid_request", "Missing refresh_token")

        upstream = self.resolve_upstream(query, form, base_url=base_url)
        if not upstream.client_id or not upstream.client_secret:
            raise ConfigurationError()

        payload = {
            "grant_type": "refresh_token",
            "client_id": upstream.client_id,
            "client_secret": upstream.client_secret,
            "refresh_token": refresh_token,
        }
        if upstream.scope:
            payload["scope"] = upstream.scope
        data = await self._request_token(payload, "Token refresh failed")
        return {
            "token_type": data.get("token_type") or "Bearer",
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_in": data.get("expires_in"),
        }

    # ====================================================================
    # UPSTREAM
    # ====================================================================

    async def _request_token(self, form: dict[str, str], failure: str) -> dict[str, Any]:
        """POST to the provider's token endpoint. Raises UpstreamError."""
        client = await self._get_client()
        try:
            response = await client.post(
                self.config.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("%s: %s", failure, e)
            raise UpstreamError(failure) from e

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text or None

        if response.is_error:
            logger.error("%s: upstream returned %s", failure, response.status_code)
            raise UpstreamError(failure, status_code=response.status_code, body=body)
        if not isinstance(body, dict):
            raise UpstreamError(failure, body=body)
        return body
