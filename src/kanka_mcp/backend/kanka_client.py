# ============================================================================
# KANKA MCP - KANKA API CLIENT
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# HTTP client for the Kanka REST API (resource proxy).
#
# CONTRACT:
#   request(path, method, body, params, token) → decoded response body
#   Failures raise UpstreamError with the upstream status and body attached,
#   so callers can relay them unmasked.
# ============================================================================

import logging
from typing import Any

import httpx

from ..core.errors import UpstreamError

logger = logging.getLogger(__name__)

__all__ = ["KankaClient"]


class KankaClient:
    """Async HTTP client for the Kanka API.

    One instance is shared by every session; the bearer token is passed per
    call, since each session carries its own.
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        token: str = "",
    ) -> Any:
        client = await self._get_client()
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            resp = await client.request(
                method,
                path,
                json=body,
                params=query or None,
                headers=self._headers(token),
            )
        except httpx.HTTPError as e:
            logger.error("Kanka %s %s failed: %s", method, path, e)
            raise UpstreamError(f"Kanka API unreachable: {e}") from e

        if resp.is_error:
            try:
                data: Any = resp.json()
            except ValueError:
                data = resp.text or None
            message = data.get("message") if isinstance(data, dict) else None
            logger.warning("Kanka %s %s returned %s", method, path, resp.status_code)
            raise UpstreamError(
                message or f"Kanka API returned {resp.status_code}",
                status_code=resp.status_code,
                body=data,
            )

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text
