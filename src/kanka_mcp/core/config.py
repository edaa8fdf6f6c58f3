# ============================================================================
# KANKA MCP - CONFIGURATION
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Process-wide settings, read once from the environment at startup.
#
# Environment Variables:
#   KANKA_API_BASE        - Resource API base URL
#   KANKA_API_TOKEN       - Default credential (used when a request has none)
#   KANKA_CLIENT_ID       - Upstream OAuth client id
#   KANKA_CLIENT_SECRET   - Upstream OAuth client secret
#   KANKA_REDIRECT_URI    - Upstream OAuth redirect URI
#   KANKA_OAUTH_BASE      - Identity provider base URL
#   TRANSPORT             - stdio or http (default: http when PORT is set)
#   HOST / PORT           - HTTP bind address
#   MCP_SESSION_GRACE_SECONDS   - Delay between disconnect and eviction
#   MCP_REGISTRY_REPORT_SECONDS - Interval of the session count report
#   MCP_JSON_RESPONSE           - Streamable HTTP answers with plain JSON
#   OAUTH_CODE_TTL_SECONDS      - Lifetime of pending requests and codes
# ============================================================================

import os
from collections.abc import Mapping
from dataclasses import dataclass

__all__ = ["GatewayConfig"]

DEFAULT_API_BASE = "https://api.kanka.io/1.0"
DEFAULT_OAUTH_BASE = "https://app.kanka.io"


def _env_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    api_base: str = DEFAULT_API_BASE
    api_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    oauth_base: str = DEFAULT_OAUTH_BASE
    transport: str = "stdio"
    host: str = "0.0.0.0"
    port: int = 5000
    session_grace_seconds: float = 60.0
    registry_report_seconds: float = 300.0
    oauth_code_ttl_seconds: float = 600.0
    json_response: bool = False

    @property
    def authorize_url(self) -> str:
        return f"{self.oauth_base.rstrip('/')}/oauth/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.oauth_base.rstrip('/')}/oauth/token"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ
        port = env.get("PORT")
        transport = env.get("TRANSPORT") or ("http" if port else "stdio")
        return cls(
            api_base=env.get("KANKA_API_BASE", DEFAULT_API_BASE),
            api_token=env.get("KANKA_API_TOKEN", ""),
            client_id=env.get("KANKA_CLIENT_ID", ""),
            client_secret=env.get("KANKA_CLIENT_SECRET", ""),
            redirect_uri=env.get("KANKA_REDIRECT_URI", ""),
            oauth_base=env.get("KANKA_OAUTH_BASE", DEFAULT_OAUTH_BASE),
            transport=transport.lower(),
            host=env.get("HOST", "0.0.0.0"),
            port=int(port or 5000),
            session_grace_seconds=float(env.get("MCP_SESSION_GRACE_SECONDS", 60)),
            registry_report_seconds=float(env.get("MCP_REGISTRY_REPORT_SECONDS", 300)),
            oauth_code_ttl_seconds=float(env.get("OAUTH_CODE_TTL_SECONDS", 600)),
            json_response=_env_bool(env.get("MCP_JSON_RESPONSE")),
        )
