# ============================================================================
# KANKA MCP - CREDENTIAL RESOLUTION
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Works out which bearer token a new session will use.
# Follows OAuth2 Bearer Token pattern (RFC 6750).
#
# Precedence (first non-empty wins):
#   1. Authorization: Bearer <token> header
#   2. ?token=<token> query parameter
#   3. Process-wide default (KANKA_API_TOKEN)
# ============================================================================

import re

from starlette.requests import HTTPConnection

__all__ = [
    "extract_bearer_token",
    "query_value",
    "resolve_token",
]

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def query_value(conn: HTTPConnection, key: str) -> str:
    """First value of a query parameter, or an empty string."""
    values = conn.query_params.getlist(key)
    return values[0] if values else ""


def extract_bearer_token(conn: HTTPConnection) -> str:
    """Extract token from the Authorization header.
    Expected format: Authorization: Bearer <token>
    """
    header = conn.headers.get("authorization", "")
    match = _BEARER_RE.match(header)
    if not match:
        return ""
    return match.group(1).strip()


def resolve_token(conn: HTTPConnection, default: str = "") -> str:
    return extract_bearer_token(conn) or query_value(conn, "token") or default
