# ============================================================================
# KANKA MCP - CORE MODULE
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Shared core components for the gateway:
#   - Session registry and the three transport adapters
#   - Protocol dispatcher (credential resolution, routing, error envelopes)
#   - OAuth authorization-code relay with PKCE
#   - Base MCP server class
#   - Transport layer (STDIO + HTTP)
#
# ARCHITECTURE:
# KankaMCPServer (backend) extends BaseMCPServer with the Kanka tools;
# nothing in core knows about Kanka resources.
# ============================================================================

from .auth import (
    extract_bearer_token,
    query_value,
    resolve_token,
)
from .config import GatewayConfig
from .errors import (
    GatewayError,
    ParseError,
    InvalidRequestError,
    SessionError,
    SessionNotFoundError,
    TransportMismatchError,
    DuplicateSessionError,
    ConfigurationError,
    UpstreamError,
    InternalError,
    OAuthError,
)
from .sessions import (
    Session,
    SessionRegistry,
    TransportAdapter,
    TransportKind,
    variant_of,
)
from .server import (
    BaseMCPServer,
    create_mcp_server,
)
from .oauth import (
    OAuthRelay,
    OAuthStore,
    verify_pkce,
)
from .transport import (
    run_stdio,
    run_http,
    create_http_app,
)

__all__ = [
    "extract_bearer_token",
    "query_value",
    "resolve_token",
    "GatewayConfig",
    "GatewayError",
    "ParseError",
    "InvalidRequestError",
    "SessionError",
    "SessionNotFoundError",
    "TransportMismatchError",
    "DuplicateSessionError",
    "ConfigurationError",
    "UpstreamError",
    "InternalError",
    "OAuthError",
    "Session",
    "SessionRegistry",
    "TransportAdapter",
    "TransportKind",
    "variant_of",
    "BaseMCPServer",
    "create_mcp_server",
    "OAuthRelay",
    "OAuthStore",
    "verify_pkce",
    "run_stdio",
    "run_http",
    "create_http_app",
]
