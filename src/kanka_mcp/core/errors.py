# ============================================================================
# KANKA MCP - ERROR TAXONOMY
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Every failure the gateway reports is one of these exceptions.
# Each carries an HTTP status and a JSON-RPC error code, and renders as:
#   - a JSON-RPC error envelope (MCP endpoints)
#   - an OAuth error body (OAuth endpoints)
#
# No retries anywhere: fail fast, report, let the caller decide.
# ============================================================================

from typing import Any

from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, PARSE_ERROR

__all__ = [
    "SESSION_ERROR",
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
    "jsonrpc_error",
]

# Server-defined code for "no usable session" (JSON-RPC reserves -32000..-32099)
SESSION_ERROR = -32000


def jsonrpc_error(code: int, message: str, request_id: Any = None) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": request_id,
    }


class GatewayError(Exception):
    """Base class for every error the gateway reports to a caller."""

    status_code: int = 500
    rpc_code: int = INTERNAL_ERROR
    oauth_error: str = "server_error"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_envelope(self, request_id: Any = None) -> dict[str, Any]:
        return jsonrpc_error(self.rpc_code, self.message, request_id)

    def to_oauth(self) -> dict[str, Any]:
        return {"error": self.oauth_error, "error_description": self.message}


class ParseError(GatewayError):
    """Body could not be parsed as JSON."""

    status_code = 400
    rpc_code = PARSE_ERROR
    oauth_error = "invalid_request"
    default_message = "Parse error: Invalid JSON was received by the server"


class InvalidRequestError(GatewayError):
    """Body is JSON but not a valid JSON-RPC envelope."""

    status_code = 400
    rpc_code = INVALID_REQUEST
    oauth_error = "invalid_request"
    default_message = "Invalid Request"


class SessionError(GatewayError):
    """No usable session for this request."""

    status_code = 400
    rpc_code = SESSION_ERROR
    oauth_error = "invalid_request"
    default_message = "Bad Request: No valid session ID provided"


class SessionNotFoundError(SessionError):
    status_code = 404
    default_message = "Session not found"


class TransportMismatchError(SessionError):
    default_message = "Bad Request: Session exists but uses a different transport protocol"


class DuplicateSessionError(SessionError):
    status_code = 500
    rpc_code = INTERNAL_ERROR
    default_message = "Session id already registered"


class ConfigurationError(GatewayError):
    """Upstream OAuth client is not resolvable (deployment defect, not caller error)."""

    default_message = "OAuth client not configured"


class UpstreamError(GatewayError):
    """Identity provider or resource API answered with a failure.

    The upstream status and body are kept so they can be relayed unmasked.
    """

    status_code = 502
    oauth_error = "upstream_error"
    default_message = "Upstream request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.body = body

    def to_oauth(self) -> dict[str, Any]:
        payload = super().to_oauth()
        payload["details"] = self.body
        return payload


class InternalError(GatewayError):
    pass


class OAuthError(GatewayError):
    """Protocol-level OAuth rejection, rendered as {"error", "error_description"}."""

    status_code = 400
    rpc_code = INVALID_REQUEST

    def __init__(
        self,
        error: str,
        description: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(description or error, status_code=status_code)
        self.oauth_error = error
        self.description = description

    def to_oauth(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.oauth_error}
        if self.description:
            payload["error_description"] = self.description
        return payload
