# ============================================================================
# KANKA MCP - PROTOCOL DISPATCHER
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Routes every MCP request to a session:
#   - resolves the credential (header > query > process default)
#   - checks the body is JSON and a JSON-RPC envelope
#   - creates a session, reuses one, or rejects the request
#
# ENDPOINTS:
#   /mcp                 — streamable HTTP (Mcp-Session-Id header)
#   GET /sse             — legacy outbound event stream
#   POST /message(s)     — legacy inbound envelopes (?sessionId=...)
#   GET /                — streamable HTTP when the client asks for SSE
#
# The only registry mutation per request is create-or-lookup; a session is
# registered only once its server is running, so nothing observes it
# half-created.
# ============================================================================

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, cast

from mcp.server.streamable_http import MCP_SESSION_ID_HEADER
from mcp.types import JSONRPCMessage
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from .adapters import EventStreamAdapter, EventStreamState, StreamableHTTPAdapter
from .auth import query_value, resolve_token
from .config import GatewayConfig
from .errors import (
    GatewayError,
    InternalError,
    InvalidRequestError,
    ParseError,
    SessionError,
    SessionNotFoundError,
    TransportMismatchError,
)
from .sessions import Session, SessionRegistry, TransportAdapter, TransportKind, variant_of

logger = logging.getLogger(__name__)

__all__ = [
    "ProtocolDispatcher",
    "MCPEndpoint",
    "parse_json_body",
    "parse_envelopes",
    "is_initialize_payload",
]

ASGIHandler = Callable[[Scope, Receive, Send], Awaitable[None]]


# ============================================================================
# ENVELOPE CHECKS
# ============================================================================

def parse_json_body(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError as e:
        raise ParseError() from e


def parse_envelopes(payload: Any) -> list[JSONRPCMessage]:
    """Validate a single envelope or a batch. Raises InvalidRequestError."""
    items = payload if isinstance(payload, list) else [payload]
    if not items:
        raise InvalidRequestError("Invalid Request: empty batch")
    try:
        return [JSONRPCMessage.model_validate(item) for item in items]
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid Request: {e.error_count()} validation error(s)") from e


def is_initialize_payload(payload: Any) -> bool:
    if isinstance(payload, list):
        return any(is_initialize_payload(item) for item in payload)
    return (
        isinstance(payload, dict)
        and payload.get("jsonrpc") == "2.0"
        and payload.get("method") == "initialize"
        and "id" in payload
    )


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Let a downstream ASGI app read a body that was already consumed."""
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


# ============================================================================
# DISPATCHER
# ============================================================================

class ProtocolDispatcher:
    """Per-request routing between transports and the session registry.

    All state is injected: the registry, the factory that builds a tool
    server for a token, and the process configuration.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        server_factory: Callable[[str], Any],
        config: GatewayConfig,
        message_path: str = "/message",
    ) -> None:
        self.registry = registry
        self.server_factory = server_factory
        self.config = config
        self.message_path = message_path

    def resolve_credential(self, request: Request) -> str:
        return resolve_token(request, self.config.api_token)

    def _lookup(self, session_id: str, kind: TransportKind) -> TransportAdapter:
        adapter = self.registry.lookup(session_id)
        if adapter is None:
            logger.warning("[%s] Session unknown or expired", session_id)
            raise SessionNotFoundError()
        if variant_of(adapter) is not kind:
            logger.warning(
                "[%s] Transport mismatch: session is %s, request is %s",
                session_id, variant_of(adapter).value, kind.value,
            )
            raise TransportMismatchError()
        return adapter

    # ====================================================================
    # OUTERMOST BOUNDARY
    # ====================================================================

    async def guard(self, handler: ASGIHandler, scope: Scope, receive: Receive, send: Send) -> None:
        """Run a handler so the client always gets exactly one answer."""
        started = False

        async def tracking_send(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await handler(scope, receive, tracking_send)
        except GatewayError as e:
            if started:
                logger.warning("%s after response started: %s", type(e).__name__, e.message)
                return
            await JSONResponse(e.to_envelope(), status_code=e.status_code)(scope, receive, send)
        except Exception:
            logger.exception("Error handling MCP request")
            if not started:
                error = InternalError()
                await JSONResponse(error.to_envelope(), status_code=error.status_code)(scope, receive, send)

    # ====================================================================
    # STREAMABLE HTTP
    # ====================================================================

    async def handle_streamable(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        payload: Any = None
        if request.method == "POST":
            body = await request.body()
            payload = parse_json_body(body)
            parse_envelopes(payload)
            receive = _replay_body(body, receive)

        if session_id:
            adapter = cast(StreamableHTTPAdapter, self._lookup(session_id, TransportKind.STREAMABLE_HTTP))
            await adapter.handle(scope, receive, send)
            if adapter.terminated and self.registry.unregister(session_id, adapter):
                logger.info("[%s] Session terminated by client", session_id)
            return

        if request.method == "POST" and is_initialize_payload(payload):
            await self._open_streamable(request, scope, receive, send)
            return

        raise SessionError()

    async def _open_streamable(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        token = self.resolve_credential(request)
        session = Session(self.registry.new_session_id(), TransportKind.STREAMABLE_HTTP, token)
        adapter = StreamableHTTPAdapter(session, json_response=self.config.json_response)
        await self.registry.start(adapter.serve, self.server_factory(token))
        self.registry.register(session.id, adapter)

        status: int | None = None

        async def watch_status(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await adapter.handle(scope, receive, watch_status)
        finally:
            if status is not None and status < 400:
                adapter.mark_established()
                logger.info("[%s] Streamable HTTP session established. Token: %s", session.id, bool(token))
            else:
                # Nothing was established: drop the session instead of keeping its server around
                self.registry.unregister(session.id, adapter)
                await adapter.close()

    # ====================================================================
    # LEGACY EVENT STREAM PAIR
    # ====================================================================

    async def handle_event_stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        reconnect_id = query_value(request, "sessionId")
        previous = self.registry.lookup(reconnect_id) if reconnect_id else None

        if (
            isinstance(previous, EventStreamAdapter)
            and previous.state is EventStreamState.CLOSING
        ):
            # Same id and credential, but a fresh MCP server: the client must send initialize again
            session = previous.session
            adapter = EventStreamAdapter(session, self.message_path)
            await self.registry.start(adapter.serve, self.server_factory(session.bearer_token))
            self.registry.replace(session.id, adapter)
            await previous.close()
            logger.info("[%s] SSE reconnected within grace window", session.id)
        else:
            token = self.resolve_credential(request)
            session = Session(self.registry.new_session_id(), TransportKind.EVENT_STREAM, token)
            adapter = EventStreamAdapter(session, self.message_path)
            await self.registry.start(adapter.serve, self.server_factory(token))
            self.registry.register(session.id, adapter)

        await adapter.stream(scope, receive, send)

    async def handle_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        payload = parse_json_body(await request.body())

        session_id = query_value(request, "sessionId") or query_value(request, "session_id")
        if not session_id:
            raise SessionError("Bad Request: sessionId query parameter is required")
        adapter = cast(EventStreamAdapter, self._lookup(session_id, TransportKind.EVENT_STREAM))

        messages = parse_envelopes(payload)
        logger.debug("[%s] POST %s: %d message(s)", session_id, request.url.path, len(messages))
        for message in messages:
            await adapter.deliver(message, request)
        await Response("Accepted", status_code=202)(scope, receive, send)

    # ====================================================================
    # ROOT
    # ====================================================================

    async def handle_root(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if "text/event-stream" in request.headers.get("accept", ""):
            await self.handle_streamable(scope, receive, send)
            return
        if request.method == "POST":
            parse_json_body(await request.body())
        await JSONResponse({"status": "ok"})(scope, receive, send)


class MCPEndpoint:
    """Plain ASGI endpoint so Starlette routes it without request/response wrapping."""

    def __init__(self, dispatcher: ProtocolDispatcher, handler: ASGIHandler) -> None:
        self.dispatcher = dispatcher
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.dispatcher.guard(self.handler, scope, receive, send)
