# ============================================================================
# KANKA MCP - TRANSPORT LAYER
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Process entry points for STDIO and HTTP modes.
#
# DUAL TRANSPORT ARCHITECTURE:
# - STDIO:  Local development (Cursor, VS Code, Claude Desktop)
#           one pipe session for the lifetime of the process
# - HTTP:   Cloud deployment, three entry styles sharing one registry:
#           /mcp (streamable HTTP), /sse + /message (legacy), and the
#           OAuth relay under /oauth
# ============================================================================

import asyncio
import contextlib
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, cast

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from .adapters import PipeAdapter
from .config import GatewayConfig
from .dispatch import MCPEndpoint, ProtocolDispatcher, parse_json_body
from .errors import GatewayError, OAuthError, ParseError
from .oauth import OAuthRelay
from .sessions import Session, SessionRegistry, TransportKind

__all__ = [
    "run_stdio",
    "run_http",
    "create_http_app",
]

ServerFactory = Callable[[str], Any]
Cleanup = Callable[[], Awaitable[None]]


# ============================================================================
# STDIO TRANSPORT - Local IDE Integration
# ============================================================================

def run_stdio(config: GatewayConfig, server_factory: ServerFactory, cleanup: Cleanup | None = None) -> None:
    """Run one MCP session over stdin/stdout until the client hangs up."""
    asyncio.run(_stdio_async(config, server_factory, cleanup))


async def _stdio_async(config: GatewayConfig, server_factory: ServerFactory, cleanup: Cleanup | None) -> None:
    # The pipe never reconnects: evict as soon as it closes
    registry = SessionRegistry(grace_seconds=0, report_seconds=0)
    try:
        async with registry.run():
            session = Session(registry.new_session_id(), TransportKind.PIPE, config.api_token)
            adapter = PipeAdapter(session)
            registry.register(session.id, adapter)
            await adapter.serve(server_factory(session.bearer_token))
    finally:
        if cleanup:
            await cleanup()


# ============================================================================
# HTTP TRANSPORT - Cloud Deployment
# ============================================================================

def run_http(
    config: GatewayConfig,
    server_factory: ServerFactory,
    version: str = "",
    cleanup: Cleanup | None = None,
) -> None:
    """Run the gateway in HTTP mode."""
    import uvicorn

    app = create_http_app(config, server_factory, version=version, cleanup=cleanup)

    host, port = config.host, config.port
    print(f"[kanka-mcp] HTTP server starting on {host}:{port}", file=sys.stderr)
    print("[kanka-mcp] MCP endpoints:", file=sys.stderr)
    print(f"[kanka-mcp]   - http://{host}:{port}/mcp (streamable HTTP)", file=sys.stderr)
    print(f"[kanka-mcp]   - http://{host}:{port}/sse (legacy SSE)", file=sys.stderr)
    print(f"[kanka-mcp] OAuth relay: http://{host}:{port}/oauth/authorize", file=sys.stderr)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


async def _read_form(request: Request) -> dict[str, Any]:
    """Token endpoint body: JSON object or form-encoded."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        payload = parse_json_body(await request.body())
        if not isinstance(payload, dict):
            raise OAuthError("invalid_request", "Request body must be an object")
        return payload
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


async def _gateway_error(request: Request, exc: Exception) -> Response:
    error = cast(GatewayError, exc)
    if isinstance(error, ParseError):
        return JSONResponse(error.to_envelope(), status_code=error.status_code)
    return JSONResponse(error.to_oauth(), status_code=error.status_code)


def create_http_app(
    config: GatewayConfig,
    server_factory: ServerFactory,
    *,
    registry: SessionRegistry | None = None,
    relay: OAuthRelay | None = None,
    version: str = "",
    cleanup: Cleanup | None = None,
) -> Starlette:
    """Create the Starlette ASGI application for HTTP transport.

    Registry and relay are injected so tests (or several gateways in one
    process) each get their own state.
    """
    if registry is None:
        registry = SessionRegistry(
            grace_seconds=config.session_grace_seconds,
            report_seconds=config.registry_report_seconds,
        )
    if relay is None:
        relay = OAuthRelay(config)
    dispatcher = ProtocolDispatcher(registry, server_factory, config)

    # ====================================================================
    # OAUTH
    # ====================================================================

    async def discovery(request: Request) -> Response:
        return JSONResponse(relay.discovery_document(_base_url(request)))

    async def authorize(request: Request) -> Response:
        url = relay.start_authorization(request.query_params, _base_url(request))
        return RedirectResponse(url, status_code=302)

    async def login(request: Request) -> Response:
        url = relay.login_url(request.query_params, _base_url(request))
        return RedirectResponse(url, status_code=302)

    async def callback(request: Request) -> Response:
        result = await relay.complete_authorization(request.query_params, _base_url(request))
        if result.redirect_url:
            return RedirectResponse(result.redirect_url, status_code=302)
        return JSONResponse(result.tokens)

    async def token(request: Request) -> Response:
        form = await _read_form(request)
        tokens = await relay.exchange_token(form, request.query_params, _base_url(request))
        return JSONResponse(tokens, headers={"Cache-Control": "no-store"})

    # ====================================================================
    # HEALTH
    # ====================================================================

    async def health(request: Request) -> Response:
        return JSONResponse({
            "status": "ok",
            "version": version,
            "sessions": len(registry),
        })

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        try:
            async with registry.run():
                yield
        finally:
            await relay.aclose()
            if cleanup:
                await cleanup()

    app = Starlette(
        debug=False,
        routes=[
            Route("/.well-known/oauth-authorization-server", endpoint=discovery, methods=["GET"]),
            Route("/oauth/authorize", endpoint=authorize, methods=["GET"]),
            Route("/oauth/login", endpoint=login, methods=["GET"]),
            Route("/oauth/callback", endpoint=callback, methods=["GET"]),
            Route("/oauth/token", endpoint=token, methods=["POST"]),
            Route("/health", endpoint=health, methods=["GET"]),
            Route("/mcp", endpoint=MCPEndpoint(dispatcher, dispatcher.handle_streamable),
                  methods=["GET", "POST", "DELETE"]),
            Route("/sse", endpoint=MCPEndpoint(dispatcher, dispatcher.handle_event_stream), methods=["GET"]),
            Route("/message", endpoint=MCPEndpoint(dispatcher, dispatcher.handle_message), methods=["POST"]),
            Route("/messages", endpoint=MCPEndpoint(dispatcher, dispatcher.handle_message), methods=["POST"]),
            Route("/", endpoint=MCPEndpoint(dispatcher, dispatcher.handle_root), methods=["GET", "POST"]),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                allow_headers=["*"],
                expose_headers=["Mcp-Session-Id"],
            ),
        ],
        exception_handlers={GatewayError: _gateway_error},
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.relay = relay
    app.state.dispatcher = dispatcher
    return app
