# ============================================================================
# KANKA MCP - TRANSPORT ADAPTERS
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Three wire transports, one capability contract (see sessions.TransportAdapter):
#
#   PipeAdapter            — stdin/stdout, one session for the process lifetime
#   EventStreamAdapter     — legacy pair: GET /sse (server→client stream)
#                            + POST /message?sessionId=... (client→server)
#                            Open → Connected → Closing(grace) → Closed
#   StreamableHTTPAdapter  — single endpoint, session id in Mcp-Session-Id
#                            Uninitialized → Established → Terminated
#
# Each adapter runs one MCP server instance (bound to the session's token)
# over a pair of anyio memory streams.
# ============================================================================

import enum
import logging
from typing import Any
from urllib.parse import quote

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server.stdio import stdio_server
from mcp.server.streamable_http import StreamableHTTPServerTransport
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from mcp.types import JSONRPCMessage
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.types import Receive, Scope, Send

from .errors import SessionNotFoundError
from .sessions import Session, TransportAdapter, TransportKind

logger = logging.getLogger(__name__)

__all__ = [
    "PipeAdapter",
    "EventStreamState",
    "EventStreamAdapter",
    "StreamableHTTPState",
    "StreamableHTTPAdapter",
]

# Keep-alive comment interval on the outbound event stream (seconds)
KEEPALIVE_SECONDS = 15


# ============================================================================
# PIPE (STDIO)
# ============================================================================

class PipeAdapter(TransportAdapter):
    """Whole messages over the process's stdin/stdout.

    No session id negotiation and no reconnection: when the stream closes,
    the session is over for good.
    """

    kind = TransportKind.PIPE

    async def serve(self, app: Any, *, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with stdio_server() as (read_stream, write_stream):
                task_status.started()
                await app.run_streams(read_stream, write_stream)
        finally:
            self.mark_closed()

    async def close(self) -> None:
        self.mark_closed()


# ============================================================================
# EVENT STREAM PAIR (LEGACY SSE)
# ============================================================================

class EventStreamState(enum.Enum):
    OPEN = "open"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class EventStreamAdapter(TransportAdapter):
    """Legacy two-endpoint transport.

    The MCP server outlives the GET stream: after the client disconnects the
    adapter stays in CLOSING for the grace window and still accepts inbound
    messages; responses written while no stream is attached are dropped.
    """

    kind = TransportKind.EVENT_STREAM

    def __init__(self, session: Session, message_path: str = "/message") -> None:
        super().__init__(session)
        self.state = EventStreamState.OPEN
        self._message_path = message_path
        self._read_writer: MemoryObjectSendStream[SessionMessage | Exception]
        self._read_stream: MemoryObjectReceiveStream[SessionMessage | Exception]
        self._write_stream: MemoryObjectSendStream[SessionMessage]
        self._write_reader: MemoryObjectReceiveStream[SessionMessage]
        self._read_writer, self._read_stream = anyio.create_memory_object_stream(0)
        self._write_stream, self._write_reader = anyio.create_memory_object_stream(0)
        self._outbound: MemoryObjectSendStream[dict[str, Any]] | None = None

    def endpoint_for(self, root_path: str = "") -> str:
        path = root_path.rstrip("/") + self._message_path
        return f"{quote(path)}?sessionId={self.session_id}"

    async def serve(self, app: Any, *, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._pump_outbound)
                task_status.started()
                try:
                    await app.run_streams(self._read_stream, self._write_stream)
                except Exception:
                    logger.exception("Session %s crashed", self.session_id)
                tg.cancel_scope.cancel()
        finally:
            self.state = EventStreamState.CLOSED
            self.mark_closed()

    async def _pump_outbound(self) -> None:
        async with self._write_reader:
            async for session_message in self._write_reader:
                data = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                outbound = self._outbound
                if outbound is None:
                    logger.debug("[%s] No stream attached, dropping outbound message", self.session_id)
                    continue
                try:
                    await outbound.send({"event": "message", "data": data})
                except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                    logger.debug("[%s] Stream went away, dropping outbound message", self.session_id)

    async def stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI: hold the outbound event stream open until the client leaves."""
        if self.state is not EventStreamState.OPEN:
            raise SessionNotFoundError()

        sender, receiver = anyio.create_memory_object_stream[dict[str, Any]](16)
        sender.send_nowait({"event": "endpoint", "data": self.endpoint_for(scope.get("root_path", ""))})
        self._outbound = sender
        self.state = EventStreamState.CONNECTED
        logger.info("[%s] SSE connected. Token: %s", self.session_id, bool(self.session.bearer_token))

        try:
            response = EventSourceResponse(
                content=receiver,
                ping=KEEPALIVE_SECONDS,
                headers={"Cache-Control": "no-cache, no-transform"},
            )
            await response(scope, receive, send)
        finally:
            self._outbound = None
            await sender.aclose()
            await receiver.aclose()
            if self.state is EventStreamState.CONNECTED:
                self.state = EventStreamState.CLOSING
            logger.info("[%s] SSE closed.", self.session_id)
            self.mark_closed()

    async def deliver(self, message: JSONRPCMessage, request: Request | None = None) -> None:
        """Forward one client→server envelope to the session's MCP server."""
        if self.state is EventStreamState.CLOSED:
            raise SessionNotFoundError()
        metadata = ServerMessageMetadata(request_context=request)
        try:
            await self._read_writer.send(SessionMessage(message, metadata=metadata))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
            self.state = EventStreamState.CLOSED
            raise SessionNotFoundError() from exc

    async def close(self) -> None:
        self.state = EventStreamState.CLOSED
        outbound, self._outbound = self._outbound, None
        if outbound is not None:
            await outbound.aclose()
        await self._read_writer.aclose()
        self.mark_closed()


# ============================================================================
# STREAMABLE HTTP
# ============================================================================

class StreamableHTTPState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ESTABLISHED = "established"
    TERMINATED = "terminated"


class StreamableHTTPAdapter(TransportAdapter):
    """Single-endpoint transport backed by the SDK's StreamableHTTPServerTransport.

    The gateway mints the session id; the SDK transport handles framing
    (JSON or SSE responses, GET streams, DELETE).
    """

    kind = TransportKind.STREAMABLE_HTTP

    def __init__(self, session: Session, json_response: bool = False) -> None:
        super().__init__(session)
        self.state = StreamableHTTPState.UNINITIALIZED
        self._transport = StreamableHTTPServerTransport(
            mcp_session_id=session.id,
            is_json_response_enabled=json_response,
            event_store=None,
        )

    @property
    def terminated(self) -> bool:
        return self._transport.is_terminated

    def mark_established(self) -> None:
        if self.state is StreamableHTTPState.UNINITIALIZED:
            self.state = StreamableHTTPState.ESTABLISHED

    async def serve(self, app: Any, *, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
        try:
            async with self._transport.connect() as (read_stream, write_stream):
                task_status.started()
                try:
                    await app.run_streams(read_stream, write_stream)
                except Exception:
                    logger.exception("Session %s crashed", self.session_id)
        finally:
            self.state = StreamableHTTPState.TERMINATED
            self.mark_closed()

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._transport.handle_request(scope, receive, send)
        if self._transport.is_terminated:
            self.state = StreamableHTTPState.TERMINATED

    async def close(self) -> None:
        self.state = StreamableHTTPState.TERMINATED
        if not self._transport.is_terminated:
            with anyio.CancelScope(shield=True):
                await self._transport.terminate()
        self.mark_closed()
