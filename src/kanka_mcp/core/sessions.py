# ============================================================================
# KANKA MCP - SESSION REGISTRY
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Process-wide map: session id → transport adapter.
#
# RULES:
#   - At most one adapter per session id at any instant.
#   - Removal is compare-and-delete by identity: a stale closure can never
#     evict the adapter that replaced it.
#   - Closure is not eviction. An adapter that reports closure is removed
#     only after the grace window, and only if it is still the one stored.
#   - An evicted id is retired and never registered again.
#
# All mutation happens on the event loop thread, so there are no locks.
# The registry owns the task group that runs every session's MCP server.
# ============================================================================

import contextlib
import enum
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup

from .errors import DuplicateSessionError, SessionNotFoundError

logger = logging.getLogger(__name__)

__all__ = [
    "TransportKind",
    "Session",
    "TransportAdapter",
    "SessionRegistry",
    "variant_of",
]


class TransportKind(enum.Enum):
    PIPE = "pipe"
    EVENT_STREAM = "event-stream"
    STREAMABLE_HTTP = "streamable-http"


@dataclass
class Session:
    """One logical client conversation."""

    id: str
    kind: TransportKind
    bearer_token: str = ""
    created_at: float = field(default_factory=time.time)


class TransportAdapter:
    """Capability contract shared by the three transport variants.

    serve()       — run an MCP server over this adapter (task-group compatible)
    close()       — release the adapter; idempotent
    wait_closed() — completion signal awaited by the registry
    """

    kind: TransportKind

    def __init__(self, session: Session) -> None:
        if session.kind is not self.kind:
            raise ValueError(f"{type(self).__name__} cannot carry a {session.kind.value} session")
        self.session = session
        self._closed = anyio.Event()

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def mark_closed(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def serve(self, app: Any, *, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


def variant_of(adapter: TransportAdapter) -> TransportKind:
    return adapter.session.kind


class SessionRegistry:
    """Session id → adapter map with delayed, identity-checked eviction."""

    def __init__(
        self,
        grace_seconds: float = 60.0,
        report_seconds: float = 300.0,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.report_seconds = report_seconds
        self._adapters: dict[str, TransportAdapter] = {}
        self._retired: set[str] = set()
        self._task_group: TaskGroup | None = None

    # ====================================================================
    # LIFECYCLE
    # ====================================================================

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator["SessionRegistry"]:
        """Own the task group for session servers and eviction timers."""
        if self._task_group is not None:
            raise RuntimeError("SessionRegistry is already running")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            if self.report_seconds > 0:
                tg.start_soon(self._report_loop)
            try:
                yield self
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None
                self._adapters.clear()

    async def start(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Start a background task and wait until it reports readiness."""
        if self._task_group is None:
            raise RuntimeError("SessionRegistry is not running. Use 'async with registry.run()'.")
        return await self._task_group.start(func, *args)

    # ====================================================================
    # MAPPING
    # ====================================================================

    def new_session_id(self) -> str:
        while True:
            session_id = uuid4().hex
            if session_id not in self._adapters and session_id not in self._retired:
                return session_id

    def register(self, session_id: str, adapter: TransportAdapter) -> None:
        if session_id in self._adapters or session_id in self._retired:
            raise DuplicateSessionError(f"Session id already registered: {session_id}")
        self._adapters[session_id] = adapter
        self._watch(session_id, adapter)
        logger.info("Session %s registered (%s)", session_id, variant_of(adapter).value)

    def replace(self, session_id: str, adapter: TransportAdapter) -> TransportAdapter:
        """Re-bind a live session id to a new adapter (reconnect).

        Returns the adapter that was replaced. Its pending eviction becomes a no-op.
        """
        previous = self._adapters.get(session_id)
        if previous is None:
            raise SessionNotFoundError()
        self._adapters[session_id] = adapter
        self._watch(session_id, adapter)
        logger.info("Session %s re-bound to a new %s adapter", session_id, variant_of(adapter).value)
        return previous

    def lookup(self, session_id: str) -> TransportAdapter | None:
        return self._adapters.get(session_id)

    def unregister(self, session_id: str, adapter: TransportAdapter) -> bool:
        """Remove the mapping only if `adapter` is the one currently stored."""
        if self._adapters.get(session_id) is not adapter:
            return False
        del self._adapters[session_id]
        self._retired.add(session_id)
        logger.info("Session %s removed", session_id)
        return True

    def count_by_kind(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in TransportKind}
        for adapter in self._adapters.values():
            counts[variant_of(adapter).value] += 1
        return counts

    def __len__(self) -> int:
        return len(self._adapters)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._adapters

    # ====================================================================
    # EVICTION
    # ====================================================================

    def _watch(self, session_id: str, adapter: TransportAdapter) -> None:
        if self._task_group is None:
            logger.debug("Registry not running; session %s will not be evicted on close", session_id)
            return
        self._task_group.start_soon(self._evict_after_close, session_id, adapter)

    async def _evict_after_close(self, session_id: str, adapter: TransportAdapter) -> None:
        await adapter.wait_closed()
        logger.debug("Session %s closed; evicting in %.0fs", session_id, self.grace_seconds)
        if self.grace_seconds > 0:
            await anyio.sleep(self.grace_seconds)
        if self.unregister(session_id, adapter):
            logger.info("Session %s evicted after grace window", session_id)
        # The adapter is no longer registered (evicted or replaced): release it either way
        try:
            await adapter.close()
        except Exception:
            logger.exception("Error closing session %s", session_id)

    async def _report_loop(self) -> None:
        while True:
            await anyio.sleep(self.report_seconds)
            logger.info("Active MCP sessions: %d %s", len(self._adapters), self.count_by_kind())
