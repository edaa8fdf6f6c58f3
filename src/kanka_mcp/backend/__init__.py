# ============================================================================
# KANKA MCP - BACKEND MODULE
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Public API:
#   KankaClient           — HTTP client for the Kanka REST API
#   KankaMCPServer        — MCP server with the Kanka campaign tools
#   create_kanka_server   — Factory function
#   kanka_server_factory  — Per-session factory (token → server)
#   KANKA_TOOLS           — Tool definitions list
# ============================================================================

from .kanka_client import KankaClient
from .tools import (
    ENTITIES,
    KANKA_TOOLS,
    KankaMCPServer,
    create_kanka_server,
    kanka_server_factory,
)

__all__ = [
    "KankaClient",
    "ENTITIES",
    "KANKA_TOOLS",
    "KankaMCPServer",
    "create_kanka_server",
    "kanka_server_factory",
]
