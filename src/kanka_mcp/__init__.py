# ============================================================================
# KANKA MCP — Multi-Transport Gateway for the Kanka API
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Exposes Kanka campaign tools over three MCP transports and relays the
# Kanka OAuth authorization-code flow (with PKCE):
#   - STDIO: one pipe session (local IDEs)
#   - HTTP:  /mcp (streamable HTTP), /sse + /message (legacy SSE),
#            /oauth/* (authorization relay)
#
# Usage:
#   export KANKA_API_TOKEN=your_personal_access_token
#   kanka-mcp --stdio
#
#   PORT=5000 kanka-mcp
#
# Environment Variables:
#   KANKA_API_TOKEN - Default Kanka token (required for STDIO mode)
#   TRANSPORT       - Transport: stdio or http (default: http when PORT is set)
#   LOG_LEVEL       - Logging level (default: INFO)
#   See core/config.py for the rest.
# ============================================================================

import logging
import os
import sys

# Version from package metadata
from importlib.metadata import version as _get_version
__version__ = _get_version("kanka-mcp")

# Public API
__all__ = [
    "__version__",
    "main",
]


def _configure_logging() -> None:
    # stdout carries the pipe transport: logs go to stderr
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _require_token(token: str) -> None:
    """STDIO mode has no per-request credential: the default token is mandatory."""
    if token:
        return
    print("ERROR: KANKA_API_TOKEN environment variable not set", file=sys.stderr)
    print("", file=sys.stderr)
    print("Create a personal access token at: https://app.kanka.io/settings/api", file=sys.stderr)
    print("", file=sys.stderr)
    print("Then set it:", file=sys.stderr)
    print("  export KANKA_API_TOKEN=your_token_here", file=sys.stderr)
    sys.exit(1)


def main() -> None:
    """Main entry point — runs the Kanka MCP gateway."""
    _configure_logging()

    from .core import GatewayConfig
    config = GatewayConfig.from_env()
    transport = "stdio" if "--stdio" in sys.argv[1:] else config.transport

    if transport != "http":
        transport = "stdio"
        _require_token(config.api_token)

    print(f"[kanka-mcp] Starting gateway v{__version__} ({transport})...", file=sys.stderr)

    try:
        from .backend import KankaClient, kanka_server_factory
        from .core import run_http, run_stdio

        client = KankaClient(config.api_base)
        factory = kanka_server_factory(client)
        if transport == "http":
            run_http(config, factory, version=__version__, cleanup=client.close)
        else:
            run_stdio(config, factory, cleanup=client.close)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
