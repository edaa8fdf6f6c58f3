# ============================================================================
# KANKA MCP - BASE SERVER
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# Base MCP server class. One instance per session, bound to the bearer
# token that was resolved when the session was created.
# ============================================================================

import json
import logging
from typing import Any, Callable

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server import Server
from mcp.server.lowlevel.server import NotificationOptions
from mcp.server.models import InitializationOptions
from mcp.shared.message import SessionMessage
from mcp.types import CallToolResult, TextContent, Tool, ToolAnnotations

__all__ = [
    "BaseMCPServer",
    "create_mcp_server",
]

logger = logging.getLogger(__name__)

WEBSITE_URL = "https://kanka.io"


def create_mcp_server(
    name: str,
    version: str,
    instructions: str,
) -> Server:
    """Create a configured MCP Server instance."""
    return Server(
        name=name,
        version=version,
        instructions=instructions,
        website_url=WEBSITE_URL,
    )


class BaseMCPServer:
    """Base MCP server with shared infrastructure.
    Provides: Server initialization, tool handlers, stream runner.
    Subclasses add: tools and the handler that executes them.
    """

    def __init__(
        self,
        name: str,
        version: str,
        instructions: str,
        token: str = "",
    ) -> None:
        self.name = name
        self.version = version
        self.instructions = instructions
        self.token = token

        self.server = create_mcp_server(name, version, instructions)

        # Tools and handlers (set by subclass)
        self._tools: list[dict] = []
        self._tool_handlers: dict[str, Callable] = {}

    def register_tools(self, tools: list[dict]) -> None:
        self._tools.extend(tools)

    def register_tool_handler(self, name: str, handler: Callable) -> None:
        self._tool_handlers[name] = handler

    def setup_handlers(self) -> None:
        """Set up MCP protocol handlers. Call AFTER registering tools."""
        self._setup_tool_handlers()

    def _setup_tool_handlers(self) -> None:
        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            tools_list = []
            for tool in self._tools:
                annotations = None
                if "annotations" in tool:
                    ann = tool["annotations"]
                    annotations = ToolAnnotations(
                        readOnlyHint=ann.get("readOnlyHint"),
                        destructiveHint=ann.get("destructiveHint"),
                        idempotentHint=ann.get("idempotentHint"),
                        openWorldHint=ann.get("openWorldHint"),
                    )
                tools_list.append(Tool(
                    name=tool["name"],
                    title=tool.get("title"),
                    description=tool["description"],
                    inputSchema=tool["inputSchema"],
                    annotations=annotations,
                ))
            return tools_list

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict) -> CallToolResult:
            return await self.execute_tool(name, arguments)

    async def execute_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        """Run one tool call. Failures become an error result, never an exception."""
        valid_tools = [t["name"] for t in self._tools]
        if name not in valid_tools:
            raise ValueError(f"Unknown tool: {name}")

        handler = self._tool_handlers.get(name) or self._tool_handlers.get("*")
        if not handler:
            raise ValueError(f"No handler registered for tool: {name}")

        try:
            result = await handler(name, arguments)
        except Exception as e:
            logger.warning("Error in %s: %s", name, e)
            return CallToolResult(
                content=[TextContent(type="text", text=f"Error: {e}")],
                isError=True,
            )
        formatted = json.dumps(result, indent=2, default=str)
        return CallToolResult(content=[TextContent(type="text", text=formatted)])

    def get_init_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=self.name,
            server_version=self.version,
            capabilities=self.server.get_capabilities(
                notification_options=NotificationOptions(),
                experimental_capabilities={},
            ),
            instructions=self.instructions,
            website_url=WEBSITE_URL,
        )

    async def run_streams(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
    ) -> None:
        """Serve one session over a transport adapter's streams."""
        await self.server.run(read_stream, write_stream, self.get_init_options())
