# ============================================================================
# KANKA MCP - CAMPAIGN TOOLS
# ============================================================================
# Copyright 2026 The kanka-mcp Authors. Licensed under the MIT License.
#
# 82 Kanka tools:
#
# CAMPAIGNS (2):
#   list_campaigns       — Campaigns visible to the token
#   search               — Search a campaign (falls back to global search)
#
# ENTITIES (5 per kind × 16 kinds):
#   list_<plural>        — GET    /campaigns/{campaignId}/{plural}
#   get_<name>           — GET    /campaigns/{campaignId}/{plural}/{id}
#   create_<name>        — POST   /campaigns/{campaignId}/{plural}
#   update_<name>        — PUT    /campaigns/{campaignId}/{plural}/{id}
#   delete_<name>        — DELETE /campaigns/{campaignId}/{plural}/{id}
#
# One KankaMCPServer per session, bound to that session's bearer token.
# ============================================================================

import logging
from typing import Any, Callable
from urllib.parse import quote

from .. import __version__
from ..core import BaseMCPServer
from ..core.errors import UpstreamError
from .kanka_client import KankaClient

logger = logging.getLogger(__name__)

__all__ = [
    "ENTITIES",
    "KANKA_TOOLS",
    "KankaMCPServer",
    "create_kanka_server",
    "kanka_server_factory",
]


# ============================================================================
# TOOL DEFINITIONS
# ============================================================================

# (name, plural) — plural is the REST path segment
ENTITIES: list[tuple[str, str]] = [
    ("character", "characters"),
    ("location", "locations"),
    ("family", "families"),
    ("organization", "organisations"),
    ("item", "items"),
    ("note", "notes"),
    ("event", "events"),
    ("calendar", "calendars"),
    ("timeline", "timelines"),
    ("creature", "creatures"),
    ("race", "races"),
    ("quest", "quests"),
    ("map", "maps"),
    ("journal", "journals"),
    ("ability", "abilities"),
    ("entity", "entities"),
]

_CAMPAIGN_ID = {"type": "number", "description": "Kanka campaign ID"}
_ENTITY_ID = {"type": "number", "description": "Entity ID within the campaign"}
_DATA = {"type": "object", "description": "Payload sent as-is to Kanka"}

_READ_ONLY = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True, "openWorldHint": True}
_WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False, "openWorldHint": True}
_DELETE = {"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True, "openWorldHint": True}


def _entity_tools(name: str, plural: str) -> list[dict[str, Any]]:
    label = name.capitalize()
    return [
        {
            "name": f"list_{plural}",
            "title": f"List {plural.capitalize()}",
            "description": f"List {plural}",
            "inputSchema": {
                "type": "object",
                "properties": {"campaignId": _CAMPAIGN_ID, "page": {"type": "number"}},
                "required": ["campaignId"],
            },
            "annotations": _READ_ONLY,
        },
        {
            "name": f"get_{name}",
            "title": f"Get {label}",
            "description": f"Get details of a {name}",
            "inputSchema": {
                "type": "object",
                "properties": {"campaignId": _CAMPAIGN_ID, "id": _ENTITY_ID},
                "required": ["campaignId", "id"],
            },
            "annotations": _READ_ONLY,
        },
        {
            "name": f"create_{name}",
            "title": f"Create {label}",
            "description": f"Create a new {name}",
            "inputSchema": {
                "type": "object",
                "properties": {"campaignId": _CAMPAIGN_ID, "data": _DATA},
                "required": ["campaignId", "data"],
            },
            "annotations": _WRITE,
        },
        {
            "name": f"update_{name}",
            "title": f"Update {label}",
            "description": f"Update an existing {name}",
            "inputSchema": {
                "type": "object",
                "properties": {"campaignId": _CAMPAIGN_ID, "id": _ENTITY_ID, "data": _DATA},
                "required": ["campaignId", "id", "data"],
            },
            "annotations": _WRITE,
        },
        {
            "name": f"delete_{name}",
            "title": f"Delete {label}",
            "description": f"Delete an existing {name}",
            "inputSchema": {
                "type": "object",
                "properties": {"campaignId": _CAMPAIGN_ID, "id": _ENTITY_ID},
                "required": ["campaignId", "id"],
            },
            "annotations": _DELETE,
        },
    ]


KANKA_TOOLS: list[dict[str, Any]] = [
    {
        "name": "list_campaigns",
        "title": "List Campaigns",
        "description": "List all campaigns",
        "inputSchema": {"type": "object", "properties": {}},
        "annotations": _READ_ONLY,
    },
    {
        "name": "search",
        "title": "Search Campaign",
        "description": "Search entities",
        "inputSchema": {
            "type": "object",
            "properties": {"campaignId": _CAMPAIGN_ID, "q": {"type": "string"}},
            "required": ["campaignId", "q"],
        },
        "annotations": _READ_ONLY,
    },
]
for _name, _plural in ENTITIES:
    KANKA_TOOLS.extend(_entity_tools(_name, _plural))


# ============================================================================
# MCP SERVER
# ============================================================================

class KankaMCPServer(BaseMCPServer):
    """Kanka MCP server: campaign search plus CRUD for 16 entity kinds."""

    INSTRUCTIONS = """Kanka MCP Server — campaign worldbuilding data

Read and edit Kanka campaigns (characters, locations, quests, maps, ...).

START:
- list_campaigns → find the campaignId
- search(campaignId, q) → locate entities by name

ENTITIES (16 kinds):
- list_<plural>(campaignId, page) / get_<name>(campaignId, id)
- create_<name>(campaignId, data) / update_<name>(campaignId, id, data)
- delete_<name>(campaignId, id)"""

    def __init__(self, client: KankaClient, token: str = "") -> None:
        super().__init__(
            name="kanka-mcp-server",
            version=__version__,
            instructions=self.INSTRUCTIONS,
            token=token,
        )
        self._kanka = client
        self._plurals = {name: plural for name, plural in ENTITIES}
        self._list_paths = {plural for _, plural in ENTITIES}

        self.register_tools(KANKA_TOOLS)
        self.register_tool_handler("*", self._handle_tool)
        self.setup_handlers()

    # ====================================================================
    # TOOL HANDLER — routes all tools
    # ====================================================================

    async def _handle_tool(self, name: str, arguments: dict) -> Any:
        logger.info("Tool call: %s", name)
        if not self.token:
            raise ValueError("Missing Kanka API Token.")
        args = arguments or {}

        if name == "list_campaigns":
            return await self._call("/campaigns")

        if name == "search":
            return await self._search(args["campaignId"], str(args["q"]))

        action, _, kind = name.partition("_")
        campaign = args.get("campaignId")

        if action == "list" and kind in self._list_paths:
            return await self._call(f"/campaigns/{campaign}/{kind}", params={"page": args.get("page")})

        plural = self._plurals.get(kind)
        if plural is None:
            raise ValueError(f"Unknown tool: {name}")
        collection = f"/campaigns/{campaign}/{plural}"

        if action == "get":
            return await self._call(f"{collection}/{args['id']}")
        if action == "create":
            return await self._call(collection, "POST", body=self._payload(args, "create"))
        if action == "update":
            return await self._call(f"{collection}/{args['id']}", "PUT", body=self._payload(args, "update"))
        if action == "delete":
            return await self._call(f"{collection}/{args['id']}", "DELETE")

        raise ValueError(f"Unknown tool: {name}")

    @staticmethod
    def _payload(args: dict, action: str) -> dict:
        data = args.get("data")
        if not isinstance(data, dict):
            raise ValueError(f"Missing or invalid 'data' for {action} request.")
        return data

    async def _search(self, campaign: Any, term: str) -> Any:
        """Campaign-scoped search; Kanka answers 404 where only the global route exists."""
        encoded = quote(term, safe="")
        try:
            return await self._call(f"/campaigns/{campaign}/search/{encoded}")
        except UpstreamError as e:
            if e.status_code != 404:
                raise
        return await self._call(f"/search/{encoded}", params={"campaign_id": campaign})

    async def _call(
        self,
        path: str,
        method: str = "GET",
        body: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        return await self._kanka.request(path, method, body=body, params=params, token=self.token)


def create_kanka_server(client: KankaClient, token: str = "") -> KankaMCPServer:
    """Factory function to create a Kanka MCP server bound to one token."""
    return KankaMCPServer(client, token=token)


def kanka_server_factory(client: KankaClient) -> Callable[[str], KankaMCPServer]:
    """Per-session factory for the transport layer: token → server."""
    def factory(token: str) -> KankaMCPServer:
        return create_kanka_server(client, token)
    return factory
