# Shared fixtures for the gateway tests.

from unittest.mock import AsyncMock, MagicMock

import pytest

from kanka_mcp.backend import KankaClient, kanka_server_factory
from kanka_mcp.core import GatewayConfig, create_http_app

INIT_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}


def initialize_request(request_id=1):
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "0.0.0"},
        },
    }


@pytest.fixture
def config():
    return GatewayConfig(
        api_token="default-token",
        session_grace_seconds=0.05,
        registry_report_seconds=0,
        json_response=True,
    )


@pytest.fixture
def kanka_client():
    client = MagicMock(spec=KankaClient)
    client.request = AsyncMock(return_value={"data": []})
    client.close = AsyncMock()
    return client


@pytest.fixture
def app(config, kanka_client):
    return create_http_app(config, kanka_server_factory(kanka_client), version="test")
