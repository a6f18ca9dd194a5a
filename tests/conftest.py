"""
Pytest configuration and fixtures for mcp-toolkit testing.

Backends are real subprocesses running ``fake_backend.py`` with the current
interpreter, so the gateway is exercised end to end without docker.
"""

import os
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from mcp_toolkit.core.proxy.gateway import Gateway
from mcp_toolkit.core.secrets import TEST_KEY, SecretManager
from mcp_toolkit.core.storage import SQLiteStorage
from mcp_toolkit.utils.config import GatewayConfig, ToolkitConfig


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep host configuration out of the tests."""
    for key in list(os.environ):
        if key.startswith("MCP_TOOLKIT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def storage(tmp_path):
    """Empty record database."""
    return SQLiteStorage(tmp_path / "records.db")


@pytest.fixture
def secrets():
    return SecretManager(TEST_KEY)


@pytest.fixture
def config():
    """Test configuration with a bounded backend deadline."""
    return ToolkitConfig(
        environment="test",
        test_mode=True,
        gateway=GatewayConfig(call_timeout_seconds=10.0),
    )


@pytest.fixture
def settings(config):
    return config.gateway


@pytest_asyncio.fixture
async def gateway(storage, secrets, config):
    """Gateway over the test database; all backends are stopped afterwards."""
    async with Gateway(storage, secrets, config) as gw:
        yield gw


@pytest.fixture
def http_backend_server():
    """Factory running an aiohttp handler at ``POST /call`` and yielding its URL."""

    @asynccontextmanager
    async def run(handler):
        app = web.Application()
        app.router.add_post("/call", handler)
        server = TestServer(app)
        await server.start_server()
        try:
            yield str(server.make_url("/call"))
        finally:
            await server.close()

    return run
