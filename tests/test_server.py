"""
Tests for the stdio and HTTP gateway servers.
"""

import asyncio
import io
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from mcp_toolkit.core.proxy.gateway import Gateway
from mcp_toolkit.core.proxy.server import HttpGatewayServer, StdioServer
from mcp_toolkit.utils.config import HttpServerConfig

from helpers import bind, make_backend


def stdin_with(*messages):
    reader = asyncio.StreamReader()
    for message in messages:
        line = message if isinstance(message, str) else json.dumps(message)
        reader.feed_data((line + "\n").encode("utf-8"))
    reader.feed_eof()
    return reader


def responses_by_id(output):
    lines = [line for line in output.getvalue().splitlines() if line.strip()]
    return {response["id"]: response for response in map(json.loads, lines)}


@pytest.mark.asyncio
class TestStdioServer:
    """Test the line-delimited stdio loop."""

    async def test_session(self, storage, secrets, config):
        bind(storage, make_backend("alpha"))
        gateway = Gateway(storage, secrets, config)
        output = io.StringIO()
        reader = stdin_with(
            {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}},
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            "",
            {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
            {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "alpha__echo", "arguments": {"k": "v"}}},
        )

        await StdioServer(gateway, "project", reader=reader, output=output).run()

        responses = responses_by_id(output)
        assert set(responses) == {1, 2, 3}
        assert responses[1]["result"]["protocolVersion"] == "2024-11-05"
        assert "alpha__echo" in [tool["name"] for tool in responses[2]["result"]["tools"]]
        assert json.loads(responses[3]["result"]["content"][0]["text"])["content"][0]["text"] == '{"k": "v"}'

    async def test_backends_stopped_at_eof(self, storage, secrets, config, monkeypatch):
        backend = make_backend("alpha")
        bind(storage, backend)
        gateway = Gateway(storage, secrets, config)
        reader = stdin_with({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})

        closed = []
        close_scope = gateway.close_scope

        async def recording_close_scope(scope):
            closed.append(gateway.pool_for(scope).get(backend.id))
            await close_scope(scope)

        monkeypatch.setattr(gateway, "close_scope", recording_close_scope)
        await StdioServer(gateway, "project", reader=reader, output=io.StringIO()).run()

        assert closed[0].transport.process.returncode is not None

    async def test_invalid_line_answered(self, storage, secrets, config):
        gateway = Gateway(storage, secrets, config)
        output = io.StringIO()

        await StdioServer(gateway, "project", reader=stdin_with("not json"), output=output).run()

        response = json.loads(output.getvalue())
        assert response["id"] is None
        assert response["error"]["code"] == -32600


@pytest.mark.asyncio
class TestHttpGatewayServer:
    """Test the aiohttp endpoint."""

    async def make_client(self, gateway):
        server = HttpGatewayServer(gateway, HttpServerConfig(default_scope="project"))
        client = TestClient(TestServer(server.create_app()))
        await client.start_server()
        return client

    async def test_default_scope(self, storage, secrets, config):
        bind(storage, make_backend("alpha"))
        client = await self.make_client(Gateway(storage, secrets, config))
        try:
            response = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
            assert response.status == 200
            body = await response.json()
            assert "alpha__echo" in [tool["name"] for tool in body["result"]["tools"]]
        finally:
            await client.close()

    async def test_scope_in_path(self, storage, secrets, config):
        bind(storage, make_backend("alpha"), scope="other")
        client = await self.make_client(Gateway(storage, secrets, config))
        try:
            default = await (await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})).json()
            scoped = await (await client.post("/mcp/other", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})).json()
        finally:
            await client.close()

        assert default["result"]["tools"] == []
        assert scoped["result"]["tools"]

    async def test_notification_accepted(self, storage, secrets, config):
        client = await self.make_client(Gateway(storage, secrets, config))
        try:
            response = await client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
            assert response.status == 202
        finally:
            await client.close()

    async def test_invalid_request_is_400(self, storage, secrets, config):
        client = await self.make_client(Gateway(storage, secrets, config))
        try:
            response = await client.post("/mcp", data=b"{broken")
            assert response.status == 400
            assert (await response.json())["error"]["code"] == -32600
        finally:
            await client.close()

    async def test_rpc_errors_use_status_200(self, storage, secrets, config):
        client = await self.make_client(Gateway(storage, secrets, config))
        try:
            response = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 3, "method": "nope"})
            assert response.status == 200
            assert (await response.json())["error"]["code"] == -32601
        finally:
            await client.close()

    async def test_health(self, storage, secrets, config):
        client = await self.make_client(Gateway(storage, secrets, config))
        try:
            response = await client.get("/health")
            body = await response.json()
        finally:
            await client.close()

        assert body["status"] == "healthy"
        assert body["total_requests"] == 0

    async def test_cleanup_stops_backends(self, storage, secrets, config):
        backend = make_backend("alpha")
        bind(storage, backend)
        gateway = Gateway(storage, secrets, config)
        client = await self.make_client(gateway)
        await client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        process = gateway.pool_for("project").get(backend.id).transport.process

        await client.close()

        assert process.returncode is not None
