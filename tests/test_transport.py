"""
Tests for backend transports.
"""

import asyncio
import logging
import os
import sys

import pytest
from aiohttp import web

from mcp_toolkit.core.exceptions import BackendToolError, ProtocolError, TransportError
from mcp_toolkit.core.models import Backend, EnvVar, HttpTransport, ImageTransport
from mcp_toolkit.core.proxy.envelope import JsonRpcRequest
from mcp_toolkit.core.proxy.transport import (
    HttpBackendTransport,
    StdioTransport,
    build_command,
    build_headers,
    create_transport,
)
from mcp_toolkit.utils.config import GatewayConfig

from helpers import FAKE_BACKEND, make_backend


def fake_argv():
    return [sys.executable, "-u", str(FAKE_BACKEND)]


def fake_env(mode="normal"):
    env = dict(os.environ)
    env["FAKE_MODE"] = mode
    return env


class TestBuildCommand:
    """Test argv construction for subprocess backends."""

    def test_image_backend(self):
        backend = Backend(
            id="b1",
            name="github",
            transport=ImageTransport(image="mcp/github:latest", run_args=["--network", "host"]),
        )
        env = [EnvVar(key="GITHUB_TOKEN", value="ghp_1"), EnvVar(key="DEBUG", value="1")]

        argv, process_env = build_command(backend, env)

        assert argv == [
            "docker", "run", "--rm", "-i", "--init",
            "-e", "GITHUB_TOKEN=ghp_1",
            "-e", "DEBUG=1",
            "--network", "host",
            "mcp/github:latest",
        ]
        assert process_env is None

    def test_custom_docker_command(self):
        backend = Backend(id="b1", name="x", transport=ImageTransport(image="img"))
        argv, _ = build_command(backend, [], docker_command="podman")
        assert argv[0] == "podman"

    def test_binary_backend_env_merged_over_parent(self, monkeypatch):
        monkeypatch.setenv("PARENT_ONLY", "kept")
        monkeypatch.setenv("SHARED", "parent")
        backend = make_backend("alpha")

        argv, process_env = build_command(backend, [EnvVar(key="SHARED", value="backend")])

        assert argv == fake_argv()
        assert process_env["PARENT_ONLY"] == "kept"
        assert process_env["SHARED"] == "backend"

    def test_http_backend_rejected(self):
        backend = Backend(id="b1", name="x", transport=HttpTransport(url="http://localhost"))
        with pytest.raises(TransportError):
            build_command(backend, [])


class TestBuildHeaders:
    """Test header mapping for HTTP backends."""

    def test_prefixed_entries_become_headers(self):
        env = [
            EnvVar(key="header_Authorization", value="Bearer abc"),
            EnvVar(key="header_X-Api-Key", value="k"),
            EnvVar(key="REGION", value="eu"),
        ]
        assert build_headers(env) == {"Authorization": "Bearer abc", "X-Api-Key": "k"}

    def test_bare_prefix_ignored(self):
        assert build_headers([EnvVar(key="header_", value="x")]) == {}

    def test_create_transport_for_http(self):
        backend = Backend(id="b1", name="remote", transport=HttpTransport(url="https://example.com/mcp"))
        transport = create_transport(backend, [EnvVar(key="header_Auth", value="t")], GatewayConfig())
        assert isinstance(transport, HttpBackendTransport)
        assert transport.headers == {"Auth": "t"}
        assert not transport.session_based


@pytest.mark.asyncio
class TestStdioTransport:
    """Test the subprocess transport against the fake backend."""

    async def test_request_response(self):
        transport = StdioTransport("fake", fake_argv(), env=fake_env())
        await transport.start()
        try:
            response = await transport.request(JsonRpcRequest(id=1, method="initialize", params={}))
            assert response.id == 1
            assert response.result["serverInfo"]["name"] == "fake"
        finally:
            await transport.close()

    async def test_banner_lines_skipped(self):
        transport = StdioTransport("fake", fake_argv(), env=fake_env("banner"))
        await transport.start()
        try:
            response = await transport.request(JsonRpcRequest(id=1, method="initialize", params={}))
            assert response.result is not None
        finally:
            await transport.close()

    async def test_too_many_noise_lines(self):
        transport = StdioTransport("fake", fake_argv(), env=fake_env("noise"), max_noise_lines=5)
        await transport.start()
        try:
            with pytest.raises(TransportError) as exc_info:
                await asyncio.wait_for(
                    transport.request(JsonRpcRequest(id=1, method="initialize", params={})),
                    timeout=10,
                )
            assert exc_info.value.error_code == "TOO_MUCH_NOISE"
        finally:
            await transport.close()

    async def test_eof_fails_pending_request(self):
        transport = StdioTransport("fake", fake_argv(), env=fake_env("crash_init"))
        await transport.start()
        try:
            with pytest.raises(TransportError) as exc_info:
                await transport.request(JsonRpcRequest(id=1, method="initialize", params={}))
            assert exc_info.value.error_code == "EOF"
        finally:
            await transport.close()

    async def test_spawn_failure(self, tmp_path):
        transport = StdioTransport("missing", [str(tmp_path / "no-such-binary")])
        with pytest.raises(TransportError) as exc_info:
            await transport.start()
        assert exc_info.value.error_code == "SPAWN_FAILED"

    async def test_closed_transport_rejects_requests(self):
        transport = StdioTransport("fake", fake_argv(), env=fake_env())
        await transport.start()
        await transport.close()
        assert transport.process.returncode is not None
        with pytest.raises(TransportError):
            await transport.request(JsonRpcRequest(id=1, method="ping"))

    async def test_stderr_forwarded_to_log(self, caplog):
        caplog.set_level(logging.INFO, logger="mcp_toolkit.backend")
        transport = StdioTransport("fake", fake_argv(), env=fake_env())
        await transport.start()
        try:
            await transport.request(JsonRpcRequest(id=1, method="initialize", params={}))
            for _ in range(50):
                if any("fake backend starting" in r.getMessage() for r in caplog.records):
                    break
                await asyncio.sleep(0.05)
        finally:
            await transport.close()

        records = [r for r in caplog.records if r.name == "mcp_toolkit.backend"]
        assert any("[fake] fake backend starting" in r.getMessage() for r in records)


@pytest.mark.asyncio
class TestHttpBackendTransport:
    """Test the one-POST-per-call transport."""

    async def test_post_sends_arguments_and_headers(self, http_backend_server):
        seen = {}

        async def handler(request):
            seen["body"] = await request.json()
            seen["auth"] = request.headers.get("Authorization")
            return web.json_response({"ok": True})

        async with http_backend_server(handler) as url:
            transport = HttpBackendTransport("remote", url, headers={"Authorization": "Bearer t"})
            await transport.start()
            try:
                assert await transport.post({"query": "x"}) == {"ok": True}
            finally:
                await transport.close()

        assert seen == {"body": {"query": "x"}, "auth": "Bearer t"}

    async def test_non_2xx_is_tool_error(self, http_backend_server):
        async def handler(request):
            return web.Response(status=503, text="down")

        async with http_backend_server(handler) as url:
            transport = HttpBackendTransport("remote", url)
            await transport.start()
            try:
                with pytest.raises(BackendToolError) as exc_info:
                    await transport.post({})
            finally:
                await transport.close()

        assert exc_info.value.status == 503
        assert exc_info.value.message.startswith("HTTP error: 503")

    async def test_non_json_body(self, http_backend_server):
        async def handler(request):
            return web.Response(text="<html>")

        async with http_backend_server(handler) as url:
            transport = HttpBackendTransport("remote", url)
            await transport.start()
            try:
                with pytest.raises(ProtocolError):
                    await transport.post({})
            finally:
                await transport.close()

    async def test_unreachable_backend(self, http_backend_server):
        async def handler(request):
            return web.json_response({})

        async with http_backend_server(handler) as url:
            pass

        transport = HttpBackendTransport("remote", url, timeout_seconds=5)
        await transport.start()
        try:
            with pytest.raises(TransportError):
                await transport.post({})
        finally:
            await transport.close()
