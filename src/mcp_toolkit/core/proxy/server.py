"""
Client-facing servers for the gateway.

:class:`StdioServer` speaks line-delimited JSON-RPC on stdin/stdout, which is
how MCP clients launch the gateway. :class:`HttpGatewayServer` exposes the
same gateway over HTTP POST for clients that prefer a network endpoint.
"""

import asyncio
import json
import sys
import time
from typing import IO, Any, Dict, Optional, Set

from aiohttp import web
from aiohttp.web import Application, Request, Response

from mcp_toolkit.core.exceptions import ErrorCode
from mcp_toolkit.core.proxy.gateway import Gateway
from mcp_toolkit.utils.config import HttpServerConfig
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)


class StdioServer:
    """
    Serve one scope over stdin/stdout.

    Each request runs in its own task so a slow backend does not hold up
    calls to other backends; only writing response lines is serialized.
    """

    def __init__(
        self,
        gateway: Gateway,
        scope: str,
        reader: Optional[asyncio.StreamReader] = None,
        output: Optional[IO[str]] = None,
    ):
        self.gateway = gateway
        self.scope = scope
        self.reader = reader
        self.output = output if output is not None else sys.stdout
        self._write_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.gateway.settings.stream_limit_bytes)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        return reader

    async def run(self) -> None:
        """Serve until stdin reaches EOF, then close the scope."""
        reader = self.reader or await self._open_stdin()
        logger.info(f"Serving scope {self.scope} on stdio", extra={"scope": self.scope})

        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                task = asyncio.create_task(self._handle_line(text))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            for task in list(self._tasks):
                task.cancel()
            await self.gateway.close_scope(self.scope)
            logger.info(f"Stdio session for scope {self.scope} ended", extra={"scope": self.scope})

    async def _handle_line(self, text: str) -> None:
        try:
            response = await self.gateway.handle(text, self.scope)
        except Exception:
            logger.exception("Unhandled error while processing a request")
            return
        if response is not None:
            await self._write(response)

    async def _write(self, response: Dict[str, Any]) -> None:
        data = json.dumps(response, ensure_ascii=False) + "\n"
        async with self._write_lock:
            self.output.write(data)
            self.output.flush()


class HttpGatewayServer:
    """
    HTTP endpoint for the gateway.

    ``POST /mcp`` serves the configured default scope and ``POST /mcp/{scope}``
    names the scope explicitly. Notifications are acknowledged with 202.
    """

    def __init__(self, gateway: Gateway, config: Optional[HttpServerConfig] = None):
        self.gateway = gateway
        self.config = config or HttpServerConfig()
        self.app: Optional[Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._started_at = time.time()

    async def start(self) -> None:
        """Start the HTTP server."""
        try:
            self.app = self.create_app()
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, self.config.host, self.config.port)
            await self.site.start()
            logger.info(f"Gateway HTTP server started on {self.config.host}:{self.config.port}")
        except OSError as e:
            logger.error(f"Failed to start gateway HTTP server: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the HTTP server and every backend it started."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        else:
            await self.gateway.aclose()
        logger.info("Gateway HTTP server stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()

    def create_app(self) -> Application:
        """Create the aiohttp application with routes."""
        app = Application()
        app.middlewares.append(self._request_logging_middleware)
        app.middlewares.append(self._error_handling_middleware)

        app.router.add_post("/mcp", self._handle_mcp_request)
        app.router.add_post("/mcp/{scope}", self._handle_mcp_request)
        app.router.add_get("/health", self._handle_health)

        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_cleanup(self, app: Application) -> None:
        await self.gateway.aclose()

    async def _handle_mcp_request(self, request: Request) -> Response:
        scope = request.match_info.get("scope") or self.config.default_scope
        body = await request.read()

        response = await self.gateway.handle(body, scope)
        if response is None:
            return web.Response(status=202)

        error = response.get("error")
        status = 400 if error and error.get("code") == ErrorCode.INVALID_REQUEST else 200
        return web.json_response(response, status=status)

    async def _handle_health(self, request: Request) -> Response:
        stats = self.gateway.stats
        return web.json_response({
            "status": "healthy",
            "timestamp": time.time(),
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "total_requests": stats.total_requests,
            "failed_requests": stats.failed_requests,
            "tool_calls": stats.tool_calls,
        })

    @web.middleware
    async def _request_logging_middleware(self, request: Request, handler) -> Response:
        start_time = time.time()
        try:
            response = await handler(request)
        except Exception as e:
            logger.error(f"{request.method} {request.path} - Error: {e}", extra={
                "processing_time_ms": round((time.time() - start_time) * 1000, 2),
                "client_ip": request.remote,
            })
            raise

        logger.info(f"{request.method} {request.path}", extra={
            "status": response.status,
            "processing_time_ms": round((time.time() - start_time) * 1000, 2),
            "client_ip": request.remote,
        })
        return response

    @web.middleware
    async def _error_handling_middleware(self, request: Request, handler) -> Response:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.exception(f"Unhandled error in {request.method} {request.path}: {e}")
            return web.json_response({
                "jsonrpc": "2.0",
                "id": None,
                "error": {"code": int(ErrorCode.INTERNAL_ERROR), "message": "Internal server error"},
            }, status=500)
