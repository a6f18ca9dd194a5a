"""
Gateway orchestration.

Dispatches the client-facing JSON-RPC methods, owns one connection pool per
scope, and turns errors into JSON-RPC error responses. The scope is passed
explicitly with every message; the gateway holds no notion of a current
project.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from mcp_toolkit import __version__
from mcp_toolkit.core.credentials import CredentialResolver
from mcp_toolkit.core.exceptions import (
    ErrorCode,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ToolkitError,
)
from mcp_toolkit.core.proxy.aggregator import CatalogAggregator, CatalogResult
from mcp_toolkit.core.proxy.connection import ConnectionPool
from mcp_toolkit.core.proxy.envelope import (
    INITIALIZED_NOTIFICATION,
    JsonRpcRequest,
    JsonRpcResponse,
    parse_request,
)
from mcp_toolkit.core.proxy.router import CallRouter
from mcp_toolkit.core.secrets import SecretManager
from mcp_toolkit.core.storage import Storage
from mcp_toolkit.utils.config import ToolkitConfig
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any], str], Awaitable[Any]]


@dataclass
class GatewayStats:
    """Request counters."""

    total_requests: int = 0
    failed_requests: int = 0
    tool_calls: int = 0
    start_time: datetime = field(default_factory=datetime.now)


class Gateway:
    """
    Client-facing MCP endpoint multiplexing many backends.

    Handles ``initialize``, ``notifications/initialized``, ``tools/list``,
    ``tools/call`` and ``ping``. Use as an async context manager, or call
    :meth:`aclose`, so every backend process is terminated on exit.
    """

    def __init__(
        self,
        storage: Storage,
        secrets: SecretManager,
        config: Optional[ToolkitConfig] = None,
    ):
        self.config = config or ToolkitConfig()
        self.settings = self.config.gateway
        self.storage = storage
        self.resolver = CredentialResolver(storage, secrets)
        self.aggregator = CatalogAggregator(storage, self.resolver, self.settings)
        self.router = CallRouter(storage, self.resolver)
        self.stats = GatewayStats()

        self._pools: Dict[str, ConnectionPool] = {}
        self._handlers: Dict[str, Handler] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
        }

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def pool_for(self, scope: str) -> ConnectionPool:
        pool = self._pools.get(scope)
        if pool is None:
            pool = self._pools[scope] = ConnectionPool(scope, self.settings)
        return pool

    async def handle(self, message: Union[str, bytes, Dict[str, Any]], scope: str) -> Optional[Dict[str, Any]]:
        """
        Handle one incoming message for ``scope``.

        Returns the response document, or None for notifications.
        """
        try:
            request = parse_request(message)
        except InvalidRequestError as e:
            self.stats.total_requests += 1
            self.stats.failed_requests += 1
            logger.warning(f"Rejected invalid request: {e.message}")
            return JsonRpcResponse.failure(e.details.get("id"), ErrorCode.INVALID_REQUEST, e.message).to_dict()

        response = await self.dispatch(request, scope)
        return response.to_dict() if response is not None else None

    async def dispatch(self, request: JsonRpcRequest, scope: str) -> Optional[JsonRpcResponse]:
        # Never answered, even when the client attaches an id
        if request.method == INITIALIZED_NOTIFICATION:
            logger.debug("Client initialized", extra={"scope": scope})
            return None
        if request.is_notification:
            logger.debug(f"Ignoring notification {request.method}", extra={"scope": scope})
            return None

        self.stats.total_requests += 1
        start_time = time.monotonic()
        params = request.params if isinstance(request.params, dict) else {}

        try:
            handler = self._handlers.get(request.method)
            if handler is None:
                raise MethodNotFoundError(f"Method not found: {request.method}")
            if request.params is not None and not isinstance(request.params, dict):
                raise InvalidParamsError(f"Params for {request.method} must be an object")
            result = await handler(params, scope)
        except ToolkitError as e:
            self.stats.failed_requests += 1
            logger.error(
                f"{request.method} failed: {e}",
                extra={"scope": scope, "method": request.method, "error_type": type(e).__name__},
            )
            return JsonRpcResponse.failure(request.id, e.rpc_code, e.message, data=e.details or None)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.failed_requests += 1
            logger.exception(f"Internal error handling {request.method}", extra={"scope": scope})
            return JsonRpcResponse.failure(request.id, ErrorCode.INTERNAL_ERROR, f"Internal error: {e}")

        logger.debug(f"{request.method} handled", extra={
            "scope": scope,
            "method": request.method,
            "processing_time_ms": int((time.monotonic() - start_time) * 1000),
        })
        return JsonRpcResponse.success(request.id, result)

    async def _handle_initialize(self, params: Dict[str, Any], scope: str) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if isinstance(requested, str) and requested else self.settings.default_protocol_version
        client = params.get("clientInfo") or {}
        logger.info(
            f"Client initialized session for scope {scope}",
            extra={"scope": scope, "protocol_version": version, "client": client.get("name") if isinstance(client, dict) else None},
        )
        return {
            "protocolVersion": version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": self.settings.server_name, "version": __version__},
        }

    async def _handle_ping(self, params: Dict[str, Any], scope: str) -> Dict[str, Any]:
        return {}

    async def _handle_tools_list(self, params: Dict[str, Any], scope: str) -> Dict[str, Any]:
        result = await self.list_tools(scope)
        return {"tools": result.to_wire()}

    async def _handle_tools_call(self, params: Dict[str, Any], scope: str) -> Dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidParamsError("Missing tool name", error_code="MISSING_TOOL_NAME")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidParamsError("Tool arguments must be an object", error_code="INVALID_ARGUMENTS")

        self.stats.tool_calls += 1
        return await self.router.call(scope, self.pool_for(scope), name, arguments)

    async def list_tools(self, scope: str) -> CatalogResult:
        """Aggregate the tool catalog of ``scope``."""
        return await self.aggregator.aggregate(scope, self.pool_for(scope))

    async def close_scope(self, scope: str) -> None:
        """Terminate every backend connection opened for ``scope``."""
        pool = self._pools.pop(scope, None)
        if pool is not None:
            await pool.close()

    async def aclose(self) -> None:
        """Terminate every backend connection in every scope."""
        scopes = list(self._pools)
        for scope in scopes:
            await self.close_scope(scope)
        logger.info("Gateway stopped", extra={
            "scopes": len(scopes),
            "total_requests": self.stats.total_requests,
            "failed_requests": self.stats.failed_requests,
        })
