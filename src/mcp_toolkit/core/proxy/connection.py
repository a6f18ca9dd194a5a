"""
Backend connections and the per-scope connection pool.

A :class:`BackendConnection` owns one transport. Requests are funnelled
through a command queue to a single owner task, so at most one request is
in flight per backend while calls to different backends run in parallel.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence

from mcp_toolkit import __version__
from mcp_toolkit.core.exceptions import (
    BackendToolError,
    CallTimeoutError,
    ProtocolError,
    TransportError,
)
from mcp_toolkit.core.models import Backend, BackendKind, EnvVar
from mcp_toolkit.core.proxy.envelope import INITIALIZED_NOTIFICATION, JsonRpcRequest
from mcp_toolkit.core.proxy.transport import BaseTransport, create_transport
from mcp_toolkit.utils.config import GatewayConfig
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)

HTTP_TOOL_NAME = "execute"


class ConnectionState(str, Enum):
    """Lifecycle of a backend connection."""

    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class _Command:
    method: str
    params: Optional[Dict[str, Any]]
    future: asyncio.Future
    notify: bool = False


def http_tool_descriptor(backend: Backend) -> Dict[str, Any]:
    """The single tool an HTTP backend advertises."""
    return {
        "name": HTTP_TOOL_NAME,
        "description": f"Execute tool from MCP: {backend.name}",
        "inputSchema": {
            "type": "object",
            "description": "Arguments to pass to the MCP tool",
        },
    }


class BackendConnection:
    """A live, initialized session with one backend."""

    def __init__(
        self,
        backend: Backend,
        transport: BaseTransport,
        settings: Optional[GatewayConfig] = None,
        fingerprint: Optional[str] = None,
    ):
        self.backend = backend
        self.transport = transport
        self.settings = settings or GatewayConfig()
        self.fingerprint = fingerprint
        self.state = ConnectionState.CREATED
        self.server_info: Optional[Dict[str, Any]] = None

        self._queue: "asyncio.Queue[Optional[_Command]]" = asyncio.Queue()
        self._owner: Optional[asyncio.Task] = None
        self._next_id = 0
        self._failure: Optional[Exception] = None

    @property
    def name(self) -> str:
        return self.backend.name

    @property
    def usable(self) -> bool:
        return self.state == ConnectionState.READY

    async def __aenter__(self) -> "BackendConnection":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """
        Start the transport and perform the handshake.

        Sends ``initialize``, waits for its response, then sends the
        ``notifications/initialized`` notification. Only after that is the
        connection READY.

        Raises:
            TransportError: If the backend cannot be started or breaks.
            ProtocolError: If the backend rejects or garbles the handshake.
        """
        if self.state == ConnectionState.READY:
            return
        if self.state != ConnectionState.CREATED:
            raise TransportError(
                f"Cannot initialize connection to '{self.name}' in state {self.state.value}",
                error_code="INVALID_STATE",
            )

        self.state = ConnectionState.INITIALIZING
        try:
            await self.transport.start()
            if self.transport.session_based:
                self._owner = asyncio.create_task(self._run())
                result = await self._submit("initialize", {
                    "protocolVersion": self.settings.client_protocol_version,
                    "capabilities": {},
                    "clientInfo": {
                        "name": self.settings.client_name,
                        "version": __version__,
                    },
                })
                if isinstance(result, dict):
                    self.server_info = result.get("serverInfo")
                await self._submit(INITIALIZED_NOTIFICATION, None, notify=True)
        except BackendToolError as e:
            error = ProtocolError(f"Backend '{self.name}' rejected initialize: {e.message}")
            await self._abandon(error)
            raise error from e
        except (TransportError, ProtocolError) as e:
            await self._abandon(e)
            raise
        except asyncio.CancelledError:
            await self.shutdown()
            raise

        self.state = ConnectionState.READY
        logger.info(
            f"Connection to {self.name} ready",
            extra={"backend": self.name, "server_info": self.server_info},
        )

    async def list_tools(self) -> List[Dict[str, Any]]:
        """
        Fetch the backend's tool catalog.

        Raises:
            ProtocolError: If the result carries no ``tools`` array.
        """
        self._require_ready()
        if not self.transport.session_based:
            return [http_tool_descriptor(self.backend)]

        result = await self._submit("tools/list", {})
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            error = ProtocolError(f"Backend '{self.name}' returned tools/list without a tools array")
            await self._abandon(error)
            raise error
        return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        """
        Invoke a tool by its backend-local name and return the raw result.

        Raises:
            BackendToolError: If the backend reports an error for this call.
                The connection stays READY.
        """
        self._require_ready()
        if not self.transport.session_based:
            return await self._with_deadline(self.transport.post(arguments))

        return await self._submit("tools/call", {"name": name, "arguments": arguments})

    async def shutdown(self) -> None:
        """Terminate the transport and move to CLOSED. Idempotent."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        await self._stop()
        logger.debug(f"Connection to {self.name} closed", extra={"backend": self.name})

    def _require_ready(self) -> None:
        if self.state == ConnectionState.FAILED and self._failure is not None:
            raise self._failure
        if self.state != ConnectionState.READY:
            raise TransportError(
                f"Connection to '{self.name}' is not ready ({self.state.value})",
                error_code="NOT_READY",
            )

    async def _submit(self, method: str, params: Optional[Dict[str, Any]], notify: bool = False) -> Any:
        if self._failure is not None:
            raise self._failure
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command(method, params, future, notify))
        return await self._with_deadline(future)

    async def _with_deadline(self, awaitable: Awaitable) -> Any:
        timeout = self.settings.call_timeout_seconds
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            error = CallTimeoutError(
                f"Backend '{self.name}' did not answer within {timeout}s",
                error_code="TIMEOUT",
            )
            await self._abandon(error)
            raise error from e

    async def _abandon(self, error: Exception) -> None:
        """Mark the connection FAILED and kill its transport."""
        self._set_failed(error)
        await self._stop()

    async def _stop(self) -> None:
        try:
            await self.transport.close()
        finally:
            if self._owner is not None and not self._owner.done():
                self._owner.cancel()
                try:
                    await self._owner
                except asyncio.CancelledError:
                    pass
            self._fail_queued(TransportError(f"Connection to '{self.name}' was shut down", error_code="CLOSED"))

    def _set_failed(self, error: Exception) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.FAILED
        if self._failure is None:
            self._failure = error
            logger.warning(f"Connection to {self.name} failed: {error}", extra={"backend": self.name})

    def _fail_queued(self, error: Exception) -> None:
        while not self._queue.empty():
            command = self._queue.get_nowait()
            if command is not None and not command.future.done():
                command.future.set_exception(error)

    async def _run(self) -> None:
        """Owner task: the only code that touches the transport."""
        while True:
            command = await self._queue.get()
            if command is None:
                return
            if command.future.done():
                continue

            try:
                if command.notify:
                    await self.transport.notify(JsonRpcRequest.notification(command.method, command.params))
                    result = None
                else:
                    self._next_id += 1
                    request = JsonRpcRequest(id=self._next_id, method=command.method, params=command.params)
                    response = await self.transport.request(request)
                    if response.error is not None:
                        if not command.future.done():
                            command.future.set_exception(BackendToolError(
                                response.error.message,
                                details={"code": response.error.code, "data": response.error.data},
                            ))
                        continue
                    result = response.result
            except Exception as e:
                self._set_failed(e)
                if not command.future.done():
                    command.future.set_exception(e)
                self._fail_queued(e)
                return

            if not command.future.done():
                command.future.set_result(result)


class ConnectionPool:
    """Lazily created connections for one scope."""

    def __init__(self, scope: str, settings: Optional[GatewayConfig] = None):
        self.scope = scope
        self.settings = settings or GatewayConfig()
        self._connections: Dict[str, BackendConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, backend_id: str) -> Optional[BackendConnection]:
        return self._connections.get(backend_id)

    def _lock_for(self, backend_id: str) -> asyncio.Lock:
        lock = self._locks.get(backend_id)
        if lock is None:
            lock = self._locks[backend_id] = asyncio.Lock()
        return lock

    def connect(self, backend: Backend, env: Sequence[EnvVar], fingerprint: Optional[str] = None) -> BackendConnection:
        """Build a new, not yet initialized connection."""
        transport = create_transport(backend, env, self.settings)
        return BackendConnection(backend, transport, self.settings, fingerprint)

    async def acquire(
        self,
        backend: Backend,
        env: Sequence[EnvVar],
        fingerprint: Optional[str] = None,
    ) -> BackendConnection:
        """
        Return a READY pooled connection for a session-based backend.

        A connection that failed, was closed, or was started from an older
        configuration is shut down and replaced.
        """
        if self._closed:
            raise TransportError(f"Scope '{self.scope}' is closed", error_code="SCOPE_CLOSED")

        async with self._lock_for(backend.id):
            existing = self._connections.get(backend.id)
            if existing is not None:
                if existing.usable and existing.fingerprint == fingerprint:
                    return existing
                reason = "changed configuration" if existing.usable else existing.state.value
                logger.info(
                    f"Replacing connection to {backend.name} ({reason})",
                    extra={"backend": backend.name, "scope": self.scope},
                )
                del self._connections[backend.id]
                await existing.shutdown()

            connection = self.connect(backend, env, fingerprint)
            await connection.initialize()
            self._connections[backend.id] = connection
            return connection

    async def discard(self, backend_id: str, connection: Optional[BackendConnection] = None) -> None:
        """
        Shut down and forget a backend's connection.

        When ``connection`` is given, the pooled entry is only removed if it is
        still that connection.
        """
        async with self._lock_for(backend_id):
            current = self._connections.get(backend_id)
            if current is not None and (connection is None or current is connection):
                del self._connections[backend_id]
                await current.shutdown()
        if connection is not None:
            await connection.shutdown()

    @asynccontextmanager
    async def session(
        self,
        backend: Backend,
        env: Sequence[EnvVar],
        fingerprint: Optional[str] = None,
    ) -> AsyncIterator[BackendConnection]:
        """
        Yield a READY connection for one operation.

        HTTP backends get a call-scoped connection that is released on exit.
        Subprocess backends use the pool; a connection that fails during the
        operation is discarded so the next use starts a fresh process.
        """
        if backend.kind == BackendKind.HTTP:
            connection = self.connect(backend, env, fingerprint)
            try:
                await connection.initialize()
                yield connection
            finally:
                await connection.shutdown()
            return

        connection = await self.acquire(backend, env, fingerprint)
        try:
            yield connection
        finally:
            if not connection.usable:
                await self.discard(backend.id, connection)

    async def close(self) -> None:
        """Shut down every connection in the scope."""
        self._closed = True
        connections = list(self._connections.values())
        self._connections.clear()
        results = await asyncio.gather(*(c.shutdown() for c in connections), return_exceptions=True)
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing connection to {connection.name}: {result}")
        logger.debug(f"Closed {len(connections)} connection(s) in scope {self.scope}")
