"""
Transport adapters for backends.

Subprocess backends speak line-delimited JSON-RPC over stdin/stdout while
their stderr is forwarded to the log. HTTP backends take one JSON POST per
tool call.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from mcp_toolkit.core.exceptions import BackendToolError, ProtocolError, TransportError
from mcp_toolkit.core.models import Backend, BinaryTransport, EnvVar, HttpTransport, ImageTransport
from mcp_toolkit.core.proxy.envelope import (
    JsonRpcRequest,
    JsonRpcResponse,
    encode,
    is_response,
    parse_response,
)
from mcp_toolkit.utils.config import GatewayConfig
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)
backend_logger = get_logger("mcp_toolkit.backend")


class BaseTransport(ABC):
    """A live channel to one backend."""

    #: Whether the transport keeps a JSON-RPC session (handshake, tools/list).
    session_based: bool = True

    def __init__(self, name: str):
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def start(self) -> None:
        """Open the channel."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""


class StdioTransport(BaseTransport):
    """Subprocess speaking line-delimited JSON-RPC."""

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        max_noise_lines: int = 10,
        stream_limit: int = 16 * 1024 * 1024,
    ):
        super().__init__(name)
        self.argv = list(argv)
        self.env = env
        self.max_noise_lines = max_noise_lines
        self.stream_limit = stream_limit

        self.process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[Any, asyncio.Future] = {}
        self._error: Optional[Exception] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Spawn the backend process and start the stdout and stderr readers.

        Raises:
            TransportError: If the process cannot be spawned.
        """
        logger.debug(f"Spawning backend {self.name}: {self.argv[0]}", extra={"backend": self.name})
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                limit=self.stream_limit,
            )
        except OSError as e:
            raise TransportError(
                f"Failed to start backend '{self.name}': {e}",
                error_code="SPAWN_FAILED",
                details={"backend": self.name, "command": self.argv[0]},
            ) from e

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info(f"Started backend {self.name} (pid {self.process.pid})", extra={"backend": self.name})

    async def request(self, message: JsonRpcRequest) -> JsonRpcResponse:
        """
        Send a request and wait for the response with the same id.

        Raises:
            TransportError: If the channel is closed or breaks.
            ProtocolError: If the backend answers with garbage.
        """
        if message.is_notification:
            raise ValueError("request() needs a message with an id")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[message.id] = future
        try:
            await self._write(message)
            return await future
        finally:
            self._pending.pop(message.id, None)

    async def notify(self, message: JsonRpcRequest) -> None:
        await self._write(message)

    async def _write(self, message: JsonRpcRequest) -> None:
        self._raise_if_unusable()
        assert self.process is not None and self.process.stdin is not None
        line = encode(message) + "\n"
        try:
            self.process.stdin.write(line.encode("utf-8"))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            error = TransportError(f"Backend '{self.name}' closed its stdin: {e}", error_code="WRITE_FAILED")
            self._fail(error)
            raise error from e

    def _raise_if_unusable(self) -> None:
        if self._error is not None:
            raise self._error
        if self._closed or self.process is None:
            raise TransportError(f"Transport for '{self.name}' is not open", error_code="NOT_OPEN")

    def _fail(self, error: Exception, log: bool = True) -> None:
        """Record a fatal error and fail every pending request with it."""
        if self._error is None:
            self._error = error
            if log and not self._closed:
                logger.error(f"Backend {self.name} transport failed: {error}", extra={"backend": self.name})
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_stdout(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        stdout = self.process.stdout
        noise = 0

        while True:
            try:
                raw = await stdout.readline()
            except ValueError as e:
                # Line exceeded the stream limit
                self._fail(ProtocolError(f"Backend '{self.name}' sent an oversized line: {e}"))
                return
            except (ConnectionResetError, BrokenPipeError) as e:
                self._fail(TransportError(f"Lost stdout of backend '{self.name}': {e}"))
                return

            if not raw:
                self._fail(TransportError(
                    f"Backend '{self.name}' closed its output (EOF)",
                    error_code="EOF",
                ))
                return

            line = raw.decode("utf-8", errors="replace").strip()
            if not line.startswith("{"):
                noise += 1
                if line:
                    logger.debug(f"Skipping non-JSON output from {self.name}: {line[:200]}")
                if noise >= self.max_noise_lines:
                    self._fail(TransportError(
                        f"Backend '{self.name}' produced {noise} consecutive non-JSON lines",
                        error_code="TOO_MUCH_NOISE",
                    ))
                    return
                continue
            noise = 0

            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                self._fail(ProtocolError(f"Invalid JSON from backend '{self.name}': {e}"))
                return

            if not isinstance(payload, dict) or not is_response(payload):
                logger.debug(
                    f"Ignoring backend-initiated message from {self.name}",
                    extra={"backend": self.name, "method": payload.get("method") if isinstance(payload, dict) else None},
                )
                continue

            self._dispatch(payload)

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        future = self._pending.get(payload.get("id"))
        if future is None:
            logger.warning(
                f"Dropping response with unknown id {payload.get('id')!r} from {self.name}",
                extra={"backend": self.name},
            )
            return
        if future.done():
            return
        try:
            future.set_result(parse_response(payload))
        except ProtocolError as e:
            future.set_exception(e)

    async def _drain_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        try:
            while True:
                raw = await self.process.stderr.readline()
                if not raw:
                    return
                text = raw.decode("utf-8", errors="replace").rstrip()
                if text:
                    backend_logger.info(f"[{self.name}] {text}", extra={"backend": self.name})
        except (ValueError, ConnectionResetError) as e:
            logger.debug(f"Stopped reading stderr of {self.name}: {e}")

    async def close(self) -> None:
        """Terminate the process and stop the reader tasks."""
        if self._closed:
            return
        self._closed = True

        if self.process is not None:
            if self.process.stdin is not None and not self.process.stdin.is_closing():
                self.process.stdin.close()
            if self.process.returncode is None:
                try:
                    self.process.terminate()
                    await asyncio.wait_for(self.process.wait(), timeout=5.0)
                except ProcessLookupError:
                    pass
                except asyncio.TimeoutError:
                    logger.warning(f"Backend {self.name} did not exit, killing it")
                    try:
                        self.process.kill()
                    except ProcessLookupError:
                        pass
                    await self.process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._fail(TransportError(f"Transport for '{self.name}' was closed", error_code="CLOSED"), log=False)
        logger.info(f"Stopped backend {self.name}", extra={"backend": self.name})


class HttpBackendTransport(BaseTransport):
    """Remote backend reached with one JSON POST per call."""

    session_based = False

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 60.0,
    ):
        super().__init__(name)
        self.url = url
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        self.session = aiohttp.ClientSession(timeout=timeout)

    async def post(self, arguments: Dict[str, Any]) -> Any:
        """
        POST the call arguments and return the decoded JSON body.

        Raises:
            BackendToolError: On a non-2xx status.
            TransportError: On network failure or timeout.
            ProtocolError: If the body is not JSON.
        """
        if self.session is None or self._closed:
            raise TransportError(f"Transport for '{self.name}' is not open", error_code="NOT_OPEN")

        try:
            async with self.session.post(self.url, json=arguments, headers=self.headers) as response:
                body = await response.text()
                if not 200 <= response.status < 300:
                    raise BackendToolError(
                        f"HTTP error: {response.status} {response.reason or ''}".rstrip(),
                        status=response.status,
                        details={"backend": self.name, "body": body[:1000]},
                    )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"HTTP backend '{self.name}' timed out after {self.timeout_seconds}s",
                error_code="TIMEOUT",
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"HTTP client error for '{self.name}': {e}") from e

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"HTTP backend '{self.name}' returned non-JSON body: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.session is not None:
            await self.session.close()


def env_to_dict(env: Sequence[EnvVar]) -> Dict[str, str]:
    return {var.key: var.value for var in env}


def build_command(
    backend: Backend,
    env: Sequence[EnvVar],
    docker_command: str = "docker",
) -> Tuple[List[str], Optional[Dict[str, str]]]:
    """
    Build the argv and process environment for a subprocess backend.

    Container images receive their variables as ``-e`` flags and inherit the
    gateway environment for the docker client itself. Binaries get the
    variables merged over the gateway environment.
    """
    kind_config = backend.transport
    if isinstance(kind_config, ImageTransport):
        argv = [docker_command, "run", "--rm", "-i", "--init"]
        for var in env:
            argv.extend(["-e", f"{var.key}={var.value}"])
        argv.extend(kind_config.run_args)
        argv.append(kind_config.image)
        return argv, None
    if isinstance(kind_config, BinaryTransport):
        process_env = dict(os.environ)
        process_env.update(env_to_dict(env))
        return [kind_config.path, *kind_config.args], process_env
    raise TransportError(f"Backend '{backend.name}' is not a subprocess backend")


def build_headers(env: Sequence[EnvVar], prefix: str = "header_") -> Dict[str, str]:
    """Map ``header_*`` env entries to HTTP headers, prefix stripped."""
    headers: Dict[str, str] = {}
    for var in env:
        if var.key.lower().startswith(prefix.lower()):
            name = var.key[len(prefix):]
            if name:
                headers[name] = var.value
    return headers


def create_transport(backend: Backend, env: Sequence[EnvVar], settings: GatewayConfig) -> BaseTransport:
    """Pick the transport for a backend's kind. The transport is not started."""
    kind_config = backend.transport
    if isinstance(kind_config, HttpTransport):
        return HttpBackendTransport(
            backend.name,
            kind_config.url,
            headers=build_headers(env, settings.header_prefix),
            timeout_seconds=settings.http_timeout_seconds,
        )

    argv, process_env = build_command(backend, env, settings.docker_command)
    return StdioTransport(
        backend.name,
        argv,
        env=process_env,
        max_noise_lines=settings.max_noise_lines,
        stream_limit=settings.stream_limit_bytes,
    )
