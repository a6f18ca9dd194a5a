"""
Routing of namespaced tool calls to their backends.
"""

import json
from typing import Any, Dict, Optional, Tuple

from mcp_toolkit.core.credentials import CredentialResolver
from mcp_toolkit.core.exceptions import BackendNotFoundError, BackendToolError, ConfigError
from mcp_toolkit.core.models import Backend, Binding, config_fingerprint
from mcp_toolkit.core.proxy.aggregator import partition_by_prefix
from mcp_toolkit.core.proxy.connection import ConnectionPool
from mcp_toolkit.core.proxy.namespace import normalize, split
from mcp_toolkit.core.storage import Storage
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)


def text_content(text: str, is_error: bool = False) -> Dict[str, Any]:
    """Wrap text in a ``tools/call`` result."""
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def render_result(result: Any) -> Dict[str, Any]:
    """Present a backend's raw result as a single text content block."""
    text = result if isinstance(result, str) else json.dumps(result, indent=2, ensure_ascii=False)
    is_error = isinstance(result, dict) and result.get("isError") is True
    return text_content(text, is_error=is_error)


class CallRouter:
    """Demultiplexes ``tools/call`` requests to backend connections."""

    def __init__(self, storage: Storage, resolver: CredentialResolver):
        self.storage = storage
        self.resolver = resolver

    def resolve_target(self, scope: str, tool_name: str) -> Tuple[Backend, Binding, str]:
        """
        Find the backend and backend-local tool name for a namespaced tool.

        Raises:
            InvalidParamsError: If the name has no ``__`` separator.
            BackendNotFoundError: If no enabled backend in the scope owns the prefix.
            NamespaceConflictError: If several backends share the prefix.
            ConfigError: If the owning backend's record cannot be loaded.
        """
        prefix, tool = split(tool_name)
        pairs = self.storage.list_enabled_backends_with_bindings(scope)
        routable, conflicts, _ = partition_by_prefix(pairs)

        for conflict in conflicts:
            if conflict.prefix == prefix:
                raise conflict.to_error()

        for entry_prefix, backend, binding in routable:
            if entry_prefix == prefix:
                return backend, binding, tool

        for name, reason in self.storage.list_unloadable_backends(scope).items():
            if normalize(name) == prefix:
                raise ConfigError(
                    f"Backend '{name}' has an invalid configuration: {reason}",
                    error_code="INVALID_BACKEND_RECORD",
                    details={"scope": scope, "backend": name},
                )

        raise BackendNotFoundError(
            f"Backend '{prefix}' not found or not activated in scope '{scope}'",
            error_code="BACKEND_NOT_FOUND",
            details={"scope": scope, "prefix": prefix},
        )

    async def call(
        self,
        scope: str,
        pool: ConnectionPool,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Invoke a namespaced tool and return the ``tools/call`` result.

        A tool failure reported by the backend becomes an ``isError`` result.
        Every other error propagates to the caller.
        """
        backend, binding, tool = self.resolve_target(scope, tool_name)
        env = self.resolver.resolve(backend, binding)

        logger.info(f"Calling {tool} on {backend.name}", extra={"scope": scope, "backend": backend.name, "tool": tool})
        try:
            async with pool.session(backend, env, config_fingerprint(backend, binding)) as connection:
                result = await connection.call_tool(tool, arguments or {})
        except BackendToolError as e:
            logger.warning(f"Tool {tool_name} failed: {e.message}", extra={"scope": scope, "backend": backend.name})
            return text_content(f"Error: {e.message}", is_error=True)

        return render_result(result)
