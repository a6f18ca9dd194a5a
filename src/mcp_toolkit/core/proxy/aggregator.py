"""
Catalog aggregation across the enabled backends of a scope.

Each backend's tools are renamed into its namespace and merged into one
flat list. A backend that fails, or whose prefix collides with another
backend's, contributes nothing; the rest of the catalog is unaffected.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from mcp_toolkit.core.credentials import CredentialResolver
from mcp_toolkit.core.exceptions import ConfigError, NamespaceConflictError, ToolkitError
from mcp_toolkit.core.models import Backend, Binding, ToolDescriptor, config_fingerprint
from mcp_toolkit.core.proxy.connection import ConnectionPool
from mcp_toolkit.core.proxy.namespace import SEPARATOR, is_valid_prefix, normalize
from mcp_toolkit.core.storage import Storage
from mcp_toolkit.utils.config import GatewayConfig
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)


class ConflictInfo:
    """Backends whose names normalize to the same tool prefix."""

    def __init__(self, prefix: str, backends: List[str]):
        self.prefix = prefix
        self.backends = backends

    def __repr__(self) -> str:
        return f"ConflictInfo(prefix={self.prefix!r}, backends={self.backends!r})"

    def to_error(self) -> NamespaceConflictError:
        return NamespaceConflictError(
            f"Backends {', '.join(self.backends)} share the tool prefix '{self.prefix}'",
            error_code="NAMESPACE_CONFLICT",
            details={"prefix": self.prefix, "backends": self.backends},
        )


@dataclass
class CatalogResult:
    """Outcome of one aggregation pass."""

    scope: str
    tools: List[ToolDescriptor] = field(default_factory=list)
    conflicts: List[ConflictInfo] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    backend_count: int = 0

    def to_wire(self) -> List[Dict[str, Any]]:
        return [tool.to_wire() for tool in self.tools]


def partition_by_prefix(
    pairs: Sequence[Tuple[Backend, Binding]],
) -> Tuple[List[Tuple[str, Backend, Binding]], List[ConflictInfo], Dict[str, str]]:
    """
    Group backends by normalized prefix.

    Returns the routable ``(prefix, backend, binding)`` entries in input order,
    the prefix conflicts, and the backends excluded for an unusable prefix.
    """
    by_prefix: Dict[str, List[Tuple[Backend, Binding]]] = {}
    invalid: Dict[str, str] = {}
    seen_ids = set()

    for backend, binding in pairs:
        if backend.id in seen_ids:
            continue
        seen_ids.add(backend.id)

        prefix = normalize(backend.name)
        if not is_valid_prefix(prefix):
            invalid[backend.name] = (
                f"Backend name '{backend.name}' cannot be used as a tool prefix "
                f"(normalizes to '{prefix}', which is empty, contains '{SEPARATOR}' or ends in '_')"
            )
            continue
        by_prefix.setdefault(prefix, []).append((backend, binding))

    routable: List[Tuple[str, Backend, Binding]] = []
    conflicts: List[ConflictInfo] = []
    for prefix, members in by_prefix.items():
        if len(members) > 1:
            conflicts.append(ConflictInfo(prefix, [backend.name for backend, _ in members]))
            continue
        backend, binding = members[0]
        routable.append((prefix, backend, binding))

    # Restore storage order
    order = {backend.id: index for index, (backend, _) in enumerate(pairs)}
    routable.sort(key=lambda entry: order[entry[1].id])
    return routable, conflicts, invalid


class CatalogAggregator:
    """Builds the merged tool catalog for a scope."""

    def __init__(
        self,
        storage: Storage,
        resolver: CredentialResolver,
        settings: Optional[GatewayConfig] = None,
    ):
        self.storage = storage
        self.resolver = resolver
        self.settings = settings or GatewayConfig()

    async def aggregate(self, scope: str, pool: ConnectionPool) -> CatalogResult:
        """
        Collect and namespace the tools of every enabled backend in ``scope``.

        Per-backend failures, including backend records that cannot be loaded,
        are logged and recorded in the result; they never fail the aggregation
        as a whole. Storage errors do propagate.
        """
        start_time = time.monotonic()
        pairs = self.storage.list_enabled_backends_with_bindings(scope)
        unloadable = self.storage.list_unloadable_backends(scope)
        routable, conflicts, invalid = partition_by_prefix(pairs)

        result = CatalogResult(
            scope=scope,
            conflicts=conflicts,
            failures={**unloadable, **invalid},
            backend_count=len(pairs) + len(unloadable),
        )

        for name, reason in invalid.items():
            logger.error(reason, extra={"scope": scope, "backend": name})
        for conflict in conflicts:
            result.failures.update({name: str(conflict.to_error()) for name in conflict.backends})
            logger.error(
                f"Excluding backends with conflicting prefix '{conflict.prefix}': {', '.join(conflict.backends)}",
                extra={"scope": scope, "prefix": conflict.prefix, "backends": conflict.backends},
            )

        if self.settings.aggregate_parallel:
            catalogs = await self._list_parallel(pool, routable)
        else:
            catalogs = await self._list_sequential(pool, routable)

        for (prefix, backend, _), outcome in zip(routable, catalogs):
            if isinstance(outcome, BaseException):
                result.failures[backend.name] = str(outcome)
                continue
            result.tools.extend(self._namespace_tools(prefix, backend, outcome))

        logger.info("Tool aggregation completed", extra={
            "scope": scope,
            "backend_count": result.backend_count,
            "failed_backends": len(result.failures),
            "total_tools": len(result.tools),
            "aggregation_time_ms": int((time.monotonic() - start_time) * 1000),
        })
        return result

    async def _list_parallel(
        self,
        pool: ConnectionPool,
        routable: List[Tuple[str, Backend, Binding]],
    ) -> List[Any]:
        semaphore = asyncio.Semaphore(self.settings.max_concurrent)

        async def list_with_semaphore(backend: Backend, binding: Binding) -> List[Dict[str, Any]]:
            async with semaphore:
                return await self._list_backend_tools(pool, backend, binding)

        tasks = [list_with_semaphore(backend, binding) for _, backend, binding in routable]
        return await asyncio.gather(*tasks, return_exceptions=True)

    async def _list_sequential(
        self,
        pool: ConnectionPool,
        routable: List[Tuple[str, Backend, Binding]],
    ) -> List[Any]:
        outcomes: List[Any] = []
        for _, backend, binding in routable:
            try:
                outcomes.append(await self._list_backend_tools(pool, backend, binding))
            except Exception as e:
                outcomes.append(e)
        return outcomes

    async def _list_backend_tools(
        self,
        pool: ConnectionPool,
        backend: Backend,
        binding: Binding,
    ) -> List[Dict[str, Any]]:
        try:
            env = self.resolver.resolve(backend, binding)
            async with pool.session(backend, env, config_fingerprint(backend, binding)) as connection:
                tools = await connection.list_tools()
        except ToolkitError as e:
            logger.error(f"Failed to list tools for {backend.name}: {e}", extra={"backend": backend.name})
            raise
        except Exception as e:
            logger.exception(f"Unexpected error listing tools for {backend.name}", extra={"backend": backend.name})
            raise ConfigError(f"Unexpected error listing tools for {backend.name}: {e}") from e

        logger.debug(f"Listed {len(tools)} tools from {backend.name}", extra={"backend": backend.name})
        return tools

    @staticmethod
    def _namespace_tools(prefix: str, backend: Backend, raw_tools: List[Any]) -> List[ToolDescriptor]:
        tools: List[ToolDescriptor] = []
        seen = set()
        for raw in raw_tools:
            name = raw.get("name") if isinstance(raw, dict) else None
            if not isinstance(name, str) or not name:
                logger.warning(f"Skipping unnamed tool from {backend.name}", extra={"backend": backend.name})
                continue
            if name in seen:
                logger.warning(f"Skipping duplicate tool {name} from {backend.name}", extra={"backend": backend.name})
                continue
            try:
                descriptor = ToolDescriptor.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed tool {name} from {backend.name}: {e}")
                continue
            seen.add(name)
            tools.append(descriptor.model_copy(update={"name": f"{prefix}{SEPARATOR}{name}"}))
        return tools
