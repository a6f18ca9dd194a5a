"""
MCP gateway: one client-facing endpoint routing tool calls to many backends.

Aggregates the tool catalogs of the backends bound to a scope into a single
namespace and forwards each call to the backend that owns the tool.
"""

from .aggregator import CatalogAggregator, CatalogResult
from .connection import BackendConnection, ConnectionPool, ConnectionState
from .gateway import Gateway
from .router import CallRouter
from .server import HttpGatewayServer, StdioServer

__all__ = [
    'BackendConnection',
    'CallRouter',
    'CatalogAggregator',
    'CatalogResult',
    'ConnectionPool',
    'ConnectionState',
    'Gateway',
    'HttpGatewayServer',
    'StdioServer',
]
