"""
mcp-toolkit - a gateway that multiplexes many MCP tool servers.

Exposes a single MCP endpoint whose tool catalog is the namespaced union of
the backends activated for a scope, and routes each tool call to its owner.
"""

__version__ = "0.1.0"
__description__ = "MCP gateway multiplexing tool-provider backends"

# Public API
from mcp_toolkit.core.exceptions import ToolkitError
from mcp_toolkit.core.models import Backend, Binding, EnvVar, ToolDescriptor

__all__ = [
    "__version__",
    "__description__",
    "ToolkitError",
    "Backend",
    "Binding",
    "EnvVar",
    "ToolDescriptor",
]
