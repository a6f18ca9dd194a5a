"""Core gateway functionality."""

from mcp_toolkit.core.exceptions import ConfigError, SecurityError, ToolkitError, TransportError
from mcp_toolkit.core.models import Backend, BackendKind, Binding, EnvVar

__all__ = [
    "ToolkitError",
    "ConfigError",
    "SecurityError",
    "TransportError",
    "Backend",
    "BackendKind",
    "Binding",
    "EnvVar",
]
