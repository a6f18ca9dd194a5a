"""
Exception classes for mcp-toolkit.

Every error carries the JSON-RPC code the gateway reports when the error
escapes a request handler.
"""

from enum import IntEnum
from typing import Any, Dict, Optional


class ErrorCode(IntEnum):
    """JSON-RPC error codes used by the gateway."""

    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    APPLICATION_ERROR = -32000


class ToolkitError(Exception):
    """Base exception for all mcp-toolkit errors."""

    rpc_code: int = ErrorCode.APPLICATION_ERROR

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize ToolkitError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigError(ToolkitError):
    """Configuration-related errors."""
    pass


class StorageError(ToolkitError):
    """Backend/binding storage errors."""
    pass


class SecurityError(ToolkitError):
    """Master key or secret decryption errors."""
    pass


class TransportError(ToolkitError):
    """Backend transport failures (spawn, I/O, end of stream)."""
    pass


class CallTimeoutError(TransportError):
    """A backend did not answer before the caller's deadline."""
    pass


class ProtocolError(ToolkitError):
    """A backend sent a malformed or unexpected protocol message."""
    pass


class BackendToolError(ToolkitError):
    """A backend reported a tool failure; the connection stays usable."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, details)
        self.status = status


class BackendNotFoundError(ConfigError):
    """No enabled backend in the scope matches a tool prefix."""
    pass


class NamespaceConflictError(ConfigError):
    """Two backends normalize to the same tool prefix."""
    pass


class InvalidRequestError(ToolkitError):
    """Malformed JSON-RPC request."""

    rpc_code = ErrorCode.INVALID_REQUEST


class MethodNotFoundError(ToolkitError):
    """Unknown JSON-RPC method."""

    rpc_code = ErrorCode.METHOD_NOT_FOUND


class InvalidParamsError(ToolkitError):
    """Bad parameters for a known method."""

    rpc_code = ErrorCode.INVALID_PARAMS
