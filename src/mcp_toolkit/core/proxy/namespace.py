"""
Tool namespacing.

Tools are exposed to the client as ``<normalized backend name>__<tool>``.
Normalization is case-preserving: spaces and hyphens become underscores.
"""

from typing import Tuple

from mcp_toolkit.core.exceptions import InvalidParamsError

SEPARATOR = "__"


def normalize(name: str) -> str:
    """Turn a backend display name into a tool prefix."""
    return name.replace(" ", "_").replace("-", "_")


def is_valid_prefix(prefix: str) -> bool:
    """
    A prefix must be non-empty and must not contain the separator.

    It must not end in an underscore either: ``A_`` joined with ``x`` reads
    back as ``A`` and ``_x``.
    """
    return bool(prefix) and SEPARATOR not in prefix and not prefix.endswith("_")


def namespaced(backend_name: str, tool_name: str) -> str:
    return f"{normalize(backend_name)}{SEPARATOR}{tool_name}"


def split(namespaced_name: str) -> Tuple[str, str]:
    """
    Split a namespaced tool name on the first separator.

    Raises:
        InvalidParamsError: If the separator is missing or either side is empty.
    """
    prefix, separator, tool = namespaced_name.partition(SEPARATOR)
    if not separator or not prefix or not tool:
        raise InvalidParamsError(
            f"Invalid tool name format: '{namespaced_name}' (expected <backend>{SEPARATOR}<tool>)",
            error_code="INVALID_TOOL_NAME",
        )
    return prefix, tool
