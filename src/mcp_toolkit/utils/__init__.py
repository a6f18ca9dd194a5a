"""Utility modules for mcp-toolkit."""

from mcp_toolkit.utils.logging import get_logger, setup_logging
from mcp_toolkit.utils.config import ToolkitConfig, get_config, load_config

__all__ = [
    "get_logger",
    "setup_logging",
    "ToolkitConfig",
    "get_config",
    "load_config",
]
