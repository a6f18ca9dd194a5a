"""
CLI command modules for mcp-toolkit.
"""

from .records import record_commands
from .serve import serve_commands

__all__ = [
    'record_commands',
    'serve_commands',
]
