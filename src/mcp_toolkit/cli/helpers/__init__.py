"""
CLI helper functions and utilities.
"""

from .errors import handle_errors
from .records import import_records, load_records_file

__all__ = [
    'handle_errors',
    'import_records',
    'load_records_file',
]
