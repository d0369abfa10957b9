"""
docmapper DB — document storage engine and backends.
"""

from .engine import (
    DocumentDatabase,
    configure_database,
    get_database,
    reset_database,
    set_database,
)
from .backends.base import Change, ChangeFeed, DocumentAdapter, WriteResult

__all__ = [
    "DocumentDatabase",
    "configure_database",
    "get_database",
    "reset_database",
    "set_database",
    "Change",
    "ChangeFeed",
    "DocumentAdapter",
    "WriteResult",
]
