"""
docmapper DB Backends Package — pluggable document storage adapters.

Provides a common adapter interface and implementations for:
- In-process memory storage (default)
- SQLite (via aiosqlite)
"""

from .base import DocumentAdapter, WriteResult, Change, ChangeFeed, ChangeHub
from .memory import MemoryAdapter
from .sqlite import SQLiteAdapter

__all__ = [
    "DocumentAdapter",
    "WriteResult",
    "Change",
    "ChangeFeed",
    "ChangeHub",
    "MemoryAdapter",
    "SQLiteAdapter",
]
