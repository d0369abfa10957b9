"""
docmapper DB Backend — Base Adapter Interface.

All storage backends implement this interface. The ``DocumentDatabase``
engine delegates to the adapter selected by the connection URL.

The interface is document shaped: one row per document keyed by its primary
key, secondary indexes over a top-level field (list values behave as multi
indexes), write results carrying ``first_error`` and the ``{old_val,
new_val}`` changes, and a per-table change hub feeding ``ChangeFeed``
subscriptions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

logger = logging.getLogger("docmapper.db.backends")

__all__ = [
    "DocumentAdapter",
    "WriteResult",
    "Change",
    "ChangeFeed",
    "ChangeHub",
    "CONFLICT_MODES",
]

CONFLICT_MODES = ("error", "replace", "update")

Row = Dict[str, Any]
Transform = Callable[[Row], Row]


@dataclass
class Change:
    """A row-level change; ``None`` on either side means absent."""

    old_val: Optional[Row] = None
    new_val: Optional[Row] = None


@dataclass
class WriteResult:
    """Outcome of a write. ``first_error`` is set when any row failed."""

    inserted: int = 0
    replaced: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: int = 0
    first_error: Optional[str] = None
    generated_keys: List[Any] = field(default_factory=list)
    changes: List[Change] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors += 1
        if self.first_error is None:
            self.first_error = message

    def merge(self, other: WriteResult) -> WriteResult:
        self.inserted += other.inserted
        self.replaced += other.replaced
        self.unchanged += other.unchanged
        self.deleted += other.deleted
        if other.first_error is not None:
            self.errors += other.errors
            if self.first_error is None:
                self.first_error = other.first_error
        self.generated_keys.extend(other.generated_keys)
        self.changes.extend(other.changes)
        return self


class _Closed:
    """Queue marker ending a feed."""


_CLOSED = _Closed()


class ChangeFeed:
    """
    Async iterator over the changes of one table (optionally one key).

    Feeds are lazy, unbounded and not restartable: once closed, iteration
    ends and the feed cannot be reopened. An error pushed into the feed is
    raised from the iterator.
    """

    def __init__(self, table: str, key: Any = None, *, on_close: Optional[Callable[[ChangeFeed], None]] = None):
        self.table = table
        self.key = key
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    def publish(self, change: Change) -> None:
        if not self._closed:
            self._queue.put_nowait(change)

    def fail(self, exc: BaseException) -> None:
        if not self._closed:
            self._queue.put_nowait(exc)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ChangeFeed:
        return self

    async def __anext__(self) -> Change:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    def __repr__(self) -> str:
        return f"<ChangeFeed {self.table} key={self.key!r} closed={self._closed}>"


class ChangeHub:
    """In-process fan-out of table changes to open feeds."""

    def __init__(self):
        self._feeds: List[ChangeFeed] = []

    def subscribe(self, table: str, key: Any = None) -> ChangeFeed:
        feed = ChangeFeed(table, key, on_close=self._unsubscribe)
        self._feeds.append(feed)
        return feed

    def _unsubscribe(self, feed: ChangeFeed) -> None:
        self._feeds = [f for f in self._feeds if f is not feed]

    def publish(self, table: str, primary_key: str, changes: Sequence[Change]) -> None:
        for feed in list(self._feeds):
            if feed.table != table:
                continue
            for change in changes:
                if feed.key is None or any(
                    side is not None and side.get(primary_key) == feed.key
                    for side in (change.old_val, change.new_val)
                ):
                    feed.publish(change)

    def fail_all(self, exc: BaseException) -> None:
        for feed in list(self._feeds):
            feed.fail(exc)

    async def close_all(self) -> None:
        for feed in list(self._feeds):
            await feed.close()

    def __len__(self) -> int:
        return len(self._feeds)


class DocumentAdapter(ABC):
    """
    Abstract document storage adapter.

    Keys passed to ``get_all``/``delete_all``/``update_all`` are primary keys
    unless ``index`` names a secondary index, in which case a row matches when
    the indexed field equals a key or is a list containing it.
    """

    name: str = "base"

    def __init__(self):
        self._hub = ChangeHub()
        self._primary_keys: Dict[str, str] = {}
        self._indexes: Dict[str, Dict[str, bool]] = {}

    # ── Connection ───────────────────────────────────────────────────

    @abstractmethod
    async def connect(self, url: str, **options: Any) -> None:
        """Open the storage."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the storage."""
        ...

    @property
    def is_connected(self) -> bool:
        return False

    # ── Schema ───────────────────────────────────────────────────────

    @abstractmethod
    async def ensure_table(self, table: str, primary_key: str = "id") -> None:
        """Create ``table`` if missing."""
        ...

    @abstractmethod
    async def ensure_index(self, table: str, name: str, *, multi: bool = False) -> None:
        """Create a secondary index over the top-level field ``name``."""
        ...

    def primary_key(self, table: str) -> str:
        return self._primary_keys.get(table, "id")

    def has_index(self, table: str, name: str) -> bool:
        return name in self._indexes.get(table, {})

    # ── Reads ────────────────────────────────────────────────────────

    @abstractmethod
    async def get(self, table: str, key: Any) -> Optional[Row]:
        ...

    @abstractmethod
    async def get_all(self, table: str, *keys: Any, index: Optional[str] = None) -> List[Row]:
        ...

    # ── Writes ───────────────────────────────────────────────────────

    @abstractmethod
    async def insert(
        self,
        table: str,
        documents: Union[Row, Sequence[Row]],
        *,
        conflict: str = "error",
    ) -> WriteResult:
        """Insert one or many rows, generating missing primary keys."""
        ...

    @abstractmethod
    async def replace(self, table: str, key: Any, document: Row) -> WriteResult:
        """Replace the row stored under ``key`` (inserting it if absent)."""
        ...

    @abstractmethod
    async def delete(self, table: str, key: Any) -> WriteResult:
        ...

    @abstractmethod
    async def delete_all(self, table: str, *keys: Any, index: Optional[str] = None) -> WriteResult:
        ...

    @abstractmethod
    async def update_all(
        self,
        table: str,
        *keys: Any,
        index: str,
        transform: Transform,
    ) -> WriteResult:
        """Replace every row matched on ``index`` with ``transform(row)``."""
        ...

    # ── Change feeds ─────────────────────────────────────────────────

    async def changes(self, table: str, key: Any = None) -> ChangeFeed:
        """Subscribe to the changes of ``table`` (or of one key)."""
        return self._hub.subscribe(table, key)

    def _publish(self, table: str, result: WriteResult) -> WriteResult:
        if result.changes:
            self._hub.publish(table, self.primary_key(table), result.changes)
        return result

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def generate_key() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def matches(value: Any, keys: Sequence[Any]) -> bool:
        """Index match: equality, or membership for list values."""
        if isinstance(value, list):
            return any(key in value for key in keys)
        return any(value == key for key in keys)

    @staticmethod
    def check_conflict(conflict: str) -> None:
        if conflict not in CONFLICT_MODES:
            raise ValueError(f"conflict must be one of {CONFLICT_MODES}, got {conflict!r}")

    @property
    def dialect(self) -> str:
        return self.name
