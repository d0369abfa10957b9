"""
docmapper DB Backend — in-process memory adapter.

Rows are deep-copied on the way in and out so callers never share state with
storage. This is the default backend (``memory://``) and the one the test
suite runs against.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from .base import Change, DocumentAdapter, Row, Transform, WriteResult

logger = logging.getLogger("docmapper.db.backends.memory")

__all__ = ["MemoryAdapter"]


def _hashable(key: Any) -> Any:
    if isinstance(key, list):
        return tuple(_hashable(k) for k in key)
    if isinstance(key, dict):
        return tuple(sorted((k, _hashable(v)) for k, v in key.items()))
    return key


class MemoryAdapter(DocumentAdapter):
    """Dictionary-backed document storage."""

    name = "memory"

    def __init__(self):
        super().__init__()
        self._tables: Dict[str, Dict[Any, Row]] = {}
        self._connected = False
        self._lock = asyncio.Lock()

    async def connect(self, url: str, **options: Any) -> None:
        self._connected = True
        logger.info("Memory storage connected")

    async def disconnect(self) -> None:
        await self._hub.close_all()
        self._connected = False
        logger.info("Memory storage disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ── Schema ───────────────────────────────────────────────────────

    async def ensure_table(self, table: str, primary_key: str = "id") -> None:
        self._tables.setdefault(table, {})
        self._primary_keys[table] = primary_key

    async def ensure_index(self, table: str, name: str, *, multi: bool = False) -> None:
        self._indexes.setdefault(table, {})[name] = multi

    def _table(self, table: str) -> Dict[Any, Row]:
        if table not in self._tables:
            raise LookupError(f"Table `{table}` does not exist")
        return self._tables[table]

    def _select(self, table: str, keys: Sequence[Any], index: Optional[str]) -> List[Row]:
        rows = self._table(table)
        if index is None or index == self.primary_key(table):
            selected = []
            for key in keys:
                row = rows.get(_hashable(key))
                if row is not None and all(row is not r for r in selected):
                    selected.append(row)
            return selected
        return [row for row in rows.values() if index in row and self.matches(row[index], keys)]

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, table: str, key: Any) -> Optional[Row]:
        row = self._table(table).get(_hashable(key))
        return copy.deepcopy(row) if row is not None else None

    async def get_all(self, table: str, *keys: Any, index: Optional[str] = None) -> List[Row]:
        return [copy.deepcopy(row) for row in self._select(table, keys, index)]

    # ── Writes ───────────────────────────────────────────────────────

    async def insert(
        self,
        table: str,
        documents: Union[Row, Sequence[Row]],
        *,
        conflict: str = "error",
    ) -> WriteResult:
        self.check_conflict(conflict)
        batch = [documents] if isinstance(documents, dict) else list(documents)
        pk = self.primary_key(table)
        result = WriteResult()
        async with self._lock:
            rows = self._table(table)
            for document in batch:
                new_val = copy.deepcopy(document)
                if new_val.get(pk) is None:
                    new_val[pk] = self.generate_key()
                    result.generated_keys.append(new_val[pk])
                key = _hashable(new_val[pk])
                old_val = rows.get(key)
                if old_val is not None:
                    if conflict == "error":
                        result.record_error(f"Duplicate primary key `{pk}`: {new_val[pk]!r}")
                        continue
                    if conflict == "update":
                        new_val = {**old_val, **new_val}
                    if new_val == old_val:
                        result.unchanged += 1
                        continue
                    result.replaced += 1
                else:
                    result.inserted += 1
                rows[key] = new_val
                result.changes.append(Change(copy.deepcopy(old_val), copy.deepcopy(new_val)))
        return self._publish(table, result)

    async def replace(self, table: str, key: Any, document: Row) -> WriteResult:
        pk = self.primary_key(table)
        result = WriteResult()
        new_val = copy.deepcopy(document)
        if new_val.get(pk) != key:
            result.record_error(f"Primary key `{pk}` cannot be changed ({key!r} -> {new_val.get(pk)!r})")
            return result
        async with self._lock:
            rows = self._table(table)
            old_val = rows.get(_hashable(key))
            if old_val == new_val:
                result.unchanged += 1
            else:
                if old_val is None:
                    result.inserted += 1
                else:
                    result.replaced += 1
                rows[_hashable(key)] = new_val
            result.changes.append(Change(copy.deepcopy(old_val), copy.deepcopy(new_val)))
        return self._publish(table, result)

    async def delete(self, table: str, key: Any) -> WriteResult:
        return await self.delete_all(table, key)

    async def delete_all(self, table: str, *keys: Any, index: Optional[str] = None) -> WriteResult:
        result = WriteResult()
        pk = self.primary_key(table)
        async with self._lock:
            rows = self._table(table)
            for row in self._select(table, keys, index):
                del rows[_hashable(row[pk])]
                result.deleted += 1
                result.changes.append(Change(copy.deepcopy(row), None))
        return self._publish(table, result)

    async def update_all(
        self,
        table: str,
        *keys: Any,
        index: str,
        transform: Transform,
    ) -> WriteResult:
        result = WriteResult()
        pk = self.primary_key(table)
        async with self._lock:
            rows = self._table(table)
            for row in self._select(table, keys, index):
                new_val = transform(copy.deepcopy(row))
                if new_val == row:
                    result.unchanged += 1
                    continue
                rows[_hashable(row[pk])] = new_val
                result.replaced += 1
                result.changes.append(Change(copy.deepcopy(row), copy.deepcopy(new_val)))
        return self._publish(table, result)

    def __repr__(self) -> str:
        return f"<MemoryAdapter tables={sorted(self._tables)}>"
