"""
docmapper DB Backend — SQLite adapter via aiosqlite.

Each document table has two columns: ``pk`` (the JSON-encoded primary key)
and ``body`` (the JSON-encoded document, see ``docmapper.db.codec``).
Secondary indexes are expression indexes over ``json_extract``; index
lookups go through ``json_each`` so list values act as multi indexes.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Union

from .. import codec
from .base import Change, DocumentAdapter, Row, Transform, WriteResult

try:
    import aiosqlite
except ImportError:
    aiosqlite = None  # type: ignore[assignment]

logger = logging.getLogger("docmapper.db.backends.sqlite")

__all__ = ["SQLiteAdapter"]

# Table, index and field names end up inside SQL text.
_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

_META_TABLE = "_docmapper_tables"


def _check_name(name: str) -> str:
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid table or index name: {name!r}")
    return name


class SQLiteAdapter(DocumentAdapter):
    """
    SQLite document storage using aiosqlite.

    Features:
    - WAL journal mode for file databases
    - One JSON row per document
    - Expression indexes over document fields
    - Serialized read-modify-write operations
    """

    name = "sqlite"

    def __init__(self):
        super().__init__()
        self._connection: Any = None
        self._connected = False
        self._lock = asyncio.Lock()

    async def connect(self, url: str, **options: Any) -> None:
        if self._connected:
            return
        if aiosqlite is None:
            raise ImportError(
                "aiosqlite is required for SQLite backend. "
                "Install: pip install aiosqlite"
            )
        async with self._lock:
            if self._connected:
                return
            db_path = self._parse_url(url)
            self._connection = await aiosqlite.connect(db_path)
            if db_path != ":memory:":
                await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute(
                f'CREATE TABLE IF NOT EXISTS "{_META_TABLE}" '
                "(name TEXT PRIMARY KEY, primary_key TEXT NOT NULL)"
            )
            await self._connection.commit()
            cursor = await self._connection.execute(f'SELECT name, primary_key FROM "{_META_TABLE}"')
            for name, primary_key in await cursor.fetchall():
                self._primary_keys[name] = primary_key
            self._connected = True
            logger.info(f"SQLite connected: {db_path}")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        await self._hub.close_all()
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False
            logger.info("SQLite disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _require_connection(self) -> None:
        if not self._connected:
            raise RuntimeError("Not connected")

    # ── Schema ───────────────────────────────────────────────────────

    async def ensure_table(self, table: str, primary_key: str = "id") -> None:
        self._require_connection()
        _check_name(table)
        async with self._lock:
            await self._connection.execute(
                f'CREATE TABLE IF NOT EXISTS "{table}" (pk TEXT PRIMARY KEY, body TEXT NOT NULL)'
            )
            await self._connection.execute(
                f'INSERT OR REPLACE INTO "{_META_TABLE}" (name, primary_key) VALUES (?, ?)',
                [table, primary_key],
            )
            await self._connection.commit()
        self._primary_keys[table] = primary_key

    async def ensure_index(self, table: str, name: str, *, multi: bool = False) -> None:
        self._require_connection()
        _check_name(table)
        _check_name(name)
        async with self._lock:
            await self._connection.execute(
                f'CREATE INDEX IF NOT EXISTS "{table}__{name}" '
                f"ON \"{table}\" (json_extract(body, '$.\"{name}\"'))"
            )
            await self._connection.commit()
        self._indexes.setdefault(table, {})[name] = multi

    # ── Row helpers ──────────────────────────────────────────────────

    async def _fetch(self, sql: str, params: Sequence[Any]) -> List[Row]:
        cursor = await self._connection.execute(sql, list(params))
        rows = await cursor.fetchall()
        return [codec.loads(row[0]) for row in rows]

    async def _select(self, table: str, keys: Sequence[Any], index: Optional[str]) -> List[Row]:
        _check_name(table)
        if not keys:
            return []
        if index is None or index == self.primary_key(table):
            placeholders = ", ".join("?" for _ in keys)
            return await self._fetch(
                f'SELECT body FROM "{table}" WHERE pk IN ({placeholders})',
                [codec.encode_key(key) for key in keys],
            )
        _check_name(index)
        placeholders = ", ".join("?" for _ in keys)
        return await self._fetch(
            f'SELECT t.body FROM "{table}" AS t WHERE EXISTS ('
            f"SELECT 1 FROM json_each(t.body, '$.\"{index}\"') AS je "
            f"WHERE je.value IN ({placeholders}))",
            list(keys),
        )

    async def _write(self, table: str, row: Row) -> None:
        pk = self.primary_key(table)
        await self._connection.execute(
            f'INSERT OR REPLACE INTO "{table}" (pk, body) VALUES (?, ?)',
            [codec.encode_key(row[pk]), codec.dumps(row)],
        )

    async def _remove(self, table: str, key: Any) -> None:
        await self._connection.execute(
            f'DELETE FROM "{table}" WHERE pk = ?', [codec.encode_key(key)]
        )

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, table: str, key: Any) -> Optional[Row]:
        self._require_connection()
        rows = await self._select(table, [key], None)
        return rows[0] if rows else None

    async def get_all(self, table: str, *keys: Any, index: Optional[str] = None) -> List[Row]:
        self._require_connection()
        return await self._select(table, keys, index)

    # ── Writes ───────────────────────────────────────────────────────

    async def insert(
        self,
        table: str,
        documents: Union[Row, Sequence[Row]],
        *,
        conflict: str = "error",
    ) -> WriteResult:
        self._require_connection()
        self.check_conflict(conflict)
        batch = [documents] if isinstance(documents, dict) else list(documents)
        pk = self.primary_key(table)
        result = WriteResult()
        async with self._lock:
            for document in batch:
                new_val = codec.loads(codec.dumps(document))
                if new_val.get(pk) is None:
                    new_val[pk] = self.generate_key()
                    result.generated_keys.append(new_val[pk])
                existing = await self._select(table, [new_val[pk]], None)
                old_val = existing[0] if existing else None
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
                await self._write(table, new_val)
                result.changes.append(Change(old_val, new_val))
            await self._connection.commit()
        return self._publish(table, result)

    async def replace(self, table: str, key: Any, document: Row) -> WriteResult:
        self._require_connection()
        pk = self.primary_key(table)
        result = WriteResult()
        new_val = codec.loads(codec.dumps(document))
        if new_val.get(pk) != key:
            result.record_error(f"Primary key `{pk}` cannot be changed ({key!r} -> {new_val.get(pk)!r})")
            return result
        async with self._lock:
            existing = await self._select(table, [key], None)
            old_val = existing[0] if existing else None
            if old_val == new_val:
                result.unchanged += 1
            else:
                if old_val is None:
                    result.inserted += 1
                else:
                    result.replaced += 1
                await self._write(table, new_val)
                await self._connection.commit()
            result.changes.append(Change(old_val, new_val))
        return self._publish(table, result)

    async def delete(self, table: str, key: Any) -> WriteResult:
        return await self.delete_all(table, key)

    async def delete_all(self, table: str, *keys: Any, index: Optional[str] = None) -> WriteResult:
        self._require_connection()
        pk = self.primary_key(table)
        result = WriteResult()
        async with self._lock:
            for row in await self._select(table, keys, index):
                await self._remove(table, row[pk])
                result.deleted += 1
                result.changes.append(Change(row, None))
            await self._connection.commit()
        return self._publish(table, result)

    async def update_all(
        self,
        table: str,
        *keys: Any,
        index: str,
        transform: Transform,
    ) -> WriteResult:
        self._require_connection()
        result = WriteResult()
        async with self._lock:
            for row in await self._select(table, keys, index):
                new_val = transform(codec.loads(codec.dumps(row)))
                if new_val == row:
                    result.unchanged += 1
                    continue
                await self._write(table, new_val)
                result.replaced += 1
                result.changes.append(Change(row, new_val))
            await self._connection.commit()
        return self._publish(table, result)

    @staticmethod
    def _parse_url(url: str) -> str:
        """Extract file path from sqlite URL."""
        for prefix in ("sqlite:///", "sqlite://"):
            if url.startswith(prefix):
                path = url[len(prefix):]
                return path or ":memory:"
        return url.replace("sqlite:", "").lstrip("/") or ":memory:"
