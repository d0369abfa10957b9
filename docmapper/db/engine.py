"""
docmapper Database Engine — async document storage front end.

Provides:
- DocumentDatabase: connection manager delegating to backend adapters
- Memory (``memory://``) and SQLite (``sqlite:///path``) backends
- Connection retries and fault wrapping (adapter errors -> PersistenceError)
- Model readiness: tables, foreign-key indexes and link tables created once
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from ..config import get_config
from ..faults import DatabaseConnectionError, Fault, PersistenceError
from .backends.base import ChangeFeed, DocumentAdapter, Row, Transform, WriteResult

logger = logging.getLogger("docmapper.db")

__all__ = [
    "DocumentDatabase",
    "get_database",
    "set_database",
    "configure_database",
    "reset_database",
]


def _create_adapter(driver: str) -> DocumentAdapter:
    """Factory — instantiate the correct backend adapter."""
    if driver == "memory":
        from .backends.memory import MemoryAdapter
        return MemoryAdapter()
    elif driver == "sqlite":
        from .backends.sqlite import SQLiteAdapter
        return SQLiteAdapter()
    else:
        raise DatabaseConnectionError(
            url=f"<{driver}>",
            reason=f"No adapter registered for driver: {driver}",
        )


class DocumentDatabase:
    """
    Async document database engine.

    All operations are async, connect on first use, and raise
    ``PersistenceError`` (with table and operation) for adapter failures.

    Usage:
        db = DocumentDatabase("sqlite:///app.db")
        await db.connect()
        result = await db.insert("users", {"name": "a"})
        await db.disconnect()
    """

    __slots__ = (
        "_url",
        "_driver",
        "_adapter",
        "_connected",
        "_lock",
        "_schema_lock",
        "_options",
        "_ready",
        "_last_activity",
        "_connect_retries",
        "_connect_retry_delay",
    )

    def __init__(self, url: str = "memory://", **options: Any):
        """
        Initialize database engine.

        Args:
            url: Database URL. Supported schemes:
                 - memory://
                 - sqlite:///path/to/db.sqlite3
                 - sqlite:///:memory:
            **options: Options passed to the backend adapter.
                connect_retries (int): Number of connection attempts (default 3).
                connect_retry_delay (float): Seconds between attempts (default 0.5).
        """
        self._url = url
        self._driver = self._detect_driver(url)
        self._adapter: DocumentAdapter = _create_adapter(self._driver)
        self._connected = False
        self._lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._options = options
        self._ready: Set[type] = set()
        self._last_activity: float = 0.0
        self._connect_retries = int(options.pop("connect_retries", 3))
        self._connect_retry_delay = float(options.pop("connect_retry_delay", 0.5))

    @staticmethod
    def _detect_driver(url: str) -> str:
        """Detect storage driver from URL scheme."""
        if url.startswith("memory"):
            return "memory"
        elif url.startswith("sqlite"):
            return "sqlite"
        else:
            raise DatabaseConnectionError(
                url=url,
                reason=f"Unsupported database URL scheme: {url}",
            )

    # ── Connection management ────────────────────────────────────────

    async def connect(self) -> None:
        """Open the storage with retry logic."""
        if self._connected:
            return

        async with self._lock:
            if self._connected:
                return

            last_exc: Optional[Exception] = None
            for attempt in range(1, self._connect_retries + 1):
                try:
                    await self._adapter.connect(self._url, **self._options)
                    self._connected = True
                    self._last_activity = time.monotonic()
                    logger.info(f"Database connected ({self._driver}), attempt {attempt}")
                    return
                except (DatabaseConnectionError, ImportError):
                    raise
                except Exception as exc:
                    last_exc = exc
                    if attempt < self._connect_retries:
                        logger.warning(
                            f"Connection attempt {attempt} failed: {exc}, "
                            f"retrying in {self._connect_retry_delay}s..."
                        )
                        await asyncio.sleep(self._connect_retry_delay)

            raise DatabaseConnectionError(
                url=self._url,
                reason=f"Failed after {self._connect_retries} attempts: {last_exc}",
            )

    async def disconnect(self) -> None:
        """Close the storage."""
        if not self._connected:
            return
        async with self._lock:
            if not self._connected:
                return
            try:
                await self._adapter.disconnect()
                logger.info("Database disconnected")
            except Exception as exc:
                raise DatabaseConnectionError(
                    url=self._url,
                    reason=f"Disconnect failed: {exc}",
                ) from exc
            finally:
                self._connected = False
                self._ready.clear()

    async def ensure_connected(self) -> None:
        """Ensure a live connection exists, reconnecting if needed."""
        if not self._connected:
            await self.connect()
        elif not self._adapter.is_connected:
            self._connected = False
            await self.connect()

    async def _run(self, table: str, operation: str, method: Any, *args: Any, **kwargs: Any) -> Any:
        await self.ensure_connected()
        try:
            self._last_activity = time.monotonic()
            return await method(*args, **kwargs)
        except Fault:
            raise
        except Exception as exc:
            raise PersistenceError(table, operation, str(exc)) from exc

    # ── Schema ───────────────────────────────────────────────────────

    async def ensure_table(self, table: str, primary_key: str = "id") -> None:
        await self._run(table, "ensure_table", self._adapter.ensure_table, table, primary_key)

    async def ensure_index(self, table: str, name: str, *, multi: bool = False) -> None:
        await self._run(table, "ensure_index", self._adapter.ensure_index, table, name, multi=multi)

    async def ensure_model(self, model: type) -> None:
        """
        Create the tables and indexes ``model`` relies on, once per model.

        Related models (through relations in both directions) are prepared
        in the same pass so foreign-key indexes exist on every table that
        references ``model``.
        """
        if model in self._ready:
            return
        async with self._schema_lock:
            if model in self._ready:
                return
            prepared: List[type] = []
            await self._prepare(model, prepared)
            self._ready.update(prepared)

    async def _prepare(self, model: type, seen: List[type]) -> None:
        if model in self._ready or model in seen:
            return
        seen.append(model)
        meta = model._meta
        await self.ensure_table(meta.table_name, meta.pk)
        for name, multi in meta.indexes.items():
            await self.ensure_index(meta.table_name, name, multi=multi)

        for relation in meta.relations.values():
            if not relation.is_resolved:
                continue
            target = relation.target
            await self._prepare(target, seen)
            if relation.kind == "belongs_to":
                await self.ensure_index(meta.table_name, relation.local_key)
            elif relation.kind in ("has_one", "has_many"):
                await self.ensure_index(target._meta.table_name, relation.foreign_key)
            elif relation.kind == "many_to_many":
                await self.ensure_table(relation.link, "id")
                await self.ensure_index(relation.link, relation.own_field, multi=relation.is_self_link)
                if not relation.is_self_link:
                    await self.ensure_index(relation.link, relation.target_field)

        for relation in meta.reverse_relations:
            await self._prepare(relation.model, seen)
        logger.debug(f"Model {model.__name__} ready on table '{meta.table_name}'")

    def is_ready(self, model: type) -> bool:
        return model in self._ready

    def invalidate(self, model: type) -> None:
        """Prepare ``model`` again before its next write (new relation bound)."""
        self._ready.discard(model)

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, table: str, key: Any) -> Optional[Row]:
        return await self._run(table, "get", self._adapter.get, table, key)

    async def get_all(self, table: str, *keys: Any, index: Optional[str] = None) -> List[Row]:
        return await self._run(table, "get_all", self._adapter.get_all, table, *keys, index=index)

    # ── Writes ───────────────────────────────────────────────────────

    async def insert(
        self,
        table: str,
        documents: Union[Row, Sequence[Row]],
        *,
        conflict: str = "error",
    ) -> WriteResult:
        logger.debug(f"insert into '{table}' (conflict={conflict})")
        return await self._run(table, "insert", self._adapter.insert, table, documents, conflict=conflict)

    async def replace(self, table: str, key: Any, document: Row) -> WriteResult:
        logger.debug(f"replace {key!r} in '{table}'")
        return await self._run(table, "replace", self._adapter.replace, table, key, document)

    async def delete(self, table: str, key: Any) -> WriteResult:
        logger.debug(f"delete {key!r} from '{table}'")
        return await self._run(table, "delete", self._adapter.delete, table, key)

    async def delete_all(self, table: str, *keys: Any, index: Optional[str] = None) -> WriteResult:
        logger.debug(f"delete_all {len(keys)} key(s) from '{table}' (index={index})")
        return await self._run(table, "delete_all", self._adapter.delete_all, table, *keys, index=index)

    async def update_all(self, table: str, *keys: Any, index: str, transform: Transform) -> WriteResult:
        logger.debug(f"update_all on '{table}' (index={index})")
        return await self._run(
            table, "update_all", self._adapter.update_all, table, *keys, index=index, transform=transform
        )

    async def changes(self, table: str, key: Any = None) -> ChangeFeed:
        return await self._run(table, "changes", self._adapter.changes, table, key)

    # ── Properties ───────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._connected and self._adapter.is_connected

    @property
    def url(self) -> str:
        return self._url

    @property
    def driver(self) -> str:
        return self._driver

    @property
    def adapter(self) -> DocumentAdapter:
        """Direct access to the underlying adapter (advanced use)."""
        return self._adapter

    def __repr__(self) -> str:
        return f"<DocumentDatabase {self._url} connected={self._connected}>"


# ── Module-level default database ───────────────────────────────────────────

_default_database: Optional[DocumentDatabase] = None


def configure_database(url: Optional[str] = None, **options: Any) -> DocumentDatabase:
    """
    Create the default database.

    Missing arguments come from the active ``MapperConfig``.
    """
    config = get_config()
    options.setdefault("connect_retries", config.connect_retries)
    options.setdefault("connect_retry_delay", config.connect_retry_delay)
    db = DocumentDatabase(url or config.database_url, **options)
    set_database(db)
    return db


def get_database() -> DocumentDatabase:
    """Return the default database, creating it from configuration on first use."""
    if _default_database is None:
        return configure_database()
    return _default_database


def set_database(db: Optional[DocumentDatabase]) -> None:
    """Install ``db`` as the default database."""
    global _default_database
    _default_database = db


def reset_database() -> None:
    """Forget the default database (useful for testing)."""
    set_database(None)
