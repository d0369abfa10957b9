"""
Cascade scope and cancellation for save, delete and validate traversals.

A scope answers one question per relation field: should this call recurse
into it? ``targets`` is a nested mapping of field names (explicit mode); when
``recurse_all`` is set every relation is followed, but each target table at
most once per top-level call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Iterable, List, Mapping, Optional, Set

from ..faults import CascadeCancelledError

logger = logging.getLogger("docmapper.models.cascade")

__all__ = ["CancellationToken", "CascadeScope", "gather"]


class CancellationToken:
    """
    Cooperative cancellation for a cascade.

    Orchestrators check the token before every storage operation. Operations
    already issued run to completion.
    """

    __slots__ = ("_cancelled", "reason")

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, operation: str) -> None:
        if self._cancelled:
            logger.debug(f"Cascade cancelled before {operation}: {self.reason}")
            raise CascadeCancelledError(operation, metadata={"reason": self.reason})

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self._cancelled}>"


class CascadeScope:
    """
    One level of a cascade.

    Attributes:
        targets: explicitly requested fields, nested per field
        recurse_all: follow every relation
        tables: tables already handled in this call (shared by all levels)
        visited: documents already handled in this call (identity based)
        token: the call's cancellation token
    """

    __slots__ = ("targets", "recurse_all", "tables", "visited", "token")

    def __init__(
        self,
        targets: Optional[Mapping[str, Any]] = None,
        recurse_all: bool = False,
        *,
        tables: Optional[Set[str]] = None,
        visited: Optional[List[Any]] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.targets: Mapping[str, Any] = targets if isinstance(targets, Mapping) else {}
        self.recurse_all = recurse_all
        self.tables: Set[str] = tables if tables is not None else set()
        self.visited: List[Any] = visited if visited is not None else []
        self.token = token or CancellationToken()

    @classmethod
    def for_call(
        cls,
        targets: Optional[Mapping[str, Any]] = None,
        *,
        cascade: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> CascadeScope:
        """
        Build the root scope of a top-level call.

        With ``cascade`` and no ``targets`` every relation is followed.
        """
        if cascade and targets is None:
            return cls({}, True, token=token)
        return cls(targets or {}, False, token=token)

    def requested(self, field: str) -> bool:
        """Field named explicitly or recursion enabled (no table check)."""
        return self.recurse_all or field in self.targets

    def selects(self, field: str, target_table: str) -> bool:
        """Explicitly requested, or recursion enabled and table not yet handled."""
        if self.recurse_all:
            return target_table not in self.tables
        return field in self.targets

    def child(self, field: Optional[str] = None) -> CascadeScope:
        """Scope handed to a document reached through ``field``."""
        if self.recurse_all:
            nested: Mapping[str, Any] = {}
        else:
            value = self.targets.get(field) if field is not None else None
            nested = value if isinstance(value, Mapping) else {}
        return CascadeScope(
            nested,
            self.recurse_all,
            tables=self.tables,
            visited=self.visited,
            token=self.token,
        )

    def detached(self) -> CascadeScope:
        """A non-cascading scope sharing this call's bookkeeping."""
        return CascadeScope({}, False, tables=self.tables, visited=self.visited, token=self.token)

    def check(self, operation: str) -> None:
        self.token.raise_if_cancelled(operation)

    def was_visited(self, document: Any) -> bool:
        return any(seen is document for seen in self.visited)

    def __repr__(self) -> str:
        mode = "all" if self.recurse_all else sorted(self.targets)
        return f"<CascadeScope {mode} tables={sorted(self.tables)}>"


async def gather(awaitables: Iterable[Awaitable[Any]]) -> List[Any]:
    """
    Fan-out barrier: run ``awaitables`` concurrently.

    Raises the first failure; siblings already running are not cancelled.
    """
    pending = list(awaitables)
    if not pending:
        return []
    return list(await asyncio.gather(*pending))
