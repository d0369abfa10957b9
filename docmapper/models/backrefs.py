"""
Back-reference index — which parents currently point at a document.

Entries are grouped by relation kind, then by the parent's table name. The
delete and purge orchestrators walk this index to update the other side of a
relation without querying storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

__all__ = ["BackReference", "BackReferenceIndex"]


@dataclass
class BackReference:
    """One parent pointer: ``document.<field>`` holds the indexed document."""

    document: Any
    field: str
    foreign_key: Optional[str] = None


class BackReferenceIndex:
    """Pure bookkeeping, no I/O."""

    def __init__(self):
        self._entries: Dict[str, Dict[str, List[BackReference]]] = {}

    def add(
        self,
        kind: str,
        table: str,
        document: Any,
        field: str,
        foreign_key: Optional[str] = None,
    ) -> BackReference:
        refs = self._entries.setdefault(kind, {}).setdefault(table, [])
        for ref in refs:
            if ref.document is document and ref.field == field:
                ref.foreign_key = foreign_key
                return ref
        ref = BackReference(document, field, foreign_key)
        refs.append(ref)
        return ref

    def remove(self, kind: str, table: str, document: Any, field: Optional[str] = None) -> bool:
        """Remove the entries of ``document`` (optionally only for ``field``)."""
        refs = self._entries.get(kind, {}).get(table)
        if not refs:
            return False
        kept = [
            ref for ref in refs
            if not (ref.document is document and (field is None or ref.field == field))
        ]
        removed = len(kept) != len(refs)
        if kept:
            self._entries[kind][table] = kept
        else:
            del self._entries[kind][table]
            if not self._entries[kind]:
                del self._entries[kind]
        return removed

    def get(self, kind: str, table: Optional[str] = None) -> List[BackReference]:
        tables = self._entries.get(kind, {})
        if table is not None:
            return list(tables.get(table, []))
        return [ref for refs in tables.values() for ref in refs]

    def contains(self, kind: str, document: Any, field: Optional[str] = None) -> bool:
        return any(
            ref.document is document and (field is None or ref.field == field)
            for ref in self.get(kind)
        )

    def clear(self) -> None:
        self._entries.clear()

    def __iter__(self) -> Iterator[Tuple[str, str, BackReference]]:
        for kind, tables in list(self._entries.items()):
            for table, refs in list(tables.items()):
                for ref in list(refs):
                    yield kind, table, ref

    def __len__(self) -> int:
        return sum(len(refs) for tables in self._entries.values() for refs in tables.values())

    def as_dict(self) -> Dict[str, Dict[str, List[Tuple[Any, str, Optional[str]]]]]:
        """Read-only snapshot: ``{kind: {table: [(document, field, foreign_key)]}}``."""
        return {
            kind: {
                table: [(ref.document, ref.field, ref.foreign_key) for ref in refs]
                for table, refs in tables.items()
            }
            for kind, tables in self._entries.items()
        }

    def __repr__(self) -> str:
        return f"<BackReferenceIndex entries={len(self)}>"
