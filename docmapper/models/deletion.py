"""
Delete and purge orchestrators.

``delete_document`` walks the in-memory graph: related documents selected by
the scope are deleted, the others are detached (their foreign key cleared
and saved), link rows are removed, and every parent recorded in the
back-reference index drops its pointer. ``purge_document`` additionally
issues range updates so *every* stored row referencing the document loses
its foreign key, and deletes all of its link rows.

Documents are tracked by identity so shared documents are processed once per
call. Nothing is rolled back when a step fails.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..faults import PersistenceError
from .cascade import CancellationToken, CascadeScope, gather
from .persistence import save_document
from .relations import ManyToMany
from .signals import document_deleted

if TYPE_CHECKING:
    from ..db.engine import DocumentDatabase
    from .document import Document

logger = logging.getLogger("docmapper.models.deletion")

__all__ = ["delete_document", "purge_document", "detach_from_parents"]


def _check(result: Any, table: str, operation: str) -> None:
    if result.first_error is not None:
        raise PersistenceError(table, operation, result.first_error)


def _remove_identity(items: Any, document: Document) -> bool:
    if not isinstance(items, list):
        return False
    for index, item in enumerate(items):
        if item is document:
            del items[index]
            return True
    return False


def _wants(scope: CascadeScope, field: str, child: Document) -> bool:
    return field in scope.targets or (scope.recurse_all and not scope.was_visited(child))


async def delete_document(document: Document, scope: CascadeScope) -> Document:
    """Delete ``document`` and, per ``scope``, the documents it owns."""
    from .document import Document

    model = type(document)
    meta = model._meta
    state = document._state
    table = meta.table_name
    db = model.get_database()

    await meta.hooks.run("pre", "delete", document)
    scope.visited.append(document)
    logger.debug(f"Deleting {model.__name__} ({scope!r})")

    tasks: List[Any] = []
    for field, relation in meta.relations.items():
        if not relation.is_resolved:
            continue
        value = document._data.get(field)
        kind = relation.kind

        if kind == "has_one" and isinstance(value, Document):
            if value.is_saved() and _wants(scope, field, value):
                tasks.append(_delete_and_unset(document, field, value, scope.child(field)))
            elif not scope.was_visited(value):
                value._data.pop(relation.foreign_key, None)
                value._state.parents.remove("has_one", table, document, field)
                state.has_one.pop(field, None)
                if value.is_saved():
                    tasks.append(save_document(value, scope.detached()))

        elif kind == "belongs_to" and isinstance(value, Document):
            if value.is_saved() and _wants(scope, field, value):
                tasks.append(_delete_and_unset(document, field, value, scope.child(field)))

        elif kind == "has_many" and isinstance(value, list):
            deletions = []
            for child in value:
                if not isinstance(child, Document):
                    continue
                if child.is_saved() and _wants(scope, field, child):
                    deletions.append(delete_document(child, scope.child(field)))
                elif not scope.was_visited(child):
                    child._data.pop(relation.foreign_key, None)
                    child._state.parents.remove("has_many", table, document, field)
                    if child.is_saved():
                        tasks.append(save_document(child, scope.detached()))
            tasks.append(_delete_many_and_unset(document, field, deletions))

        elif kind == "many_to_many" and isinstance(value, list):
            tasks.extend(_delete_links(document, field, relation, value, scope, db))

    tasks.extend(detach_from_parents(document, scope))

    if state.saved:
        scope.check("delete")
        tasks.append(_delete_self(document, db))

    await gather(tasks)
    await meta.hooks.run("post", "delete", document)
    return document


async def _delete_and_unset(document: Document, field: str, child: Document, scope: CascadeScope) -> None:
    await delete_document(child, scope)
    document._data.pop(field, None)
    document._state.has_one.pop(field, None)
    document._state.belongs_to.pop(field, None)


async def _delete_many_and_unset(document: Document, field: str, deletions: List[Any]) -> None:
    await gather(deletions)
    document._data.pop(field, None)
    document._state.has_many.pop(field, None)


def _delete_links(
    document: Document,
    field: str,
    relation: ManyToMany,
    items: List[Any],
    scope: CascadeScope,
    db: DocumentDatabase,
) -> List[Any]:
    """Delete selected partners and remove the link rows of every partner."""
    from .document import Document

    model = type(document)
    table = model._meta.table_name
    own_value = document._data.get(relation.local_key)
    # Link rows are only keyed reliably when the local key is the primary key.
    keyed_by_pk = relation.local_key == model._meta.pk and document.is_saved()

    tasks = []
    link_ids = []
    partners = []
    for child in items:
        if not isinstance(child, Document):
            continue
        if child.is_saved() and _wants(scope, field, child):
            tasks.append(delete_document(child, scope.child(field)))
        elif scope.was_visited(child):
            continue
        else:
            child._state.parents.remove("many_to_many", table, document, field)
        partners.append(child)
        if keyed_by_pk:
            link_ids.append(relation.link_id(own_value, child._data.get(relation.foreign_key)))

    if link_ids:
        scope.check("delete links")
        tasks.append(_delete_link_rows(document, relation, link_ids, partners, db))
    return tasks


async def _delete_link_rows(
    document: Document,
    relation: ManyToMany,
    link_ids: List[str],
    partners: List[Document],
    db: DocumentDatabase,
) -> None:
    result = await db.delete_all(relation.link, *link_ids)
    _check(result, relation.link, "delete_all")
    linked = document._state.links.get(relation.link, {})
    for partner in partners:
        linked.pop(partner._data.get(relation.foreign_key), None)


def detach_from_parents(document: Document, scope: Optional[CascadeScope] = None) -> List[Any]:
    """
    Remove ``document`` from every parent recorded in its back-reference
    index. Belongs-to parents are saved to persist the cleared key.
    """
    model = type(document)
    state = document._state
    tasks = []

    for kind, _table, ref in list(state.parents):
        parent = ref.document
        if scope is not None and scope.was_visited(parent):
            continue
        parent_state = parent._state

        if kind == "has_one":
            parent._data.pop(ref.field, None)
            tracked = parent_state.has_one.get(ref.field)
            if tracked is not None and tracked[0] is document:
                del parent_state.has_one[ref.field]

        elif kind == "belongs_to":
            parent._data.pop(ref.field, None)
            if ref.foreign_key:
                parent._data.pop(ref.foreign_key, None)
            parent_state.belongs_to.pop(ref.field, None)
            if scope is not None and parent.is_saved():
                tasks.append(save_document(parent, CascadeScope(token=scope.token)))

        elif kind == "has_many":
            _remove_identity(parent._data.get(ref.field), document)
            tracked = parent_state.has_many.get(ref.field, [])
            parent_state.has_many[ref.field] = [
                entry for entry in tracked if entry[0] is not document
            ]

        elif kind == "many_to_many":
            _remove_identity(parent._data.get(ref.field), document)
            relation = type(parent)._meta.relations.get(ref.field)
            if relation is not None:
                parent_state.links.get(relation.link, {}).pop(
                    document._data.get(relation.foreign_key), None
                )

    state.parents.clear()
    logger.debug(f"{model.__name__} detached from its parents")
    return tasks


async def _delete_self(document: Document, db: DocumentDatabase) -> None:
    model = type(document)
    meta = model._meta
    result = await db.delete(meta.table_name, document._data.get(meta.pk))
    _check(result, meta.table_name, "delete")
    document._set_saved_flag(False)
    await document_deleted.send(model, document=document)


# ── purge ────────────────────────────────────────────────────────────────────


def _without(key: str):
    def transform(row: Dict[str, Any]) -> Dict[str, Any]:
        return {name: value for name, value in row.items() if name != key}
    return transform


async def _strip_key(db: DocumentDatabase, table: str, value: Any, key: str) -> None:
    result = await db.update_all(table, value, index=key, transform=_without(key))
    _check(result, table, "update_all")


async def _purge_links(db: DocumentDatabase, link: str, value: Any, index: str) -> None:
    result = await db.delete_all(link, value, index=index)
    _check(result, link, "delete_all")


async def purge_document(document: Document, token: Optional[CancellationToken] = None) -> Document:
    """
    Delete ``document`` and strip every stored reference to it, including
    rows that are not loaded in memory.
    """
    model = type(document)
    meta = model._meta
    db = model.get_database()
    await db.ensure_model(model)
    scope = CascadeScope(token=token)

    # In-memory parents only lose their pointer; storage is fixed below.
    detach_from_parents(document)

    tasks: List[Any] = []
    pk_value = document._data.get(meta.pk)
    for relation in meta.relations.values():
        if not relation.is_resolved:
            continue
        if relation.kind in ("has_one", "has_many"):
            value = document._data.get(relation.local_key)
            if value is not None:
                scope.check("update_all")
                tasks.append(_strip_key(db, relation.target_table, value, relation.foreign_key))
        elif relation.kind == "many_to_many" and relation.local_key == meta.pk and pk_value is not None:
            scope.check("delete_all")
            tasks.append(_purge_links(db, relation.link, pk_value, relation.own_field))

    for relation in meta.reverse_relations:
        if relation.kind == "belongs_to":
            value = document._data.get(relation.foreign_key)
            if value is not None:
                scope.check("update_all")
                tasks.append(_strip_key(db, relation.own_table, value, relation.local_key))
        elif relation.kind == "many_to_many" and relation.foreign_key == meta.pk and pk_value is not None:
            scope.check("delete_all")
            tasks.append(_purge_links(db, relation.link, pk_value, relation.target_field))

    tasks.append(delete_document(document, scope))
    await gather(tasks)
    return document
