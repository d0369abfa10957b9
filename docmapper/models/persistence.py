"""
Save orchestrator.

A save runs in strict phases:

    1. "saving" signal, pre-save hooks
    2. belongs-to parents saved first, their keys copied into this document
    3. defaults generated, document validated, savable copy written
       (insert when unsaved, keyed replace when saved)
    4. stored value merged back, document marked saved, "saved" signal
    5. has-one / has-many / many-to-many children saved concurrently
    6. many-to-many link rows reconciled
    7. post-save hooks

Each phase fans out with ``gather`` (fail fast, siblings keep running, no
rollback). A relation is followed when the scope selects it; with
``recurse_all`` each target table is saved at most once per top-level call.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type

from ..faults import PersistenceError, ProgrammingError, ValidationError
from .cascade import CascadeScope, gather
from .projection import make_savable_copy
from .relations import BelongsTo, HasMany, HasOne, ManyToMany, Relation
from .signals import document_saved, document_saving
from .validation import BATCH_ERROR_PREFIX, validate

if TYPE_CHECKING:
    from ..db.engine import DocumentDatabase
    from .document import Document

logger = logging.getLogger("docmapper.models.persistence")

__all__ = ["save_document", "save_batch", "promote", "track_saved_relations"]


def promote(relation: Relation, value: Any) -> Document:
    """Turn a plain mapping into a document of the relation's target model."""
    from .document import Document

    if isinstance(value, Document):
        return value
    return relation.target(dict(value))


def _check(result: Any, table: str, operation: str) -> None:
    if result.first_error is not None:
        raise PersistenceError(table, operation, result.first_error)


async def _run_validation(document: Document) -> None:
    pending = validate(document)
    if pending is not None:
        await pending


def _relations(model: Type[Document], kind: type) -> List[tuple]:
    return [
        (field, relation)
        for field, relation in model._meta.relations.items()
        if isinstance(relation, kind) and relation.is_resolved
    ]


async def save_document(document: Document, scope: CascadeScope) -> Document:
    """Save ``document`` and, per ``scope``, the documents it holds."""
    model = type(document)
    meta = model._meta
    db = model.get_database()
    await db.ensure_model(model)

    await document_saving.send(model, document=document)
    await meta.hooks.run("pre", "save", document)
    scope.tables.add(meta.table_name)
    logger.debug(f"Saving {model.__name__} ({scope!r})")

    await _save_belongs_to(document, scope)
    await _save_self(document, db, scope)

    tasks = []
    tasks.extend(_save_has_one(document, scope))
    tasks.extend(_save_has_many(document, scope))
    tasks.extend(_save_many_to_many(document, scope))
    await gather(tasks)

    await gather(_reconcile_links(document, db, scope))

    await meta.hooks.run("post", "save", document)
    return document


# ── belongs-to ───────────────────────────────────────────────────────────────


async def _save_belongs_to(document: Document, scope: CascadeScope) -> None:
    from .document import Document

    model = type(document)
    table = model._meta.table_name
    state = document._state

    handled = []
    pending = []
    for field, relation in _relations(model, BelongsTo):
        parent = document._data.get(field)
        previous = state.belongs_to.get(field)
        if previous is not None and previous is not parent:
            previous._state.parents.remove("belongs_to", table, document, field)
            if parent is None:
                document._data.pop(relation.local_key, None)
            del state.belongs_to[field]

        if not scope.selects(field, relation.target_table):
            # A parent that already exists is linked without being saved.
            if isinstance(parent, Document) and parent.is_saved():
                handled.append((field, relation))
            continue
        handled.append((field, relation))
        if parent is None:
            continue
        if not isinstance(parent, Document):
            parent = promote(relation, parent)
            document._data[field] = parent
        scope.tables.add(relation.target_table)
        pending.append(save_document(parent, scope.child(field)))

    await gather(pending)

    for field, relation in handled:
        parent = document._data.get(field)
        if parent is None:
            continue
        state.belongs_to[field] = parent
        key = parent._data.get(relation.foreign_key)
        if key is None:
            document._data.pop(relation.local_key, None)
        else:
            document._data[relation.local_key] = key
        parent._state.parents.add("belongs_to", table, document, field, relation.local_key)


# ── self ─────────────────────────────────────────────────────────────────────


async def _save_self(document: Document, db: DocumentDatabase, scope: CascadeScope) -> None:
    model = type(document)
    meta = model._meta
    state = document._state

    document.generate_defaults()
    await _run_validation(document)
    savable = make_savable_copy(document)

    if not state.saved:
        operation = "insert"
        scope.check(operation)
        result = await db.insert(meta.table_name, savable)
    else:
        operation = "replace"
        key = savable.get(meta.pk)
        if key is None:
            raise ProgrammingError(
                "The document was previously saved, but its primary key is undefined."
            )
        scope.check(operation)
        result = await db.replace(meta.table_name, key, savable)
    _check(result, meta.table_name, operation)

    if result.changes:
        change = result.changes[0]
        document._merge(change.new_val or {})
        state.old_value = copy.deepcopy(change.old_val)
    document._set_saved_flag(True)
    await document_saved.send(model, document=document)
    await _run_validation(document)


# ── has-one ──────────────────────────────────────────────────────────────────


def _save_has_one(document: Document, scope: CascadeScope) -> List[Any]:
    from .document import Document

    model = type(document)
    table = model._meta.table_name
    state = document._state
    tasks = []

    for field, relation in _relations(model, HasOne):
        current = document._data.get(field)
        in_scope = scope.selects(field, relation.target_table)
        if in_scope:
            scope.tables.add(relation.target_table)

        tracked = state.has_one.get(field)
        if tracked is not None and tracked[0] is not current:
            previous, foreign_key = tracked
            previous._data.pop(foreign_key, None)
            previous._state.parents.remove("has_one", table, document, field)
            del state.has_one[field]
            if previous.is_saved():
                tasks.append(save_document(previous, scope.child(field) if in_scope else scope.detached()))

        if not in_scope or current is None:
            continue
        if not isinstance(current, Document):
            current = promote(relation, current)
            document._data[field] = current
        current._data[relation.foreign_key] = document._data.get(relation.local_key)
        tasks.append(_save_tracked_one(document, field, relation, current, scope.child(field)))
    return tasks


async def _save_tracked_one(
    document: Document,
    field: str,
    relation: HasOne,
    child: Document,
    scope: CascadeScope,
) -> None:
    await save_document(child, scope)
    document._state.has_one[field] = (child, relation.foreign_key)
    child._state.parents.add("has_one", type(document)._meta.table_name, document, field)


# ── has-many ─────────────────────────────────────────────────────────────────


def _still_attached(child: Document, items: Sequence[Any], pk: str) -> bool:
    key = child._data.get(pk)
    for item in items:
        if item is child:
            return True
        if key is not None and isinstance(item, Mapping) and item.get(pk) == key:
            return True
    return False


def _save_has_many(document: Document, scope: CascadeScope) -> List[Any]:
    model = type(document)
    table = model._meta.table_name
    state = document._state
    tasks = []

    for field, relation in _relations(model, HasMany):
        current = document._data.get(field)
        if current is not None and not isinstance(current, list):
            continue
        items = current or []
        in_scope = current is not None and scope.selects(field, relation.target_table)
        if in_scope:
            scope.tables.add(relation.target_table)

        kept = []
        target_pk = relation.target._meta.pk
        for child, foreign_key in state.has_many.get(field, []):
            if _still_attached(child, items, target_pk):
                kept.append((child, foreign_key))
                continue
            child._data.pop(foreign_key, None)
            child._state.parents.remove("has_many", table, document, field)
            if child.is_saved():
                tasks.append(save_document(child, scope.child(field) if in_scope else scope.detached()))

        if not in_scope:
            if field in state.has_many:
                state.has_many[field] = kept
            continue

        state.has_many[field] = []
        key = document._data.get(relation.local_key)
        for index, item in enumerate(items):
            child = promote(relation, item)
            items[index] = child
            child._data[relation.foreign_key] = key
            tasks.append(_save_tracked_many(document, field, relation, child, scope.child(field)))
    return tasks


async def _save_tracked_many(
    document: Document,
    field: str,
    relation: HasMany,
    child: Document,
    scope: CascadeScope,
) -> None:
    await save_document(child, scope)
    tracked = document._state.has_many.setdefault(field, [])
    if all(existing is not child for existing, _ in tracked):
        tracked.append((child, relation.foreign_key))
    child._state.parents.add("has_many", type(document)._meta.table_name, document, field)


# ── many-to-many ─────────────────────────────────────────────────────────────


def _save_many_to_many(document: Document, scope: CascadeScope) -> List[Any]:
    model = type(document)
    tasks = []
    for field, relation in _relations(model, ManyToMany):
        if not scope.selects(field, relation.target_table):
            continue
        scope.tables.add(relation.target_table)
        items = document._data.get(field)
        if not isinstance(items, list):
            continue
        for index, item in enumerate(items):
            # Bare keys only create links.
            if not isinstance(item, Mapping):
                continue
            child = promote(relation, item)
            items[index] = child
            tasks.append(save_document(child, scope.child(field)))
    return tasks


def _reconcile_links(document: Document, db: DocumentDatabase, scope: CascadeScope) -> List[Any]:
    """Insert link rows for new partners and delete rows for removed ones."""
    from .document import Document

    model = type(document)
    table = model._meta.table_name
    tasks = []

    for field, relation in _relations(model, ManyToMany):
        if not scope.requested(field):
            continue
        items = document._data.get(field)
        if not isinstance(items, list):
            continue
        own_value = document._data.get(relation.local_key)
        linked = document._state.links.setdefault(relation.link, {})

        wanted: Dict[Any, Optional[Document]] = {}
        for item in items:
            if isinstance(item, Document):
                if not item.is_saved():
                    continue
                key = item._data.get(relation.foreign_key)
                partner: Optional[Document] = item
            elif isinstance(item, Mapping):
                continue
            else:
                key, partner = item, None
            if key is not None and key not in wanted:
                wanted[key] = partner

        for key, partner in wanted.items():
            if partner is not None:
                partner._state.parents.add("many_to_many", table, document, field)
            if key in linked:
                if partner is not None:
                    linked[key] = partner
                continue
            scope.check("insert link")
            tasks.append(_insert_link(db, relation, own_value, key, partner, linked))

        removed = [key for key in linked if key not in wanted]
        if removed:
            for key in removed:
                partner = linked[key]
                if partner is not None:
                    partner._state.parents.remove("many_to_many", table, document, field)
            scope.check("delete links")
            tasks.append(_delete_links(db, relation, own_value, removed, linked))
    return tasks


async def _insert_link(
    db: DocumentDatabase,
    relation: ManyToMany,
    own_value: Any,
    key: Any,
    partner: Optional[Document],
    linked: Dict[Any, Optional[Document]],
) -> None:
    row = relation.link_row(own_value, key)
    result = await db.insert(relation.link, row, conflict="replace")
    _check(result, relation.link, "insert")
    linked[key] = partner


async def _delete_links(
    db: DocumentDatabase,
    relation: ManyToMany,
    own_value: Any,
    keys: Iterable[Any],
    linked: Dict[Any, Optional[Document]],
) -> None:
    keys = list(keys)
    ids = [relation.link_id(own_value, key) for key in keys]
    result = await db.delete_all(relation.link, *ids)
    _check(result, relation.link, "delete_all")
    for key in keys:
        linked.pop(key, None)


# ── documents marked saved ───────────────────────────────────────────────────


def track_saved_relations(document: Document) -> None:
    """
    Record the relation bookkeeping a save would have left behind.

    Used when a graph loaded from storage is marked saved: the caches on
    ``document`` only count saved partners, while every related document
    gets a back-reference to ``document``.
    """
    from .document import Document

    model = type(document)
    table = model._meta.table_name
    state = document._state

    for field, relation in model._meta.relations.items():
        if not relation.is_resolved:
            continue
        value = document._data.get(field)
        if value is None:
            continue

        if isinstance(relation, HasOne):
            if not isinstance(value, Document):
                continue
            if value.is_saved():
                state.has_one[field] = (value, relation.foreign_key)
            value._state.parents.add("has_one", table, document, field)

        elif isinstance(relation, BelongsTo):
            if not isinstance(value, Document):
                continue
            state.belongs_to[field] = value
            value._state.parents.add("belongs_to", table, document, field, relation.local_key)

        elif isinstance(relation, HasMany):
            if not isinstance(value, list):
                continue
            tracked = state.has_many[field] = []
            for child in value:
                if not isinstance(child, Document):
                    continue
                if child.is_saved():
                    tracked.append((child, relation.foreign_key))
                child._state.parents.add("has_many", table, document, field)

        elif isinstance(relation, ManyToMany):
            if not isinstance(value, list):
                continue
            linked = state.links.setdefault(relation.link, {})
            for partner in value:
                if not isinstance(partner, Document):
                    continue
                if partner.is_saved():
                    key = partner._data.get(relation.foreign_key)
                    if key is not None:
                        linked[key] = partner
                partner._state.parents.add("many_to_many", table, document, field)


# ── batch insert ─────────────────────────────────────────────────────────────


async def save_batch(
    model: Type[Document],
    documents: Iterable[Any],
    *,
    conflict: str = "error",
) -> List[Document]:
    """
    Insert many documents of ``model`` with a single write.

    Every document is validated before anything is written; one invalid
    document fails the whole batch.
    """
    meta = model._meta
    batch = [item if isinstance(item, model) else model(dict(item)) for item in documents]

    for document in batch:
        document.generate_defaults()
        try:
            pending = validate(document)
            if pending is not None:
                await pending
        except ValidationError as exc:
            raise ValidationError(
                BATCH_ERROR_PREFIX + exc.message,
                path=exc.path,
                document=document,
            ) from exc

    db = model.get_database()
    await db.ensure_model(model)
    for document in batch:
        await document_saving.send(model, document=document)

    copies = [make_savable_copy(document) for document in batch]
    result = await db.insert(meta.table_name, copies, conflict=conflict)
    _check(result, meta.table_name, "insert")

    generated = iter(result.generated_keys)
    by_key = {
        _key_of(change.new_val, meta.pk): change
        for change in result.changes
        if change.new_val is not None
    }
    for document, savable in zip(batch, copies):
        key = savable.get(meta.pk)
        if key is None:
            key = next(generated, None)
        change = by_key.get(_key_of({meta.pk: key}, meta.pk))
        if change is not None:
            document._merge(change.new_val)
            document._state.old_value = copy.deepcopy(change.old_val)
        elif key is not None:
            document._data[meta.pk] = key
        document._set_saved_flag(True)
        await document_saved.send(model, document=document)
    logger.debug(f"Batch inserted {len(batch)} {model.__name__} document(s)")
    return batch


def _key_of(row: Mapping[str, Any], pk: str) -> Any:
    key = row.get(pk)
    return repr(key) if isinstance(key, (list, dict)) else key
