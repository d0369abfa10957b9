"""
Validation gate.

Runs the custom validator and the schema over a document and, per the
cascade scope, over the related documents it holds. Validation is
synchronous unless the model or a document it will reach declares async
validation; a dry run (``is_async``) decides which path to take before any
validator runs, so callers get ``None`` or an awaitable.
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Iterator, List, Mapping, Optional, Tuple

from ..faults import ValidationError
from .cascade import CascadeScope
from .fields import UNSET
from .relations import Relation

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger("docmapper.models.validation")

__all__ = ["validate", "is_async", "validate_self", "BATCH_ERROR_PREFIX"]

BATCH_ERROR_PREFIX = "One of the documents is not valid. Original error:\n"


def validate(
    document: Document,
    options: Optional[Mapping[str, Any]] = None,
    targets: Optional[Mapping[str, Any]] = None,
    *,
    cascade: bool = False,
    scope: Optional[CascadeScope] = None,
    prefix: str = "",
) -> Optional[Awaitable[None]]:
    """
    Validate ``document``.

    Returns None when everything ran synchronously, otherwise an awaitable
    that performs the validation.
    """
    if scope is None:
        scope = CascadeScope.for_call(targets, cascade=cascade)
    dry_run = CascadeScope(scope.targets, scope.recurse_all, tables=set(scope.tables))
    if is_async(document, dry_run):
        return _validate_async(document, options, scope, prefix)
    _validate_sync(document, options, scope, prefix)
    return None


def is_async(document: Document, scope: CascadeScope) -> bool:
    """Dry run: will validating ``document`` within ``scope`` need to await?"""
    from .document import Document

    model = type(document)
    if model._meta.validates_async:
        return True
    scope.tables.add(model._meta.table_name)
    for field, relation in _selected(model, scope):
        child_scope = scope.child(field)
        for child in _iter_related(document._data.get(field), relation):
            if isinstance(child, Document):
                if is_async(child, child_scope):
                    return True
            elif isinstance(child, Mapping) and relation.target._meta.validates_async:
                return True
    return False


def validate_self(document: Document, options: Optional[Mapping[str, Any]], prefix: str = "") -> Any:
    """
    Custom validator plus schema validation of ``document`` alone.

    Returns the validator's result so async validators can be awaited.
    """
    meta = document._meta
    effective = document.effective_options(options)
    try:
        meta.schema.validate_mapping(document._data, prefix, effective, skip=meta.unchecked_keys)
    except ValidationError as exc:
        if exc.document is None:
            exc.document = document
        raise
    if meta.validator is None:
        return None
    return meta.validator(document)


def _check_validator_result(document: Document, result: Any) -> None:
    if result is False:
        raise ValidationError("Document's validator returned `False`.", document=document)


def _validate_sync(
    document: Document,
    options: Optional[Mapping[str, Any]],
    scope: CascadeScope,
    prefix: str,
) -> None:
    model = type(document)
    model._meta.hooks.run_sync("pre", "validate", document)
    _check_validator_result(document, validate_self(document, options, prefix))
    scope.tables.add(model._meta.table_name)
    for field, relation in _selected(model, scope):
        child_scope = scope.child(field)
        for child, path in _related_documents(document, field, relation, prefix):
            _validate_sync(child, None, child_scope, path)
    model._meta.hooks.run_sync("post", "validate", document)


async def _validate_async(
    document: Document,
    options: Optional[Mapping[str, Any]],
    scope: CascadeScope,
    prefix: str,
) -> None:
    model = type(document)
    await model._meta.hooks.run("pre", "validate", document)
    result = validate_self(document, options, prefix)
    if inspect.isawaitable(result):
        result = await result
    _check_validator_result(document, result)
    scope.tables.add(model._meta.table_name)
    for field, relation in _selected(model, scope):
        child_scope = scope.child(field)
        for child, path in _related_documents(document, field, relation, prefix):
            await _validate_async(child, None, child_scope, path)
    await model._meta.hooks.run("post", "validate", document)


# ── Relation traversal ──────────────────────────────────────────────────────


def _selected(model: type, scope: CascadeScope) -> List[Tuple[str, Relation]]:
    """Relation fields to recurse into, decided before any child runs."""
    return [
        (field, relation)
        for field, relation in model._meta.relations.items()
        if relation.is_resolved and scope.selects(field, relation.target_table)
    ]


def _iter_related(value: Any, relation: Relation) -> Iterator[Any]:
    if value is None or value is UNSET:
        return
    if relation.many:
        if isinstance(value, (list, tuple)):
            yield from value
    else:
        yield value


def _related_documents(
    document: Document,
    field: str,
    relation: Relation,
    prefix: str,
) -> Iterator[Tuple[Document, str]]:
    """
    Yield the related documents of ``field`` with their paths.

    Plain mappings are promoted to documents of the target model in place;
    bare keys in a many-to-many list are skipped.
    """
    from .document import Document

    path = f"{prefix}[{field}]"
    value = document._data.get(field)
    if value is None:
        return

    if not relation.many:
        if isinstance(value, Document):
            yield value, path
        elif isinstance(value, Mapping):
            child = relation.target(value)
            document._data[field] = child
            yield child, path
        else:
            raise ValidationError(
                f"Joined field {path} should be None, a mapping or a document.",
                path=path,
                document=document,
            )
        return

    if not isinstance(value, list):
        raise ValidationError(
            f"Joined field {path} should be None or a list.",
            path=path,
            document=document,
        )
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if isinstance(item, Document):
            yield item, item_path
        elif isinstance(item, Mapping):
            child = relation.target(item)
            value[index] = child
            yield child, item_path
        elif relation.kind != "many_to_many":
            raise ValidationError(
                f"Element {item_path} should be a mapping or a document.",
                path=item_path,
                document=document,
            )
