"""
Savable-copy projector.

Turns a live document into a plain value ready to be written: relation
fields, virtual fields and (under ``enforce_extra="remove"``) unknown fields
are stripped, and typed scalars are coerced. The projection is pure; default
and virtual generation happen before it is called.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from .fields import (
    UNSET,
    ArrayField,
    DateField,
    Field,
    NumberField,
    ObjectField,
    PointField,
    SchemaOptions,
    parse_datetime,
    parse_point,
)

if TYPE_CHECKING:
    from .document import Document, Options

__all__ = ["make_savable_copy", "project_mapping", "project_value"]


class _Omit:
    def __repr__(self):
        return "OMIT"


OMIT = _Omit()


def make_savable_copy(document: Document) -> Dict[str, Any]:
    """Project ``document`` using its model schema and effective options."""
    meta = document._meta
    return project_mapping(document._data, meta.fields, document.effective_options(), meta)


def project_mapping(
    data: Mapping[str, Any],
    fields: Mapping[str, Field],
    options: SchemaOptions,
    meta: Optional[Options] = None,
) -> Dict[str, Any]:
    """
    Copy ``data`` field by field.

    ``meta`` is only given at the top level of a document: it names the
    relation fields to strip and the local keys that are always kept.
    """
    result: Dict[str, Any] = {}
    for key, value in data.items():
        field = fields.get(key)
        if meta is not None and key in meta.local_keys:
            result[key] = project_value(value, field, options)
            continue
        if meta is not None and key in meta.relations:
            continue
        if field is not None and field.is_virtual:
            continue
        if field is None and options.enforce_extra == "remove":
            continue
        projected = project_value(value, field, options)
        if projected is not OMIT:
            result[key] = projected
    return result


def project_value(value: Any, field: Optional[Field], options: SchemaOptions) -> Any:
    if field is None:
        return _plain(value)
    options = field.local_options(options)

    if isinstance(field, DateField):
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            parsed = parse_datetime(value)
            return value if parsed is UNSET else parsed
        return value

    if isinstance(field, PointField):
        parsed = parse_point(value)
        return _plain(value) if parsed is UNSET else parsed

    if isinstance(field, NumberField):
        if isinstance(value, str):
            try:
                number = float(value)
            except ValueError:
                return value
            return number if math.isfinite(number) else value
        return value

    if isinstance(field, ObjectField) and isinstance(value, Mapping):
        return project_mapping(value, field.fields, options)

    if isinstance(field, ArrayField) and isinstance(value, (list, tuple)):
        if field.of is not None and field.of.is_virtual:
            return OMIT
        items = []
        for item in value:
            projected = project_value(item, field.of, options)
            if projected is not OMIT:
                items.append(projected)
        return items

    return _plain(value)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, bytearray):
        return bytes(value)
    return value
