"""
docmapper Fields — schema declarations consumed by validation and projection.

Every field answers two questions: does a value pass (``validate``) and what
default should be generated when the value is missing (``get_default``).

Usage:
    from docmapper.models.fields import StringField, NumberField, VirtualField

    class Product(Document):
        id = StringField(primary_key=True)
        price = NumberField(min_value=0)
        label = VirtualField(default=lambda doc: f"{doc.id}:{doc.price}")
"""

from __future__ import annotations

import copy
import datetime
import math
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from ..faults import ValidationError
from .geo import Geometry, Point

__all__ = [
    "UNSET",
    "SchemaOptions",
    "Field",
    "AnyField",
    "StringField",
    "NumberField",
    "IntegerField",
    "BooleanField",
    "DateField",
    "PointField",
    "BinaryField",
    "ObjectField",
    "ArrayField",
    "VirtualField",
    "parse_datetime",
    "parse_point",
    "generate_defaults",
    "generate_virtuals",
]


class _Unset:
    """Sentinel for a missing value (distinct from None)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET: Any = _Unset()

_ENFORCE_EXTRA = ("none", "strict", "remove")
_ENFORCE_TYPE = ("strict", "loose", "none")


@dataclass(frozen=True)
class SchemaOptions:
    """
    Effective enforcement policy for one level of a schema.

    enforce_missing – missing fields are errors
    enforce_extra   – "none" keeps unknown fields, "strict" rejects them,
                      "remove" drops them from the savable copy
    enforce_type    – "strict", "loose" or "none"
    """

    enforce_missing: bool = False
    enforce_extra: str = "none"
    enforce_type: str = "loose"

    def __post_init__(self):
        if self.enforce_extra not in _ENFORCE_EXTRA:
            raise ValueError(f"enforce_extra must be one of {_ENFORCE_EXTRA}")
        if self.enforce_type not in _ENFORCE_TYPE:
            raise ValueError(f"enforce_type must be one of {_ENFORCE_TYPE}")

    def merge(self, overrides: Optional[Mapping[str, Any]]) -> SchemaOptions:
        """Return a copy with the non-None entries of ``overrides`` applied."""
        if not overrides:
            return self
        if isinstance(overrides, SchemaOptions):
            overrides = overrides.as_dict()
        changes = {
            key: overrides[key]
            for key in ("enforce_missing", "enforce_extra", "enforce_type")
            if overrides.get(key) is not None
        }
        return replace(self, **changes) if changes else self

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enforce_missing": self.enforce_missing,
            "enforce_extra": self.enforce_extra,
            "enforce_type": self.enforce_type,
        }


# ── Coercion helpers (shared with the projector) ────────────────────────────


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def parse_datetime(value: Any) -> Any:
    """
    Parse ``value`` into an aware datetime.

    Numbers and numeric strings are epoch milliseconds; other strings are
    ISO 8601. Returns UNSET when the value cannot be parsed.
    """
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, bool):
        return UNSET
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            try:
                parsed = datetime.datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return UNSET
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=datetime.timezone.utc)
            return parsed
    if _is_number(value):
        try:
            return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.timezone.utc)
        except (OverflowError, OSError, ValueError):
            return UNSET
    return UNSET


def parse_point(value: Any) -> Any:
    """
    Convert ``value`` into a native geo value.

    Accepts ``{latitude, longitude}`` mappings, ``[longitude, latitude]``
    pairs and GeoJSON points. Returns UNSET for anything else.
    """
    if isinstance(value, (Point, Geometry)):
        return value
    if isinstance(value, Mapping):
        keys = sorted(value.keys())
        if keys == ["latitude", "longitude"] and _is_number(value["latitude"]) and _is_number(value["longitude"]):
            return Point(longitude=value["longitude"], latitude=value["latitude"])
        coordinates = value.get("coordinates")
        if value.get("type") == "Point" and isinstance(coordinates, (list, tuple)) and len(coordinates) == 2:
            return Geometry(dict(value))
        return UNSET
    if isinstance(value, (list, tuple)) and len(value) == 2 and all(_is_number(v) for v in value):
        return Point(longitude=value[0], latitude=value[1])
    return UNSET


# ═══════════════════════════════════════════════════════════════════════════════
# Base field
# ═══════════════════════════════════════════════════════════════════════════════


class Field:
    """
    Base schema field.

    Options:
        required    – Value must be present
        null        – Accept None (default: accepted unless enforce_type is "strict")
        default     – Default value or zero-argument callable
        validators  – Callables; returning False or raising ValueError rejects
        primary_key – Mark as the model's primary key
        enforce_*   – Override the inherited SchemaOptions for this subtree
    """

    _field_type: str = "any"
    _expected: str = "a value"
    is_virtual: bool = False

    def __init__(
        self,
        *,
        required: bool = False,
        null: Optional[bool] = None,
        default: Any = UNSET,
        validators: Optional[List[Callable[[Any], Any]]] = None,
        primary_key: bool = False,
        enforce_missing: Optional[bool] = None,
        enforce_extra: Optional[str] = None,
        enforce_type: Optional[str] = None,
    ):
        self.required = required
        self.null = null
        self.default = default
        self.validators = list(validators or [])
        self.primary_key = primary_key
        self.overrides = {
            "enforce_missing": enforce_missing,
            "enforce_extra": enforce_extra,
            "enforce_type": enforce_type,
        }
        self.name: str = ""

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.name}>"

    def has_default(self) -> bool:
        return self.default is not UNSET

    def get_default(self, document: Any = None) -> Any:
        """Get default value, calling it if callable."""
        if self.default is UNSET:
            return UNSET
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)

    def local_options(self, inherited: SchemaOptions) -> SchemaOptions:
        return inherited.merge(self.overrides)

    def allows_null(self, options: SchemaOptions) -> bool:
        if self.null is not None:
            return self.null
        return options.enforce_type != "strict"

    def validate(self, value: Any, path: str, options: SchemaOptions) -> None:
        """Raise ValidationError if ``value`` does not satisfy this field."""
        options = self.local_options(options)
        if value is UNSET:
            if self.required or options.enforce_missing:
                raise ValidationError(f"Value for {path} must be defined.", path=path)
            return
        if value is None:
            if self.allows_null(options):
                return
            raise ValidationError(f"Value for {path} must be {self._expected}.", path=path)
        if options.enforce_type != "none":
            self.check_type(value, path, options)
        self.run_validators(value, path)

    def type_error(self, path: str, options: SchemaOptions) -> ValidationError:
        suffix = " or None" if self.allows_null(options) else ""
        return ValidationError(f"Value for {path} must be {self._expected}{suffix}.", path=path)

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        """Override in subclasses for type-specific checks."""

    def run_validators(self, value: Any, path: str) -> None:
        for validator in self.validators:
            try:
                result = validator(value)
            except ValidationError:
                raise
            except ValueError as exc:
                raise ValidationError(f"Validator for the field {path} failed: {exc}", path=path) from exc
            if result is False:
                raise ValidationError(f"Validator for the field {path} returned `False`.", path=path)


class AnyField(Field):
    """Accepts any value."""


# ═══════════════════════════════════════════════════════════════════════════════
# Scalar fields
# ═══════════════════════════════════════════════════════════════════════════════


class StringField(Field):
    _field_type = "string"
    _expected = "a string"

    def __init__(
        self,
        *,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        choices: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.min_length = min_length
        self.max_length = max_length
        self.choices = list(choices) if choices is not None else None

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if not isinstance(value, str):
            raise self.type_error(path, options)
        if self.min_length is not None and len(value) < self.min_length:
            raise ValidationError(
                f"Value for {path} must be at least {self.min_length} characters.", path=path
            )
        if self.max_length is not None and len(value) > self.max_length:
            raise ValidationError(
                f"Value for {path} must be at most {self.max_length} characters.", path=path
            )
        if self.choices is not None and value not in self.choices:
            raise ValidationError(
                f"Value for {path} must be one of {self.choices}.", path=path
            )


class NumberField(Field):
    _field_type = "number"
    _expected = "a finite number"

    def __init__(
        self,
        *,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        integer: bool = False,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.min_value = min_value
        self.max_value = max_value
        self.integer = integer

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        number = value
        if isinstance(value, str) and options.enforce_type == "loose":
            try:
                number = float(value)
            except ValueError:
                raise self.type_error(path, options)
        if not _is_number(number):
            raise self.type_error(path, options)
        if self.integer and float(number) != int(number):
            raise ValidationError(f"Value for {path} must be an integer.", path=path)
        if self.min_value is not None and number < self.min_value:
            raise ValidationError(
                f"Value for {path} must be greater than or equal to {self.min_value}.", path=path
            )
        if self.max_value is not None and number > self.max_value:
            raise ValidationError(
                f"Value for {path} must be less than or equal to {self.max_value}.", path=path
            )


class IntegerField(NumberField):
    _field_type = "integer"
    _expected = "an integer"

    def __init__(self, **kwargs: Any):
        kwargs.setdefault("integer", True)
        super().__init__(**kwargs)


class BooleanField(Field):
    _field_type = "boolean"
    _expected = "a boolean"

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if not isinstance(value, bool):
            raise self.type_error(path, options)


class DateField(Field):
    _field_type = "date"
    _expected = "a datetime"

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if isinstance(value, datetime.datetime):
            return
        if options.enforce_type == "loose" and not isinstance(value, bool):
            if isinstance(value, (str, int, float)) and parse_datetime(value) is not UNSET:
                return
        raise self.type_error(path, options)


class PointField(Field):
    _field_type = "point"
    _expected = "a point"

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if isinstance(value, (Point, Geometry)):
            return
        if options.enforce_type == "loose" and parse_point(value) is not UNSET:
            return
        raise self.type_error(path, options)


class BinaryField(Field):
    _field_type = "binary"
    _expected = "bytes"

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise self.type_error(path, options)


# ═══════════════════════════════════════════════════════════════════════════════
# Structural fields
# ═══════════════════════════════════════════════════════════════════════════════


class ObjectField(Field):
    """A nested mapping with its own schema."""

    _field_type = "object"
    _expected = "an object"

    def __init__(self, schema: Optional[Mapping[str, Field]] = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.fields: Dict[str, Field] = dict(schema or {})
        for key, field in self.fields.items():
            field.__set_name__(self, key)

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if not isinstance(value, Mapping):
            raise self.type_error(path, options)
        self.validate_mapping(value, path, options)

    def validate_mapping(
        self,
        value: Mapping[str, Any],
        prefix: str,
        options: SchemaOptions,
        skip: Iterable[str] = (),
    ) -> None:
        """Validate the keys of ``value`` against this schema."""
        skip = set(skip)
        for key, field in self.fields.items():
            if key in skip:
                continue
            field.validate(value.get(key, UNSET), f"{prefix}[{key}]", options)
        if options.enforce_extra == "strict":
            for key in value:
                if key not in self.fields and key not in skip:
                    raise ValidationError(
                        f"Extra field `{prefix}[{key}]` not allowed.", path=f"{prefix}[{key}]"
                    )


class ArrayField(Field):
    """A list whose elements share one schema."""

    _field_type = "array"
    _expected = "an array"

    def __init__(
        self,
        of: Optional[Field] = None,
        *,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.of = of
        self.min_length = min_length
        self.max_length = max_length

    def check_type(self, value: Any, path: str, options: SchemaOptions) -> None:
        if not isinstance(value, (list, tuple)):
            raise self.type_error(path, options)
        if self.min_length is not None and len(value) < self.min_length:
            raise ValidationError(f"Value for {path} must have at least {self.min_length} elements.", path=path)
        if self.max_length is not None and len(value) > self.max_length:
            raise ValidationError(f"Value for {path} must have at most {self.max_length} elements.", path=path)
        if self.of is not None:
            for index, item in enumerate(value):
                self.of.validate(item, f"{path}[{index}]", options)


class VirtualField(Field):
    """
    A computed field that is never written to storage.

    ``default`` receives the document and is re-evaluated after defaults are
    generated and after every merge from storage.
    """

    _field_type = "virtual"
    is_virtual = True

    def get_default(self, document: Any = None) -> Any:
        if self.default is UNSET:
            return UNSET
        if callable(self.default):
            return self.default(document)
        return copy.deepcopy(self.default)

    def validate(self, value: Any, path: str, options: SchemaOptions) -> None:
        return None


# ── Default / virtual generation ─────────────────────────────────────────────


def generate_defaults(target: MutableMapping[str, Any], fields: Mapping[str, Field]) -> None:
    """Fill missing non-virtual fields of ``target`` with their defaults."""
    for key, field in fields.items():
        if field.is_virtual:
            continue
        if key not in target and field.has_default():
            target[key] = field.get_default()
        value = target.get(key)
        if isinstance(field, ObjectField) and isinstance(value, MutableMapping):
            generate_defaults(value, field.fields)
        elif isinstance(field, ArrayField) and isinstance(field.of, ObjectField) and isinstance(value, list):
            for item in value:
                if isinstance(item, MutableMapping):
                    generate_defaults(item, field.of.fields)


def generate_virtuals(
    target: MutableMapping[str, Any],
    fields: Mapping[str, Field],
    document: Any,
    restore: Optional[Mapping[str, Any]] = None,
) -> None:
    """
    Regenerate virtual fields of ``target``.

    Virtual fields without a default get their value back from ``restore``.
    Nested virtual fields are only generated when their parent exists.
    """
    restore = restore or {}
    for key, field in fields.items():
        if field.is_virtual:
            value = field.get_default(document)
            if value is not UNSET:
                target[key] = value
            elif key in restore:
                target[key] = copy.deepcopy(restore[key])
        elif isinstance(field, ObjectField) and isinstance(target.get(key), MutableMapping):
            nested = restore.get(key)
            generate_virtuals(
                target[key], field.fields, document,
                nested if isinstance(nested, Mapping) else None,
            )
