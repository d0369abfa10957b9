"""
docmapper Document — the model base class.

Declare a model by subclassing ``Document``:

    class User(Document):
        table = "users"
        id = StringField(primary_key=True)
        name = StringField(required=True)
        posts = HasMany("Post")

        class Meta:
            enforce_extra = "remove"

Documents are mutable mappings over their field values. Everything else a
document tracks (saved flag, old value, relation caches, back-references and
its change feed) lives in ``DocumentState`` outside the field map.
"""

from __future__ import annotations

import copy
import inspect
import logging
from abc import ABCMeta
from collections.abc import Mapping, MutableMapping
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type

from ..config import get_config
from ..faults import ConstraintError, DocumentNotFoundError
from .backrefs import BackReferenceIndex
from .cascade import CancellationToken, CascadeScope
from .fields import AnyField, Field, ObjectField, SchemaOptions, generate_defaults, generate_virtuals
from .hooks import HookRegistry
from .relations import BelongsTo, HasMany, HasOne, ManyToMany, Relation, check_target
from .registry import ModelRegistry
from .signals import NOTIFICATIONS, document_retrieved, model_prepared

logger = logging.getLogger("docmapper.models.document")

__all__ = ["Document", "DocumentMeta", "DocumentState", "Options"]


class Options:
    """
    Parsed model options from the inner ``Meta`` class.

    Attributes:
        table_name: Storage table name
        pk: Primary key field name
        fields: Schema fields by name
        relations: Relations declared on the model
        reverse_relations: Relations of other models targeting this one
        hooks: Pre/post hooks
        validator: Custom document validator (sync or async)
        schema_options: Model level enforce_* overrides
        indexes: Secondary indexes (name -> multi)
        abstract: Abstract models are never registered nor stored
    """

    def __init__(
        self,
        model_name: str,
        meta: Optional[type] = None,
        table_attr: Optional[str] = None,
    ):
        self.model_name = model_name
        self.table_name: str = table_attr or (
            getattr(meta, "table", None) or getattr(meta, "table_name", None)
            if meta else None
        ) or model_name.lower()
        self.abstract: bool = getattr(meta, "abstract", False) if meta else False
        self.validator: Optional[Callable[[Any], Any]] = getattr(meta, "validator", None) if meta else None
        self.schema_options: Dict[str, Any] = {
            key: getattr(meta, key, None) if meta else None
            for key in ("enforce_missing", "enforce_extra", "enforce_type")
        }
        indexes = getattr(meta, "indexes", ()) if meta else ()
        if isinstance(indexes, Mapping):
            self.indexes: Dict[str, bool] = dict(indexes)
        else:
            self.indexes = {name: False for name in indexes}

        self.pk: str = "id"
        self.fields: Dict[str, Field] = {}
        self.relations: Dict[str, Relation] = {}
        self.reverse_relations: List[Relation] = []
        self.hooks = HookRegistry(model_name)
        self._schema: Optional[ObjectField] = None

    @property
    def schema(self) -> ObjectField:
        if self._schema is None:
            self._schema = ObjectField(self.fields)
        return self._schema

    @property
    def local_keys(self) -> List[str]:
        """Keys this model stores for relations (always kept when saving)."""
        keys = [
            relation.local_key
            for relation in self.relations.values()
            if relation.kind == "belongs_to" and relation.is_resolved
        ]
        for relation in self.reverse_relations:
            if relation.kind in ("has_one", "has_many") and relation.foreign_key not in keys:
                keys.append(relation.foreign_key)
        return keys

    @property
    def unchecked_keys(self) -> List[str]:
        """Keys the schema does not validate: relation fields and undeclared local keys."""
        keys = list(self.relations)
        keys.extend(key for key in self.local_keys if key not in self.fields)
        return keys

    @property
    def validates_async(self) -> bool:
        return (
            inspect.iscoroutinefunction(self.validator)
            or self.hooks.is_async("pre", "validate")
            or self.hooks.is_async("post", "validate")
        )

    def __repr__(self) -> str:
        return f"<Options: {self.model_name} table='{self.table_name}'>"


class DocumentMeta(ABCMeta):
    """
    Metaclass for docmapper documents.

    Handles:
    - Field and relation collection (inherited from parent models)
    - Auto-PK injection (AnyField named "id")
    - Meta class parsing -> Options
    - Reserved-name checks
    - Model registration in ModelRegistry
    """

    def __new__(mcs, name: str, bases: Tuple[type, ...], namespace: Dict[str, Any], **kwargs):
        # Don't process the base Document class itself
        parents = [b for b in bases if isinstance(b, DocumentMeta) and hasattr(b, "_meta")]
        if not any(isinstance(b, DocumentMeta) for b in bases):
            return super().__new__(mcs, name, bases, namespace)

        meta_class = namespace.pop("Meta", None)
        table_attr = namespace.get("table")
        if isinstance(table_attr, str):
            namespace.pop("table")
        else:
            table_attr = None

        opts = Options(name, meta_class, table_attr)
        inherited_relations: Dict[str, Relation] = {}
        for parent in parents:
            opts.fields.update(parent._meta.fields)
            inherited_relations.update(parent._meta.relations)
            for index, multi in parent._meta.indexes.items():
                opts.indexes.setdefault(index, multi)
            opts.hooks.inherit(parent._meta.hooks)
            if opts.validator is None:
                opts.validator = parent._meta.validator
            for key, value in parent._meta.schema_options.items():
                if opts.schema_options[key] is None:
                    opts.schema_options[key] = value

        new_relations: Dict[str, Relation] = {}
        for key, value in list(namespace.items()):
            if isinstance(value, Field):
                opts.fields[key] = namespace.pop(key)
            elif isinstance(value, Relation):
                new_relations[key] = namespace.pop(key)

        for key in list(opts.fields) + list(new_relations):
            _check_name(name, key)

        if not any(field.primary_key for field in opts.fields.values()):
            if "id" in opts.fields:
                raise ConstraintError(name, "field 'id' must be the primary key when none is declared")
            opts.fields = {"id": AnyField(primary_key=True), **opts.fields}
        for key, field in opts.fields.items():
            field.__set_name__(None, key)
        opts.pk = next(key for key, field in opts.fields.items() if field.primary_key)

        cls = super().__new__(mcs, name, bases, namespace)
        cls._meta = opts

        for key, relation in inherited_relations.items():
            relation = copy.copy(relation)
            relation.reverse_registered = False
            relation.bind(cls, key)
            opts.relations[key] = relation
        for key, relation in new_relations.items():
            check_target(cls, relation.to)
            relation.bind(cls, key)
            opts.relations[key] = relation

        if not opts.abstract:
            ModelRegistry.register(cls)
            model_prepared.send_sync(sender=cls)
        return cls

    @property
    def table_name(cls) -> str:
        return cls._meta.table_name

    @property
    def pk(cls) -> str:
        return cls._meta.pk


_RESERVED: frozenset = frozenset()


def _check_name(model: str, key: str) -> None:
    if key.startswith("_") or key in _RESERVED:
        raise ConstraintError(model, f"'{key}' is a reserved name")


class DocumentState:
    """Private per-document state kept outside the field map."""

    __slots__ = (
        "saved",
        "old_value",
        "options",
        "belongs_to",
        "has_one",
        "has_many",
        "links",
        "parents",
        "feed",
        "feed_task",
        "feed_active",
    )

    def __init__(self, options: Optional[Mapping[str, Any]] = None, saved: bool = False):
        self.saved = saved
        self.old_value: Optional[Dict[str, Any]] = None
        self.options = options
        # field -> parent document whose key this document stores
        self.belongs_to: Dict[str, Any] = {}
        # field -> (child, foreign key) last saved through the field
        self.has_one: Dict[str, Tuple[Any, str]] = {}
        self.has_many: Dict[str, List[Tuple[Any, str]]] = {}
        # link table -> partner key -> partner document (None for bare keys)
        self.links: Dict[str, Dict[Any, Any]] = {}
        self.parents = BackReferenceIndex()
        self.feed = None
        self.feed_task = None
        self.feed_active = False


class Document(MutableMapping, metaclass=DocumentMeta):
    """
    Base class for all docmapper documents.

    Usage:
        user = User(name="Ada", posts=[{"title": "Notes"}])
        await user.save_all()
        same = await User.fetch(user.id)
    """

    _meta: Options

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        /,
        *,
        options: Optional[Mapping[str, Any]] = None,
        saved: bool = False,
        **fields: Any,
    ):
        if data is not None and not isinstance(data, Mapping):
            raise TypeError(f"{type(self).__name__} expects a mapping, got {type(data).__name__}")
        object.__setattr__(self, "_data", {})
        object.__setattr__(self, "_state", DocumentState(options, saved))
        for source in (data or {}, fields):
            for key, value in source.items():
                self._data[key] = value
        self._promote_related()
        self.generate_defaults()

    def _promote_related(self) -> None:
        for field, relation in self._meta.relations.items():
            value = self._data.get(field)
            if not relation.is_resolved or value is None:
                continue
            target = relation.target
            if relation.many and isinstance(value, list):
                for index, item in enumerate(value):
                    if isinstance(item, Mapping) and not isinstance(item, Document):
                        value[index] = target(item)
            elif not relation.many and isinstance(value, Mapping) and not isinstance(value, Document):
                self._data[field] = target(value)

    # ── Attribute access ─────────────────────────────────────────────

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        data = self.__dict__.get("_data", {})
        if name in data:
            return data[name]
        meta = type(self)._meta
        if name in meta.fields or name in meta.relations:
            return None
        raise AttributeError(f"'{type(self).__name__}' document has no field '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_") or hasattr(type(self), name):
            object.__setattr__(self, name, value)
        else:
            self._data[name] = value

    def __delattr__(self, name: str) -> None:
        if name in self._data:
            del self._data[name]
        else:
            object.__delattr__(self, name)

    # ── Mapping protocol ─────────────────────────────────────────────

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: Any) -> bool:
        return self is other

    def __ne__(self, other: Any) -> bool:
        return self is not other

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        meta = type(self)._meta
        return f"<{type(self).__name__}: {meta.pk}={self._data.get(meta.pk)!r}>"

    # ── Relation binding ─────────────────────────────────────────────

    @classmethod
    def _bind_relation(cls, relation: Relation, field: str) -> Relation:
        meta = cls._meta
        _check_name(cls.__name__, field)
        if field in meta.relations or field in meta.fields:
            raise ConstraintError(cls.__name__, f"field '{field}' is already bound")
        check_target(cls, relation.to)
        relation.bind(cls, field)
        meta.relations[field] = relation
        ModelRegistry.resolve_relations()

        db = ModelRegistry.get_database()
        db.invalidate(cls)
        if relation.is_resolved:
            db.invalidate(relation.target)
        logger.debug(f"Bound {relation!r} on {cls.__name__}")
        return relation

    @classmethod
    def has_one(cls, target: Any, field: str, local_key: Optional[str] = None,
                foreign_key: Optional[str] = None) -> Relation:
        return cls._bind_relation(HasOne(target, local_key=local_key, foreign_key=foreign_key), field)

    @classmethod
    def belongs_to(cls, target: Any, field: str, local_key: Optional[str] = None,
                   foreign_key: Optional[str] = None) -> Relation:
        return cls._bind_relation(BelongsTo(target, local_key=local_key, foreign_key=foreign_key), field)

    @classmethod
    def has_many(cls, target: Any, field: str, local_key: Optional[str] = None,
                 foreign_key: Optional[str] = None) -> Relation:
        return cls._bind_relation(HasMany(target, local_key=local_key, foreign_key=foreign_key), field)

    @classmethod
    def many_to_many(cls, target: Any, field: str, local_key: Optional[str] = None,
                     foreign_key: Optional[str] = None, link: Optional[str] = None) -> Relation:
        relation = ManyToMany(target, local_key=local_key, foreign_key=foreign_key, link=link)
        return cls._bind_relation(relation, field)

    # ── Hooks, notifications, extensions ─────────────────────────────

    @classmethod
    def pre(cls, event: str, fn: Optional[Callable[[Any], Any]] = None):
        """Register a pre hook; usable as ``@Model.pre("save")``."""
        if fn is not None:
            return cls._meta.hooks.add("pre", event, fn)
        return lambda hook: cls._meta.hooks.add("pre", event, hook)

    @classmethod
    def post(cls, event: str, fn: Optional[Callable[[Any], Any]] = None):
        """Register a post hook; usable as ``@Model.post("delete")``."""
        if fn is not None:
            return cls._meta.hooks.add("post", event, fn)
        return lambda hook: cls._meta.hooks.add("post", event, hook)

    @classmethod
    def on(cls, notification: str, fn: Optional[Callable] = None):
        """Listen to ``saving``, ``saved``, ``deleted``, ``change``, ``error`` or ``retrieved``."""
        signal = NOTIFICATIONS.get(notification)
        if signal is None:
            raise ConstraintError(
                cls.__name__,
                f"unknown notification '{notification}', expected one of {sorted(NOTIFICATIONS)}",
            )
        return signal.connect(fn, sender=cls)

    @classmethod
    def define(cls, name: str, fn: Callable) -> None:
        """Add an instance method."""
        cls._extend(name, fn)

    @classmethod
    def define_static(cls, name: str, fn: Callable) -> None:
        """Add a static method."""
        cls._extend(name, staticmethod(fn))

    @classmethod
    def _extend(cls, name: str, value: Any) -> None:
        if hasattr(cls, name) or name in cls._meta.fields or name in cls._meta.relations:
            raise ConstraintError(cls.__name__, f"'{name}' is already defined")
        setattr(cls, name, value)

    # ── Storage (class level) ────────────────────────────────────────

    @classmethod
    def get_database(cls):
        return ModelRegistry.get_database()

    @classmethod
    def _from_row(cls, row: Mapping[str, Any]) -> Document:
        document = cls(copy.deepcopy(dict(row)), saved=True)
        document._state.old_value = copy.deepcopy(dict(row))
        return document

    @classmethod
    async def fetch(cls, key: Any) -> Document:
        """Load the document stored under ``key``."""
        db = cls.get_database()
        await db.ensure_model(cls)
        row = await db.get(cls._meta.table_name, key)
        if row is None:
            raise DocumentNotFoundError(cls._meta.table_name, key)
        document = cls._from_row(row)
        await document_retrieved.send(cls, document=document)
        return document

    @classmethod
    async def fetch_all(cls, *keys: Any, index: Optional[str] = None) -> List[Document]:
        """Load the documents matching ``keys`` (primary key or ``index``)."""
        db = cls.get_database()
        await db.ensure_model(cls)
        rows = await db.get_all(cls._meta.table_name, *keys, index=index)
        documents = [cls._from_row(row) for row in rows]
        for document in documents:
            await document_retrieved.send(cls, document=document)
        return documents

    @classmethod
    async def save_batch(cls, documents: List[Any], conflict: str = "error") -> List[Document]:
        from .persistence import save_batch

        return await save_batch(cls, documents, conflict=conflict)

    @classmethod
    async def ensure_index(cls, name: str, multi: bool = False) -> None:
        cls._meta.indexes[name] = multi
        db = cls.get_database()
        await db.ensure_model(cls)
        await db.ensure_index(cls._meta.table_name, name, multi=multi)

    # ── Save / delete ────────────────────────────────────────────────

    async def save(self, cancel_token: Optional[CancellationToken] = None) -> Document:
        """Save this document only."""
        from .persistence import save_document

        return await save_document(self, CascadeScope.for_call(token=cancel_token))

    async def save_all(
        self,
        targets: Optional[Mapping[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Document:
        """Save this document and the related documents ``targets`` selects (all when None)."""
        from .persistence import save_document

        scope = CascadeScope.for_call(targets, cascade=True, token=cancel_token)
        return await save_document(self, scope)

    async def delete(self, cancel_token: Optional[CancellationToken] = None) -> Document:
        from .deletion import delete_document

        return await delete_document(self, CascadeScope.for_call(token=cancel_token))

    async def delete_all(
        self,
        targets: Optional[Mapping[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Document:
        from .deletion import delete_document

        scope = CascadeScope.for_call(targets, cascade=True, token=cancel_token)
        return await delete_document(self, scope)

    async def purge(self, cancel_token: Optional[CancellationToken] = None) -> Document:
        """Delete this document and remove every stored reference to it."""
        from .deletion import purge_document

        return await purge_document(self, cancel_token)

    # ── Validation ───────────────────────────────────────────────────

    def validate(self, options: Optional[Mapping[str, Any]] = None):
        """Validate this document; returns None, or an awaitable when async."""
        from .validation import validate

        return validate(self, options)

    def validate_all(
        self,
        options: Optional[Mapping[str, Any]] = None,
        targets: Optional[Mapping[str, Any]] = None,
    ):
        from .validation import validate

        return validate(self, options, targets, cascade=True)

    def effective_options(self, overrides: Optional[Mapping[str, Any]] = None) -> SchemaOptions:
        config = get_config()
        options = SchemaOptions(
            enforce_missing=config.enforce_missing,
            enforce_extra=config.enforce_extra,
            enforce_type=config.enforce_type,
        )
        return (
            options
            .merge(self._meta.schema_options)
            .merge(self._state.options)
            .merge(overrides)
        )

    # ── Values ───────────────────────────────────────────────────────

    def generate_defaults(self) -> Document:
        meta = self._meta
        generate_defaults(self._data, meta.fields)
        generate_virtuals(self._data, meta.fields, self)
        return self

    def merge(self, partial: Mapping[str, Any]) -> Document:
        """Recursively merge ``partial`` into the document; other keys are kept."""
        _merge_into(self._data, partial)
        return self

    def _merge(self, obj: Mapping[str, Any]) -> None:
        """Replace the stored fields with ``obj``; relation fields are kept."""
        meta = self._meta
        previous = dict(self._data)
        self._data.clear()
        for key, value in previous.items():
            if key in meta.relations:
                self._data[key] = value
        for key, value in obj.items():
            if key not in meta.relations:
                self._data[key] = copy.deepcopy(value)
        generate_virtuals(self._data, meta.fields, self, previous)

    # ── Saved state ──────────────────────────────────────────────────

    def is_saved(self) -> bool:
        return self._state.saved

    def _set_saved_flag(self, saved: bool) -> None:
        self._state.saved = saved

    def set_saved(self, cascade: bool = False) -> Document:
        """
        Mark the document saved.

        With ``cascade`` every reachable related document is marked saved
        too, and the relation caches and back-references are recorded so
        later saves and deletes see the links.
        """
        from .persistence import track_saved_relations

        seen: List[Document] = []
        stack: List[Document] = [self]
        while stack:
            document = stack.pop()
            if any(item is document for item in seen):
                continue
            seen.append(document)
            document._state.saved = True
            if not cascade:
                continue
            for field in document._meta.relations:
                value = document._data.get(field)
                items = value if isinstance(value, list) else [value]
                stack.extend(item for item in items if isinstance(item, Document))
        if cascade:
            for document in seen:
                track_saved_relations(document)
        return self

    def get_old_value(self) -> Optional[Dict[str, Any]]:
        return self._state.old_value

    def get_model(self) -> Type[Document]:
        return type(self)

    @property
    def back_references(self) -> Dict[str, Dict[str, List[Tuple[Any, str, Optional[str]]]]]:
        return self._state.parents.as_dict()

    # ── Change feed ──────────────────────────────────────────────────

    async def watch(self):
        """Keep this document in sync with its stored row."""
        from .feed import watch

        return await watch(self)

    def get_feed(self):
        return self._state.feed

    async def close_feed(self):
        from .feed import close_feed

        return await close_feed(self)

    def is_feed_active(self) -> bool:
        return self._state.feed_active


def _merge_into(target: MutableMapping, source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        current = target.get(key)
        if (
            isinstance(value, Mapping)
            and not isinstance(value, Document)
            and isinstance(current, MutableMapping)
            and not isinstance(current, Document)
        ):
            _merge_into(current, value)
        else:
            target[key] = value


_RESERVED = frozenset(
    name for name in dir(Document) if not name.startswith("__")
) | {"table_name", "pk"}
