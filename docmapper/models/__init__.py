"""
docmapper Model System — documents, schema fields and relations.

Usage:
    from docmapper.models import Document, StringField, HasMany, BelongsTo

    class User(Document):
        table = "users"
        id = StringField(primary_key=True)
        name = StringField(required=True)
        posts = HasMany("Post")

    class Post(Document):
        title = StringField()
        author = BelongsTo("User")

    user = User(id="ada", name="Ada", posts=[{"title": "Notes"}])
    await user.save_all()

Public API:
    - Document: base class for all models
    - Fields: String, Number, Integer, Boolean, Date, Point, Binary, Object,
      Array, Any and Virtual fields
    - Relations: BelongsTo, HasOne, HasMany, ManyToMany
    - ModelRegistry: global model registry
    - Signals: document lifecycle notifications
    - CancellationToken: cooperative cancellation of cascades
"""

from .backrefs import BackReference, BackReferenceIndex
from .cascade import CancellationToken, CascadeScope
from .document import Document, DocumentMeta, DocumentState, Options
from .fields import (
    UNSET,
    AnyField,
    ArrayField,
    BinaryField,
    BooleanField,
    DateField,
    Field,
    IntegerField,
    NumberField,
    ObjectField,
    PointField,
    SchemaOptions,
    StringField,
    VirtualField,
)
from .geo import Geometry, Point
from .hooks import HookRegistry
from .projection import make_savable_copy
from .registry import ModelRegistry
from .relations import BelongsTo, HasMany, HasOne, ManyToMany, Relation
from .signals import (
    NOTIFICATIONS,
    Signal,
    document_changed,
    document_deleted,
    document_retrieved,
    document_saved,
    document_saving,
    feed_error,
    model_prepared,
    receiver,
)

__all__ = [
    # Documents
    "Document",
    "DocumentMeta",
    "DocumentState",
    "Options",
    "ModelRegistry",
    "make_savable_copy",
    # Fields
    "UNSET",
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
    "SchemaOptions",
    "Point",
    "Geometry",
    # Relations
    "Relation",
    "BelongsTo",
    "HasOne",
    "HasMany",
    "ManyToMany",
    "BackReference",
    "BackReferenceIndex",
    # Cascades and hooks
    "CancellationToken",
    "CascadeScope",
    "HookRegistry",
    # Signals
    "Signal",
    "NOTIFICATIONS",
    "document_saving",
    "document_saved",
    "document_deleted",
    "document_changed",
    "document_retrieved",
    "feed_error",
    "model_prepared",
    "receiver",
]
