"""
docmapper - async document-relational mapper

Persistence core for documents stored in a document database:
- Documents: schema-validated mutable mappings with relations
- Relations: belongs-to, has-one, has-many and many-to-many (link tables)
- Cascades: save, delete and purge across relations, each table once per call
- Change feeds: documents kept in sync with their stored row
- Storage: in-memory and SQLite (aiosqlite) backends
- Faults: structured errors with fault domains
"""

__version__ = "0.1.0"

# ============================================================================
# Models
# ============================================================================

from .models import (
    Document,
    ModelRegistry,
    SchemaOptions,
    UNSET,
    Field,
    AnyField,
    StringField,
    NumberField,
    IntegerField,
    BooleanField,
    DateField,
    PointField,
    BinaryField,
    ObjectField,
    ArrayField,
    VirtualField,
    Point,
    Geometry,
    BelongsTo,
    HasOne,
    HasMany,
    ManyToMany,
    CancellationToken,
    Signal,
    receiver,
    document_saving,
    document_saved,
    document_deleted,
    document_changed,
    document_retrieved,
    feed_error,
)

# ============================================================================
# Storage
# ============================================================================

from .db import (
    DocumentDatabase,
    configure_database,
    get_database,
    set_database,
    reset_database,
)

# ============================================================================
# Configuration & Faults
# ============================================================================

from .config import MapperConfig, ConfigLoader, configure, get_config, configure_logging
from .faults import (
    Fault,
    DocumentFault,
    ValidationError,
    ConstraintError,
    PersistenceError,
    ProgrammingError,
    DocumentNotFoundError,
    CascadeCancelledError,
    DatabaseConnectionError,
    ConfigError,
)

__all__ = [
    "__version__",
    # Models
    "Document",
    "ModelRegistry",
    "SchemaOptions",
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
    "Point",
    "Geometry",
    "BelongsTo",
    "HasOne",
    "HasMany",
    "ManyToMany",
    "CancellationToken",
    "Signal",
    "receiver",
    "document_saving",
    "document_saved",
    "document_deleted",
    "document_changed",
    "document_retrieved",
    "feed_error",
    # Storage
    "DocumentDatabase",
    "configure_database",
    "get_database",
    "set_database",
    "reset_database",
    # Configuration & faults
    "MapperConfig",
    "ConfigLoader",
    "configure",
    "get_config",
    "configure_logging",
    "Fault",
    "DocumentFault",
    "ValidationError",
    "ConstraintError",
    "PersistenceError",
    "ProgrammingError",
    "DocumentNotFoundError",
    "CascadeCancelledError",
    "DatabaseConnectionError",
    "ConfigError",
]
