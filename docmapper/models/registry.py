"""
docmapper Model Registry — global registry for all Document subclasses.

Tracks concrete models by class name, resolves forward (string) relation
targets, registers reverse relations on targets, and holds the database the
models use.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Type

if TYPE_CHECKING:
    from ..db.engine import DocumentDatabase
    from .document import Document

logger = logging.getLogger("docmapper.models.registry")

__all__ = ["ModelRegistry"]


class ModelRegistry:
    """Global registry for all Document subclasses."""

    _models: Dict[str, Type[Document]] = {}
    _db: Optional[DocumentDatabase] = None

    @classmethod
    def register(cls, model_cls: Type[Document]) -> None:
        """Register a model class and resolve pending relation targets."""
        name = model_cls.__name__
        if name in cls._models and cls._models[name] is not model_cls:
            logger.warning(f"Model '{name}' re-registered, replacing the previous definition")
        cls._models[name] = model_cls
        cls.resolve_relations()

    @classmethod
    def get(cls, name: str) -> Optional[Type[Document]]:
        return cls._models.get(name)

    @classmethod
    def all_models(cls) -> Dict[str, Type[Document]]:
        return dict(cls._models)

    @classmethod
    def resolve_relations(cls) -> None:
        """Resolve string targets and attach reverse relations once resolved."""
        for model_cls in list(cls._models.values()):
            for relation in model_cls._meta.relations.values():
                if not relation.resolve(cls._models):
                    continue
                if not relation.reverse_registered:
                    relation.target._meta.reverse_relations.append(relation)
                    relation.reverse_registered = True

    @classmethod
    def unresolved(cls) -> List[str]:
        """Relations whose target model is not registered yet."""
        issues = []
        for name, model_cls in cls._models.items():
            for field, relation in model_cls._meta.relations.items():
                if not relation.is_resolved:
                    issues.append(f"{name}.{field}: target '{relation.to}' not registered")
        return issues

    # ── Database ─────────────────────────────────────────────────────

    @classmethod
    def set_database(cls, db: Optional[DocumentDatabase]) -> None:
        """Set the database used by every model."""
        cls._db = db

    @classmethod
    def get_database(cls) -> DocumentDatabase:
        if cls._db is None:
            from ..db.engine import get_database
            return get_database()
        return cls._db

    @classmethod
    async def create_tables(cls, db: Optional[DocumentDatabase] = None) -> List[str]:
        """Prepare tables, indexes and link tables for every registered model."""
        target_db = db or cls.get_database()
        prepared = []
        for model_cls in cls._models.values():
            await target_db.ensure_model(model_cls)
            prepared.append(model_cls._meta.table_name)
        return prepared

    @classmethod
    def reset(cls) -> None:
        """Clear registry (for testing)."""
        cls._models.clear()
        cls._db = None
