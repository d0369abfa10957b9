"""
docmapper Relations — the four relation kinds and their key layout.

Each relation is declared on the model that *uses* it:

    class User(Document):
        id = StringField(primary_key=True)
        posts = HasMany("Post")              # Post.user_id -> User.id
        profile = HasOne("Profile")          # Profile.user_id -> User.id
        tags = ManyToMany("Tag")             # tag_user link table

    class Post(Document):
        author = BelongsTo("User")           # Post.author_id -> User.id

Key ownership is fixed by the kind: ``BelongsTo`` stores the key on the
declaring model, ``HasOne``/``HasMany`` on the target, and ``ManyToMany`` in a
link table that owns both sides.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Optional, Type, Union

from ..faults import ConstraintError, ProgrammingError

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger("docmapper.models.relations")

__all__ = [
    "Relation",
    "BelongsTo",
    "HasOne",
    "HasMany",
    "ManyToMany",
    "RELATION_KINDS",
]


class Relation:
    """
    Base relation descriptor.

    Args:
        to: Target model class or its class name (resolved lazily)
        local_key: Key read on the declaring model
        foreign_key: Key read on the target model
    """

    kind: ClassVar[str] = ""
    many: ClassVar[bool] = False

    def __init__(
        self,
        to: Union[str, Type[Document]],
        *,
        local_key: Optional[str] = None,
        foreign_key: Optional[str] = None,
    ):
        self.to = to
        self._target: Optional[Type[Document]] = None if isinstance(to, str) else to
        self._local_key = local_key
        self._foreign_key = foreign_key
        self.name: str = ""
        self.model: Optional[Type[Document]] = None
        self.reverse_registered = False

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def bind(self, model: Type[Document], name: str) -> None:
        self.model = model
        self.name = name

    def __repr__(self) -> str:
        target = self.to if isinstance(self.to, str) else self.to.__name__
        return f"<{self.__class__.__name__}: {self.name} -> {target}>"

    # ── Target resolution ────────────────────────────────────────────

    def resolve(self, registry: Dict[str, Type[Document]]) -> bool:
        """Resolve a string target against ``registry``; True once resolved."""
        if self._target is None and isinstance(self.to, str):
            self._target = registry.get(self.to)
        return self._target is not None

    @property
    def target(self) -> Type[Document]:
        if self._target is None:
            raise ProgrammingError(
                f"Relation '{self.name}' on '{self.model.__name__ if self.model else '?'}' "
                f"targets unregistered model '{self.to}'"
            )
        return self._target

    @property
    def is_resolved(self) -> bool:
        return self._target is not None

    @property
    def own_table(self) -> str:
        return self.model._meta.table_name

    @property
    def target_table(self) -> str:
        return self.target._meta.table_name

    # ── Keys ─────────────────────────────────────────────────────────

    @property
    def local_key(self) -> str:
        if self._local_key is not None:
            return self._local_key
        return self.model._meta.pk

    @property
    def foreign_key(self) -> str:
        if self._foreign_key is not None:
            return self._foreign_key
        return f"{self.own_table}_id"

    def describe(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "field": self.name,
            "target": self.target.__name__,
            "local_key": self.local_key,
            "foreign_key": self.foreign_key,
        }


class BelongsTo(Relation):
    """The declaring document stores the target's key in ``local_key``."""

    kind = "belongs_to"

    @property
    def local_key(self) -> str:
        if self._local_key is not None:
            return self._local_key
        return f"{self.name}_id"

    @property
    def foreign_key(self) -> str:
        if self._foreign_key is not None:
            return self._foreign_key
        return self.target._meta.pk


class HasOne(Relation):
    """The target document stores the declaring document's key."""

    kind = "has_one"


class HasMany(Relation):
    """Like HasOne, but the field holds a list of target documents."""

    kind = "has_many"
    many = True


class ManyToMany(Relation):
    """
    A link table holds one row per linked pair.

    Link rows look like ``{"id": ..., "<own table>_<local key>": a,
    "<target table>_<foreign key>": b}``. When the relation links a table to
    itself on the same key, the row stores ``{"<key>_<key>": [a, b]}`` so the
    edge is undirected.
    """

    kind = "many_to_many"
    many = True

    def __init__(self, to: Union[str, Type[Document]], *, link: Optional[str] = None, **kwargs: Any):
        super().__init__(to, **kwargs)
        self._link = link

    @property
    def foreign_key(self) -> str:
        if self._foreign_key is not None:
            return self._foreign_key
        return self.target._meta.pk

    @property
    def link(self) -> str:
        if self._link is not None:
            return self._link
        return "_".join(sorted([self.own_table, self.target_table]))

    @property
    def is_self_link(self) -> bool:
        return self.own_table == self.target_table and self.local_key == self.foreign_key

    @property
    def own_field(self) -> str:
        """Link-row field holding this side's key (also its index name)."""
        if self.is_self_link:
            return f"{self.local_key}_{self.local_key}"
        return f"{self.own_table}_{self.local_key}"

    @property
    def target_field(self) -> str:
        if self.is_self_link:
            return f"{self.foreign_key}_{self.foreign_key}"
        return f"{self.target_table}_{self.foreign_key}"

    def link_id(self, own_value: Any, other_value: Any) -> str:
        """
        Composite link id, identical whichever side builds it.

        Values are ordered by table name when the tables differ and by their
        string form otherwise.
        """
        if self.own_table < self.target_table:
            first, second = own_value, other_value
        elif self.own_table > self.target_table:
            first, second = other_value, own_value
        elif str(other_value) < str(own_value):
            first, second = other_value, own_value
        else:
            first, second = own_value, other_value
        return f"{first}_{second}"

    def link_row(self, own_value: Any, other_value: Any) -> Dict[str, Any]:
        row: Dict[str, Any] = {"id": self.link_id(own_value, other_value)}
        if self.is_self_link:
            row[self.own_field] = [other_value, own_value]
        else:
            row[self.own_field] = own_value
            row[self.target_field] = other_value
        return row

    def other_value(self, row: Dict[str, Any], own_value: Any) -> Any:
        """Read the partner key back from a link row."""
        if self.is_self_link:
            pair = row.get(self.own_field) or []
            others = [value for value in pair if value != own_value]
            return others[0] if others else own_value
        return row.get(self.target_field)

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info["link"] = self.link
        return info


RELATION_KINDS: Dict[str, Type[Relation]] = {
    BelongsTo.kind: BelongsTo,
    HasOne.kind: HasOne,
    HasMany.kind: HasMany,
    ManyToMany.kind: ManyToMany,
}


def check_target(model: Type[Document], target: Any) -> None:
    """Reject relation targets that are neither model classes nor names."""
    from .document import Document

    if isinstance(target, str):
        return
    if not (isinstance(target, type) and issubclass(target, Document) and target is not Document):
        raise ConstraintError(model.__name__, f"relation target {target!r} is not a model")
