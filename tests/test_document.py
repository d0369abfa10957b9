"""
Tests for the Document base class and its metaclass.
"""

import pytest

from docmapper.faults import ConstraintError, DocumentNotFoundError
from docmapper.models import (
    AnyField,
    DateField,
    Document,
    DocumentMeta,
    HasMany,
    HasOne,
    ModelRegistry,
    ObjectField,
    SchemaOptions,
    StringField,
)


# ============================================================================
# Declaration
# ============================================================================

class TestDeclaration:

    def test_automatic_primary_key(self):
        class Thing(Document):
            name = StringField()

        assert Thing.pk == "id"
        assert isinstance(Thing._meta.fields["id"], AnyField)
        assert list(Thing._meta.fields) == ["id", "name"]

    def test_declared_primary_key(self):
        class User(Document):
            handle = StringField(primary_key=True)

        assert User.pk == "handle"
        assert "id" not in User._meta.fields

    def test_id_must_be_primary_key(self):
        with pytest.raises(ConstraintError):
            class Broken(Document):
                id = StringField()

    @pytest.mark.parametrize("name", ["save", "validate", "_secret", "table_name"])
    def test_reserved_names(self, name):
        with pytest.raises(ConstraintError) as exc:
            DocumentMeta("Broken", (Document,), {name: StringField()})
        assert f"'{name}' is a reserved name" in exc.value.message

    def test_table_names(self):
        class Person(Document):
            table = "people"

        class Place(Document):
            class Meta:
                table = "places"

        class Animal(Document):
            pass

        assert Person.table_name == "people"
        assert Place.table_name == "places"
        assert Animal.table_name == "animal"

    def test_registered(self):
        class Thing(Document):
            pass

        assert ModelRegistry.get("Thing") is Thing

    def test_abstract_base_inherited(self):
        class Stamped(Document):
            created = DateField()

            class Meta:
                abstract = True
                enforce_extra = "strict"

        class Note(Stamped):
            text = StringField()

        assert ModelRegistry.get("Stamped") is None
        assert ModelRegistry.get("Note") is Note
        assert set(Note._meta.fields) == {"id", "created", "text"}
        assert Note._meta.schema_options["enforce_extra"] == "strict"

    def test_relations_inherited(self):
        class Owner(Document):
            pets = HasMany("Pet")

        class Pet(Document):
            pass

        class Breeder(Owner):
            pass

        relation = Breeder._meta.relations["pets"]
        assert relation is not Owner._meta.relations["pets"]
        assert relation.model is Breeder
        assert relation.foreign_key == "breeder_id"

    def test_indexes_from_meta(self):
        class Thing(Document):
            class Meta:
                indexes = ["name"]

        assert Thing._meta.indexes == {"name": False}


# ============================================================================
# Mapping behaviour
# ============================================================================

class TestMapping:

    def test_construction(self):
        class Thing(Document):
            name = StringField(default="unnamed")

        thing = Thing({"id": 1}, extra=True)
        assert dict(thing) == {"id": 1, "extra": True, "name": "unnamed"}
        assert len(thing) == 3

    def test_non_mapping_rejected(self):
        class Thing(Document):
            pass

        with pytest.raises(TypeError):
            Thing([("id", 1)])

    def test_attribute_access(self):
        class Thing(Document):
            name = StringField()
            parts = HasMany("Thing")

        thing = Thing()
        assert thing.name is None
        assert thing.parts is None
        thing.name = "x"
        assert thing["name"] == "x"
        with pytest.raises(AttributeError):
            thing.nope
        del thing.name
        assert "name" not in thing

    def test_identity_equality(self):
        class Thing(Document):
            pass

        first, second = Thing(id=1), Thing(id=1)
        assert first != second
        assert first == first
        assert len({first, second}) == 2

    def test_empty_document_is_falsy_but_present(self):
        class Thing(Document):
            pass

        thing = Thing()
        assert not thing
        assert thing is not None

    def test_repr(self):
        class Thing(Document):
            pass

        assert repr(Thing(id=7)) == "<Thing: id=7>"

    def test_merge_is_recursive(self):
        class Thing(Document):
            info = ObjectField()

        thing = Thing(info={"a": 1, "b": {"c": 2}})
        thing.merge({"info": {"b": {"d": 3}}, "name": "x"})
        assert thing.info == {"a": 1, "b": {"c": 2, "d": 3}}
        assert thing.name == "x"

    def test_callable_defaults(self):
        counter = iter(range(10))

        class Thing(Document):
            serial = AnyField(default=lambda: next(counter))

        assert Thing().serial == 0
        assert Thing().serial == 1
        assert Thing(serial=9).serial == 9

    def test_effective_options(self):
        class Thing(Document):
            class Meta:
                enforce_type = "strict"

        thing = Thing(options={"enforce_extra": "remove"})
        options = thing.effective_options({"enforce_missing": True})
        assert options == SchemaOptions(
            enforce_missing=True,
            enforce_extra="remove",
            enforce_type="strict",
        )

    def test_get_model(self):
        class Thing(Document):
            pass

        assert Thing().get_model() is Thing


# ============================================================================
# Saved state
# ============================================================================

class TestSavedState:

    def test_set_saved(self):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            pass

        author = Author(books=[{}])
        author.set_saved()
        assert author.is_saved()
        assert not author.books[0].is_saved()

        author.set_saved(cascade=True)
        assert author.books[0].is_saved()

    def test_set_saved_cascade_records_back_references(self):
        class Author(Document):
            books = HasMany("Book")
            agent = HasOne("Agent")

        class Book(Document):
            pass

        class Agent(Document):
            pass

        author = Author(id="a1", books=[{"id": "b1", "author_id": "a1"}], agent={"id": "g1"})
        author.set_saved(cascade=True)
        book, agent = author.books[0], author.agent

        assert book.back_references == {"has_many": {"author": [(author, "books", None)]}}
        assert agent.back_references == {"has_one": {"author": [(author, "agent", None)]}}
        assert author._state.has_many["books"] == [(book, "author_id")]
        assert author._state.has_one["agent"] == (agent, "author_id")

    def test_set_saved_without_cascade_records_nothing(self):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            pass

        author = Author(id="a1", books=[{"id": "b1"}])
        author.set_saved()
        assert author.books[0].back_references == {}
        assert author._state.has_many == {}

    @pytest.mark.asyncio
    async def test_deleting_child_of_loaded_graph_detaches_it(self, db):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            pass

        await Author(id="a1", books=[{"id": "b1"}]).save_all()

        loaded = Author({"id": "a1", "books": [{"id": "b1", "author_id": "a1"}]})
        loaded.set_saved(cascade=True)
        book = loaded.books[0]
        await book.delete()

        assert loaded.books == []
        assert not book.is_saved()
        assert await db.get("book", "b1") is None

    def test_mappings_promoted_on_construction(self):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            pass

        author = Author(books=[{"id": 1}, "2"])
        assert isinstance(author.books[0], Book)
        assert author.books[1] == "2"


# ============================================================================
# Extensions and dynamic relations
# ============================================================================

class TestExtensions:

    def test_define(self):
        class Thing(Document):
            name = StringField()

        Thing.define("shout", lambda self: self.name.upper())
        Thing.define_static("make", lambda name: Thing(name=name))

        assert Thing.make("a").shout() == "A"

    def test_define_conflict(self):
        class Thing(Document):
            name = StringField()

        with pytest.raises(ConstraintError):
            Thing.define("save", lambda self: None)
        with pytest.raises(ConstraintError):
            Thing.define("name", lambda self: None)

    def test_unknown_notification(self):
        class Thing(Document):
            pass

        with pytest.raises(ConstraintError):
            Thing.on("exploded", lambda **kw: None)

    @pytest.mark.asyncio
    async def test_bind_relation_after_declaration(self, db):
        class User(Document):
            pass

        class Post(Document):
            pass

        relation = User.has_many(Post, "posts")
        assert User._meta.relations["posts"] is relation
        assert relation in Post._meta.reverse_relations

        user = User(posts=[{}])
        await user.save_all()
        assert user.posts[0].user_id == user.id

    def test_duplicate_binding(self):
        class User(Document):
            name = StringField()

        class Post(Document):
            pass

        User.has_many("Post", "posts")
        with pytest.raises(ConstraintError):
            User.has_many("Post", "posts")
        with pytest.raises(ConstraintError):
            User.belongs_to("Post", "name")

    def test_bad_target(self):
        class User(Document):
            pass

        with pytest.raises(ConstraintError):
            User.has_one(dict, "profile")


# ============================================================================
# Loading
# ============================================================================

class TestLoading:

    @pytest.mark.asyncio
    async def test_fetch(self, db):
        retrieved = []

        class Thing(Document):
            name = StringField()

        Thing.on("retrieved", lambda sender, document, **kw: retrieved.append(document))

        original = Thing(id="a", name="x")
        await original.save()
        loaded = await Thing.fetch("a")

        assert loaded is not original
        assert loaded.is_saved()
        assert loaded.name == "x"
        assert loaded.get_old_value() == {"id": "a", "name": "x"}
        assert retrieved == [loaded]

    @pytest.mark.asyncio
    async def test_fetch_missing(self, db):
        class Thing(Document):
            pass

        with pytest.raises(DocumentNotFoundError) as exc:
            await Thing.fetch("nope")
        assert exc.value.key == "nope"
        assert exc.value.table == "thing"

    @pytest.mark.asyncio
    async def test_fetch_all(self, db):
        class Thing(Document):
            colour = StringField()

        for key, colour in [(1, "red"), (2, "blue"), (3, "red")]:
            await Thing(id=key, colour=colour).save()

        assert sorted(doc.id for doc in await Thing.fetch_all(1, 3, 9)) == [1, 3]
        red = await Thing.fetch_all("red", index="colour")
        assert sorted(doc.id for doc in red) == [1, 3]

    @pytest.mark.asyncio
    async def test_ensure_index(self, db):
        class Thing(Document):
            tags = AnyField()

        await Thing.ensure_index("tags", multi=True)
        assert Thing._meta.indexes["tags"] is True
        assert db.adapter.has_index("thing", "tags")
