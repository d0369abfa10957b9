"""
Tests for the save orchestrator (docmapper/models/persistence.py).

Every test declares its models inline; the autouse fixture in conftest.py
resets the registry between tests.
"""

from collections import Counter

import pytest

from docmapper.faults import (
    CascadeCancelledError,
    PersistenceError,
    ProgrammingError,
    ValidationError,
)
from docmapper.models import (
    BelongsTo,
    CancellationToken,
    Document,
    HasMany,
    HasOne,
    ManyToMany,
    NumberField,
    StringField,
    VirtualField,
    document_saved,
    make_savable_copy,
)


# ============================================================================
# Single document
# ============================================================================

class TestSaveSelf:

    @pytest.mark.asyncio
    async def test_round_trip(self, db):
        class Thing(Document):
            id = StringField(primary_key=True)
            num = NumberField()
            label = StringField(default="new")
            shout = VirtualField(default=lambda doc: f"{doc.id}!")

        thing = Thing(id="foo", num=1)
        assert await thing.save() is thing
        assert thing.is_saved()

        row = await db.get("thing", "foo")
        assert row == {"id": "foo", "num": 1, "label": "new"}

        again = await Thing.fetch("foo")
        assert dict(again) == {"id": "foo", "num": 1, "label": "new", "shout": "foo!"}
        assert make_savable_copy(again) == row

    @pytest.mark.asyncio
    async def test_generated_primary_key_is_adopted(self, db):
        class Thing(Document):
            name = StringField()

        thing = Thing(name="x")
        await thing.save()
        assert isinstance(thing.id, str)
        assert (await db.get("thing", thing.id))["name"] == "x"
        assert thing.get_old_value() is None

    @pytest.mark.asyncio
    async def test_second_save_replaces(self, db, rows):
        class Thing(Document):
            name = StringField()

        thing = Thing(name="x")
        await thing.save()
        thing.name = "y"
        await thing.save()

        assert thing.get_old_value() == {"id": thing.id, "name": "x"}
        assert rows("thing") == [{"id": thing.id, "name": "y"}]

    @pytest.mark.asyncio
    async def test_numeric_strings_stored_as_numbers(self, db):
        class Thing(Document):
            num = NumberField()

        thing = Thing(id=1, num="2.5")
        await thing.save()
        assert thing.num == 2.5
        assert (await db.get("thing", 1))["num"] == 2.5

    @pytest.mark.asyncio
    async def test_saved_document_without_key(self, db):
        class Thing(Document):
            name = StringField()

        thing = Thing(name="x")
        thing.set_saved()
        with pytest.raises(ProgrammingError) as exc:
            await thing.save()
        assert exc.value.message == "The document was previously saved, but its primary key is undefined."

    @pytest.mark.asyncio
    async def test_duplicate_key_is_persistence_error(self, db):
        class Thing(Document):
            pass

        await Thing(id="a").save()
        with pytest.raises(PersistenceError) as exc:
            await Thing(id="a").save()
        assert exc.value.table == "thing"
        assert exc.value.operation == "insert"
        assert "Duplicate primary key" in exc.value.reason

    @pytest.mark.asyncio
    async def test_invalid_document_not_written(self, db, rows):
        class Thing(Document):
            name = StringField(required=True)

        with pytest.raises(ValidationError):
            await Thing(id=1).save()
        assert rows("thing") == []


# ============================================================================
# Hooks, notifications and cancellation
# ============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_hook_and_notification_order(self, db):
        events = []

        class Thing(Document):
            pass

        Thing.pre("save", lambda doc: events.append("pre"))
        Thing.post("save", lambda doc: events.append("post"))
        Thing.on("saving", lambda sender, document, **kw: events.append("saving"))
        Thing.on("saved", lambda sender, document, **kw: events.append("saved"))

        await Thing().save()
        assert events == ["saving", "pre", "saved", "post"]

    @pytest.mark.asyncio
    async def test_failing_pre_hook_aborts(self, db, rows):
        class Thing(Document):
            pass

        @Thing.pre("save")
        async def refuse(doc):
            raise RuntimeError("no")

        with pytest.raises(RuntimeError):
            await Thing(id=1).save()
        assert rows("thing") == []

    @pytest.mark.asyncio
    async def test_cancelled_token(self, db, rows):
        class Thing(Document):
            pass

        token = CancellationToken()
        token.cancel("shutdown")
        with pytest.raises(CascadeCancelledError) as exc:
            await Thing(id=1).save(cancel_token=token)
        assert exc.value.operation == "insert"
        assert rows("thing") == []

    @pytest.mark.asyncio
    async def test_cancel_mid_cascade_keeps_issued_writes(self, db, rows):
        class User(Document):
            posts = HasMany("Post")

        class Post(Document):
            title = StringField()

        token = CancellationToken()
        User.on("saved", lambda sender, document, **kw: token.cancel("enough"))

        user = User(posts=[{"title": "t"}])
        with pytest.raises(CascadeCancelledError):
            await user.save_all(cancel_token=token)
        assert len(rows("user")) == 1
        assert rows("post") == []

    @pytest.mark.asyncio
    async def test_child_failure_is_not_rolled_back(self, db, rows):
        class User(Document):
            posts = HasMany("Post")

        class Post(Document):
            title = StringField(required=True)

        user = User(posts=[{}])
        with pytest.raises(ValidationError):
            await user.save_all()
        assert user.is_saved()
        assert len(rows("user")) == 1
        assert rows("post") == []


# ============================================================================
# belongs-to
# ============================================================================

class TestBelongsTo:

    @pytest.mark.asyncio
    async def test_parent_saved_first_and_key_copied(self, db):
        class User(Document):
            name = StringField()

        class Post(Document):
            title = StringField()
            author = BelongsTo("User")

        post = Post(title="p", author={"name": "ann"})
        await post.save_all()

        author = post.author
        assert isinstance(author, User)
        assert author.is_saved()
        assert post.author_id == author.id
        assert await db.get("post", post.id) == {"id": post.id, "title": "p", "author_id": author.id}
        assert author.back_references == {"belongs_to": {"post": [(post, "author", "author_id")]}}

    @pytest.mark.asyncio
    async def test_clearing_parent_removes_key(self, db):
        class User(Document):
            pass

        class Post(Document):
            author = BelongsTo("User")

        author = User()
        post = Post(author=author)
        await post.save_all()

        post.author = None
        await post.save()
        assert "author_id" not in post
        assert "author_id" not in await db.get("post", post.id)
        assert author.back_references == {}

    @pytest.mark.asyncio
    async def test_saved_parent_linked_outside_scope(self, db):
        class User(Document):
            pass

        class Post(Document):
            author = BelongsTo("User")

        author = User()
        await author.save()
        post = Post(author=author)
        await post.save()
        assert (await db.get("post", post.id))["author_id"] == author.id

    @pytest.mark.asyncio
    async def test_unsaved_parent_outside_scope_ignored(self, db, rows):
        class User(Document):
            pass

        class Post(Document):
            author = BelongsTo("User")

        post = Post(author={})
        await post.save()
        assert rows("user") == []
        assert "author_id" not in post

    @pytest.mark.asyncio
    async def test_custom_keys(self, db):
        class User(Document):
            handle = StringField()

        class Post(Document):
            author = BelongsTo("User", local_key="author_handle", foreign_key="handle")

        post = Post(author={"handle": "ann"})
        await post.save_all()
        assert (await db.get("post", post.id))["author_handle"] == "ann"


# ============================================================================
# has-one
# ============================================================================

class TestHasOne:

    @pytest.mark.asyncio
    async def test_back_reference_symmetry(self, db):
        class Account(Document):
            profile = HasOne("Profile")

        class Profile(Document):
            bio = StringField()

        account = Account(id="a1", profile={"bio": "hi"})
        await account.save_all()

        profile = account.profile
        assert profile.account_id == "a1"
        assert profile.back_references == {"has_one": {"account": [(account, "profile", None)]}}

        account.profile = None
        await account.save()
        assert "account_id" not in profile
        assert profile.back_references == {}
        assert "account_id" not in await db.get("profile", profile.id)

    @pytest.mark.asyncio
    async def test_replaced_child_is_detached(self, db):
        class Account(Document):
            profile = HasOne("Profile")

        class Profile(Document):
            bio = StringField()

        account = Account(id="a1", profile={"bio": "old"})
        await account.save_all()
        old = account.profile

        account.profile = Profile(bio="new")
        await account.save_all()

        assert "account_id" not in await db.get("profile", old.id)
        assert (await db.get("profile", account.profile.id))["account_id"] == "a1"

    @pytest.mark.asyncio
    async def test_child_outside_scope_not_saved(self, db, rows):
        class Account(Document):
            profile = HasOne("Profile")

        class Profile(Document):
            pass

        account = Account(profile={})
        await account.save()
        assert not account.profile.is_saved()
        assert rows("profile") == []


# ============================================================================
# has-many
# ============================================================================

class TestHasMany:

    @pytest.mark.asyncio
    async def test_user_posts_scenario(self, db, rows):
        class User(Document):
            name = StringField()
            posts = HasMany("Post", foreign_key="userId")

        class Post(Document):
            userId = StringField()
            title = StringField()

        user = User(name="a")
        user.posts = [{"title": "t1"}, {"title": "t2"}]
        await user.save_all()

        posts = await Post.fetch_all(user.id, index="userId")
        assert sorted(post.title for post in posts) == ["t1", "t2"]
        assert all(post.userId == user.id for post in posts)

        await user.delete_all()
        assert rows("post") == []
        assert rows("user") == []

    @pytest.mark.asyncio
    async def test_removed_child_loses_key(self, db):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            title = StringField()

        author = Author(books=[{"title": "a"}, {"title": "b"}])
        await author.save_all()
        first, second = author.books

        author.books = [second]
        await author.save()

        assert "author_id" not in await db.get("book", first.id)
        assert (await db.get("book", second.id))["author_id"] == author.id
        assert first.back_references == {}
        assert len(second.back_references["has_many"]["author"]) == 1

    @pytest.mark.asyncio
    async def test_clearing_list_detaches_all(self, db):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            pass

        author = Author(books=[{}, {}])
        await author.save_all()
        books = list(author.books)

        author.books = None
        await author.save()
        for book in books:
            assert "author_id" not in await db.get("book", book.id)

    @pytest.mark.asyncio
    async def test_nested_targets(self, db):
        class Author(Document):
            books = HasMany("Book")
            agent = HasOne("Agent")

        class Book(Document):
            chapters = HasMany("Chapter")

        class Chapter(Document):
            pass

        class Agent(Document):
            pass

        author = Author(books=[{"chapters": [{}]}], agent={})
        await author.save_all(targets={"books": {"chapters": {}}})

        assert author.books[0].chapters[0].is_saved()
        assert not author.agent.is_saved()


# ============================================================================
# many-to-many
# ============================================================================

class TestManyToMany:

    def _models(self):
        class Post(Document):
            tags = ManyToMany("Tag")

        class Tag(Document):
            name = StringField()
            posts = ManyToMany("Post")

        return Post, Tag

    @pytest.mark.asyncio
    async def test_links_created(self, db, rows):
        Post, Tag = self._models()
        post = Post(id="p1", tags=[{"id": "t1", "name": "x"}, {"id": "t2", "name": "y"}])
        await post.save_all()

        assert all(tag.is_saved() for tag in post.tags)
        links = sorted(rows("post_tag"), key=lambda row: row["id"])
        assert links == [
            {"id": "p1_t1", "post_id": "p1", "tag_id": "t1"},
            {"id": "p1_t2", "post_id": "p1", "tag_id": "t2"},
        ]
        tag = post.tags[0]
        assert tag.back_references == {"many_to_many": {"post": [(post, "tags", None)]}}

    @pytest.mark.asyncio
    async def test_removed_partner_unlinked(self, db, rows):
        Post, Tag = self._models()
        post = Post(id="p1", tags=[{"id": "t1"}, {"id": "t2"}])
        await post.save_all()
        first = post.tags[0]

        post.tags = [post.tags[1]]
        await post.save_all(targets={"tags": {}})

        assert [row["id"] for row in rows("post_tag")] == ["p1_t2"]
        assert first.back_references == {}

    @pytest.mark.asyncio
    async def test_bare_keys_create_links(self, db, rows):
        Post, Tag = self._models()
        post = Post(id="p1", tags=["t9"])
        await post.save_all(targets={"tags": {}})
        assert rows("post_tag") == [{"id": "p1_t9", "post_id": "p1", "tag_id": "t9"}]
        assert rows("tag") == []

    @pytest.mark.asyncio
    async def test_plain_save_leaves_links(self, db, rows):
        Post, Tag = self._models()
        post = Post(id="p1", tags=[{"id": "t1"}])
        await post.save_all()

        post.tags = []
        await post.save()
        assert len(rows("post_tag")) == 1

    @pytest.mark.asyncio
    async def test_link_id_independent_of_side(self, db, rows):
        Post, Tag = self._models()
        post = Post(id="p1", tags=[{"id": "t1"}])
        await post.save_all()

        tag = await Tag.fetch("t1")
        tag.posts = ["p1"]
        await tag.save_all(targets={"posts": {}})

        assert rows("post_tag") == [{"id": "p1_t1", "post_id": "p1", "tag_id": "t1"}]
        forward = Post._meta.relations["tags"]
        backward = Tag._meta.relations["posts"]
        assert forward.link_id("p1", "t1") == backward.link_id("t1", "p1")

    @pytest.mark.asyncio
    async def test_self_link_is_undirected(self, db, rows):
        class Person(Document):
            friends = ManyToMany("Person")

        a = Person(id="a")
        b = Person(id="b")
        a.friends = [b]
        await a.save_all(targets={"friends": {}})
        assert rows("person_person") == [{"id": "a_b", "id_id": ["b", "a"]}]

        b.friends = [a]
        await b.save_all(targets={"friends": {}})
        assert len(rows("person_person")) == 1
        assert rows("person_person")[0]["id"] == "a_b"


# ============================================================================
# Graphs marked saved
# ============================================================================

class TestMarkedSavedGraph:

    @pytest.mark.asyncio
    async def test_removed_child_detached(self, db):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            pass

        await Author(id="a1", books=[{"id": "b1"}]).save_all()

        loaded = Author({"id": "a1", "books": [{"id": "b1", "author_id": "a1"}]})
        loaded.set_saved(cascade=True)
        book = loaded.books[0]
        loaded.books = []
        await loaded.save_all()

        assert await db.get("book", "b1") == {"id": "b1"}
        assert book.back_references == {}

    @pytest.mark.asyncio
    async def test_cleared_parent_removes_key(self, db):
        class Author(Document):
            pass

        class Book(Document):
            author = BelongsTo("Author")

        await Book(id="b1", author={"id": "a1"}).save_all()

        loaded = Book({"id": "b1", "author_id": "a1", "author": {"id": "a1"}})
        loaded.set_saved(cascade=True)
        loaded.author = None
        await loaded.save()

        assert await db.get("book", "b1") == {"id": "b1"}

    @pytest.mark.asyncio
    async def test_removed_partner_unlinked(self, db, rows):
        class Post(Document):
            tags = ManyToMany("Tag")

        class Tag(Document):
            pass

        await Post(id="p1", tags=[{"id": "t1"}, {"id": "t2"}]).save_all()

        loaded = Post({"id": "p1", "tags": [{"id": "t1"}, {"id": "t2"}]})
        loaded.set_saved(cascade=True)
        loaded.tags = [loaded.tags[1]]
        await loaded.save_all(targets={"tags": {}})

        assert [row["id"] for row in rows("post_tag")] == ["p1_t2"]


# ============================================================================
# Cascade bounds
# ============================================================================

class TestCascadeOnce:

    @pytest.mark.asyncio
    async def test_bidirectional_graph_saves_each_document_once(self, db):
        saves = Counter()
        document_saved.connect(lambda sender, document, **kw: saves.update([id(document)]))

        class User(Document):
            posts = HasMany("Post")

        class Post(Document):
            author = BelongsTo("User")

        user = User()
        posts = [Post(author=user), Post(author=user)]
        user.posts = posts
        await user.save_all()

        assert saves[id(user)] == 1
        assert all(saves[id(post)] == 1 for post in posts)
        assert all(post.author_id == user.id for post in posts)
        assert all(post.user_id == user.id for post in posts)

    @pytest.mark.asyncio
    async def test_cycle_through_three_tables(self, db):
        written = Counter()
        document_saved.connect(lambda sender, document, **kw: written.update([sender.__name__]))

        class Country(Document):
            cities = HasMany("City")

        class City(Document):
            mayor = HasOne("Mayor")

        class Mayor(Document):
            country = BelongsTo("Country")

        country = Country()
        mayor = Mayor(country=country)
        country.cities = [City(mayor=mayor)]
        await country.save_all()

        assert written == Counter({"Country": 1, "City": 1, "Mayor": 1})
        assert mayor.country_id == country.id
