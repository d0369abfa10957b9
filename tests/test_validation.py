"""
Tests for the validation gate (docmapper/models/validation.py).

Covers schema enforcement, option precedence, custom validators, cascading
into relations, and the sync/async decision made by the dry run.
"""

import inspect

import pytest

from docmapper.config import configure
from docmapper.faults import ValidationError
from docmapper.models import (
    ArrayField,
    BelongsTo,
    DateField,
    Document,
    HasMany,
    HasOne,
    IntegerField,
    ManyToMany,
    NumberField,
    ObjectField,
    StringField,
)
from docmapper.models.cascade import CascadeScope
from docmapper.models.validation import is_async, validate


# ============================================================================
# Schema enforcement
# ============================================================================

class TestSchema:

    def test_valid_document_returns_none(self):
        class Item(Document):
            name = StringField(required=True)

        assert Item(name="a").validate() is None

    def test_missing_required(self):
        class Item(Document):
            name = StringField(required=True)

        with pytest.raises(ValidationError) as exc:
            Item().validate()
        assert exc.value.message == "Value for [name] must be defined."
        assert exc.value.path == "[name]"

    def test_wrong_type_reports_null_allowance(self):
        class Item(Document):
            count = NumberField()

        with pytest.raises(ValidationError) as exc:
            Item(count="many").validate()
        assert exc.value.message == "Value for [count] must be a finite number or None."

    def test_strict_mode_rejects_none_and_strings(self):
        class Item(Document):
            count = NumberField()

            class Meta:
                enforce_type = "strict"

        with pytest.raises(ValidationError):
            Item(count=None).validate()
        with pytest.raises(ValidationError) as exc:
            Item(count="3").validate()
        assert exc.value.message == "Value for [count] must be a finite number."

    def test_loose_mode_accepts_numeric_strings_and_dates(self):
        class Item(Document):
            count = NumberField()
            at = DateField()

        assert Item(count="3", at="2020-01-01T00:00:00Z").validate() is None
        assert Item(count=None, at=1000).validate() is None

    def test_type_enforcement_disabled(self):
        class Item(Document):
            count = IntegerField()

            class Meta:
                enforce_type = "none"

        assert Item(count="anything").validate() is None

    def test_extra_fields_strict(self):
        class Item(Document):
            name = StringField()

            class Meta:
                enforce_extra = "strict"

        with pytest.raises(ValidationError) as exc:
            Item(name="a", junk=1).validate()
        assert exc.value.message == "Extra field `[junk]` not allowed."

    def test_nested_paths(self):
        class Item(Document):
            info = ObjectField({"sizes": ArrayField(IntegerField())})

        with pytest.raises(ValidationError) as exc:
            Item(info={"sizes": [1, "x"]}).validate()
        assert exc.value.path == "[info][sizes][1]"

    def test_error_carries_document(self):
        class Item(Document):
            name = StringField(required=True)

        item = Item()
        with pytest.raises(ValidationError) as exc:
            item.validate()
        assert exc.value.document is item
        assert exc.value.code == "VALIDATION_FAILED"


# ============================================================================
# Option precedence
# ============================================================================

class TestOptionPrecedence:

    def test_global_configuration(self):
        configure(enforce_missing=True)

        class Item(Document):
            name = StringField()

        with pytest.raises(ValidationError):
            Item(id=1).validate()

    def test_meta_overrides_configuration(self):
        configure(enforce_missing=True)

        class Item(Document):
            name = StringField()

            class Meta:
                enforce_missing = False

        assert Item(id=1).validate() is None

    def test_document_options_override_meta(self):
        class Item(Document):
            name = StringField()

        with pytest.raises(ValidationError):
            Item(id=1, options={"enforce_missing": True}).validate()

    def test_argument_overrides_document_options(self):
        class Item(Document):
            name = StringField()

        item = Item(id=1, options={"enforce_missing": True})
        assert item.validate({"enforce_missing": False}) is None

    def test_field_level_override(self):
        class Item(Document):
            count = NumberField(enforce_type="strict")
            other = NumberField()

        assert Item(other="1", count=1).validate() is None
        with pytest.raises(ValidationError):
            Item(count="1").validate()


# ============================================================================
# Custom validators
# ============================================================================

class TestCustomValidators:

    def test_document_validator_false(self):
        class Item(Document):
            name = StringField()

            class Meta:
                validator = staticmethod(lambda doc: doc.name != "root")

        assert Item(name="ok").validate() is None
        with pytest.raises(ValidationError) as exc:
            Item(name="root").validate()
        assert exc.value.message == "Document's validator returned `False`."

    def test_document_validator_raising(self):
        def no_root(doc):
            if doc.name == "root":
                raise ValidationError("root is reserved")

        class Item(Document):
            name = StringField()

            class Meta:
                validator = staticmethod(no_root)

        with pytest.raises(ValidationError, match="root is reserved"):
            Item(name="root").validate()

    def test_field_validator(self):
        class Item(Document):
            name = StringField(validators=[lambda value: value.islower()])

        with pytest.raises(ValidationError) as exc:
            Item(name="LOUD").validate()
        assert exc.value.message == "Validator for the field [name] returned `False`."

    def test_validate_hooks(self):
        calls = []

        class Item(Document):
            name = StringField()

        Item.pre("validate", lambda doc: calls.append("pre"))
        Item.post("validate", lambda doc: calls.append("post"))
        Item(name="a").validate()
        assert calls == ["pre", "post"]


# ============================================================================
# Async validation
# ============================================================================

class TestAsyncValidation:

    @pytest.mark.asyncio
    async def test_async_validator_returns_awaitable(self):
        async def check(doc):
            return doc.name != "bad"

        class Item(Document):
            name = StringField()

            class Meta:
                validator = check

        pending = Item(name="good").validate()
        assert inspect.isawaitable(pending)
        await pending

        with pytest.raises(ValidationError):
            await Item(name="bad").validate()

    @pytest.mark.asyncio
    async def test_async_child_makes_parent_async(self):
        async def check(doc):
            return True

        class Parent(Document):
            child = HasOne("Child")

        class Child(Document):
            class Meta:
                validator = check

        parent = Parent(child={"id": 1})
        assert parent.validate() is None
        pending = parent.validate_all()
        assert inspect.isawaitable(pending)
        await pending

    def test_dry_run_walks_selected_tables(self):
        class Parent(Document):
            child = HasOne("Child")

        class Child(Document):
            pass

        dry = CascadeScope({}, True)
        assert is_async(Parent(child={}), dry) is False
        assert dry.tables == {"parent", "child"}

    def test_dry_run_leaves_caller_scope_untouched(self):
        class Parent(Document):
            child = HasOne("Child")

        class Child(Document):
            name = StringField(required=True)

        scope = CascadeScope({}, True)
        with pytest.raises(ValidationError):
            validate(Parent(child={}), scope=scope)
        assert scope.tables == {"parent"}

    @pytest.mark.asyncio
    async def test_async_pre_hook(self):
        calls = []

        class Item(Document):
            pass

        @Item.pre("validate")
        async def remember(doc):
            calls.append(doc)

        item = Item()
        await item.validate()
        assert calls == [item]


# ============================================================================
# Cascading validation
# ============================================================================

class TestCascade:

    def test_plain_validate_ignores_relations(self):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            title = StringField(required=True)

        assert Author(books=[{}]).validate() is None

    def test_validate_all_reaches_children_with_path(self):
        class Author(Document):
            books = HasMany("Book")

        class Book(Document):
            title = StringField(required=True)

        author = Author(books=[{"title": "a"}, {}])
        with pytest.raises(ValidationError) as exc:
            author.validate_all()
        assert exc.value.path == "[books][1][title]"
        assert exc.value.document is author["books"][1]

    def test_explicit_targets(self):
        class Author(Document):
            books = HasMany("Book")
            agent = HasOne("Agent")

        class Book(Document):
            title = StringField(required=True)

        class Agent(Document):
            name = StringField(required=True)

        author = Author(books=[{}], agent={"name": "x"})
        assert author.validate_all(targets={"agent": {}}) is None
        with pytest.raises(ValidationError):
            author.validate_all(targets={"books": {}})

    def test_mappings_promoted_in_place(self):
        class Post(Document):
            author = BelongsTo("User")

        class User(Document):
            name = StringField()

        post = Post()
        post["author"] = {"name": "ann"}
        post.validate_all()
        assert isinstance(post["author"], User)

    def test_wrong_relation_shapes(self):
        class Post(Document):
            author = BelongsTo("User")
            tags = ManyToMany("Tag")

        class User(Document):
            pass

        class Tag(Document):
            pass

        with pytest.raises(ValidationError) as exc:
            Post(author=3).validate_all()
        assert exc.value.message == "Joined field [author] should be None, a mapping or a document."

        with pytest.raises(ValidationError) as exc:
            Post(tags="a").validate_all()
        assert exc.value.message == "Joined field [tags] should be None or a list."

    def test_many_to_many_bare_keys_skipped(self):
        class Post(Document):
            tags = ManyToMany("Tag")

        class Tag(Document):
            name = StringField(required=True)

        assert Post(tags=["t1", "t2"]).validate_all() is None

    def test_each_table_validated_once_on_cycles(self):
        seen = []

        class User(Document):
            posts = HasMany("Post")

        class Post(Document):
            author = BelongsTo("User")

        User.pre("validate", lambda doc: seen.append(("user", doc)))
        Post.pre("validate", lambda doc: seen.append(("post", doc)))

        user = User()
        post = Post(author=user)
        user["posts"] = [post]
        user.validate_all()
        assert [kind for kind, _ in seen] == ["user", "post"]

    def test_module_level_validate(self):
        class Item(Document):
            name = StringField(required=True)

        assert validate(Item(name="a"), None, None, cascade=True) is None
