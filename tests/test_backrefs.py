"""
Tests for the back-reference index (docmapper/models/backrefs.py).
"""

from docmapper.models import BackReference, BackReferenceIndex


class _Doc:
    """Stand-in parent; the index only cares about identity."""

    def __eq__(self, other):
        return True

    __hash__ = object.__hash__


class TestBackReferenceIndex:

    def test_add_and_get(self):
        index = BackReferenceIndex()
        parent = _Doc()
        ref = index.add("has_many", "author", parent, "books")

        assert isinstance(ref, BackReference)
        assert index.get("has_many") == [ref]
        assert index.get("has_many", "author") == [ref]
        assert index.get("has_many", "publisher") == []
        assert index.get("has_one") == []
        assert len(index) == 1

    def test_add_is_idempotent_per_field(self):
        index = BackReferenceIndex()
        parent = _Doc()
        index.add("belongs_to", "post", parent, "author", "author_id")
        index.add("belongs_to", "post", parent, "author", "writer_id")

        refs = index.get("belongs_to")
        assert len(refs) == 1
        assert refs[0].foreign_key == "writer_id"

    def test_same_parent_through_two_fields(self):
        index = BackReferenceIndex()
        parent = _Doc()
        index.add("has_one", "user", parent, "avatar")
        index.add("has_one", "user", parent, "banner")
        assert len(index) == 2

        assert index.remove("has_one", "user", parent, "avatar")
        assert [ref.field for ref in index.get("has_one")] == ["banner"]

    def test_identity_not_equality(self):
        index = BackReferenceIndex()
        first, second = _Doc(), _Doc()
        index.add("has_many", "user", first, "posts")
        index.add("has_many", "user", second, "posts")
        assert len(index) == 2

        index.remove("has_many", "user", first)
        assert [ref.document for ref in index.get("has_many")] == [second]
        assert index.get("has_many")[0].document is second

    def test_remove_unknown_returns_false(self):
        index = BackReferenceIndex()
        assert index.remove("has_one", "user", _Doc()) is False

    def test_empty_groups_pruned(self):
        index = BackReferenceIndex()
        parent = _Doc()
        index.add("many_to_many", "post", parent, "tags")
        index.remove("many_to_many", "post", parent)
        assert index.as_dict() == {}
        assert len(index) == 0

    def test_contains(self):
        index = BackReferenceIndex()
        parent = _Doc()
        index.add("has_one", "user", parent, "profile")
        assert index.contains("has_one", parent)
        assert index.contains("has_one", parent, "profile")
        assert not index.contains("has_one", parent, "avatar")
        assert not index.contains("has_many", parent)

    def test_iteration_allows_removal(self):
        index = BackReferenceIndex()
        parents = [_Doc(), _Doc(), _Doc()]
        for parent in parents:
            index.add("has_many", "user", parent, "posts")

        for kind, table, ref in index:
            index.remove(kind, table, ref.document)
        assert len(index) == 0

    def test_as_dict_snapshot(self):
        index = BackReferenceIndex()
        parent = _Doc()
        index.add("belongs_to", "post", parent, "author", "author_id")

        snapshot = index.as_dict()
        assert list(snapshot) == ["belongs_to"]
        (document, field, key), = snapshot["belongs_to"]["post"]
        assert document is parent
        assert (field, key) == ("author", "author_id")

        snapshot["belongs_to"].clear()
        assert len(index) == 1

    def test_clear(self):
        index = BackReferenceIndex()
        index.add("has_one", "user", _Doc(), "profile")
        index.clear()
        assert len(index) == 0
