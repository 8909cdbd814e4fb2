"""Tests for the value objects in gitclient.model.objects."""

import pytest
from pydantic import ValidationError

from gitclient.model import (
    Branch,
    IndexEntry,
    ObjectReference,
    Revision,
    Tag,
)

SHA_A = "a" * 40
SHA_B = "b" * 40


class TestObjectReference:
    @pytest.mark.short
    def test_hash_is_normalized_to_lower_case(self):
        ref = ObjectReference(name="x", sha1=SHA_A.upper())
        assert ref.sha1 == SHA_A

    @pytest.mark.short
    @pytest.mark.parametrize("bad", ["", "abc", "g" * 40, "a" * 41])
    def test_invalid_hash_rejected(self, bad):
        with pytest.raises(ValidationError):
            ObjectReference(sha1=bad)

    @pytest.mark.short
    def test_equality_includes_concrete_class(self):
        plain = ObjectReference(name="v1", sha1=SHA_A)
        tag = Tag(name="v1", sha1=SHA_A)
        branch = Branch(name="v1", sha1=SHA_A)

        assert plain != tag
        assert tag != branch
        assert tag == Tag(name="v1", sha1=SHA_A)
        assert len({plain, tag, branch, Tag(name="v1", sha1=SHA_A)}) == 3

    @pytest.mark.short
    def test_str(self):
        assert str(ObjectReference(sha1=SHA_A)) == SHA_A
        assert str(Branch(name="master", sha1=SHA_A)) == f"master@{SHA_A}"


class TestTag:
    @pytest.mark.short
    def test_commit_fields_filled_after_construction(self):
        tag = Tag(name="v1", sha1=SHA_A)
        assert tag.commit_sha1 is None

        tag.commit_sha1 = SHA_B.upper()
        tag.commit_message = "release"

        assert tag.commit_sha1 == SHA_B
        assert tag.commit_message == "release"

    @pytest.mark.short
    def test_commit_hash_validated_on_assignment(self):
        tag = Tag(name="v1", sha1=SHA_A)
        with pytest.raises(ValidationError):
            tag.commit_sha1 = "nope"

    @pytest.mark.short
    def test_name_required(self):
        with pytest.raises(ValidationError):
            Tag(name=" ", sha1=SHA_A)


class TestBranch:
    @pytest.mark.short
    def test_name_is_frozen(self):
        branch = Branch(name="master", sha1=SHA_A)
        with pytest.raises(ValidationError):
            branch.name = "other"

    @pytest.mark.short
    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            Branch(name="", sha1=SHA_A)


class TestIndexEntry:
    @pytest.mark.short
    def test_integer_modes_are_rendered_in_octal(self):
        entry = IndexEntry(mode=0o100644, type="blob", object=SHA_A, file="README.md")
        assert entry.mode == "100644"

        tree = IndexEntry(mode=0o40000, type="tree", object=SHA_A, file="src")
        assert tree.mode == "040000"

    @pytest.mark.short
    def test_gitlink(self):
        entry = IndexEntry.gitlink(SHA_A, "modules/lib")
        assert entry.is_gitlink
        assert entry.type == "commit"
        assert entry.mode == "160000"
        assert str(entry) == f"IndexEntry[mode=160000,type=commit,file=modules/lib,object={SHA_A}]"

    @pytest.mark.short
    @pytest.mark.parametrize(
        "mode,type_",
        [("100644", "tree"), ("040000", "blob"), ("100644", "commit"), ("100644", "symlink")],
    )
    def test_mode_must_fit_type(self, mode, type_):
        with pytest.raises(ValidationError):
            IndexEntry(mode=mode, type=type_, object=SHA_A, file="x")

    @pytest.mark.short
    def test_entries_are_immutable(self):
        entry = IndexEntry(mode="100755", type="blob", object=SHA_A, file="run.sh")
        with pytest.raises(ValidationError):
            entry.file = "other.sh"


class TestRevision:
    @pytest.mark.short
    def test_contains_branch_name(self):
        revision = Revision(
            sha1=SHA_A,
            branches=[Branch(name="origin/master", sha1=SHA_A)],
        )
        assert revision.contains_branch_name("origin/master")
        assert not revision.contains_branch_name("master")
