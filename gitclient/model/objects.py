"""Pydantic value objects shared by every command and backend."""

from typing import ClassVar, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from gitclient.utils import SHA1_PATTERN


def validate_sha1(v: str) -> str:
    """Validate a full object hash; upper-case input is normalized."""
    if not v:
        raise ValueError("object hash must be a non-empty string")
    v = v.strip().lower()
    if not SHA1_PATTERN.match(v):
        raise ValueError(f"'{v}' is not a 40 character hexadecimal object hash")
    return v


def validate_non_empty_name(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("name must be a non-empty string")
    return v


class ObjectReference(BaseModel):
    """
    A named git object: a content hash plus an optional human-readable name.

    Equality takes the concrete class into account, so a Tag and a plain
    ObjectReference with the same name and hash are different objects.
    """

    name: Optional[str] = Field(None, frozen=True, description="Ref label")
    sha1: str = Field(..., frozen=True, description="Object hash")

    @field_validator("sha1")
    @classmethod
    def validate_sha1(cls, v: str) -> str:
        return validate_sha1(v)

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if other is None or type(self) is not type(other):
            return False
        return self.name == other.name and self.sha1 == other.sha1  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.name, self.sha1))

    def __str__(self) -> str:
        return f"{self.name}@{self.sha1}" if self.name else self.sha1


class Tag(ObjectReference):
    """
    A tag ref. ``sha1`` is the ref's target (the tag object for annotated
    tags); the peeled commit and its first message line are filled in after
    construction.
    """

    name: str = Field(..., frozen=True, description="Tag name")
    commit_sha1: Optional[str] = Field(None, description="Hash of the tagged commit")
    commit_message: Optional[str] = Field(
        None, description="First line of the tagged commit's message"
    )

    model_config = {"validate_assignment": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_non_empty_name(v)

    @field_validator("commit_sha1")
    @classmethod
    def validate_commit_sha1(cls, v: Optional[str]) -> Optional[str]:
        return validate_sha1(v) if v is not None else None


class Branch(ObjectReference):
    """A branch name and the commit it points to at enumeration time."""

    name: str = Field(..., frozen=True, description="Branch name")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_non_empty_name(v)


class IndexEntry(BaseModel):
    """A single entry of a tree listing."""

    GITLINK_MODE: ClassVar[str] = "160000"
    VALID_MODES: ClassVar[Dict[str, FrozenSet[str]]] = {
        "blob": frozenset({"100644", "100755", "100664", "120000"}),
        "tree": frozenset({"040000"}),
        "commit": frozenset({"160000"}),
    }

    mode: str = Field(..., description="Octal file mode")
    type: str = Field(..., description="Object type: blob, tree or commit")
    object: str = Field(..., description="Object hash")
    file: str = Field(..., description="Repository-relative path")

    model_config = {"frozen": True}

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v):
        if isinstance(v, int):
            v = format(v, "o")
        return str(v).zfill(6)

    @field_validator("object")
    @classmethod
    def validate_object(cls, v: str) -> str:
        return validate_sha1(v)

    @field_validator("file")
    @classmethod
    def validate_file(cls, v: str) -> str:
        return validate_non_empty_name(v)

    @model_validator(mode="after")
    def validate_mode_type(self) -> "IndexEntry":
        allowed = self.VALID_MODES.get(self.type)
        if allowed is None:
            raise ValueError(f"Unknown object type '{self.type}'")
        if self.mode not in allowed:
            raise ValueError(f"Mode {self.mode} is not valid for a {self.type}")
        return self

    @classmethod
    def gitlink(cls, sha1: str, path: str) -> "IndexEntry":
        """Build a submodule entry, whatever the raw encoding of the host."""
        return cls(mode=cls.GITLINK_MODE, type="commit", object=sha1, file=path)

    @property
    def is_gitlink(self) -> bool:
        return self.mode == self.GITLINK_MODE

    def __str__(self) -> str:
        return f"IndexEntry[mode={self.mode},type={self.type},file={self.file},object={self.object}]"


class Revision(BaseModel):
    """A commit hash and the branches that resolved to it in the current fetch."""

    sha1: str = Field(..., description="Commit hash")
    branches: List[Branch] = Field(default_factory=list)

    @field_validator("sha1")
    @classmethod
    def validate_sha1(cls, v: str) -> str:
        return validate_sha1(v)

    def contains_branch_name(self, name: str) -> bool:
        return any(b.name == name for b in self.branches)


class SubmoduleDefinition(BaseModel):
    """A submodule as declared in .gitmodules."""

    name: str
    path: str
    url: Optional[str] = None
    branch: Optional[str] = None
