from enum import Enum
from typing import Optional

from .base import GitCommand


class Strategy(str, Enum):
    """Merge strategies."""

    DEFAULT = "default"
    RESOLVE = "resolve"
    RECURSIVE = "recursive"
    OCTOPUS = "octopus"
    OURS = "ours"
    SUBTREE = "subtree"
    RECURSIVE_THEIRS = "recursive_theirs"

    def __str__(self) -> str:
        return self.value


class FastForwardMode(str, Enum):
    """Fast-forward handling, rendered as the git option."""

    FF = "FF"
    FF_ONLY = "FF_ONLY"
    NO_FF = "NO_FF"

    def __str__(self) -> str:
        return "--" + self.value.lower().replace("_", "-")


class MergeCommand(GitCommand):
    """
    Merge a revision into HEAD.

    ``squash`` stages the merge result without committing unless ``commit``
    is explicitly requested; without squash, ``commit`` defaults to true.
    """

    operation = "git merge"

    def __init__(self, client):
        super().__init__(client)
        self._revision: Optional[str] = None
        self._message: Optional[str] = None
        self._strategy = Strategy.DEFAULT
        self._fast_forward_mode = FastForwardMode.FF
        self._squash = False
        self._commit: Optional[bool] = None

    def set_revision_to_merge(self, revision: str) -> "MergeCommand":
        self._revision = revision
        return self

    def set_message(self, message: str) -> "MergeCommand":
        self._message = message
        return self

    def set_strategy(self, strategy: Strategy) -> "MergeCommand":
        self._strategy = Strategy(strategy)
        return self

    def set_fast_forward_mode(self, mode: FastForwardMode) -> "MergeCommand":
        self._fast_forward_mode = FastForwardMode(mode)
        return self

    def set_squash(self, squash: bool) -> "MergeCommand":
        self._squash = squash
        return self

    def set_commit(self, commit: bool) -> "MergeCommand":
        self._commit = commit
        return self

    @property
    def creates_commit(self) -> bool:
        if self._commit is not None:
            return self._commit
        return not self._squash

    def validate(self) -> None:
        if not self._revision:
            raise self._fail("No revision given to merge")
        if self._squash and self._fast_forward_mode == FastForwardMode.NO_FF:
            raise self._fail("Squash merges cannot be combined with --no-ff")

    def _run(self) -> None:
        self.client._merge(
            self._revision,
            message=self._message,
            strategy=self._strategy,
            fast_forward_mode=self._fast_forward_mode,
            squash=self._squash,
            commit=self.creates_commit,
            deadline=self.new_deadline(),
        )
