from typing import List, Optional

from .base import GitCommand


class RevListCommand(GitCommand):
    """
    List commits reachable from a ref (or from every ref).

    Results are appended to the caller's list in reverse-chronological
    traversal order; the list is not cleared first.
    """

    operation = "git rev-list"

    def __init__(self, client):
        super().__init__(client)
        self._all = False
        self._nowalk = False
        self._first_parent = False
        self._reference: Optional[str] = None
        self._out: Optional[List[str]] = None

    def all(self, all: bool = True) -> "RevListCommand":
        self._all = all
        return self

    def nowalk(self, nowalk: bool) -> "RevListCommand":
        self._nowalk = nowalk
        return self

    def first_parent(self, first_parent: bool = True) -> "RevListCommand":
        self._first_parent = first_parent
        return self

    def reference(self, reference: str) -> "RevListCommand":
        self._reference = reference
        return self

    def to(self, revs: List[str]) -> "RevListCommand":
        self._out = revs
        return self

    def validate(self) -> None:
        if self._out is None:
            raise self._fail("No output list given for rev-list")
        if not self._all and not self._reference:
            raise self._fail("rev-list needs a reference or all()")
        if self._all and self._reference:
            raise self._fail("rev-list takes either a reference or all(), not both")
        if self._nowalk and self._all:
            raise self._fail("nowalk cannot be combined with all()")

    def _run(self) -> None:
        revs = self.client._rev_list(
            self._reference,
            all_refs=self._all,
            nowalk=self._nowalk,
            first_parent=self._first_parent,
            deadline=self.new_deadline(),
        )
        self._out.extend(revs)  # type: ignore[union-attr]
