from typing import Optional

from .base import GitCommand


class RebaseCommand(GitCommand):
    """
    Rebase the current branch onto an upstream ref.

    On conflict the repository is left in a rebase-in-progress state
    (``rebase-merge/`` in the metadata directory) and GitError is raised;
    aborting or continuing is up to the caller.
    """

    operation = "git rebase"

    def __init__(self, client):
        super().__init__(client)
        self._upstream: Optional[str] = None

    def set_upstream(self, upstream: str) -> "RebaseCommand":
        self._upstream = upstream
        return self

    def validate(self) -> None:
        if not self._upstream:
            raise self._fail("No upstream given for rebase")

    def _run(self) -> None:
        self.client._rebase(self._upstream, deadline=self.new_deadline())
