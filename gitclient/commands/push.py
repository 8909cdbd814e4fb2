from typing import Optional

from .base import GitCommand


class PushCommand(GitCommand):
    """Push a refspec to a remote URL; rejected non-forced pushes raise GitError."""

    operation = "git push"

    def __init__(self, client):
        super().__init__(client)
        self._url: Optional[str] = None
        self._refspec: Optional[str] = None
        self._force = False
        self._tags = False

    def to(self, url: str) -> "PushCommand":
        self._url = url
        return self

    def ref(self, refspec: str) -> "PushCommand":
        self._refspec = refspec
        return self

    def force(self, force: bool = True) -> "PushCommand":
        self._force = force
        return self

    def tags(self, tags: bool) -> "PushCommand":
        self._tags = tags
        return self

    def validate(self) -> None:
        if not self._url:
            raise self._fail("No remote URL given for push")
        if not self._refspec and not self._tags:
            raise self._fail("Nothing to push: no refspec given and tags disabled")

    def _run(self) -> None:
        self.client._push(
            self._url,
            self._refspec,
            force=self._force,
            tags=self._tags,
            deadline=self.new_deadline(),
        )
