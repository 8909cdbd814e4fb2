from typing import List, Optional

from gitclient.model import RefSpec

from .base import GitCommand


class FetchCommand(GitCommand):
    """Fetch refs from a remote URL into the repository."""

    operation = "git fetch"

    def __init__(self, client):
        super().__init__(client)
        self._url: Optional[str] = None
        self._refspecs: List[RefSpec] = []
        self._prune = False
        self._shallow = False
        self._depth: Optional[int] = None
        self._tags: Optional[bool] = None

    def from_(self, url: str, refspecs: Optional[List[RefSpec]] = None) -> "FetchCommand":
        self._url = url
        self._refspecs = list(refspecs or [])
        return self

    def prune(self, prune: bool = True) -> "FetchCommand":
        self._prune = prune
        return self

    def shallow(self, shallow: bool) -> "FetchCommand":
        self._shallow = shallow
        return self

    def depth(self, depth: Optional[int]) -> "FetchCommand":
        self._depth = depth
        return self

    def tags(self, tags: bool) -> "FetchCommand":
        self._tags = tags
        return self

    @property
    def effective_depth(self) -> Optional[int]:
        """Depth to request, or None for full history.

        Depth only applies to shallow fetches; shallow without depth uses 1.
        """
        if not self._shallow:
            return None
        return self._depth if self._depth is not None else 1

    @property
    def resolved_refspecs(self) -> List[RefSpec]:
        """Refspecs to apply; the default origin branch mapping when none were given."""
        return self._refspecs or [RefSpec.default_fetch("origin")]

    def validate(self) -> None:
        if not self._url:
            raise self._fail("No remote URL given for fetch")
        if self._shallow and self._depth is not None and self._depth < 1:
            raise self._fail(f"Invalid fetch depth {self._depth}")

    def _run(self) -> None:
        self.client._fetch(
            self._url,
            self.resolved_refspecs,
            prune=self._prune,
            depth=self.effective_depth,
            tags=self._tags,
            deadline=self.new_deadline(),
        )
