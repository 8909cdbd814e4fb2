import logging
from typing import Optional

from gitclient.utils import repository_kind

from .base import GitCommand

logger = logging.getLogger(__name__)


class InitCommand(GitCommand):
    """
    Create a repository.

    Running it against an existing repository of the same kind does nothing;
    a bare/non-bare mismatch fails instead of reinitializing.
    """

    operation = "git init"

    def __init__(self, client):
        super().__init__(client)
        self._workspace: Optional[str] = None
        self._bare = False

    def workspace(self, workspace: str) -> "InitCommand":
        self._workspace = workspace
        return self

    def bare(self, bare: bool) -> "InitCommand":
        self._bare = bare
        return self

    @property
    def target(self) -> str:
        return self._workspace or str(self.client.work_tree)

    def validate(self) -> None:
        if not self.target:
            raise self._fail("No workspace given for init")

    def _run(self) -> None:
        wanted = "bare" if self._bare else "workspace"
        existing = repository_kind(self.target)
        if existing == wanted:
            logger.debug(f"{self.target} is already a {existing} repository")
            return
        if existing is not None:
            raise self._fail(
                f"{self.target} already holds a {existing} repository, refusing to create a {wanted} one"
            )
        self.client._init(self.target, bare=self._bare)
