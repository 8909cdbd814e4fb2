from typing import List, Optional

from gitclient.model import StandardCredentials

from .base import GitCommand


class CheckoutCommand(GitCommand):
    """
    Forced checkout of a ref, optionally creating a branch at it.

    Creating a branch that already exists fails unless
    ``delete_branch_if_exist`` is set, in which case HEAD is detached first
    and the old branch is force-deleted, even when it is the current branch.
    """

    operation = "git checkout"

    def __init__(self, client):
        super().__init__(client)
        self._ref: Optional[str] = None
        self._branch: Optional[str] = None
        self._delete_branch = False
        self._sparse_checkout_paths: Optional[List[str]] = None
        self._lfs_remote: Optional[str] = None
        self._lfs_credentials: Optional[StandardCredentials] = None

    def ref(self, ref: str) -> "CheckoutCommand":
        self._ref = ref
        return self

    def branch(self, branch: Optional[str]) -> "CheckoutCommand":
        self._branch = branch
        return self

    def delete_branch_if_exist(self, delete_branch: bool) -> "CheckoutCommand":
        self._delete_branch = delete_branch
        return self

    def sparse_checkout_paths(self, paths: Optional[List[str]]) -> "CheckoutCommand":
        self._sparse_checkout_paths = list(paths) if paths is not None else None
        return self

    def lfs_remote(self, lfs_remote: Optional[str]) -> "CheckoutCommand":
        self._lfs_remote = lfs_remote
        return self

    def lfs_credentials(
        self, lfs_credentials: Optional[StandardCredentials]
    ) -> "CheckoutCommand":
        self._lfs_credentials = lfs_credentials
        return self

    def validate(self) -> None:
        if not self._ref:
            raise self._fail("No ref given for checkout")
        if self._branch is not None and not self._branch.strip():
            raise self._fail("Empty branch name given for checkout")
        if self._sparse_checkout_paths and any(
            not p.strip() for p in self._sparse_checkout_paths
        ):
            raise self._fail("Sparse checkout paths must be non-empty")

    def _run(self) -> None:
        self.client._checkout(
            self._ref,
            branch=self._branch,
            delete_branch=self._delete_branch,
            sparse_paths=self._sparse_checkout_paths,
            lfs_remote=self._lfs_remote,
            lfs_credentials=self._lfs_credentials,
            deadline=self.new_deadline(),
        )
