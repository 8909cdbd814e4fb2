"""
Submodule update builder.

Top-level submodules are updated by up to ``threads`` workers. Nested
submodules are updated serially inside their parent's worker. Every worker
runs to completion; the command then fails if any worker failed.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from gitclient.config import get_default_submodule_threads
from gitclient.exceptions import GitError, GitInterruptedError
from gitclient.model import IndexEntry, RefSpec, SubmoduleDefinition

from .base import GitCommand

logger = logging.getLogger(__name__)


class SubmoduleUpdateCommand(GitCommand):
    operation = "git submodule update"

    def __init__(self, client):
        super().__init__(client)
        self._recursive = False
        self._remote_tracking = False
        self._parent_credentials = False
        self._reference: Optional[str] = None
        self._submodule_branches: Dict[str, str] = {}
        self._shallow = False
        self._depth: Optional[int] = None
        self._threads: Optional[int] = None

    def recursive(self, recursive: bool) -> "SubmoduleUpdateCommand":
        self._recursive = recursive
        return self

    def remote_tracking(self, remote_tracking: bool) -> "SubmoduleUpdateCommand":
        self._remote_tracking = remote_tracking
        return self

    def parent_credentials(self, parent_credentials: bool) -> "SubmoduleUpdateCommand":
        self._parent_credentials = parent_credentials
        return self

    def ref(self, reference: Optional[str]) -> "SubmoduleUpdateCommand":
        self._reference = reference
        return self

    def use_branch(self, submodule: str, branch: str) -> "SubmoduleUpdateCommand":
        self._submodule_branches[submodule] = branch
        return self

    def shallow(self, shallow: bool) -> "SubmoduleUpdateCommand":
        self._shallow = shallow
        return self

    def depth(self, depth: Optional[int]) -> "SubmoduleUpdateCommand":
        self._depth = depth
        return self

    def threads(self, threads: int) -> "SubmoduleUpdateCommand":
        self._threads = threads
        return self

    @property
    def thread_count(self) -> int:
        return self._threads if self._threads is not None else get_default_submodule_threads()

    @property
    def effective_depth(self) -> Optional[int]:
        if not self._shallow:
            return None
        return self._depth if self._depth is not None else 1

    def validate(self) -> None:
        if self._threads is not None and self._threads < 1:
            raise self._fail(f"Invalid thread count {self._threads}")
        if self._shallow and self._depth is not None and self._depth < 1:
            raise self._fail(f"Invalid submodule depth {self._depth}")

    def _prepare(self) -> None:
        """Serial set-up before the parallel phase: init and branch overrides."""
        self.client.submodule_init()
        for name, branch in self._submodule_branches.items():
            self.client.set_config(f"submodule.{name}.branch", branch)

    def _tracking_branch(self, sub, definition: SubmoduleDefinition, url: str) -> str:
        branch = (
            self._submodule_branches.get(definition.name)
            or self.client.get_config(f"submodule.{definition.name}.branch")
            or definition.branch
        )
        if branch and branch != ".":
            return branch
        symrefs = sub.get_remote_symbolic_references(url, "HEAD")
        target = symrefs.get("HEAD", "")
        if target.startswith("refs/heads/"):
            return target[len("refs/heads/") :]
        return "master"

    def _update_submodule(
        self, definition: SubmoduleDefinition, entry: IndexEntry
    ) -> None:
        """Update a single top-level submodule, including its nested ones."""
        client = self.client
        url = client.get_submodule_url(definition.name) or definition.url
        if not url:
            raise GitError(
                f"No URL configured for submodule {definition.name}",
                operation=self.operation,
            )

        sub = client.sub_git(definition.path)
        if self._parent_credentials:
            parent_url = client.get_remote_url(client.get_default_remote() or "origin")
            credentials = client.credentials_for(parent_url) if parent_url else None
            if credentials is not None:
                sub.add_credentials(url, credentials)

        client.listener.write(f"Updating submodule {definition.path} from {url}")
        if not sub.has_git_repo():
            clone = (
                sub.clone_command()
                .url(url)
                .shallow(self._shallow)
                .depth(self._depth)
                .reference(self._reference)
                .timeout(self._timeout)
            )
            clone.execute()
        else:
            sub.set_remote_url("origin", url)
            (
                sub.fetch_command()
                .from_(url, [RefSpec.default_fetch("origin")])
                .shallow(self._shallow)
                .depth(self._depth)
                .timeout(self._timeout)
                .execute()
            )

        if self._remote_tracking:
            branch = self._tracking_branch(sub, definition, url)
            target = sub.rev_parse(f"refs/remotes/origin/{branch}")
        else:
            target = entry.object
            if not sub.is_commit_in_repo(target):
                raise GitError(
                    f"Recorded commit {target} of submodule {definition.path} was not fetched from {url}",
                    operation=self.operation,
                )

        sub.checkout_command().ref(target).timeout(self._timeout).execute()

        if self._recursive and sub.has_git_modules():
            nested = (
                sub.submodule_update_command()
                .recursive(True)
                .remote_tracking(self._remote_tracking)
                .parent_credentials(self._parent_credentials)
                .ref(self._reference)
                .shallow(self._shallow)
                .depth(self._depth)
                .threads(1)
                .timeout(self._timeout)
            )
            nested.execute()

    def _submodules(self) -> List[Tuple[SubmoduleDefinition, IndexEntry]]:
        definitions = {d.path: d for d in self.client.get_submodule_definitions()}
        pairs = []
        for entry in self.client.get_submodules("HEAD"):
            definition = definitions.get(entry.file)
            if definition is None:
                logger.warning(f"Submodule at {entry.file} has no entry in .gitmodules, skipping")
                continue
            pairs.append((definition, entry))
        return pairs

    def _run(self) -> None:
        if not self.client.has_git_modules():
            logger.debug(f"No .gitmodules in {self.client.work_tree}, nothing to update")
            return

        submodules = self._submodules()
        self._prepare()
        if not submodules:
            return

        threads = min(self.thread_count, len(submodules))
        logger.debug(
            f"Updating {len(submodules)} submodules in {self.client.work_tree} with {threads} threads"
        )

        failures: List[Tuple[str, BaseException]] = []
        with ThreadPoolExecutor(max_workers=threads) as pool:
            futures = [
                (definition.path, pool.submit(self._update_submodule, definition, entry))
                for definition, entry in submodules
            ]
        # leaving the executor waits for every worker
        for path, future in futures:
            error = future.exception()
            if error is not None:
                logger.error(f"Submodule update failed for {path}: {error}")
                failures.append((path, error))

        if not failures:
            return
        for _, error in failures:
            if isinstance(error, GitInterruptedError):
                raise error
        first = failures[0][1]
        paths = ", ".join(path for path, _ in failures)
        raise GitError(
            f"Failed to update submodules: {paths}",
            operation=self.operation,
            diagnostic=str(first),
        ) from first
