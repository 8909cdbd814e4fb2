"""
Clone builder.

A clone here only creates the local object store and the remote-tracking refs:
it initializes the repository, configures the remote and fetches. A separate
checkout materializes files. The steps go through the client's own commands,
so both backends share this sequence.
"""

import logging
from pathlib import Path
from typing import List, Optional

from gitclient.model import RefSpec
from gitclient.utils import strip_credentials_from_url

from .base import GitCommand

logger = logging.getLogger(__name__)


def _objects_dir(repository: Path) -> Optional[Path]:
    """Locate the object directory of a working repository or a bare one."""
    for candidate in (repository / ".git" / "objects", repository / "objects"):
        if candidate.is_dir():
            return candidate
    return None


class CloneCommand(GitCommand):
    operation = "git clone"

    def __init__(self, client):
        super().__init__(client)
        self._url: Optional[str] = None
        self._origin = "origin"
        self._shallow = False
        self._depth: Optional[int] = None
        self._shared = False
        self._reference: Optional[str] = None
        self._tags = True
        self._refspecs: List[RefSpec] = []

    def url(self, url: str) -> "CloneCommand":
        self._url = url
        return self

    def repository_name(self, name: str) -> "CloneCommand":
        self._origin = name
        return self

    def shallow(self, shallow: bool = True) -> "CloneCommand":
        self._shallow = shallow
        return self

    def depth(self, depth: Optional[int]) -> "CloneCommand":
        self._depth = depth
        return self

    def shared(self, shared: bool = True) -> "CloneCommand":
        self._shared = shared
        return self

    def reference(self, reference: Optional[str]) -> "CloneCommand":
        self._reference = reference
        return self

    def tags(self, tags: bool) -> "CloneCommand":
        self._tags = tags
        return self

    def refspecs(self, refspecs: List[RefSpec]) -> "CloneCommand":
        self._refspecs = list(refspecs)
        return self

    def no_checkout(self) -> "CloneCommand":
        """Kept for call-site compatibility: clones never check out."""
        return self

    @property
    def resolved_refspecs(self) -> List[RefSpec]:
        return self._refspecs or [RefSpec.default_fetch(self._origin)]

    def validate(self) -> None:
        if not self._url:
            raise self._fail("No URL given for clone")
        if not self._origin:
            raise self._fail("No remote name given for clone")
        if self._shallow and self._depth is not None and self._depth < 1:
            raise self._fail(f"Invalid clone depth {self._depth}")

    def _add_alternate(self, objects_dir: Path) -> None:
        alternates = self.client.git_dir / "objects" / "info" / "alternates"
        alternates.parent.mkdir(parents=True, exist_ok=True)
        existing = alternates.read_text().splitlines() if alternates.exists() else []
        if str(objects_dir) not in existing:
            with open(alternates, "a") as f:
                f.write(f"{objects_dir}\n")

    def _setup_reference(self) -> None:
        reference = Path(self._reference).expanduser()  # type: ignore[arg-type]
        if not reference.is_dir():
            self.client.listener.write(
                f"[WARNING] Reference path does not exist: {reference}"
            )
            return
        objects_dir = _objects_dir(reference)
        if objects_dir is None:
            self.client.listener.write(
                f"[WARNING] Reference path does not contain an objects directory (not a git repo?): {reference}"
            )
            return
        self.client.listener.write(f"Using reference repository: {reference}")
        self._add_alternate(objects_dir.resolve())

    def _setup_shared(self) -> None:
        url = self._url or ""
        if url.startswith("file://"):
            url = url[len("file://") :]
        source = Path(url)
        objects_dir = _objects_dir(source) if source.is_dir() else None
        if objects_dir is None:
            logger.warning(f"Shared clone needs a local source, ignoring for {self._url}")
            return
        self._add_alternate(objects_dir.resolve())

    def _run(self) -> None:
        client = self.client
        url = self._url or ""
        client.listener.write(
            f"Cloning repository {strip_credentials_from_url(url)} into {client.work_tree}"
        )
        Path(client.work_tree).mkdir(parents=True, exist_ok=True)

        client.init_command().workspace(str(client.work_tree)).execute()

        if self._reference:
            self._setup_reference()
        if self._shared:
            self._setup_shared()

        refspecs = self.resolved_refspecs
        client.set_remote_url(self._origin, url)
        client.set_config(
            f"remote.{self._origin}.fetch", *[str(r) for r in refspecs]
        )

        fetch = (
            client.fetch_command()
            .from_(url, refspecs)
            .shallow(self._shallow)
            .depth(self._depth)
            .tags(self._tags)
            .timeout(self._timeout)
        )
        fetch.execute()
