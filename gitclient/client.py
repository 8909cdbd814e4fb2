"""
The GitClient facade.

A client is bound to one working directory and owns the credential, proxy and
identity configuration used by every operation run against it. The facade
exposes three kinds of entry points:

    - command builders (``fetch_command()``, ``checkout_command()``, ...)
    - direct operations kept for call-site compatibility, which only
      configure a builder with defaults and execute it
    - introspection and small mutating operations

Shared behaviour (credential lookup, submodule discovery, remote bookkeeping,
branch and tag enumeration) lives here. Backends implement the abstract
primitives at the bottom of the class and map their own failures to
GitError / GitLockFailedError.

A client holds configuration only. Live repository handles are opened inside
``with_repository`` and each operation, and closed before it returns, so a
client can be pickled and shipped to another process.
"""

import fnmatch
import io
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    TextIO,
    Tuple,
    TypeVar,
    Union,
)

from git.config import GitConfigParser

from gitclient.commands import (
    ChangelogCommand,
    CheckoutCommand,
    CloneCommand,
    Deadline,
    FastForwardMode,
    FetchCommand,
    InitCommand,
    MergeCommand,
    PushCommand,
    RebaseCommand,
    RevListCommand,
    Strategy,
    SubmoduleUpdateCommand,
)
from gitclient.exceptions import GitError, GitInterruptedError
from gitclient.listener import LoggingListener, TaskListener
from gitclient.model import (
    Branch,
    IndexEntry,
    ProxyConfiguration,
    RefSpec,
    Revision,
    StandardCredentials,
    SubmoduleDefinition,
    Tag,
)
from gitclient.utils import first_line, is_relative_url, resolve_relative_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

Identity = Tuple[str, str]


class GitClient(ABC):
    """Abstract git client bound to a single working directory."""

    implementation = "abstract"

    def __init__(
        self, work_tree: Union[str, Path], listener: Optional[TaskListener] = None
    ):
        self.work_tree = Path(work_tree).absolute()
        self.listener: TaskListener = listener or LoggingListener()
        self._credentials: Dict[str, StandardCredentials] = {}
        self._default_credentials: Optional[StandardCredentials] = None
        self._proxy: Optional[ProxyConfiguration] = None
        self._author: Optional[Identity] = None
        self._committer: Optional[Identity] = None
        self._cancelled = threading.Event()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.work_tree)!r})"

    # Pickling keeps configuration only

    def __getstate__(self) -> Dict[str, Any]:
        state = self.__dict__.copy()
        state.pop("_cancelled", None)
        state.pop("listener", None)
        return state

    def __setstate__(self, state: Dict[str, Any]) -> None:
        self.__dict__.update(state)
        self._cancelled = threading.Event()
        self.listener = LoggingListener()

    # Credentials, proxy and identity

    def add_credentials(self, url: str, credentials: StandardCredentials) -> None:
        self._credentials[url] = credentials

    def add_default_credentials(self, credentials: StandardCredentials) -> None:
        self._default_credentials = credentials

    def set_credentials(self, credentials: StandardCredentials) -> None:
        """Older name of add_default_credentials."""
        self.add_default_credentials(credentials)

    def clear_credentials(self) -> None:
        self._credentials.clear()
        self._default_credentials = None

    def credentials_for(self, url: str) -> Optional[StandardCredentials]:
        """The credentials registered for exactly this URL, else the default ones."""
        return self._credentials.get(url, self._default_credentials)

    def set_proxy(self, proxy: Optional[ProxyConfiguration]) -> None:
        self._proxy = proxy

    @property
    def proxy(self) -> Optional[ProxyConfiguration]:
        return self._proxy

    def set_author(self, name: str, email: str) -> None:
        self._author = (name, email)

    def set_committer(self, name: str, email: str) -> None:
        self._committer = (name, email)

    # Cancellation

    def cancel(self) -> None:
        """Ask running and future operations of this client (and its sub-clients) to stop."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_interrupted(self, operation: Optional[str] = None) -> None:
        if self._cancelled.is_set():
            raise GitInterruptedError(operation)

    # Repository location

    @property
    def git_dir(self) -> Path:
        """Metadata directory: ``.git``, the target of a ``.git`` file, or the bare repository itself."""
        dot_git = self.work_tree / ".git"
        if dot_git.is_file():
            content = dot_git.read_text().strip()
            if content.startswith("gitdir:"):
                target = Path(content[len("gitdir:") :].strip())
                if not target.is_absolute():
                    target = (self.work_tree / target).resolve()
                return target
        if not dot_git.exists() and (self.work_tree / "HEAD").is_file() and (
            self.work_tree / "objects"
        ).is_dir():
            return self.work_tree
        return dot_git

    def _require_repository(self) -> None:
        if not self.has_git_repo():
            raise GitError(f"{self.work_tree} is not a git repository")

    # Builder factories

    def clone_command(self) -> CloneCommand:
        return CloneCommand(self)

    def fetch_command(self) -> FetchCommand:
        return FetchCommand(self)

    def checkout_command(self) -> CheckoutCommand:
        return CheckoutCommand(self)

    def push_command(self) -> PushCommand:
        return PushCommand(self)

    def merge_command(self) -> MergeCommand:
        return MergeCommand(self)

    def rebase_command(self) -> RebaseCommand:
        return RebaseCommand(self)

    def init_command(self) -> InitCommand:
        return InitCommand(self)

    def submodule_update_command(self) -> SubmoduleUpdateCommand:
        return SubmoduleUpdateCommand(self)

    def rev_list_command(self) -> RevListCommand:
        return RevListCommand(self)

    def changelog_command(self) -> ChangelogCommand:
        return ChangelogCommand(self)

    # Direct operations, each a builder with default parameters

    def init(self) -> None:
        self.init_command().workspace(str(self.work_tree)).execute()

    def clone(
        self,
        url: str,
        origin: str = "origin",
        shallow: bool = False,
        reference: Optional[str] = None,
    ) -> None:
        self.clone_command().url(url).repository_name(origin).shallow(
            shallow
        ).reference(reference).execute()

    def fetch(self, url: str, refspecs: Optional[List[RefSpec]] = None) -> None:
        self.fetch_command().from_(url, refspecs).execute()

    def fetch_remote(self, remote_name: str, *refspecs: RefSpec) -> None:
        """Fetch from a configured remote, using its configured refspecs unless some are given."""
        url = self.get_remote_url(remote_name)
        if url is None:
            raise GitError(f"No URL configured for remote {remote_name}", operation="git fetch")
        specs = list(refspecs)
        if not specs:
            configured = self._config_get_all(f"remote.{remote_name}.fetch")
            specs = RefSpec.parse_all(configured) or [RefSpec.default_fetch(remote_name)]
        self.fetch_command().from_(url, specs).execute()

    def push(self, remote_or_url: str, refspec: str) -> None:
        url = self.get_remote_url(remote_or_url) or remote_or_url
        self.push_command().to(url).ref(refspec).execute()

    def merge(self, revision: str) -> None:
        self.merge_command().set_revision_to_merge(revision).execute()

    def rev_list(self, ref: str) -> List[str]:
        revs: List[str] = []
        self.rev_list_command().reference(ref).to(revs).execute()
        return revs

    def rev_list_all(self) -> List[str]:
        revs: List[str] = []
        self.rev_list_command().all().to(revs).execute()
        return revs

    def submodule_update(
        self,
        recursive: bool = False,
        remote_tracking: bool = False,
        reference: Optional[str] = None,
    ) -> None:
        self.submodule_update_command().recursive(recursive).remote_tracking(
            remote_tracking
        ).ref(reference).execute()

    def changelog(self, rev_from: str, rev_to: str, out: TextIO) -> None:
        self.changelog_command().excludes(rev_from).includes(rev_to).to(out).execute()

    def show_revision(self, rev_to: str, rev_from: Optional[str] = None) -> List[str]:
        """
        Raw log lines for ``rev_from..rev_to``, or for ``rev_to`` alone.

        Merge commits are reported once per parent, as in ``changelog``.
        """
        out = io.StringIO()
        command = self.changelog_command().includes(rev_to).to(out)
        if rev_from is None:
            command.max(1)
        else:
            command.excludes(rev_from)
        command.execute()
        return out.getvalue().splitlines()

    def checkout(self, ref: str, branch: Optional[str] = None) -> None:
        """
        Interactive-style checkout of ``ref``, optionally creating ``branch``.

        Fails if ``branch`` already exists; ``checkout_branch`` is the
        preferred, idempotent form.
        """
        self.checkout_command().ref(ref).branch(branch).execute()

    def checkout_branch(self, branch: Optional[str], ref: str) -> None:
        """
        Make ``branch`` point at ``ref`` and check it out.

        Whatever the prior state, afterwards the branch exists at ``ref``,
        HEAD is attached to it and the index and tracked files match ``ref``.
        Untracked files are left alone. With ``branch=None`` HEAD attaches
        to ``ref`` when it names a local branch and is detached otherwise.
        """
        self.checkout_command().ref(ref).branch(branch).delete_branch_if_exist(
            True
        ).execute()

    # Configuration

    def get_config(self, key: str) -> Optional[str]:
        """Last value of a repository configuration key, or None."""
        values = self._config_get_all(key)
        return values[-1] if values else None

    # Remotes

    def get_remote_url(self, name: str) -> Optional[str]:
        return self.get_config(f"remote.{name}.url")

    def set_remote_url(self, name: str, url: str) -> None:
        self.set_config(f"remote.{name}.url", url)

    def add_remote_url(self, name: str, url: str) -> None:
        """Add a remote with the default fetch refspec, or repoint an existing one."""
        self.set_remote_url(name, url)
        if not self._config_get_all(f"remote.{name}.fetch"):
            self.set_config(f"remote.{name}.fetch", str(RefSpec.default_fetch(name)))

    def get_remote_names(self) -> List[str]:
        return self._config_subsections("remote")

    def get_default_remote(self, default: str = "origin") -> Optional[str]:
        """``default`` when such a remote exists, else the first remote, else None."""
        remotes = self.get_remote_names()
        if default in remotes:
            return default
        return remotes[0] if remotes else None

    def prune(self, remote_name: str) -> None:
        """Delete remote-tracking refs of ``remote_name`` whose remote branch is gone."""
        url = self.get_remote_url(remote_name)
        if url is None:
            raise GitError(f"No URL configured for remote {remote_name}", operation="git remote prune")
        refspecs = RefSpec.parse_all(self._config_get_all(f"remote.{remote_name}.fetch"))
        refspecs = refspecs or [RefSpec.default_fetch(remote_name)]
        remote_refs = self.get_remote_references(url)
        for name in self._stale_refs(self._list_refs("refs/"), remote_refs, refspecs):
            self.listener.write(f" * [pruned] {name}")
            self.delete_ref(name)

    @staticmethod
    def _stale_refs(
        local_refs: Dict[str, str], remote_refs: Dict[str, str], refspecs: List[RefSpec]
    ) -> List[str]:
        """Local refs under a refspec destination whose source ref no longer exists remotely."""
        stale = []
        for name in sorted(local_refs):
            for refspec in refspecs:
                if not refspec.destination or not refspec.matches_destination(name):
                    continue
                source = refspec.expand_from_destination(name)
                if source not in remote_refs:
                    stale.append(name)
                break
        return stale

    def get_head_revs(self, url: str) -> Dict[str, str]:
        """Branch heads of a remote, keyed by full ref name."""
        return self.get_remote_references(url, heads_only=True)

    def get_head_rev(self, url: str, branch: str) -> Optional[str]:
        """Commit of the first remote branch matching ``branch``, or None."""
        if branch.startswith("refs/heads/"):
            branch = branch[len("refs/heads/") :]
        refs = self.get_remote_references(url, branch, heads_only=True)
        for name in sorted(refs):
            return refs[name]
        return None

    def get_remote_tag_names(self, pattern: Optional[str] = None) -> Set[str]:
        """Tag names advertised by the default remote."""
        remote = self.get_default_remote()
        url = self.get_remote_url(remote) if remote else None
        if url is None:
            raise GitError("No default remote configured", operation="git ls-remote")
        names = set()
        for name in self.get_remote_references(url, tags_only=True):
            short = name[len("refs/tags/") :]
            if pattern is None or fnmatch.fnmatchcase(short, pattern):
                names.add(short)
        return names

    # Branches, tags and refs

    def _branches(self, prefix: str, strip: str) -> Set[Branch]:
        return {
            Branch(name=name[len(strip) :], sha1=sha1)
            for name, sha1 in self._list_refs(prefix).items()
        }

    def get_branches(self) -> Set[Branch]:
        """Local branches (``master``) and remote-tracking branches (``origin/master``)."""
        self._require_repository()
        return self._branches("refs/heads/", "refs/heads/") | self.get_remote_branches()

    def get_remote_branches(self) -> Set[Branch]:
        self._require_repository()
        return self._branches("refs/remotes/", "refs/remotes/")

    def get_branches_containing(self, revision: str, all_branches: bool = False) -> List[Branch]:
        self._require_repository()
        sha1 = self.rev_parse(f"{revision}^{{commit}}")
        if all_branches:
            candidates = self.get_branches()
        else:
            candidates = self._branches("refs/heads/", "refs/heads/")
        containing = [
            b for b in candidates if b.sha1 == sha1 or self.merge_base(sha1, b.sha1) == sha1
        ]
        return sorted(containing, key=lambda b: b.name)

    def get_tag_names(self, pattern: Optional[str] = None) -> Set[str]:
        self._require_repository()
        names = {name[len("refs/tags/") :] for name in self._list_refs("refs/tags/")}
        if pattern:
            names = {n for n in names if fnmatch.fnmatchcase(n, pattern)}
        return names

    def get_tags(self) -> Set[Tag]:
        """All tags, with the tagged commit and its first message line filled in."""
        self._require_repository()
        tags = set()
        for name, sha1 in self._list_refs("refs/tags/").items():
            tag = Tag(name=name[len("refs/tags/") :], sha1=sha1)
            try:
                tag.commit_sha1 = self.rev_parse(f"{sha1}^{{commit}}")
                tag.commit_message = first_line(self._commit_message(tag.commit_sha1))
            except GitError as e:
                logger.debug(f"Tag {tag.name} does not point at a commit: {e}")
            tags.add(tag)
        return tags

    def tag_exists(self, name: str) -> bool:
        return self.ref_exists(f"refs/tags/{name}")

    def get_ref_names(self, prefix: str = "refs/") -> Set[str]:
        self._require_repository()
        return set(self._list_refs(prefix))

    def ref_exists(self, name: str) -> bool:
        self._require_repository()
        return name in self._list_refs(name)

    def is_commit_in_repo(self, sha1: Optional[str]) -> bool:
        self._require_repository()
        if not sha1:
            return False
        try:
            return self.rev_parse(f"{sha1}^{{commit}}") == sha1.lower()
        except GitError:
            return False

    # Submodules

    def sub_git(self, subdir: str) -> "GitClient":
        """
        Client for the repository at ``work_tree/subdir``.

        The sub-client inherits credentials, proxy, identity and listener,
        and shares the cancellation state of its parent.
        """
        sub = type(self)(self.work_tree / subdir, listener=self.listener)
        sub._credentials = dict(self._credentials)
        sub._default_credentials = self._default_credentials
        sub._proxy = self._proxy
        sub._author = self._author
        sub._committer = self._committer
        sub._cancelled = self._cancelled
        return sub

    def has_git_modules(self) -> bool:
        return (self.work_tree / ".gitmodules").is_file()

    def get_submodule_definitions(self) -> List[SubmoduleDefinition]:
        """Submodules declared in the working tree's ``.gitmodules``."""
        path = self.work_tree / ".gitmodules"
        if not path.is_file():
            return []
        definitions = []
        with GitConfigParser(str(path), read_only=True) as parser:
            sections = [(s, dict(parser.items(s))) for s in parser.sections()]
        for section, options in sections:
            if not section.startswith("submodule "):
                continue
            name = section[len("submodule ") :].strip().strip('"')
            if "path" not in options:
                logger.warning(f"Submodule {name} in .gitmodules has no path, skipping")
                continue
            definitions.append(
                SubmoduleDefinition(
                    name=name,
                    path=str(options["path"]),
                    url=str(options["url"]) if "url" in options else None,
                    branch=str(options["branch"]) if "branch" in options else None,
                )
            )
        return definitions

    def get_submodules(self, tree_ish: str) -> List[IndexEntry]:
        """Gitlink entries of ``tree_ish``, at any depth of the tree."""
        return [
            IndexEntry.gitlink(entry.object, entry.file)
            for entry in self.ls_tree(tree_ish, recursive=True)
            if entry.type == "commit"
        ]

    def get_submodule_url(self, name: str) -> Optional[str]:
        return self.get_config(f"submodule.{name}.url")

    def set_submodule_url(self, name: str, url: str) -> None:
        self.set_config(f"submodule.{name}.url", url)

    def _absolute_submodule_url(self, url: str) -> str:
        if not is_relative_url(url):
            return url
        remote = self.get_default_remote()
        base = self.get_remote_url(remote) if remote else None
        return resolve_relative_url(base or str(self.work_tree), url)

    def submodule_init(self) -> None:
        """Register the URL of every submodule in the repository configuration, keeping existing ones."""
        for definition in self.get_submodule_definitions():
            if not definition.url or self.get_submodule_url(definition.name):
                continue
            self.set_submodule_url(definition.name, self._absolute_submodule_url(definition.url))

    def submodule_sync(self) -> None:
        """Reset submodule URLs (configuration and checked-out remotes) to the ones in ``.gitmodules``."""
        for definition in self.get_submodule_definitions():
            if not definition.url:
                continue
            url = self._absolute_submodule_url(definition.url)
            self.set_submodule_url(definition.name, url)
            sub = self.sub_git(definition.path)
            if sub.has_git_repo():
                sub.set_remote_url(sub.get_default_remote() or "origin", url)

    def submodule_clean(self, recursive: bool = False) -> None:
        for entry in self.get_submodules("HEAD"):
            sub = self.sub_git(entry.file)
            if not sub.has_git_repo():
                continue
            sub.reset(hard=True)
            sub.clean()
            if recursive:
                sub.submodule_clean(recursive=True)

    def setup_submodule_urls(
        self, revision: Revision, listener: Optional[TaskListener] = None
    ) -> None:
        """
        Point relative submodule URLs at the remote ``revision`` was fetched from.

        The remote is the first ``remote/branch`` of the revision whose remote
        has a URL, else the default remote.
        """
        listener = listener or self.listener
        remote_url = None
        for branch in revision.branches:
            if "/" not in branch.name:
                continue
            remote_url = self.get_remote_url(branch.name.split("/", 1)[0])
            if remote_url:
                break
        if remote_url is None:
            remote = self.get_default_remote()
            remote_url = self.get_remote_url(remote) if remote else None
        if remote_url is None:
            listener.write(f"No remote found for {revision.sha1}, leaving submodule URLs alone")
            return

        self.submodule_init()
        for definition in self.get_submodule_definitions():
            if definition.url and is_relative_url(definition.url):
                url = resolve_relative_url(remote_url, definition.url)
                listener.write(f"Setting submodule {definition.name} URL to {url}")
                self.set_submodule_url(definition.name, url)

    # Backend primitives

    @abstractmethod
    def has_git_repo(self) -> bool:
        """True when the working directory itself holds a repository."""

    @abstractmethod
    def is_bare_repository(self) -> bool: ...

    @abstractmethod
    def with_repository(self, callback: Callable[[Any, Path], T]) -> T:
        """
        Call ``callback(repo, git_dir)`` with the backend's live repository handle.

        The handle is closed when the callback returns and must not be kept.
        """

    @abstractmethod
    def _config_get_all(self, key: str) -> List[str]: ...

    @abstractmethod
    def _config_subsections(self, section: str) -> List[str]: ...

    @abstractmethod
    def set_config(self, key: str, *values: str) -> None:
        """Replace every value of a multi-valued configuration key."""

    @abstractmethod
    def unset_config(self, key: str) -> None: ...

    @abstractmethod
    def _list_refs(self, prefix: str) -> Dict[str, str]:
        """Non-symbolic refs whose full name starts with ``prefix``, mapped to the object they name."""

    @abstractmethod
    def rev_parse(self, revision: str) -> str:
        """Full object hash named by ``revision``; GitError when unknown."""

    @abstractmethod
    def merge_base(self, a: str, b: str) -> Optional[str]: ...

    @abstractmethod
    def ls_tree(self, tree_ish: str, recursive: bool = False) -> List[IndexEntry]: ...

    @abstractmethod
    def get_tag_message(self, name: str) -> Optional[str]:
        """Annotation of a tag, or the tagged commit's message for lightweight tags."""

    @abstractmethod
    def _commit_message(self, sha1: str) -> str: ...

    @abstractmethod
    def get_remote_references(
        self,
        url: str,
        pattern: Optional[str] = None,
        heads_only: bool = False,
        tags_only: bool = False,
    ) -> Dict[str, str]:
        """
        Refs advertised by a remote, keyed by full name.

        Args:
            url: Remote URL
            pattern: Glob matched against the full name or its trailing components
            heads_only: Include branches
            tags_only: Include tags; with heads_only both kinds are returned

        Returns:
            Mapping of ref name to object hash, without peeled ``^{}`` entries
        """

    @abstractmethod
    def get_remote_symbolic_references(
        self, url: str, pattern: Optional[str] = None
    ) -> Dict[str, str]:
        """Symbolic refs advertised by a remote (possibly none), mapped to their target."""

    @abstractmethod
    def add(self, pattern: str) -> None: ...

    @abstractmethod
    def commit(self, message: str) -> None: ...

    @abstractmethod
    def clean(self, clean_submodule: bool = False) -> None:
        """Remove untracked and ignored files."""

    @abstractmethod
    def reset(self, hard: bool = False) -> None:
        """Reset the index, and with ``hard`` the working tree, to HEAD."""

    @abstractmethod
    def branch(self, name: str, start_point: Optional[str] = None) -> None: ...

    @abstractmethod
    def delete_branch(self, name: str) -> None: ...

    @abstractmethod
    def tag(self, name: str, comment: str) -> None:
        """Create an annotated tag at HEAD, replacing an existing one."""

    @abstractmethod
    def delete_tag(self, name: str) -> None: ...

    @abstractmethod
    def add_note(self, note: str, namespace: str) -> None:
        """
        Attach ``note`` to HEAD, replacing any note it already has.

        An unqualified ``namespace`` means ``refs/notes/<namespace>``.
        """

    @abstractmethod
    def append_note(self, note: str, namespace: str) -> None:
        """Append ``note`` to the note on HEAD, or add it when there is none."""

    @abstractmethod
    def describe(self, commitish: str) -> str:
        """Nearest tag, annotated or not, as ``git describe --tags`` names it."""

    @abstractmethod
    def ref(self, name: str) -> None:
        """Create or move ref ``name`` to HEAD."""

    @abstractmethod
    def delete_ref(self, name: str) -> None: ...

    @abstractmethod
    def add_submodule(self, url: str, subdir: str) -> None: ...

    # Command hooks, called by the builders after validation

    @abstractmethod
    def _init(self, workspace: str, bare: bool) -> None: ...

    @abstractmethod
    def _fetch(
        self,
        url: str,
        refspecs: List[RefSpec],
        prune: bool,
        depth: Optional[int],
        tags: Optional[bool],
        deadline: Deadline,
    ) -> None: ...

    @abstractmethod
    def _checkout(
        self,
        ref: str,
        branch: Optional[str],
        delete_branch: bool,
        sparse_paths: Optional[List[str]],
        lfs_remote: Optional[str],
        lfs_credentials: Optional[StandardCredentials],
        deadline: Deadline,
    ) -> None: ...

    @abstractmethod
    def _push(
        self, url: str, refspec: Optional[str], force: bool, tags: bool, deadline: Deadline
    ) -> None: ...

    @abstractmethod
    def _merge(
        self,
        revision: str,
        message: Optional[str],
        strategy: Strategy,
        fast_forward_mode: FastForwardMode,
        squash: bool,
        commit: bool,
        deadline: Deadline,
    ) -> None: ...

    @abstractmethod
    def _rebase(self, upstream: str, deadline: Deadline) -> None: ...

    @abstractmethod
    def _rev_list(
        self,
        reference: Optional[str],
        all_refs: bool,
        nowalk: bool,
        first_parent: bool,
        deadline: Deadline,
    ) -> List[str]: ...

    @abstractmethod
    def _changelog(
        self,
        includes: List[str],
        excludes: List[str],
        out: TextIO,
        max_entries: Optional[int],
        deadline: Deadline,
    ) -> None: ...
