"""
Embedded backend: drives dulwich in-process.

Repository configuration is read and written with GitPython's config parser,
the same parser the facade uses for ``.gitmodules``. Everything else goes
through dulwich's object store, refs container, index and transports.

Known differences from the subprocess backend:
    - merges and rebases resolve changes per file; concurrent edits to the
      same file are a conflict even when git could merge the lines
    - the subtree merge strategy and LFS are not supported
    - sparse checkouts remove non-matching files but keep their index entries
    - tag auto-following only considers tags whose target is already known
"""

import fnmatch
import heapq
import itertools
import logging
import os
import re
import shutil
import stat
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, TextIO, Tuple

from dulwich import porcelain
from dulwich.client import get_transport_and_path
from dulwich.config import ConfigDict
from dulwich.diff_tree import tree_changes
from dulwich.errors import GitProtocolError, HookError, NotGitRepository
from dulwich.file import FileLocked
from dulwich.graph import can_fast_forward, find_merge_base
from dulwich.ignore import IgnoreFilterManager
from dulwich.index import build_index_from_tree, commit_tree, index_entry_from_stat
from dulwich.objects import Blob, Commit, Tree
from dulwich.objects import Tag as TagObject
from dulwich.object_store import iter_tree_contents
from dulwich.repo import MemoryRepo
from dulwich.repo import Repo as DulwichRepo
from dulwich.repo import get_user_identity
from git.config import GitConfigParser

from gitclient.client import GitClient, T
from gitclient.commands import Deadline, FastForwardMode, Strategy
from gitclient.commands.changelog import (
    format_git_date,
    format_raw_change,
    format_raw_header,
)
from gitclient.exceptions import GitError, GitLockFailedError
from gitclient.locks import repository_lock
from gitclient.model import (
    IndexEntry,
    RefSpec,
    SSHUserPrivateKey,
    StandardCredentials,
    UsernamePasswordCredentials,
)
from gitclient.utils import (
    DEFAULT_BRANCH,
    ZERO_SHA1,
    expand_notes_ref,
    is_full_sha1,
    ref_matches_pattern,
    strip_credentials_from_url,
)

logger = logging.getLogger(__name__)

SCP_URL_PATTERN = re.compile(r"^[\w.-]+@[\w.-]+:")
REV_SUFFIX_PATTERN = re.compile(r"\^\{[a-z]*\}|~\d*|\^\d*")
SHORT_SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{4,39}$")

S_IFGITLINK = 0o160000


def _object_type(mode: int) -> str:
    if stat.S_ISDIR(mode):
        return "tree"
    if stat.S_IFMT(mode) == S_IFGITLINK:
        return "commit"
    return "blob"


def _split_config_key(key: str) -> Tuple[str, str]:
    """Turn ``remote.origin.url`` into the parser section ``remote "origin"`` and option ``url``."""
    parts = key.split(".")
    if len(parts) < 2 or not all(parts[:1] + parts[-1:]):
        raise GitError(f"Invalid configuration key {key}", operation="git config")
    subsection = ".".join(parts[1:-1])
    section = f'{parts[0]} "{subsection}"' if subsection else parts[0]
    return section, parts[-1]


def _sparse_match(path: str, patterns: List[str]) -> bool:
    for pattern in patterns:
        pattern = pattern.strip().lstrip("/")
        if not pattern:
            continue
        stem = pattern.rstrip("/")
        if path == stem or path.startswith(stem + "/") or fnmatch.fnmatchcase(path, pattern):
            return True
    return False


def _remove_empty_parents(path: Path, root: Path) -> None:
    parent = path.parent
    while parent != root and root in parent.parents:
        try:
            parent.rmdir()
        except OSError:
            return
        parent = parent.parent


class DulwichGitClient(GitClient):
    """Git client running in-process on dulwich."""

    implementation = "dulwich"

    # Repository access and error mapping

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except FileLocked as e:
            logger.warning(f"{operation} in {self.work_tree} found the repository locked: {e}")
            raise GitLockFailedError(
                f"{operation} could not acquire the repository lock",
                operation=operation,
                diagnostic=str(e),
            ) from e
        except (
            GitProtocolError,
            NotGitRepository,
            HookError,
            porcelain.Error,
            KeyError,
            OSError,
            ValueError,
        ) as e:
            diagnostic = str(e) or type(e).__name__
            if isinstance(e, OSError) and "did already exist" in diagnostic:
                # GitPython's config lock file
                raise GitLockFailedError(
                    f"{operation} could not acquire the repository lock",
                    operation=operation,
                    diagnostic=diagnostic,
                ) from e
            logger.error(f"{operation} in {self.work_tree} failed: {diagnostic}")
            raise GitError(f"{operation} failed", operation=operation, diagnostic=diagnostic) from e

    @contextmanager
    def _repo(self, operation: str = "git") -> Iterator[DulwichRepo]:
        self.check_interrupted(operation)
        try:
            repo = DulwichRepo(str(self.work_tree))
        except NotGitRepository as e:
            raise GitError(
                f"{self.work_tree} is not a git repository", operation=operation
            ) from e
        try:
            with self._errors(operation):
                yield repo
        finally:
            repo.close()

    def has_git_repo(self) -> bool:
        try:
            repo = DulwichRepo(str(self.work_tree))
        except NotGitRepository:
            return False
        repo.close()
        return True

    def is_bare_repository(self) -> bool:
        with self._repo("git rev-parse") as repo:
            return bool(repo.bare)

    def with_repository(self, callback: Callable[[Any, Path], T]) -> T:
        with self._repo() as repo:
            return callback(repo, self.git_dir)

    # Configuration, through GitPython's parser

    def _config_path(self) -> Path:
        return self.git_dir / "config"

    def _config_get_all(self, key: str) -> List[str]:
        self._require_repository()
        section, option = _split_config_key(key)
        with self._errors("git config"):
            with GitConfigParser(str(self._config_path()), read_only=True) as parser:
                if not parser.has_section(section):
                    return []
                for name, values in parser.items_all(section):
                    if name.lower() == option.lower():
                        return [str(v) for v in values]
        return []

    def _config_subsections(self, section: str) -> List[str]:
        self._require_repository()
        header = re.compile(rf'^{re.escape(section)}\s+"(.*)"$', re.IGNORECASE)
        with self._errors("git config"):
            with GitConfigParser(str(self._config_path()), read_only=True) as parser:
                sections = parser.sections()
        names = []
        for name in sections:
            match = header.match(name)
            if match:
                names.append(match.group(1))
        return names

    def set_config(self, key: str, *values: str) -> None:
        self._require_repository()
        section, option = _split_config_key(key)
        with repository_lock(self.git_dir), self._errors("git config"):
            with GitConfigParser(str(self._config_path()), read_only=False) as writer:
                if writer.has_section(section) and writer.has_option(section, option):
                    writer.remove_option(section, option)
                for value in values:
                    writer.add_value(section, option, value)

    def unset_config(self, key: str) -> None:
        self.set_config(key)

    # Revision parsing

    @staticmethod
    def _read_ref(repo: DulwichRepo, name: bytes) -> Optional[bytes]:
        """Value of a ref without following symbolic refs; None when missing."""
        try:
            return repo.refs.read_ref(name)
        except KeyError:
            return None

    def _resolve_name(self, repo: DulwichRepo, name: str) -> Optional[bytes]:
        if name == "HEAD":
            try:
                return repo.refs[b"HEAD"]
            except KeyError:
                return None
        if is_full_sha1(name.lower()):
            return name.lower().encode("ascii")
        for candidate in (
            name,
            f"refs/{name}",
            f"refs/tags/{name}",
            f"refs/heads/{name}",
            f"refs/remotes/{name}",
            f"refs/remotes/{name}/HEAD",
        ):
            ref = candidate.encode("utf-8")
            if ref in repo.refs:
                return repo.refs[ref]
        if SHORT_SHA_PATTERN.match(name):
            prefix = name.lower()
            matches = [sha for sha in repo.object_store if sha.decode("ascii").startswith(prefix)]
            if len(matches) > 1:
                raise GitError(f"Short object id {name} is ambiguous", operation="git rev-parse")
            if matches:
                return matches[0]
        return None

    def _peel(self, repo: DulwichRepo, sha: bytes, kind: Optional[str]) -> bytes:
        obj = repo[sha]
        while isinstance(obj, TagObject):
            obj = repo[obj.object[1]]
        if kind == "tree" and isinstance(obj, Commit):
            obj = repo[obj.tree]
        if kind and obj.type_name.decode("ascii") != kind:
            raise GitError(
                f"{sha.decode('ascii')} is not a {kind}", operation="git rev-parse"
            )
        return obj.id

    def _resolve(self, repo: DulwichRepo, revision: str) -> bytes:
        base = re.match(r"^[^~^]+", revision)
        suffix = revision[base.end() :] if base else revision
        ops = REV_SUFFIX_PATTERN.findall(suffix)
        if base is None or "".join(ops) != suffix:
            raise GitError(f"Unknown revision {revision}", operation="git rev-parse")
        sha = self._resolve_name(repo, base.group(0))
        if sha is None:
            raise GitError(f"Unknown revision {revision}", operation="git rev-parse")
        for op in ops:
            if op.startswith("^{"):
                sha = self._peel(repo, sha, op[2:-1] or None)
            elif op.startswith("~"):
                for _ in range(int(op[1:] or 1)):
                    sha = self._nth_parent(repo, sha, 1, revision)
            else:
                sha = self._nth_parent(repo, sha, int(op[1:] or 1), revision)
        return sha

    def _nth_parent(self, repo: DulwichRepo, sha: bytes, n: int, revision: str) -> bytes:
        commit_id = self._peel(repo, sha, "commit")
        if n == 0:
            return commit_id
        parents = repo[commit_id].parents
        if len(parents) < n:
            raise GitError(f"Unknown revision {revision}", operation="git rev-parse")
        return parents[n - 1]

    def _commit_of(self, repo: DulwichRepo, revision: str) -> bytes:
        return self._peel(repo, self._resolve(repo, revision), "commit")

    def rev_parse(self, revision: str) -> str:
        with self._repo("git rev-parse") as repo:
            return self._resolve(repo, revision).decode("ascii")

    def merge_base(self, a: str, b: str) -> Optional[str]:
        with self._repo("git merge-base") as repo:
            bases = find_merge_base(repo, [self._commit_of(repo, a), self._commit_of(repo, b)])
            return bases[0].decode("ascii") if bases else None

    # Refs and objects

    def _list_refs(self, prefix: str) -> Dict[str, str]:
        with self._repo("git for-each-ref") as repo:
            refs = {}
            for name in repo.refs.allkeys():
                if not name.startswith(b"refs/"):
                    continue
                value = self._read_ref(repo, name)
                if value is None or value.startswith(b"ref: "):
                    continue
                decoded = name.decode("utf-8")
                if decoded.startswith(prefix):
                    refs[decoded] = value.decode("ascii")
            return refs

    def ls_tree(self, tree_ish: str, recursive: bool = False) -> List[IndexEntry]:
        with self._repo("git ls-tree") as repo:
            tree_id = self._peel(repo, self._resolve(repo, tree_ish), "tree")
            if recursive:
                items = [
                    (e.path, e.mode, e.sha) for e in iter_tree_contents(repo.object_store, tree_id)
                ]
            else:
                items = [(e.path, e.mode, e.sha) for e in repo[tree_id].iteritems()]
            return [
                IndexEntry(
                    mode=mode,
                    type=_object_type(mode),
                    object=sha.decode("ascii"),
                    file=path.decode("utf-8"),
                )
                for path, mode, sha in items
            ]

    def get_tag_message(self, name: str) -> Optional[str]:
        with self._repo("git tag") as repo:
            ref = f"refs/tags/{name}".encode("utf-8")
            if ref not in repo.refs:
                return None
            obj = repo[repo.refs[ref]]
            if isinstance(obj, (TagObject, Commit)):
                return obj.message.decode("utf-8", errors="replace").strip()
            return None

    def _commit_message(self, sha1: str) -> str:
        with self._repo("git show") as repo:
            return repo[sha1.encode("ascii")].message.decode("utf-8", errors="replace").rstrip("\n")

    # Remote access

    def _credential_kwargs(self, url: str) -> Dict[str, Any]:
        """Transport keyword arguments carrying the credentials for ``url``."""
        kwargs: Dict[str, Any] = {}
        credentials = self.credentials_for(url)
        if url.startswith(("http://", "https://")):
            if isinstance(credentials, UsernamePasswordCredentials):
                kwargs["username"] = credentials.username
                kwargs["password"] = credentials.password.get_secret_value()
        elif url.startswith(("ssh://", "git+ssh://")) or SCP_URL_PATTERN.match(url):
            if isinstance(credentials, SSHUserPrivateKey):
                kwargs["username"] = credentials.username
                kwargs["key_filename"] = str(credentials.private_key)
            elif isinstance(credentials, UsernamePasswordCredentials):
                kwargs["username"] = credentials.username
                kwargs["password"] = credentials.password.get_secret_value()
        return kwargs

    def _transport(self, url: str):
        kwargs = self._credential_kwargs(url)
        config = None
        if self._proxy is not None:
            config = ConfigDict()
            config.set((b"http",), b"proxy", self._proxy.url.encode("utf-8"))
        try:
            return get_transport_and_path(url, config=config, **kwargs)
        except ValueError as e:
            raise GitError(f"Unsupported URL {strip_credentials_from_url(url)}", diagnostic=str(e)) from e

    def _progress(self, operation: str, deadline: Optional[Deadline]) -> Callable[[bytes], None]:
        def progress(message: bytes) -> None:
            self.check_interrupted(operation)
            if deadline is not None:
                deadline.check()

        return progress

    def _ls_remote(self, url: str, operation: str = "git ls-remote"):
        client, path = self._transport(url)

        def determine_wants(refs, depth=None, **kwargs):
            return []

        self.check_interrupted(operation)
        with self._errors(operation):
            return client.fetch(path, MemoryRepo(), determine_wants=determine_wants)

    def get_remote_references(
        self,
        url: str,
        pattern: Optional[str] = None,
        heads_only: bool = False,
        tags_only: bool = False,
    ) -> Dict[str, str]:
        result = self._ls_remote(url)
        prefixes: Tuple[str, ...] = ()
        if heads_only:
            prefixes += ("refs/heads/",)
        if tags_only:
            prefixes += ("refs/tags/",)
        refs = {}
        for raw_name, raw_sha in result.refs.items():
            name = raw_name.decode("utf-8")
            if name.endswith("^{}") or raw_sha is None:
                continue
            if prefixes and not name.startswith(prefixes):
                continue
            if ref_matches_pattern(name, pattern):
                refs[name] = raw_sha.decode("ascii")
        return refs

    def get_remote_symbolic_references(
        self, url: str, pattern: Optional[str] = None
    ) -> Dict[str, str]:
        result = self._ls_remote(url)
        symrefs = {}
        for raw_name, raw_target in (result.symrefs or {}).items():
            name = raw_name.decode("utf-8")
            if ref_matches_pattern(name, pattern):
                symrefs[name] = raw_target.decode("utf-8")
        return symrefs

    # Working tree

    def _write_tree(self, repo: DulwichRepo, tree_id: bytes, sparse: Optional[List[str]] = None) -> None:
        """Make index and tracked files match ``tree_id``; untracked files are left alone."""
        if repo.bare:
            raise GitError("This operation must be run in a work tree", operation="git checkout")
        root = Path(repo.path)
        new_paths = {e.path for e in iter_tree_contents(repo.object_store, tree_id)}
        for old in set(repo.open_index()) - new_paths:
            path = root / old.decode("utf-8")
            if path.is_symlink() or path.is_file():
                path.unlink()
            elif path.is_dir():
                try:
                    path.rmdir()
                except OSError:
                    logger.warning(f"Leaving non-empty directory {path} of a removed submodule")
                    continue
            _remove_empty_parents(path, root)
        build_index_from_tree(repo.path, repo.index_path(), repo.object_store, tree_id)
        if sparse:
            for raw in new_paths:
                rel = raw.decode("utf-8")
                path = root / rel
                if _sparse_match(rel, sparse) or not (path.is_file() or path.is_symlink()):
                    continue
                path.unlink()
                _remove_empty_parents(path, root)

    def _sparse_patterns(self, repo: DulwichRepo, requested: Optional[List[str]]) -> Optional[List[str]]:
        sparse_file = Path(repo.controldir()) / "info" / "sparse-checkout"
        if requested is None:
            if self.get_config("core.sparsecheckout") == "true" and sparse_file.is_file():
                return [p for p in sparse_file.read_text().splitlines() if p.strip()]
            return None
        if requested:
            self.set_config("core.sparsecheckout", "true")
            sparse_file.parent.mkdir(parents=True, exist_ok=True)
            sparse_file.write_text("".join(f"{p}\n" for p in requested))
            return requested
        if self.get_config("core.sparsecheckout") == "true":
            sparse_file.write_text("/*\n")
            self.set_config("core.sparsecheckout", "false")
        return None

    @staticmethod
    def _detach_head(repo: DulwichRepo, sha: bytes) -> None:
        del repo.refs[b"HEAD"]
        repo.refs[b"HEAD"] = sha

    @staticmethod
    def _head(repo: DulwichRepo, operation: str) -> bytes:
        try:
            return repo.refs[b"HEAD"]
        except KeyError:
            raise GitError("HEAD does not point at a commit", operation=operation) from None

    def _identity(self, repo: DulwichRepo, role: str) -> bytes:
        if role == "author":
            identity = self._author or self._committer
        else:
            identity = self._committer or self._author
        if identity:
            return f"{identity[0]} <{identity[1]}>".encode("utf-8")
        return get_user_identity(repo.get_config_stack())

    def _new_commit(
        self,
        repo: DulwichRepo,
        tree: bytes,
        parents: List[bytes],
        message: str,
        original: Optional[Commit] = None,
    ) -> bytes:
        now = int(time.time())
        offset = time.localtime(now).tm_gmtoff
        commit = Commit()
        commit.tree = tree
        commit.parents = parents
        commit.committer = self._identity(repo, "committer")
        commit.commit_time = now
        commit.commit_timezone = offset
        if original is not None:
            commit.author = original.author
            commit.author_time = original.author_time
            commit.author_timezone = original.author_timezone
        else:
            commit.author = self._identity(repo, "author")
            commit.author_time = now
            commit.author_timezone = offset
        commit.encoding = b"UTF-8"
        if not message.endswith("\n"):
            message += "\n"
        commit.message = message.encode("utf-8")
        repo.object_store.add_object(commit)
        return commit.id

    def _tree_map(self, repo: DulwichRepo, tree_id: Optional[bytes]) -> Dict[bytes, Tuple[int, bytes]]:
        if tree_id is None:
            return {}
        return {e.path: (e.mode, e.sha) for e in iter_tree_contents(repo.object_store, tree_id)}

    def _three_way(
        self,
        repo: DulwichRepo,
        base: Optional[bytes],
        ours: bytes,
        theirs: bytes,
        favor_theirs: bool = False,
    ) -> Tuple[bytes, List[str]]:
        """Merge three trees file by file; returns the merged tree and the conflicting paths."""
        base_map = self._tree_map(repo, base)
        ours_map = self._tree_map(repo, ours)
        theirs_map = self._tree_map(repo, theirs)
        merged = []
        conflicts = []
        for path in sorted(set(base_map) | set(ours_map) | set(theirs_map)):
            b, o, t = base_map.get(path), ours_map.get(path), theirs_map.get(path)
            if o == t or t == b:
                result = o
            elif o == b:
                result = t
            elif favor_theirs:
                result = t
            else:
                conflicts.append(path.decode("utf-8"))
                continue
            if result is not None:
                merged.append((path, result[1], result[0]))
        return commit_tree(repo.object_store, merged), conflicts

    # Mutating operations

    def _stage_paths(self, repo: DulwichRepo, pattern: str) -> List[str]:
        root = Path(repo.path)
        tracked = {p.decode("utf-8") for p in repo.open_index()}
        ignore = IgnoreFilterManager.from_repo(repo)
        paths: Set[str] = set()
        matches = list(root.glob(pattern)) if pattern not in (".", "") else [root]
        if not matches:
            # deleted files no longer glob
            matches = [root / pattern]
        for match in matches:
            rel = "" if match == root else match.relative_to(root).as_posix()
            if match.is_dir() and not (match / ".git").exists():
                for dirpath, dirnames, filenames in os.walk(match):
                    dirnames[:] = [d for d in dirnames if d != ".git"]
                    current = Path(dirpath)
                    for d in list(dirnames):
                        if (current / d / ".git").exists():
                            dirnames.remove(d)
                            paths.add((current / d).relative_to(root).as_posix())
                    for f in filenames:
                        file_rel = (current / f).relative_to(root).as_posix()
                        if file_rel in tracked or not ignore.is_ignored(file_rel):
                            paths.add(file_rel)
                prefix = f"{rel}/" if rel else ""
                paths.update(p for p in tracked if p.startswith(prefix))
            elif match.exists() or rel in tracked:
                paths.add(rel)
            else:
                paths.update(p for p in tracked if p.startswith(f"{rel}/"))
        return sorted(p for p in paths if p)

    def add(self, pattern: str) -> None:
        with self._repo("git add") as repo, repository_lock(self.git_dir):
            paths = self._stage_paths(repo, pattern)
            if not paths:
                raise GitError(f"pathspec '{pattern}' did not match any files", operation="git add")
            repo.get_worktree().stage(paths)

    def commit(self, message: str) -> None:
        with self._repo("git commit") as repo, repository_lock(self.git_dir):
            tree = repo.open_index().commit(repo.object_store)
            merge_head_file = Path(repo.controldir()) / "MERGE_HEAD"
            merge_heads = []
            if merge_head_file.is_file():
                merge_heads = [line.encode("ascii") for line in merge_head_file.read_text().split()]
            try:
                head: Optional[bytes] = repo.refs[b"HEAD"]
            except KeyError:
                head = None
            if head is not None and repo[head].tree == tree and not merge_heads:
                raise GitError("nothing to commit, working tree clean", operation="git commit")
            parents = ([head] if head is not None else []) + merge_heads
            repo.refs[b"HEAD"] = self._new_commit(repo, tree, parents, message)
            for name in ("MERGE_HEAD", "MERGE_MSG", "SQUASH_MSG"):
                (Path(repo.controldir()) / name).unlink(missing_ok=True)

    def clean(self, clean_submodule: bool = False) -> None:
        with self._repo("git clean") as repo, repository_lock(self.git_dir):
            root = Path(repo.path)
            tracked = {p.decode("utf-8") for p in repo.open_index()}
            tracked_dirs = {str(Path(p).parent.as_posix()) for p in tracked}
            for p in list(tracked_dirs):
                parts = p.split("/")
                tracked_dirs.update("/".join(parts[:i]) for i in range(1, len(parts)))

            def visit(directory: Path) -> None:
                for entry in os.scandir(directory):
                    path = Path(entry.path)
                    rel = path.relative_to(root).as_posix()
                    if rel == ".git":
                        continue
                    if entry.is_dir(follow_symlinks=False):
                        if rel in tracked:
                            continue
                        if (path / ".git").exists():
                            if clean_submodule:
                                shutil.rmtree(path)
                            continue
                        if rel in tracked_dirs:
                            visit(path)
                        else:
                            shutil.rmtree(path)
                    elif rel not in tracked:
                        path.unlink()

            visit(root)

    def reset(self, hard: bool = False) -> None:
        with self._repo("git reset") as repo, repository_lock(self.git_dir):
            tree = repo[self._head(repo, "git reset")].tree
            if hard:
                self._write_tree(repo, tree, self._sparse_patterns(repo, None))
                return
            root = Path(repo.path)
            index = repo.open_index()
            for path in list(index):
                del index[path]
            for entry in iter_tree_contents(repo.object_store, tree):
                full = root / entry.path.decode("utf-8")
                if full.exists() and stat.S_IFMT(entry.mode) != S_IFGITLINK:
                    st = os.lstat(full)
                else:
                    st = os.stat_result((entry.mode, 0, 0, 0, 0, 0, 0, 0, 0, 0))
                index[entry.path] = index_entry_from_stat(st, entry.sha, mode=entry.mode)
            index.write()

    def branch(self, name: str, start_point: Optional[str] = None) -> None:
        with self._repo("git branch") as repo, repository_lock(self.git_dir):
            ref = f"refs/heads/{name}".encode("utf-8")
            if self._read_ref(repo, ref) is not None:
                raise GitError(f"A branch named '{name}' already exists", operation="git branch")
            repo.refs[ref] = self._commit_of(repo, start_point or "HEAD")

    def delete_branch(self, name: str) -> None:
        with self._repo("git branch") as repo, repository_lock(self.git_dir):
            ref = f"refs/heads/{name}".encode("utf-8")
            if self._read_ref(repo, ref) is None:
                return
            if self._read_ref(repo, b"HEAD") == b"ref: " + ref:
                raise GitError(
                    f"Cannot delete branch '{name}' checked out at '{self.work_tree}'",
                    operation="git branch",
                )
            del repo.refs[ref]

    def tag(self, name: str, comment: str) -> None:
        with self._repo("git tag") as repo, repository_lock(self.git_dir):
            porcelain.tag_create(
                repo,
                name.encode("utf-8"),
                author=self._identity(repo, "committer"),
                message=comment.encode("utf-8"),
                annotated=True,
                objectish=self._head(repo, "git tag"),
            )

    def delete_tag(self, name: str) -> None:
        self.delete_ref(f"refs/tags/{name}")

    def _write_note(self, note: str, namespace: str, append: bool) -> None:
        operation = "git notes"
        ref = expand_notes_ref(namespace).encode("utf-8")
        text = "\n".join(line.rstrip() for line in note.strip("\n").split("\n")) + "\n"
        with self._repo(operation) as repo, repository_lock(self.git_dir):
            target = self._head(repo, operation)
            parent = self._read_ref(repo, ref)
            # notes trees may fan out into xx/yyyy... subtrees; rewrite them flat
            entries = {}
            if parent is not None:
                for entry in iter_tree_contents(repo.object_store, repo[parent].tree):
                    entries[entry.path.replace(b"/", b"")] = (entry.sha, entry.mode)
            if append and target in entries:
                existing = repo[entries[target][0]].data.decode("utf-8", errors="replace")
                text = existing.rstrip("\n") + "\n\n" + text
            blob = Blob.from_string(text.encode("utf-8"))
            repo.object_store.add_object(blob)
            entries[target] = (blob.id, 0o100644)
            tree = commit_tree(
                repo.object_store, [(path, sha, mode) for path, (sha, mode) in sorted(entries.items())]
            )
            command = "append" if append else "add"
            repo.refs[ref] = self._new_commit(
                repo, tree, [parent] if parent else [], f"Notes added by 'git notes {command}'"
            )

    def add_note(self, note: str, namespace: str) -> None:
        self._write_note(note, namespace, append=False)

    def append_note(self, note: str, namespace: str) -> None:
        self._write_note(note, namespace, append=True)

    def describe(self, commitish: str) -> str:
        operation = "git describe"
        tags = self._list_refs("refs/tags/")
        with self._repo(operation) as repo:
            target = self._commit_of(repo, commitish)
            # commit -> [(lightweight, name)], so annotated tags sort first
            names: Dict[bytes, List[Tuple[bool, str]]] = {}
            for ref, sha in tags.items():
                obj = repo[sha.encode("ascii")]
                annotated = isinstance(obj, TagObject)
                while isinstance(obj, TagObject):
                    obj = repo[obj.object[1]]
                if isinstance(obj, Commit):
                    names.setdefault(obj.id, []).append((not annotated, ref[len("refs/tags/") :]))
            if not names:
                raise GitError("No names found, cannot describe anything.", operation=operation)
            if target in names:
                return min(names[target])[1]
            best: Optional[Tuple[Tuple[int, int, Tuple[bool, str]], str]] = None
            for tagged, candidates in names.items():
                if not can_fast_forward(repo, tagged, target):
                    continue
                depth = len(self._walk(repo, [target], [tagged]))
                key = (depth, -repo[tagged].commit_time, min(candidates))
                if best is None or key < best[0]:
                    best = (key, min(candidates)[1])
            if best is None:
                raise GitError(
                    f"No tags can describe '{target.decode('ascii')}'.", operation=operation
                )
            return f"{best[1]}-{best[0][0]}-g{target.decode('ascii')[:7]}"

    def ref(self, name: str) -> None:
        with self._repo("git update-ref") as repo, repository_lock(self.git_dir):
            repo.refs[name.encode("utf-8")] = self._head(repo, "git update-ref")

    def delete_ref(self, name: str) -> None:
        with self._repo("git update-ref") as repo, repository_lock(self.git_dir):
            ref = name.encode("utf-8")
            if self._read_ref(repo, ref) is None:
                return
            del repo.refs[ref]

    def add_submodule(self, url: str, subdir: str) -> None:
        self._require_repository()
        sub = self.sub_git(subdir)
        sub.clone(url)
        symrefs = sub.get_remote_symbolic_references(url, "HEAD")
        branch = symrefs.get("HEAD", f"refs/heads/{DEFAULT_BRANCH}")[len("refs/heads/") :]
        sub.checkout_branch(branch, f"origin/{branch}")

        gitmodules = self.work_tree / ".gitmodules"
        section = f'submodule "{subdir}"'
        with repository_lock(self.git_dir), self._errors("git submodule add"):
            with GitConfigParser(str(gitmodules), read_only=False) as writer:
                writer.set_value(section, "path", subdir)
                writer.set_value(section, "url", url)
        self.set_submodule_url(subdir, url)
        with self._repo("git submodule add") as repo, repository_lock(self.git_dir):
            repo.get_worktree().stage([".gitmodules", subdir])

    # Command hooks

    def _init(self, workspace: str, bare: bool) -> None:
        path = Path(workspace)
        path.mkdir(parents=True, exist_ok=True)
        with self._errors("git init"):
            repo = DulwichRepo.init_bare(str(path)) if bare else DulwichRepo.init(str(path))
            try:
                repo.refs.set_symbolic_ref(b"HEAD", f"refs/heads/{DEFAULT_BRANCH}".encode("ascii"))
            finally:
                repo.close()

    def _source_name(self, remote_refs: Dict[str, str], source: str) -> str:
        if source.startswith("refs/") or source == "HEAD" or "*" in source:
            return source
        for candidate in (f"refs/heads/{source}", f"refs/tags/{source}"):
            if candidate in remote_refs:
                return candidate
        return source

    def _record_shallow(self, repo: DulwichRepo, tips: List[bytes], depth: int) -> None:
        """
        Mark the commits ``depth`` generations below the fetched tips as shallow.

        Tags are peeled and distances are taken from the nearest tip, so a commit
        within reach of any tip keeps its parents.
        """
        distance: Dict[bytes, int] = {}
        for sha in tips:
            obj = repo[sha]
            while isinstance(obj, TagObject) and obj.object[1] in repo.object_store:
                obj = repo[obj.object[1]]
            if isinstance(obj, Commit):
                distance[obj.id] = 0
        frontier = list(distance)
        for level in range(1, depth):
            parents = []
            for sha in frontier:
                for parent in repo[sha].parents:
                    if parent not in distance and parent in repo.object_store:
                        distance[parent] = level
                        parents.append(parent)
            frontier = parents
        boundary = {sha for sha in frontier if repo[sha].parents}
        deepened = {
            sha
            for sha in repo.get_shallow()
            if sha in distance
            and sha not in boundary
            and all(p in repo.object_store for p in repo[sha].parents)
        }
        if boundary or deepened:
            repo.update_shallow(boundary, deepened)

    def _fetch(
        self,
        url: str,
        refspecs: List[RefSpec],
        prune: bool,
        depth: Optional[int],
        tags: Optional[bool],
        deadline: Deadline,
    ) -> None:
        operation = "git fetch"
        client, path = self._transport(url)
        self.listener.write(f"Fetching from {strip_credentials_from_url(url)}")
        updates: Dict[str, Tuple[bytes, bool]] = {}
        remote_refs: Dict[str, str] = {}

        with self._repo(operation) as repo, repository_lock(self.git_dir):

            def determine_wants(refs, depth=None, **kwargs):
                peeled = {}
                for raw_name, raw_sha in refs.items():
                    if raw_sha is None:
                        continue
                    name = raw_name.decode("utf-8")
                    if name.endswith("^{}"):
                        peeled[name[:-3]] = raw_sha
                    else:
                        remote_refs[name] = raw_sha.decode("ascii")
                resolved = [
                    r.model_copy(update={"source": self._source_name(remote_refs, r.source)})
                    if r.source
                    else r
                    for r in refspecs
                ]
                wanted = set()
                for name, sha in remote_refs.items():
                    for refspec in resolved:
                        if not refspec.matches_source(name):
                            continue
                        wanted.add(sha.encode("ascii"))
                        destination = refspec.expand_from_source(name)
                        if destination:
                            updates[destination] = (sha.encode("ascii"), refspec.force)
                        break
                if tags is not False:
                    for name, sha in remote_refs.items():
                        if not name.startswith("refs/tags/") or name in updates:
                            continue
                        if self._read_ref(repo, name.encode("utf-8")) is not None:
                            continue
                        target = peeled.get(name, sha.encode("ascii"))
                        if tags or target in wanted or target in repo.object_store:
                            wanted.add(sha.encode("ascii"))
                            updates[name] = (sha.encode("ascii"), False)
                return [sha for sha in wanted if sha not in repo.object_store]

            progress = self._progress(operation, deadline)
            try:
                result = client.fetch(
                    path, repo, determine_wants=determine_wants, progress=progress, depth=depth
                )
            except NotImplementedError:
                # local transports cannot negotiate depth; fetch everything and mark the boundary
                logger.debug(f"Transport for {strip_credentials_from_url(url)} has no shallow support")
                updates.clear()
                result = client.fetch(
                    path, repo, determine_wants=determine_wants, progress=progress
                )
            deadline.check()
            self.check_interrupted(operation)

            rejected = []
            for destination, (sha, force) in sorted(updates.items()):
                ref = destination.encode("utf-8")
                old = self._read_ref(repo, ref)
                if old == sha:
                    continue
                if (
                    old is not None
                    and not force
                    and not old.startswith(b"ref: ")
                    and not can_fast_forward(repo, old, sha)
                ):
                    rejected.append(destination)
                    continue
                repo.refs[ref] = sha

            if depth is not None and not getattr(result, "new_shallow", None):
                self._record_shallow(repo, [sha for sha, _ in updates.values()], depth)

        if prune:
            for name in self._stale_refs(self._list_refs("refs/"), remote_refs, refspecs):
                self.listener.write(f" - [deleted] {name}")
                self.delete_ref(name)
        if rejected:
            raise GitError(
                f"Rejected non fast-forward updates of {', '.join(rejected)}",
                operation=operation,
            )

    def _checkout(
        self,
        ref: str,
        branch: Optional[str],
        delete_branch: bool,
        sparse_paths: Optional[List[str]],
        lfs_remote: Optional[str],
        lfs_credentials: Optional[StandardCredentials],
        deadline: Deadline,
    ) -> None:
        operation = "git checkout"
        if lfs_remote:
            raise GitError("LFS is not supported by the embedded backend", operation=operation)
        with self._repo(operation) as repo, repository_lock(self.git_dir):
            sha = self._commit_of(repo, ref)
            sparse = self._sparse_patterns(repo, sparse_paths)
            if branch:
                branch_ref = f"refs/heads/{branch}".encode("utf-8")
                if self._read_ref(repo, branch_ref) is not None:
                    if not delete_branch:
                        raise GitError(f"A branch named '{branch}' already exists", operation=operation)
                    self._detach_head(repo, sha)
                    del repo.refs[branch_ref]
                self._write_tree(repo, repo[sha].tree, sparse)
                repo.refs[branch_ref] = sha
                repo.refs.set_symbolic_ref(b"HEAD", branch_ref)
                return
            local = f"refs/heads/{ref}".encode("utf-8")
            self._write_tree(repo, repo[sha].tree, sparse)
            if self._read_ref(repo, local) is not None:
                repo.refs.set_symbolic_ref(b"HEAD", local)
            else:
                self._detach_head(repo, sha)

    def _push(
        self, url: str, refspec: Optional[str], force: bool, tags: bool, deadline: Deadline
    ) -> None:
        operation = "git push"
        self.listener.write(f"Pushing to {strip_credentials_from_url(url)}")
        with self._repo(operation) as repo:
            refspecs: Optional[List[bytes]] = [refspec.encode("utf-8")] if refspec else None
            if tags:
                refspecs = (refspecs or []) + [
                    name for name in repo.refs.allkeys() if name.startswith(b"refs/tags/")
                ]
            porcelain.push(
                repo,
                url,
                refspecs,
                outstream=_ListenerStream(self.listener),
                errstream=_ListenerStream(self.listener),
                force=force,
                **self._credential_kwargs(url),
            )
            deadline.check()

    def _merge(
        self,
        revision: str,
        message: Optional[str],
        strategy: Strategy,
        fast_forward_mode: FastForwardMode,
        squash: bool,
        commit: bool,
        deadline: Deadline,
    ) -> None:
        operation = "git merge"
        if strategy == Strategy.SUBTREE:
            raise GitError("The subtree strategy is not supported by the embedded backend", operation=operation)
        with self._repo(operation) as repo, repository_lock(self.git_dir):
            head = self._head(repo, operation)
            theirs = self._commit_of(repo, revision)
            if theirs == head or can_fast_forward(repo, theirs, head):
                self.listener.write("Already up to date.")
                return
            sparse = self._sparse_patterns(repo, None)
            fast_forward = can_fast_forward(repo, head, theirs)
            if not squash and fast_forward_mode != FastForwardMode.NO_FF and fast_forward:
                self._write_tree(repo, repo[theirs].tree, sparse)
                repo.refs[b"HEAD"] = theirs
                return
            if fast_forward_mode == FastForwardMode.FF_ONLY and not fast_forward:
                raise GitError("Not possible to fast-forward, aborting.", operation=operation)

            bases = find_merge_base(repo, [head, theirs])
            base_tree = repo[bases[0]].tree if bases else None
            if strategy == Strategy.OURS:
                tree, conflicts = repo[head].tree, []
            else:
                tree, conflicts = self._three_way(
                    repo,
                    base_tree,
                    repo[head].tree,
                    repo[theirs].tree,
                    favor_theirs=strategy == Strategy.RECURSIVE_THEIRS,
                )
            if conflicts:
                raise GitError(
                    f"Automatic merge failed; conflicts in {', '.join(conflicts)}",
                    operation=operation,
                )
            deadline.check()
            self._write_tree(repo, tree, sparse)
            theirs_hex = theirs.decode("ascii")
            if squash:
                if commit:
                    text = message or f"Squashed commit of {theirs_hex}"
                    repo.refs[b"HEAD"] = self._new_commit(repo, tree, [head], text)
                return
            if not commit:
                (Path(repo.controldir()) / "MERGE_HEAD").write_text(f"{theirs_hex}\n")
                return
            text = message or f"Merge commit '{theirs_hex}'"
            repo.refs[b"HEAD"] = self._new_commit(repo, tree, [head, theirs], text)

    def _write_rebase_state(
        self,
        repo: DulwichRepo,
        head_name: str,
        onto: bytes,
        orig_head: bytes,
        done: List[Commit],
        todo: List[Commit],
    ) -> None:
        state = Path(repo.controldir()) / "rebase-merge"
        state.mkdir(exist_ok=True)

        def pick(c: Commit) -> str:
            subject = c.message.decode("utf-8", errors="replace").split("\n", 1)[0]
            return f"pick {c.id.decode('ascii')} {subject}\n"

        (state / "head-name").write_text(f"{head_name}\n")
        (state / "onto").write_text(f"{onto.decode('ascii')}\n")
        (state / "orig-head").write_text(f"{orig_head.decode('ascii')}\n")
        (state / "done").write_text("".join(pick(c) for c in done))
        (state / "git-rebase-todo").write_text("".join(pick(c) for c in todo))
        (state / "msgnum").write_text(f"{len(done)}\n")
        (state / "end").write_text(f"{len(done) + len(todo)}\n")
        (state / "stopped-sha").write_text(f"{done[-1].id.decode('ascii')}\n")

    def _rebase(self, upstream: str, deadline: Deadline) -> None:
        operation = "git rebase"
        with self._repo(operation) as repo, repository_lock(self.git_dir):
            if (Path(repo.controldir()) / "rebase-merge").exists():
                raise GitError("A rebase is already in progress", operation=operation)
            head = self._head(repo, operation)
            onto = self._commit_of(repo, upstream)
            head_ref = self._read_ref(repo, b"HEAD") or b""
            head_name = head_ref[len(b"ref: ") :].decode("utf-8") if head_ref.startswith(b"ref: ") else "detached HEAD"
            sparse = self._sparse_patterns(repo, None)

            if can_fast_forward(repo, head, onto):
                self._write_tree(repo, repo[onto].tree, sparse)
                repo.refs[b"HEAD"] = onto
                return
            commits = [
                c for c in self._walk(repo, [head], [onto]) if len(c.parents) == 1
            ]
            commits.reverse()
            if not commits:
                self.listener.write("Current branch is up to date.")
                return

            current = onto
            for index, original in enumerate(commits):
                deadline.check()
                self.check_interrupted(operation)
                parent_tree = repo[original.parents[0]].tree
                tree, conflicts = self._three_way(repo, parent_tree, repo[current].tree, original.tree)
                if conflicts:
                    self._write_tree(repo, repo[current].tree, sparse)
                    self._detach_head(repo, current)
                    self._write_rebase_state(
                        repo, head_name, onto, head, commits[: index + 1], commits[index + 1 :]
                    )
                    raise GitError(
                        f"Could not apply {original.id.decode('ascii')[:7]}; conflicts in {', '.join(conflicts)}",
                        operation=operation,
                    )
                if tree == repo[current].tree:
                    # already applied upstream
                    continue
                current = self._new_commit(
                    repo, tree, [current], original.message.decode("utf-8"), original=original
                )
            self._write_tree(repo, repo[current].tree, sparse)
            repo.refs[b"HEAD"] = current

    def _walk(
        self,
        repo: DulwichRepo,
        include: List[bytes],
        exclude: List[bytes],
        first_parent: bool = False,
    ) -> List[Commit]:
        """Commits reachable from ``include`` but not ``exclude``, newest first, stopping at shallow commits."""
        shallow = repo.get_shallow()

        def parents(commit: Commit) -> List[bytes]:
            if commit.id in shallow:
                return []
            return commit.parents[:1] if first_parent else commit.parents

        hidden: Set[bytes] = set()
        stack = list(exclude)
        while stack:
            sha = stack.pop()
            if sha in hidden or sha not in repo.object_store:
                continue
            hidden.add(sha)
            commit = repo[sha]
            if commit.id not in shallow:
                stack.extend(commit.parents)

        heap: List[Tuple[int, int, Commit]] = []
        counter = itertools.count()
        seen: Set[bytes] = set()

        def push(sha: bytes) -> None:
            if sha in seen or sha in hidden or sha not in repo.object_store:
                return
            seen.add(sha)
            commit = repo[sha]
            heapq.heappush(heap, (-commit.commit_time, next(counter), commit))

        for sha in include:
            push(sha)
        walked = []
        while heap:
            _, _, commit = heapq.heappop(heap)
            walked.append(commit)
            for parent in parents(commit):
                push(parent)
        return walked

    def _rev_list(
        self,
        reference: Optional[str],
        all_refs: bool,
        nowalk: bool,
        first_parent: bool,
        deadline: Deadline,
    ) -> List[str]:
        with self._repo("git rev-list") as repo:
            if all_refs:
                include = []
                for name in repo.refs.allkeys():
                    try:
                        include.append(self._peel(repo, repo.refs[name], "commit"))
                    except (GitError, KeyError):
                        continue
            else:
                include = [self._commit_of(repo, reference)]  # type: ignore[arg-type]
            if nowalk:
                return [sha.decode("ascii") for sha in include]
            commits = self._walk(repo, include, [], first_parent)
            deadline.check()
            return [c.id.decode("ascii") for c in commits]

    def _changelog(
        self,
        includes: List[str],
        excludes: List[str],
        out: TextIO,
        max_entries: Optional[int],
        deadline: Deadline,
    ) -> None:
        operation = "git log"
        with self._repo(operation) as repo:
            include = [self._commit_of(repo, rev) for rev in includes or ["HEAD"]]
            exclude = [self._commit_of(repo, rev) for rev in excludes]
            commits = self._walk(repo, include, exclude)
            if max_entries is not None:
                commits = commits[:max_entries]
            for commit in commits:
                deadline.check()
                self.check_interrupted(operation)
                self._write_log_entry(repo, commit, out)
            out.flush()

    def _write_log_entry(self, repo: DulwichRepo, commit: Commit, out: TextIO) -> None:
        parents = [p.decode("ascii") for p in commit.parents]
        header = format_raw_header(
            commit.id.decode("ascii"),
            commit.tree.decode("ascii"),
            parents,
            commit.author.decode("utf-8", errors="replace"),
            format_git_date(commit.author_time, commit.author_timezone),
            commit.committer.decode("utf-8", errors="replace"),
            format_git_date(commit.commit_time, commit.commit_timezone),
            commit.message.decode("utf-8", errors="replace"),
        )
        bases: List[Optional[bytes]] = [repo[p].tree for p in commit.parents if p in repo.object_store]
        if not commit.parents:
            bases = [None]
        for base in bases:
            out.write(header)
            lines = []
            for change in tree_changes(repo.object_store, base, commit.tree, change_type_same=True):
                old, new = change.old, change.new
                old_mode = old.mode if old is not None and old.mode else 0
                new_mode = new.mode if new is not None and new.mode else 0
                old_sha = old.sha.decode("ascii") if old is not None and old.sha else ZERO_SHA1
                new_sha = new.sha.decode("ascii") if new is not None and new.sha else ZERO_SHA1
                path = (new.path if new is not None and new.path else old.path).decode("utf-8")
                if not old_mode:
                    status = "A"
                elif not new_mode:
                    status = "D"
                elif stat.S_IFMT(old_mode) != stat.S_IFMT(new_mode):
                    status = "T"
                else:
                    status = "M"
                lines.append(format_raw_change(old_mode, new_mode, old_sha, new_sha, status, path))
            if lines:
                out.write("\n" + "\n".join(lines) + "\n")
            out.write("\n")


class _ListenerStream:
    """Binary stream adapter handing dulwich's progress output to a listener."""

    def __init__(self, listener):
        self.listener = listener

    def write(self, data: bytes) -> None:
        text = data.decode("utf-8", errors="replace").strip()
        if text:
            self.listener.write(text)

    def flush(self) -> None:
        pass
