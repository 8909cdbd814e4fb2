"""
Subprocess backend: runs the git executable through GitPython's command wrapper.

Every invocation runs with the working directory as cwd and
GIT_CEILING_DIRECTORIES set to its parent, so git never picks up an
enclosing repository (an uninitialized submodule directory must not resolve
to the superproject). Child processes are polled so that timeouts and
cancellation can kill them.
"""

import logging
import os
import re
import shlex
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, TextIO, Tuple

from git import Git, Repo
from git.exc import CommandError, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from gitclient.client import GitClient, T
from gitclient.commands import Deadline, FastForwardMode, Strategy
from gitclient.commands.changelog import RAW_PRETTY_FORMAT
from gitclient.config import get_git_executable
from gitclient.exceptions import GitError, GitInterruptedError, GitLockFailedError
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
    expand_notes_ref,
    ref_matches_pattern,
    strip_credentials_from_url,
)

logger = logging.getLogger(__name__)

# seconds between checks for cancellation and timeout while git runs
POLL_INTERVAL = 0.5

LOCK_FAILED_PATTERN = re.compile(r"Unable to create '[^']*\.lock': File exists")

ASKPASS_SCRIPT = """#!/bin/sh
case "$1" in
  Username*) printf '%s\\n' "$GITCLIENT_ASKPASS_USERNAME" ;;
  *) printf '%s\\n' "$GITCLIENT_ASKPASS_PASSWORD" ;;
esac
"""

SSH_ASKPASS_SCRIPT = """#!/bin/sh
printf '%s\\n' "$GITCLIENT_SSH_PASSPHRASE"
"""


class GitResult(NamedTuple):
    status: int
    stdout: str
    stderr: str


def map_git_failure(operation: str, result: GitResult) -> GitError:
    """Classify a failed git invocation by its diagnostic output."""
    diagnostic = result.stderr.strip() or result.stdout.strip()
    if LOCK_FAILED_PATTERN.search(diagnostic):
        return GitLockFailedError(
            f"{operation} could not acquire the repository lock",
            operation=operation,
            diagnostic=diagnostic,
        )
    return GitError(
        f"{operation} failed with exit code {result.status}",
        operation=operation,
        diagnostic=diagnostic,
    )


class CliGitClient(GitClient):
    """Git client driving the ``git`` command line."""

    implementation = "git"

    def __init__(self, work_tree, listener=None, git_executable: Optional[str] = None):
        super().__init__(work_tree, listener=listener)
        self.git_executable = git_executable or get_git_executable()

    def sub_git(self, subdir: str) -> "CliGitClient":
        sub = super().sub_git(subdir)
        sub.git_executable = self.git_executable  # type: ignore[attr-defined]
        return sub  # type: ignore[return-value]

    # Process handling

    def _base_env(self) -> Dict[str, str]:
        env = {
            "GIT_CEILING_DIRECTORIES": str(self.work_tree.parent),
            "GIT_TERMINAL_PROMPT": "0",
            "GIT_MERGE_AUTOEDIT": "no",
            "GIT_EDITOR": "true",
        }
        author = self._author or self._committer
        committer = self._committer or self._author
        if author:
            env["GIT_AUTHOR_NAME"], env["GIT_AUTHOR_EMAIL"] = author
        if committer:
            env["GIT_COMMITTER_NAME"], env["GIT_COMMITTER_EMAIL"] = committer
        return env

    def _cwd(self) -> Path:
        return self.work_tree if self.work_tree.is_dir() else Path(tempfile.gettempdir())

    def _communicate(
        self, proc: subprocess.Popen, operation: str, deadline: Optional[Deadline]
    ) -> Tuple[bytes, bytes]:
        while True:
            try:
                return proc.communicate(timeout=POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                if self.is_cancelled():
                    proc.kill()
                    proc.communicate()
                    logger.warning(f"{operation} in {self.work_tree} cancelled")
                    raise GitInterruptedError(operation)
                if deadline is not None and deadline.expired:
                    proc.kill()
                    _, stderr = proc.communicate()
                    logger.error(f"{operation} in {self.work_tree} timed out after {deadline.minutes} minutes")
                    raise GitError(
                        f"Timeout after {deadline.minutes} minutes",
                        operation=operation,
                        diagnostic=stderr.decode("utf-8", errors="replace"),
                    )

    def _run_git(
        self,
        *args: str,
        operation: Optional[str] = None,
        deadline: Optional[Deadline] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> GitResult:
        operation = operation or f"git {args[0]}"
        self.check_interrupted(operation)
        command = [self.git_executable, *args]
        run_env = self._base_env()
        if env:
            run_env.update(env)
        cwd = cwd or self._cwd()
        logger.debug(
            f"Running {strip_credentials_from_url(' '.join(command))} in {cwd}"
        )
        try:
            handle = Git(str(cwd)).execute(
                command, as_process=True, env=run_env, with_stdout=True
            )
        except CommandError as e:
            raise GitError(f"Could not run {operation}", operation=operation, diagnostic=str(e)) from e
        stdout, stderr = self._communicate(handle.proc, operation, deadline)
        return GitResult(
            handle.proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def _git(self, *args: str, ok_codes: Tuple[int, ...] = (0,), **kwargs: Any) -> str:
        result = self._run_git(*args, **kwargs)
        if result.status not in ok_codes:
            error = map_git_failure(kwargs.get("operation") or f"git {args[0]}", result)
            logger.error(f"{error.operation} in {self.work_tree} failed: {error.diagnostic}")
            raise error
        return result.stdout

    def _locked_git(self, *args: str, **kwargs: Any) -> str:
        with repository_lock(self.git_dir):
            return self._git(*args, **kwargs)

    # Credentials and proxy for network commands

    def _proxy_args(self) -> List[str]:
        if self._proxy is None:
            return []
        return ["-c", f"http.proxy={self._proxy.url}"]

    @contextmanager
    def _network_env(
        self, url: str, credentials: Optional[StandardCredentials] = None
    ) -> Iterator[Dict[str, str]]:
        credentials = credentials or self.credentials_for(url)
        env: Dict[str, str] = {}
        if self._proxy is not None and self._proxy.no_proxy_hosts:
            env["NO_PROXY"] = ",".join(self._proxy.no_proxy_hosts)
        with tempfile.TemporaryDirectory(prefix="gitclient-") as tmp:
            if isinstance(credentials, UsernamePasswordCredentials):
                script = Path(tmp) / "askpass.sh"
                script.write_text(ASKPASS_SCRIPT)
                script.chmod(0o700)
                env["GIT_ASKPASS"] = str(script)
                env["GITCLIENT_ASKPASS_USERNAME"] = credentials.username
                env["GITCLIENT_ASKPASS_PASSWORD"] = credentials.password.get_secret_value()
            elif isinstance(credentials, SSHUserPrivateKey):
                ssh = [
                    "ssh",
                    "-i",
                    shlex.quote(str(credentials.private_key)),
                    "-o",
                    "IdentitiesOnly=yes",
                    "-o",
                    "StrictHostKeyChecking=no",
                ]
                if credentials.username:
                    ssh += ["-l", shlex.quote(credentials.username)]
                env["GIT_SSH_COMMAND"] = " ".join(ssh)
                if credentials.passphrase is not None:
                    script = Path(tmp) / "ssh-askpass.sh"
                    script.write_text(SSH_ASKPASS_SCRIPT)
                    script.chmod(0o700)
                    env["SSH_ASKPASS"] = str(script)
                    env["SSH_ASKPASS_REQUIRE"] = "force"
                    env["DISPLAY"] = os.environ.get("DISPLAY", ":")
                    env["GITCLIENT_SSH_PASSPHRASE"] = credentials.passphrase.get_secret_value()
            yield env

    # Repository and configuration

    def has_git_repo(self) -> bool:
        try:
            repo = Repo(str(self.work_tree))
        except (InvalidGitRepositoryError, NoSuchPathError):
            return False
        repo.close()
        return True

    def is_bare_repository(self) -> bool:
        self._require_repository()
        return self._git("rev-parse", "--is-bare-repository").strip() == "true"

    def with_repository(self, callback: Callable[[Any, Path], T]) -> T:
        self._require_repository()
        repo = Repo(str(self.work_tree))
        try:
            return callback(repo, self.git_dir)
        except GitCommandError as e:
            raise GitError(
                "Repository callback failed", operation=" ".join(map(str, e.command)), diagnostic=e.stderr
            ) from e
        finally:
            repo.close()

    def _config_get_all(self, key: str) -> List[str]:
        output = self._git("config", "--local", "--get-all", key, ok_codes=(0, 1))
        return output.splitlines()

    def _config_subsections(self, section: str) -> List[str]:
        output = self._git(
            "config", "--local", "--name-only", "--get-regexp", f"^{re.escape(section)}\\.", ok_codes=(0, 1)
        )
        names: List[str] = []
        for key in output.splitlines():
            subsection = key[len(section) + 1 : key.rfind(".")]
            if subsection and subsection not in names:
                names.append(subsection)
        return names

    def set_config(self, key: str, *values: str) -> None:
        with repository_lock(self.git_dir):
            self._git("config", "--local", "--unset-all", key, ok_codes=(0, 5))
            for value in values:
                self._git("config", "--local", "--add", key, value)

    def unset_config(self, key: str) -> None:
        self._locked_git("config", "--local", "--unset-all", key, ok_codes=(0, 5))

    # Objects and refs

    def _list_refs(self, prefix: str) -> Dict[str, str]:
        output = self._git(
            "for-each-ref", "--format=%(objectname)%09%(symref)%09%(refname)"
        )
        refs = {}
        for line in output.splitlines():
            sha1, symref, name = line.split("\t", 2)
            if not symref and name.startswith(prefix):
                refs[name] = sha1
        return refs

    def rev_parse(self, revision: str) -> str:
        result = self._run_git("rev-parse", "--verify", "--quiet", revision)
        if result.status != 0:
            raise GitError(f"Unknown revision {revision}", operation="git rev-parse")
        return result.stdout.strip()

    def merge_base(self, a: str, b: str) -> Optional[str]:
        output = self._git("merge-base", a, b, ok_codes=(0, 1)).strip()
        return output or None

    def ls_tree(self, tree_ish: str, recursive: bool = False) -> List[IndexEntry]:
        args = ["ls-tree", "-z", "--full-tree"]
        if recursive:
            args.append("-r")
        output = self._git(*args, tree_ish)
        entries = []
        for record in output.split("\0"):
            if not record:
                continue
            meta, path = record.split("\t", 1)
            mode, kind, sha1 = meta.split()
            entries.append(IndexEntry(mode=mode, type=kind, object=sha1, file=path))
        return entries

    def get_tag_message(self, name: str) -> Optional[str]:
        self._require_repository()
        if not self.tag_exists(name):
            return None
        output = self._git("for-each-ref", "--format=%(contents)", f"refs/tags/{name}")
        return output.strip()

    def _commit_message(self, sha1: str) -> str:
        return self._git("show", "-s", "--format=%B", sha1).rstrip("\n")

    # Remote listings

    def _ls_remote(self, *args: str) -> str:
        url = args[-1]
        with self._network_env(url) as env:
            return self._git(
                *self._proxy_args(), "ls-remote", *args, operation="git ls-remote", env=env
            )

    def get_remote_references(
        self,
        url: str,
        pattern: Optional[str] = None,
        heads_only: bool = False,
        tags_only: bool = False,
    ) -> Dict[str, str]:
        args = []
        if heads_only:
            args.append("--heads")
        if tags_only:
            args.append("--tags")
        refs = {}
        for line in self._ls_remote(*args, url).splitlines():
            sha1, _, name = line.partition("\t")
            if not name or name.endswith("^{}"):
                continue
            if ref_matches_pattern(name, pattern):
                refs[name] = sha1
        return refs

    def get_remote_symbolic_references(
        self, url: str, pattern: Optional[str] = None
    ) -> Dict[str, str]:
        symrefs = {}
        for line in self._ls_remote("--symref", url).splitlines():
            if not line.startswith("ref: "):
                continue
            target, _, name = line[len("ref: ") :].partition("\t")
            if ref_matches_pattern(name, pattern):
                symrefs[name] = target
        return symrefs

    # Mutating operations

    def add(self, pattern: str) -> None:
        self._locked_git("add", pattern)

    def commit(self, message: str) -> None:
        self._locked_git("commit", "-m", message)

    def clean(self, clean_submodule: bool = False) -> None:
        self._locked_git("clean", "-ffdx" if clean_submodule else "-fdx")

    def reset(self, hard: bool = False) -> None:
        self._locked_git("reset", "--hard" if hard else "--mixed")

    def branch(self, name: str, start_point: Optional[str] = None) -> None:
        args = ["branch", name]
        if start_point:
            args.append(start_point)
        self._locked_git(*args)

    def delete_branch(self, name: str) -> None:
        if not self.ref_exists(f"refs/heads/{name}"):
            return
        self._locked_git("branch", "-D", name)

    def tag(self, name: str, comment: str) -> None:
        self._locked_git("tag", "-a", "-f", "-m", comment, name)

    def delete_tag(self, name: str) -> None:
        if not self.tag_exists(name):
            return
        self._locked_git("tag", "-d", name)

    def add_note(self, note: str, namespace: str) -> None:
        self._locked_git(
            "notes", f"--ref={expand_notes_ref(namespace)}", "add", "-f", "-m", note, "HEAD",
            operation="git notes",
        )

    def append_note(self, note: str, namespace: str) -> None:
        self._locked_git(
            "notes", f"--ref={expand_notes_ref(namespace)}", "append", "-m", note, "HEAD",
            operation="git notes",
        )

    def describe(self, commitish: str) -> str:
        return self._git("describe", "--tags", commitish, operation="git describe").strip()

    def ref(self, name: str) -> None:
        self._locked_git("update-ref", name, "HEAD")

    def delete_ref(self, name: str) -> None:
        if not self.ref_exists(name):
            return
        self._locked_git("update-ref", "-d", name)

    def add_submodule(self, url: str, subdir: str) -> None:
        args = []
        if url.startswith("file://") or Path(url).exists():
            # local sources are refused by default since git 2.38.1
            args = ["-c", "protocol.file.allow=always"]
        with self._network_env(url) as env:
            self._locked_git(*args, "submodule", "add", url, subdir, env=env)

    # Command hooks

    def _init(self, workspace: str, bare: bool) -> None:
        path = Path(workspace)
        path.mkdir(parents=True, exist_ok=True)
        args = ["init", f"--initial-branch={DEFAULT_BRANCH}"]
        if bare:
            args.append("--bare")
        self._git(*args, str(path), cwd=path)

    def _fetch(
        self,
        url: str,
        refspecs: List[RefSpec],
        prune: bool,
        depth: Optional[int],
        tags: Optional[bool],
        deadline: Deadline,
    ) -> None:
        args = [*self._proxy_args(), "fetch"]
        if tags is True:
            args.append("--tags")
        elif tags is False:
            args.append("--no-tags")
        if prune:
            args.append("--prune")
        if depth is not None:
            args.append(f"--depth={depth}")
        args.append(url)
        args.extend(str(r) for r in refspecs)
        self.listener.write(f"Fetching from {strip_credentials_from_url(url)}")
        with self._network_env(url) as env:
            self._locked_git(*args, operation="git fetch", env=env, deadline=deadline)

    def _sparse_checkout(self, paths: List[str], deadline: Deadline) -> None:
        sparse_file = self.git_dir / "info" / "sparse-checkout"
        if paths:
            self._git("config", "core.sparsecheckout", "true")
            sparse_file.parent.mkdir(parents=True, exist_ok=True)
            sparse_file.write_text("".join(f"{p}\n" for p in paths))
        elif self.get_config("core.sparsecheckout") == "true":
            sparse_file.write_text("/*\n")
        else:
            return
        self._git("read-tree", "-mu", "HEAD", deadline=deadline)
        if not paths:
            self._git("config", "core.sparsecheckout", "false")

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
        sha1 = self.rev_parse(f"{ref}^{{commit}}")
        with repository_lock(self.git_dir):
            if branch and delete_branch and self.ref_exists(f"refs/heads/{branch}"):
                self._git("checkout", "-f", "--detach", sha1, operation="git checkout", deadline=deadline)
                self._git("branch", "-D", branch, operation="git checkout")
            if branch:
                # a ref named like the branch may have just been deleted
                self._git("checkout", "-f", "-b", branch, sha1, deadline=deadline)
            else:
                self._git("checkout", "-f", "--no-guess", ref, deadline=deadline)
            if sparse_paths is not None:
                self._sparse_checkout(sparse_paths, deadline)
        if lfs_remote:
            self._lfs_pull(lfs_remote, lfs_credentials, deadline)

    def _lfs_pull(
        self,
        remote: str,
        credentials: Optional[StandardCredentials],
        deadline: Deadline,
    ) -> None:
        url = self.get_remote_url(remote) or remote
        self.listener.write(f"Pulling large files from {strip_credentials_from_url(url)}")
        with self._network_env(url, credentials) as env:
            self._locked_git("lfs", "pull", remote, operation="git lfs pull", env=env, deadline=deadline)

    def _push(
        self, url: str, refspec: Optional[str], force: bool, tags: bool, deadline: Deadline
    ) -> None:
        args = [*self._proxy_args(), "push"]
        if force:
            args.append("--force")
        if tags:
            args.append("--tags")
        args.append(url)
        if refspec:
            args.append(refspec)
        self.listener.write(f"Pushing to {strip_credentials_from_url(url)}")
        with self._network_env(url) as env:
            self._git(*args, operation="git push", env=env, deadline=deadline)

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
        sha1 = self.rev_parse(f"{revision}^{{commit}}")
        args = ["merge"]
        if strategy == Strategy.RECURSIVE_THEIRS:
            args += ["-s", "recursive", "-X", "theirs"]
        elif strategy != Strategy.DEFAULT:
            args += ["-s", strategy.value]
        args.append(str(fast_forward_mode))
        if squash:
            args.append("--squash")
        if not commit:
            args.append("--no-commit")
        if message:
            args += ["-m", message]
        args.append(sha1)
        with repository_lock(self.git_dir):
            try:
                self._git(*args, operation="git merge", deadline=deadline)
            except GitError:
                # a failed merge leaves HEAD, index and work tree as they were
                if any((self.git_dir / name).exists() for name in ("MERGE_HEAD", "SQUASH_MSG")):
                    logger.debug(f"Aborting conflicted merge of {sha1} in {self.work_tree}")
                    self._git("reset", "--merge", operation="git merge")
                    (self.git_dir / "SQUASH_MSG").unlink(missing_ok=True)
                raise
            if squash and commit:
                commit_args = ["commit", "-m", message] if message else ["commit", "--no-edit"]
                self._git(*commit_args, operation="git merge", deadline=deadline)

    def _rebase(self, upstream: str, deadline: Deadline) -> None:
        self._locked_git("rebase", upstream, operation="git rebase", deadline=deadline)

    def _rev_list(
        self,
        reference: Optional[str],
        all_refs: bool,
        nowalk: bool,
        first_parent: bool,
        deadline: Deadline,
    ) -> List[str]:
        args = ["rev-list"]
        if first_parent:
            args.append("--first-parent")
        if nowalk:
            args.append("--no-walk")
        if all_refs:
            args.append("--all")
        else:
            args.append(reference)  # type: ignore[arg-type]
        return self._git(*args, operation="git rev-list", deadline=deadline).split()

    def _changelog(
        self,
        includes: List[str],
        excludes: List[str],
        out: TextIO,
        max_entries: Optional[int],
        deadline: Deadline,
    ) -> None:
        args = [
            "log",
            "--raw",
            "--no-abbrev",
            "--no-renames",
            "--no-color",
            "-m",
            f"--format={RAW_PRETTY_FORMAT}",
        ]
        if max_entries is not None:
            args.append(f"-n{max_entries}")
        args.extend(includes or ["HEAD"])
        args.extend(f"^{rev}" for rev in excludes)
        args.append("--")
        out.write(self._git(*args, operation="git log", deadline=deadline))
        out.flush()
