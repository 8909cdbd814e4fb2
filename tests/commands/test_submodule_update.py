"""Submodule update threading and failure handling, against mocked clients."""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from gitclient.commands import SubmoduleUpdateCommand
from gitclient.exceptions import GitError, GitInterruptedError
from gitclient.model import IndexEntry, SubmoduleDefinition

PATHS = ["libs/a", "libs/b", "libs/c", "libs/d"]


def _sha(index: int) -> str:
    return f"{index + 1:x}" * 40


class FakeSuperproject:
    """Mocked parent client with one mocked sub-client per submodule path."""

    def __init__(self, paths, branches=None):
        self.client = MagicMock()
        self.client.has_git_modules.return_value = True
        self.client.get_submodule_url.return_value = None
        self.client.get_config.return_value = None
        self.client.get_submodule_definitions.return_value = [
            SubmoduleDefinition(
                name=path,
                path=path,
                url=f"https://host/{path}.git",
                branch=(branches or {}).get(path),
            )
            for path in paths
        ]
        self.client.get_submodules.return_value = [
            IndexEntry.gitlink(_sha(i), path) for i, path in enumerate(paths)
        ]
        self.subs = {}
        for path in paths:
            sub = MagicMock()
            sub.has_git_repo.return_value = False
            sub.has_git_modules.return_value = False
            sub.is_commit_in_repo.return_value = True
            self.subs[path] = sub
        self.client.sub_git.side_effect = lambda path: self.subs[path]

    def clone_execute(self, path):
        return self.subs[path].clone_command.return_value.url.return_value.shallow.return_value.depth.return_value.reference.return_value.timeout.return_value.execute

    def checkout(self, path):
        return self.subs[path].checkout_command.return_value.ref

    def checkout_execute(self, path):
        return self.checkout(path).return_value.timeout.return_value.execute


@pytest.mark.short
def test_no_gitmodules_is_a_no_op():
    fake = FakeSuperproject(PATHS)
    fake.client.has_git_modules.return_value = False

    SubmoduleUpdateCommand(fake.client).execute()

    fake.client.submodule_init.assert_not_called()
    fake.client.sub_git.assert_not_called()


@pytest.mark.short
def test_checks_out_recorded_commits():
    fake = FakeSuperproject(PATHS)

    SubmoduleUpdateCommand(fake.client).threads(2).execute()

    fake.client.submodule_init.assert_called_once()
    for i, path in enumerate(PATHS):
        fake.clone_execute(path).assert_called_once()
        fake.checkout(path).assert_called_once_with(_sha(i))


@pytest.mark.short
def test_workers_run_in_parallel_up_to_thread_count():
    fake = FakeSuperproject(PATHS)
    barrier = threading.Barrier(2, timeout=10)
    lock = threading.Lock()
    active = []
    peak = []

    def clone():
        with lock:
            active.append(1)
            peak.append(len(active))
        barrier.wait()
        time.sleep(0.05)
        with lock:
            active.pop()

    for path in PATHS:
        fake.clone_execute(path).side_effect = clone

    SubmoduleUpdateCommand(fake.client).threads(2).execute()

    assert max(peak) == 2


@pytest.mark.short
def test_default_thread_count_comes_from_configuration():
    fake = FakeSuperproject(PATHS)
    with patch("gitclient.commands.submodule_update.get_default_submodule_threads", return_value=3):
        assert SubmoduleUpdateCommand(fake.client).thread_count == 3
    assert SubmoduleUpdateCommand(fake.client).threads(8).thread_count == 8


@pytest.mark.short
def test_one_failure_does_not_stop_the_others():
    fake = FakeSuperproject(PATHS)
    fake.checkout_execute("libs/b").side_effect = GitError("checkout exploded")

    with pytest.raises(GitError) as excinfo:
        SubmoduleUpdateCommand(fake.client).threads(4).execute()

    assert "libs/b" in str(excinfo.value)
    assert "checkout exploded" in str(excinfo.value)
    for path in PATHS:
        fake.checkout_execute(path).assert_called_once()


@pytest.mark.short
def test_interruption_wins_over_failures():
    fake = FakeSuperproject(PATHS)
    fake.checkout_execute("libs/a").side_effect = GitError("broken")
    fake.checkout_execute("libs/c").side_effect = GitInterruptedError("git checkout")

    with pytest.raises(GitInterruptedError):
        SubmoduleUpdateCommand(fake.client).threads(2).execute()


@pytest.mark.short
def test_missing_recorded_commit_fails():
    fake = FakeSuperproject(["libs/a"])
    fake.subs["libs/a"].is_commit_in_repo.return_value = False

    with pytest.raises(GitError, match="was not fetched"):
        SubmoduleUpdateCommand(fake.client).execute()


@pytest.mark.short
def test_remote_tracking_uses_configured_branches():
    fake = FakeSuperproject(["libs/a", "libs/b", "libs/c"], branches={"libs/a": "develop"})
    fake.subs["libs/c"].get_remote_symbolic_references.return_value = {"HEAD": "refs/heads/trunk"}

    SubmoduleUpdateCommand(fake.client).remote_tracking(True).use_branch(
        "libs/b", "release"
    ).execute()

    fake.client.set_config.assert_any_call("submodule.libs/b.branch", "release")
    fake.subs["libs/a"].rev_parse.assert_called_once_with("refs/remotes/origin/develop")
    fake.subs["libs/b"].rev_parse.assert_called_once_with("refs/remotes/origin/release")
    fake.subs["libs/c"].rev_parse.assert_called_once_with("refs/remotes/origin/trunk")


@pytest.mark.short
def test_existing_checkout_is_fetched_not_cloned():
    fake = FakeSuperproject(["libs/a"])
    sub = fake.subs["libs/a"]
    sub.has_git_repo.return_value = True

    SubmoduleUpdateCommand(fake.client).execute()

    sub.set_remote_url.assert_called_once_with("origin", "https://host/libs/a.git")
    sub.fetch_command.return_value.from_.assert_called_once()
    sub.clone_command.assert_not_called()


@pytest.mark.short
def test_parent_credentials_are_shared():
    fake = FakeSuperproject(["libs/a"])
    credentials = MagicMock()
    fake.client.get_default_remote.return_value = "origin"
    fake.client.get_remote_url.return_value = "https://host/app.git"
    fake.client.credentials_for.return_value = credentials

    SubmoduleUpdateCommand(fake.client).parent_credentials(True).execute()

    fake.client.credentials_for.assert_called_once_with("https://host/app.git")
    fake.subs["libs/a"].add_credentials.assert_called_once_with(
        "https://host/libs/a.git", credentials
    )


@pytest.mark.short
def test_recursive_updates_nested_submodules_serially():
    fake = FakeSuperproject(["libs/a"])
    sub = fake.subs["libs/a"]
    sub.has_git_modules.return_value = True

    SubmoduleUpdateCommand(fake.client).recursive(True).execute()

    nested = sub.submodule_update_command.return_value
    nested.recursive.assert_called_once_with(True)
    chain = nested.recursive.return_value.remote_tracking.return_value.parent_credentials.return_value
    chain.ref.return_value.shallow.return_value.depth.return_value.threads.assert_called_once_with(1)


@pytest.mark.short
@pytest.mark.parametrize("threads", [0, -2])
def test_invalid_thread_count(threads):
    fake = FakeSuperproject(PATHS)
    with pytest.raises(GitError):
        SubmoduleUpdateCommand(fake.client).threads(threads).execute()
