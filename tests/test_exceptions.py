"""Tests for the exception taxonomy and the lock retry helper."""

import pytest

from gitclient.exceptions import (
    GitError,
    GitInterruptedError,
    GitLockFailedError,
    retry_on_lock,
)


@pytest.mark.short
def test_git_error_carries_operation_and_diagnostic():
    error = GitError("git fetch failed", operation="git fetch", diagnostic="fatal: nope\n")

    assert error.operation == "git fetch"
    assert error.diagnostic == "fatal: nope"
    assert str(error) == "git fetch failed\nfatal: nope"


@pytest.mark.short
def test_git_error_without_diagnostic():
    error = GitError("broken")

    assert error.diagnostic is None
    assert str(error) == "broken"


@pytest.mark.short
def test_lock_failure_is_a_git_error():
    assert issubclass(GitLockFailedError, GitError)
    assert "lock" in str(GitLockFailedError()).lower()


@pytest.mark.short
def test_interruption_is_not_a_git_error():
    error = GitInterruptedError("git clone")

    assert not isinstance(error, GitError)
    assert "git clone" in str(error)


@pytest.mark.short
def test_retry_on_lock_retries_until_success():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise GitLockFailedError(operation="git add")
        return "done"

    assert retry_on_lock(flaky, attempts=3, delay=0) == "done"
    assert len(calls) == 3


@pytest.mark.short
def test_retry_on_lock_gives_up_after_last_attempt():
    calls = []

    def locked():
        calls.append(1)
        raise GitLockFailedError(operation="git add")

    with pytest.raises(GitLockFailedError):
        retry_on_lock(locked, attempts=2, delay=0)
    assert len(calls) == 2


@pytest.mark.short
def test_retry_on_lock_does_not_retry_other_errors():
    calls = []

    def failing():
        calls.append(1)
        raise GitError("bad ref")

    with pytest.raises(GitError, match="bad ref"):
        retry_on_lock(failing, attempts=5, delay=0)
    assert len(calls) == 1
