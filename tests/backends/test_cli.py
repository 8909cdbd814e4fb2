"""Unit tests for the subprocess backend: failure mapping, process polling and environment."""

import subprocess
from pathlib import Path

import pytest

from gitclient.backends.cli import CliGitClient, GitResult, map_git_failure
from gitclient.commands import Deadline
from gitclient.exceptions import GitError, GitInterruptedError, GitLockFailedError
from gitclient.model import (
    ProxyConfiguration,
    SSHUserPrivateKey,
    UsernamePasswordCredentials,
)
from tests.repo_builder import RepoBuilder


class FakeProcess:
    """Popen stand-in that never finishes until it is killed."""

    def __init__(self):
        self.killed = False
        self.returncode = None

    def communicate(self, timeout=None):
        if self.killed:
            self.returncode = -9
            return b"", b"killed"
        raise subprocess.TimeoutExpired("git", timeout)

    def kill(self):
        self.killed = True


@pytest.fixture
def cli(tmp_path):
    return CliGitClient(tmp_path / "work")


class TestFailureMapping:
    @pytest.mark.short
    def test_lock_contention(self):
        result = GitResult(
            128,
            "",
            "fatal: Unable to create '/repo/.git/index.lock': File exists.\n\nAnother git process seems to be running",
        )

        error = map_git_failure("git add", result)

        assert isinstance(error, GitLockFailedError)
        assert error.operation == "git add"
        assert "index.lock" in error.diagnostic

    @pytest.mark.short
    def test_other_failures(self):
        error = map_git_failure("git fetch", GitResult(128, "", "fatal: repository not found\n"))

        assert type(error) is GitError
        assert "exit code 128" in str(error)
        assert error.diagnostic == "fatal: repository not found"

    @pytest.mark.short
    def test_stdout_used_when_stderr_empty(self):
        error = map_git_failure("git merge", GitResult(1, "CONFLICT (content)\n", ""))

        assert error.diagnostic == "CONFLICT (content)"


class TestProcessPolling:
    @pytest.mark.short
    def test_cancel_kills_the_child(self, cli, monkeypatch):
        monkeypatch.setattr("gitclient.backends.cli.POLL_INTERVAL", 0.01)
        proc = FakeProcess()
        cli.cancel()

        with pytest.raises(GitInterruptedError):
            cli._communicate(proc, "git fetch", None)
        assert proc.killed

    @pytest.mark.short
    def test_deadline_kills_the_child(self, cli, monkeypatch):
        monkeypatch.setattr("gitclient.backends.cli.POLL_INTERVAL", 0.01)
        proc = FakeProcess()

        with pytest.raises(GitError, match="Timeout after 0 minutes") as excinfo:
            cli._communicate(proc, "git fetch", Deadline(0, "git fetch"))
        assert proc.killed
        assert excinfo.value.diagnostic == "killed"
        assert not isinstance(excinfo.value, GitInterruptedError)

    @pytest.mark.short
    def test_cancelled_client_runs_nothing(self, cli):
        cli.cancel()
        with pytest.raises(GitInterruptedError):
            cli._run_git("status")

    @pytest.mark.short
    def test_missing_executable(self, tmp_path):
        client = CliGitClient(tmp_path, git_executable=str(tmp_path / "no-such-git"))

        with pytest.raises(GitError, match="Could not run"):
            client._run_git("status")


class TestEnvironment:
    @pytest.mark.short
    def test_base_env(self, cli, tmp_path):
        cli.set_author("Ann", "ann@example.com")
        env = cli._base_env()

        assert env["GIT_CEILING_DIRECTORIES"] == str(tmp_path)
        assert env["GIT_TERMINAL_PROMPT"] == "0"
        assert env["GIT_AUTHOR_NAME"] == "Ann"
        # the committer falls back to the author
        assert env["GIT_COMMITTER_EMAIL"] == "ann@example.com"

    @pytest.mark.short
    def test_username_password_use_askpass(self, cli):
        url = "https://host/repo.git"
        cli.add_credentials(url, UsernamePasswordCredentials(username="ci", password="tok"))

        with cli._network_env(url) as env:
            script = Path(env["GIT_ASKPASS"])
            assert script.exists()
            assert env["GITCLIENT_ASKPASS_USERNAME"] == "ci"
            assert env["GITCLIENT_ASKPASS_PASSWORD"] == "tok"
            assert "tok" not in script.read_text()
        assert not script.exists()

    @pytest.mark.short
    def test_ssh_key(self, cli, tmp_path):
        url = "git@host:org/repo.git"
        key = tmp_path / "id_ed25519"
        cli.add_default_credentials(
            SSHUserPrivateKey(username="deploy", private_key=key, passphrase="pp")
        )

        with cli._network_env(url) as env:
            assert f"-i {key}" in env["GIT_SSH_COMMAND"]
            assert "-l deploy" in env["GIT_SSH_COMMAND"]
            assert env["GITCLIENT_SSH_PASSPHRASE"] == "pp"
            assert Path(env["SSH_ASKPASS"]).exists()

    @pytest.mark.short
    def test_no_credentials(self, cli):
        with cli._network_env("https://host/repo.git") as env:
            assert "GIT_ASKPASS" not in env
            assert "GIT_SSH_COMMAND" not in env

    @pytest.mark.short
    def test_proxy(self, cli):
        assert cli._proxy_args() == []

        cli.set_proxy(ProxyConfiguration(host="proxy.local", port=3128, no_proxy_hosts=["internal"]))

        assert cli._proxy_args() == ["-c", "http.proxy=http://proxy.local:3128"]
        with cli._network_env("https://host/repo.git") as env:
            assert env["NO_PROXY"] == "internal"

    @pytest.mark.short
    def test_lfs_credentials_are_not_stored(self, cli, monkeypatch):
        url = "https://host/repo.git"
        calls = []
        monkeypatch.setattr(cli, "get_remote_url", lambda name: url)
        monkeypatch.setattr(
            cli, "_locked_git", lambda *args, **kwargs: calls.append((args, dict(kwargs["env"])))
        )

        cli._lfs_pull(
            "origin",
            UsernamePasswordCredentials(username="ci", password="tok"),
            Deadline(10, "git lfs pull"),
        )

        ((args, env),) = calls
        assert args == ("lfs", "pull", "origin")
        assert env["GITCLIENT_ASKPASS_USERNAME"] == "ci"
        assert cli.credentials_for(url) is None

    @pytest.mark.short
    def test_sub_client_keeps_executable(self, tmp_path):
        client = CliGitClient(tmp_path, git_executable="/opt/git/bin/git")

        assert client.sub_git("libs/a").git_executable == "/opt/git/bin/git"


@pytest.mark.integration
def test_enclosing_repository_is_not_used(tmp_path):
    repo = RepoBuilder(tmp_path / "super")
    repo.commit("first", {"README.md": "x\n"})
    (repo.path / "libs" / "a").mkdir(parents=True)

    client = CliGitClient(repo.path / "libs" / "a")

    assert not client.has_git_repo()
    with pytest.raises(GitError):
        client.rev_parse("HEAD")
