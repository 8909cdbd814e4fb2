import io
import logging
from pathlib import Path

import pytest

from gitclient import create_client
from tests.repo_builder import RepoBuilder


@pytest.fixture
def capture_logs():
    """Fixture to capture log output during tests."""
    log_stream = io.StringIO()
    handler = logging.StreamHandler(log_stream)
    logger = logging.getLogger("gitclient")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield log_stream  # Yield the stream to the test function

    # Cleanup after the test
    logger.removeHandler(handler)
    log_stream.close()


@pytest.fixture(autouse=True)
def isolated_git_config(tmp_path_factory, monkeypatch):
    """Keep the user's and the system's git configuration out of the tests."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("GITCLIENT_IMPLEMENTATION", raising=False)
    monkeypatch.delenv("GITCLIENT_GIT_EXECUTABLE", raising=False)


# git fixtures


@pytest.fixture
def upstream(tmp_path) -> RepoBuilder:
    """
    A repository with a short history:

        master:  c1 - c2 - c3       (tag v1 on c2, annotated)
        feature:       \\- f1
    """
    repo = RepoBuilder(tmp_path / "upstream")
    repo.commit("first", {"README.md": "hello\n"})
    repo.commit("second", {"src/app.txt": "one\n"})
    repo.git("tag", "-a", "v1", "-m", "release one")
    repo.git("branch", "feature")
    repo.commit("third", {"src/app.txt": "one\ntwo\n"})
    repo.git("checkout", "-q", "feature")
    repo.commit("feature work", {"feature.txt": "f\n"})
    repo.git("checkout", "-q", "master")
    return repo


@pytest.fixture
def bare_upstream(upstream, tmp_path) -> Path:
    return upstream.bare_clone(tmp_path / "upstream.git")


@pytest.fixture(params=["git", "dulwich"])
def implementation(request) -> str:
    return request.param


@pytest.fixture
def make_client(implementation):
    """Factory for clients of the parametrized backend with a fixed identity."""

    def _make(path: Path):
        client = create_client(path, implementation)
        client.set_author("Client Author", "client@example.com")
        client.set_committer("Client Committer", "client@example.com")
        return client

    return _make


@pytest.fixture
def workspace(tmp_path, make_client, upstream):
    """A client on a fresh clone of ``upstream`` with master checked out."""
    client = make_client(tmp_path / "workspace")
    client.clone(str(upstream.path))
    client.checkout_branch("master", "origin/master")
    return client
