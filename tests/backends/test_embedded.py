"""Behaviour specific to the dulwich backend, and backend selection."""

import pytest

from gitclient import CliGitClient, GitError, create_client
from gitclient.backends.embedded import (
    DulwichGitClient,
    _sparse_match,
    _split_config_key,
)
from gitclient.commands import Strategy
from tests.repo_builder import run_git


@pytest.fixture
def embedded(tmp_path, upstream):
    client = DulwichGitClient(tmp_path / "embedded")
    client.set_author("Client Author", "client@example.com")
    client.clone(str(upstream.path))
    client.checkout_branch("master", "origin/master")
    return client


def diverge(client, path="README.md"):
    """Create ``other`` from master~0 and commit conflicting content on both branches."""
    base = client.rev_parse("HEAD")
    (client.work_tree / path).write_text("ours\n")
    client.add(path)
    client.commit("ours")
    client.checkout_branch("other", base)
    (client.work_tree / path).write_text("theirs\n")
    client.add(path)
    client.commit("theirs")
    return base


class TestSelection:
    @pytest.mark.short
    def test_named_backends(self, tmp_path):
        assert isinstance(create_client(tmp_path, "git"), CliGitClient)
        assert isinstance(create_client(tmp_path, "dulwich"), DulwichGitClient)

    @pytest.mark.short
    def test_configured_default(self, tmp_path, monkeypatch):
        assert isinstance(create_client(tmp_path), CliGitClient)

        monkeypatch.setenv("GITCLIENT_IMPLEMENTATION", "dulwich")

        assert isinstance(create_client(tmp_path), DulwichGitClient)

    @pytest.mark.short
    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown git implementation"):
            create_client(tmp_path, "svn")

    @pytest.mark.short
    def test_sub_client_keeps_backend(self, tmp_path):
        assert isinstance(DulwichGitClient(tmp_path).sub_git("a"), DulwichGitClient)


class TestHelpers:
    @pytest.mark.short
    def test_split_config_key(self):
        assert _split_config_key("core.bare") == ("core", "bare")
        assert _split_config_key("remote.origin.url") == ('remote "origin"', "url")
        assert _split_config_key("submodule.libs/a.b.url") == ('submodule "libs/a.b"', "url")
        with pytest.raises(GitError):
            _split_config_key("core")

    @pytest.mark.short
    def test_sparse_match(self):
        assert _sparse_match("src/app.txt", ["src"])
        assert _sparse_match("src/app.txt", ["/src/"])
        assert _sparse_match("docs/a.md", ["*.md"])
        assert not _sparse_match("README.md", ["src"])
        assert not _sparse_match("srcfile", ["src"])


@pytest.mark.integration
class TestRevisionSyntax:
    @pytest.mark.parametrize(
        "revision",
        ["HEAD^{tree}", "v1^{}", "v1^{commit}", "master~2", "HEAD^0", "HEAD^"],
    )
    def test_matches_git(self, embedded, upstream, revision):
        assert embedded.rev_parse(revision) == upstream.rev(revision)

    def test_tag_object(self, embedded, upstream):
        assert embedded.rev_parse("v1") == upstream.rev("v1")
        assert embedded.rev_parse("refs/tags/v1") == upstream.rev("v1")

    def test_full_object_id_in_any_case(self, embedded, upstream):
        sha = upstream.rev("master")

        assert embedded.rev_parse(sha.upper()) == sha
        assert embedded.rev_parse(f"{sha.upper()}~1") == upstream.rev("master~1")

    def test_remote_tracking_names(self, embedded, upstream):
        assert embedded.rev_parse("origin/feature~1") == upstream.rev("feature~1")
        assert embedded.rev_parse("remotes/origin/master") == upstream.rev("master")

    @pytest.mark.parametrize("revision", ["HEAD@{1}", "HEAD~x", "master~5", "HEAD^2", "v1^{blob}"])
    def test_invalid(self, embedded, revision):
        with pytest.raises(GitError):
            embedded.rev_parse(revision)


@pytest.mark.integration
class TestConfiguration:
    def test_written_config_is_read_by_git(self, embedded):
        embedded.set_config("remote.origin.pushurl", "https://example.com/a.git", "https://example.com/b.git")

        values = run_git(embedded.work_tree, "config", "--get-all", "remote.origin.pushurl")

        assert values.splitlines() == ["https://example.com/a.git", "https://example.com/b.git"]

    def test_reads_git_written_config(self, embedded):
        run_git(embedded.work_tree, "config", "--add", "gitclient.multi", "one")
        run_git(embedded.work_tree, "config", "--add", "gitclient.multi", "two")

        assert embedded.get_config("gitclient.multi") == "two"
        assert embedded.get_config("gitclient.missing") is None


@pytest.mark.integration
class TestStaging:
    def test_staged_files_are_seen_by_git(self, embedded):
        (embedded.work_tree / "new.txt").write_text("new\n")
        (embedded.work_tree / "README.md").write_text("changed\n")

        embedded.add("new.txt")
        embedded.add("README.md")

        staged = run_git(embedded.work_tree, "diff", "--cached", "--name-only")
        assert staged.splitlines() == ["README.md", "new.txt"]

        embedded.commit("staged through the worktree")

        assert run_git(embedded.work_tree, "status", "--porcelain") == ""
        assert run_git(embedded.work_tree, "show", "HEAD:new.txt") == "new"

    def test_unmatched_pathspec(self, embedded):
        with pytest.raises(GitError, match="did not match"):
            embedded.add("missing.txt")


@pytest.mark.integration
class TestMergeStrategies:
    def test_subtree_is_unsupported(self, embedded):
        with pytest.raises(GitError, match="subtree"):
            embedded.merge_command().set_revision_to_merge("origin/feature").set_strategy(
                Strategy.SUBTREE
            ).execute()

    def test_lfs_is_unsupported(self, embedded):
        with pytest.raises(GitError, match="LFS"):
            embedded.checkout_command().ref("HEAD").lfs_remote("origin").execute()

    def test_ours(self, embedded, upstream):
        head_tree = embedded.rev_parse("HEAD^{tree}")

        embedded.merge_command().set_revision_to_merge("origin/feature").set_strategy(
            Strategy.OURS
        ).execute()

        assert embedded.rev_parse("HEAD^{tree}") == head_tree
        assert embedded.rev_parse("HEAD^2") == upstream.rev("feature")

    def test_recursive_theirs_resolves_conflicts(self, embedded):
        diverge(embedded)

        embedded.merge_command().set_revision_to_merge("master").set_strategy(
            Strategy.RECURSIVE_THEIRS
        ).execute()

        assert (embedded.work_tree / "README.md").read_text() == "ours\n"
        assert embedded.rev_parse("HEAD^2") == embedded.rev_parse("master")

    def test_no_commit_records_merge_head(self, embedded, upstream):
        embedded.merge_command().set_revision_to_merge("origin/feature").set_commit(
            False
        ).execute()

        assert embedded.rev_parse("HEAD") == upstream.rev("master")
        assert (embedded.git_dir / "MERGE_HEAD").read_text().strip() == upstream.rev("feature")

        embedded.commit("finish merge")

        assert embedded.rev_parse("HEAD^2") == upstream.rev("feature")
        assert not (embedded.git_dir / "MERGE_HEAD").exists()

    def test_squash_without_commit_stages_only(self, embedded, upstream):
        embedded.merge_command().set_revision_to_merge("origin/feature").set_squash(True).execute()

        assert embedded.rev_parse("HEAD") == upstream.rev("master")
        assert (embedded.work_tree / "feature.txt").exists()
        assert run_git(embedded.work_tree, "diff", "--cached", "--name-only") == "feature.txt"


@pytest.mark.integration
class TestRebaseState:
    def test_conflict_leaves_rebase_in_progress(self, embedded):
        diverge(embedded)
        master = embedded.rev_parse("master")

        with pytest.raises(GitError, match="Could not apply"):
            embedded.rebase_command().set_upstream("master").execute()

        state = embedded.git_dir / "rebase-merge"
        assert (state / "head-name").read_text().strip() == "refs/heads/other"
        assert (state / "onto").read_text().strip() == master
        assert (state / "git-rebase-todo").read_text() == ""
        assert embedded.rev_parse("HEAD") == master

        with pytest.raises(GitError, match="already in progress"):
            embedded.rebase_command().set_upstream("master").execute()

    def test_already_applied_commits_are_dropped(self, embedded, upstream):
        embedded.checkout_branch("copy", upstream.rev("master~1"))
        (embedded.work_tree / "src" / "app.txt").write_text("one\ntwo\n")
        embedded.add("src/app.txt")
        embedded.commit("same as third")

        embedded.rebase_command().set_upstream("master").execute()

        assert embedded.rev_parse("HEAD") == upstream.rev("master")


@pytest.mark.integration
def test_progress_reaches_listener(tmp_path, upstream):
    lines = []

    class Collect:
        def write(self, line):
            lines.append(line)

    client = DulwichGitClient(tmp_path / "listened", listener=Collect())
    client.clone(str(upstream.path))

    assert any(line.startswith("Cloning repository") for line in lines)
    assert any(line.startswith("Fetching from") for line in lines)


@pytest.mark.integration
def test_rev_list_honours_timeout(embedded):
    with pytest.raises(GitError, match="Timeout"):
        embedded.rev_list_command().reference("HEAD").to([]).timeout(0).execute()
