"""Tests for the gh CLI wrapper."""

import json

import pytest

from task_autopilot.core.models import CONFLICTING, MERGEABILITY_UNKNOWN, PR_MERGED, PR_UNKNOWN
from task_autopilot.integrations import github
from task_autopilot.integrations.github import GhCli, GitHubError, repo_from_remote

PR = "https://github.com/acme/app/pull/7"


class FakeGh:
    """Stands in for run_gh: maps an argument prefix to output (or an error)."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.outputs: list[tuple[tuple[str, ...], object]] = []

    def on(self, *prefix, output=""):
        self.outputs.append((prefix, output))

    def __call__(self, args, cwd=None, timeout=None):
        self.calls.append(args)
        for prefix, output in self.outputs:
            if tuple(args[:len(prefix)]) == prefix:
                if isinstance(output, Exception):
                    raise output
                return output
        return ""


@pytest.fixture
def gh(monkeypatch):
    fake = FakeGh()
    monkeypatch.setattr(github, "run_gh", fake)
    return fake


@pytest.fixture
def cli(tmp_path):
    return GhCli(tmp_path)


class TestRepoFromRemote:
    def test_ssh(self):
        assert repo_from_remote("git@github.com:acme/app.git") == "acme/app"

    def test_https(self):
        assert repo_from_remote("https://github.com/acme/app") == "acme/app"

    def test_not_github(self):
        with pytest.raises(GitHubError):
            repo_from_remote("https://gitlab.com/acme/app.git")


class TestPullRequests:
    def test_create_draft(self, gh, cli):
        gh.on("pr", "create", output="Creating pull request...\n" + PR)

        url = cli.create_pr("[CU-T1] Fix login", "body", "clickup/CU-T1-fix-login", "main", draft=True)

        assert url == PR
        args = gh.calls[0]
        assert args[args.index("--head") + 1] == "clickup/CU-T1-fix-login"
        assert args[args.index("--base") + 1] == "main"
        assert "--draft" in args

    def test_find_pr_for_branch(self, gh, cli):
        gh.on("pr", "list", output=PR)
        assert cli.find_pr_for_branch("clickup/CU-T1-fix-login") == PR
        assert gh.calls[0][gh.calls[0].index("--state") + 1] == "open"

    def test_find_pr_for_branch_none(self, gh, cli):
        assert cli.find_pr_for_branch("clickup/CU-T1-fix-login") is None

    def test_merge_args(self, gh, cli):
        cli.merge_pr(PR, strategy="squash", admin=True)
        assert gh.calls[0] == ["pr", "merge", PR, "--squash", "--delete-branch", "--admin"]

    def test_close_deletes_branch(self, gh, cli):
        cli.close_pr(PR)
        assert gh.calls[0] == ["pr", "close", PR, "--delete-branch"]

    def test_state(self, gh, cli):
        gh.on("pr", "view", PR, "--json", "state", output="MERGED")
        assert cli.pr_state(PR) == PR_MERGED

    def test_state_unknown_on_error(self, gh, cli):
        gh.on("pr", "view", output=GitHubError("not found"))
        assert cli.pr_state(PR) == PR_UNKNOWN
        assert cli.mergeability(PR) == MERGEABILITY_UNKNOWN
        assert cli.head_branch(PR) is None
        assert cli.review_decision(PR) == "NONE"
        assert cli.reviews(PR) == []

    def test_mergeability(self, gh, cli):
        gh.on("pr", "view", PR, "--json", "mergeable", output="CONFLICTING")
        assert cli.mergeability(PR) == CONFLICTING


class TestReviews:
    def test_reviews(self, gh, cli):
        gh.on("pr", "view", PR, "--json", "reviews", output=json.dumps([
            {"author": "bob", "body": "Rename it", "createdAt": "2026-01-02T00:00:00Z"},
        ]))

        [review] = cli.reviews(PR)

        assert review.author == "bob"
        assert review.body == "Rename it"

    def test_inline_comments(self, gh, cli):
        gh.on("api", output=json.dumps([
            {"author": "bob", "body": "Off by one", "path": "src/login.py", "line": 12},
        ]))

        [comment] = cli.inline_comments(PR)

        assert gh.calls[0][1] == "repos/acme/app/pulls/7/comments"
        assert (comment.path, comment.line) == ("src/login.py", 12)

    def test_inline_comments_bad_url(self, gh, cli):
        assert cli.inline_comments("https://example.com/pr/1") == []
        assert gh.calls == []

    def test_unparseable_output(self, gh, cli):
        gh.on("pr", "view", PR, "--json", "reviews", output="not json")
        assert cli.reviews(PR) == []


class TestRunGh:
    def test_missing_binary(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PATH", str(tmp_path))
        with pytest.raises(GitHubError, match="gh CLI not found"):
            github.run_gh(["pr", "list"])
