"""GitHub pull request operations through the gh CLI."""

import json
import logging
import re
import subprocess
from pathlib import Path

from task_autopilot.core.models import (
    MERGEABILITY_UNKNOWN,
    PR_CLOSED,
    PR_MERGED,
    PR_OPEN,
    PR_UNKNOWN,
    ReviewComment,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
PR_NUMBER_PATTERN = re.compile(r"github\.com/([^/]+/[^/]+)/pull/(\d+)")
REPO_PATTERN = re.compile(r"github\.com[:/]([^/]+/[^/]+?)(?:\.git)?/?$")


class GitHubError(Exception):
    """Raised when a gh command fails."""


def run_gh(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Run a gh command and return stdout. Raises GitHubError on failure."""
    cmd = ["gh"] + args
    logger.debug("$ %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitHubError(f"gh {args[0] if args else ''} failed: {(e.stderr or '').strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitHubError(f"gh {' '.join(args[:2])} timed out after {timeout:.0f}s") from e
    except FileNotFoundError as e:
        raise GitHubError("gh CLI not found on PATH") from e


def repo_from_remote(remote_url: str) -> str:
    """Extract ``owner/repo`` from an SSH or HTTPS GitHub remote URL."""
    match = REPO_PATTERN.search(remote_url.strip())
    if not match:
        raise GitHubError(f"Could not detect GitHub repo from remote: {remote_url}")
    return match.group(1)


class GhCli:
    """PrPort implementation backed by the gh CLI."""

    def __init__(self, repo_path: str | Path, timeout: float = DEFAULT_TIMEOUT):
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    def _gh(self, *args: str) -> str:
        return run_gh(list(args), cwd=self.repo_path, timeout=self.timeout)

    def _view(self, target: str, field: str) -> str:
        return self._gh("pr", "view", target, "--json", field, "--jq", f".{field}")

    def find_pr_for_branch(self, branch: str) -> str | None:
        """URL of the open PR whose head is branch, if any."""
        try:
            url = self._gh(
                "pr", "list", "--head", branch, "--state", "open",
                "--json", "url", "--jq", ".[0].url // empty",
            )
        except GitHubError:
            return None
        return url or None

    def create_pr(self, title: str, body: str, branch: str, base: str, draft: bool = False) -> str:
        args = [
            "pr", "create",
            "--title", title,
            "--body", body,
            "--base", base,
            "--head", branch,
        ]
        if draft:
            args.append("--draft")
        output = self._gh(*args)
        # gh prints the URL as the last line
        url = output.splitlines()[-1].strip() if output else ""
        logger.info("PR created: %s", url)
        return url

    def mark_ready(self, pr_url: str):
        self._gh("pr", "ready", pr_url)

    def edit_pr(self, pr_url: str, title: str | None = None, body: str | None = None):
        args = ["pr", "edit", pr_url]
        if title:
            args += ["--title", title]
        if body:
            args += ["--body", body]
        self._gh(*args)

    def close_pr(self, pr_url: str, delete_branch: bool = True):
        args = ["pr", "close", pr_url]
        if delete_branch:
            args.append("--delete-branch")
        self._gh(*args)

    def merge_pr(self, pr_url: str, strategy: str = "squash", admin: bool = True):
        args = ["pr", "merge", pr_url, f"--{strategy}", "--delete-branch"]
        if admin:
            args.append("--admin")
        self._gh(*args)

    def pr_state(self, pr_url: str) -> str:
        try:
            state = self._view(pr_url, "state").lower()
        except GitHubError as e:
            logger.warning("Could not query PR state for %s: %s", pr_url, e)
            return PR_UNKNOWN
        if state in (PR_OPEN, PR_MERGED, PR_CLOSED):
            return state
        return PR_UNKNOWN

    def mergeability(self, pr_url: str) -> str:
        try:
            value = self._view(pr_url, "mergeable").upper()
        except GitHubError:
            return MERGEABILITY_UNKNOWN
        return value or MERGEABILITY_UNKNOWN

    def head_branch(self, pr_url: str) -> str | None:
        try:
            return self._view(pr_url, "headRefName") or None
        except GitHubError:
            return None

    def review_decision(self, pr_url: str) -> str:
        try:
            value = self._view(pr_url, "reviewDecision")
        except GitHubError:
            return "NONE"
        return value.upper() if value else "NONE"

    def reviews(self, pr_url: str) -> list[ReviewComment]:
        try:
            output = self._gh(
                "pr", "view", pr_url, "--json", "reviews", "--jq",
                '[.reviews[] | select(.body != "") | '
                "{author: .author.login, body: .body, createdAt: .submittedAt}]",
            )
        except GitHubError:
            return []
        return [
            ReviewComment(author=r.get("author") or "unknown", body=r["body"], created_at=r.get("createdAt"))
            for r in _load_list(output)
        ]

    def inline_comments(self, pr_url: str) -> list[ReviewComment]:
        match = PR_NUMBER_PATTERN.search(pr_url)
        if not match:
            return []
        repo, number = match.groups()
        try:
            output = self._gh(
                "api", f"repos/{repo}/pulls/{number}/comments", "--jq",
                "[.[] | {author: .user.login, body: .body, path: .path, "
                "line: .line, createdAt: .created_at}]",
            )
        except GitHubError:
            return []
        return [
            ReviewComment(
                author=c.get("author") or "unknown",
                body=c.get("body") or "",
                created_at=c.get("createdAt"),
                path=c.get("path"),
                line=c.get("line"),
            )
            for c in _load_list(output)
        ]


def _load_list(output: str) -> list[dict]:
    if not output:
        return []
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        logger.debug("Unparseable gh output: %s", output[:200])
        return []
    return data if isinstance(data, list) else []
