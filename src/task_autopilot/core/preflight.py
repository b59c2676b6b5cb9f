"""Environment checks run before the poll loop starts (and by `autopilot doctor`)."""

import logging
from dataclasses import dataclass, field

from task_autopilot.core.lock import ProcessLock
from task_autopilot.integrations.git import GitCli, GitError
from task_autopilot.integrations.github import GitHubError, repo_from_remote

logger = logging.getLogger(__name__)

IN_PROGRESS_OPS = (
    ("merge", "MERGE_HEAD", "git merge --abort"),
    ("rebase", "rebase-merge", "git rebase --abort"),
    ("rebase (apply)", "rebase-apply", "git rebase --abort"),
    ("cherry-pick", "CHERRY_PICK_HEAD", "git cherry-pick --abort"),
)


@dataclass
class CheckResult:
    name: str
    ok: bool
    message: str
    fix: str | None = None


@dataclass
class PreflightResult:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.ok for c in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.ok]


def check_clean_working_tree(git: GitCli) -> CheckResult:
    name = "Clean working tree"
    try:
        status = git.status()
    except GitError as e:
        return CheckResult(name, False, f"Could not check working tree: {e}",
                           "Ensure you are inside a git repository.")
    if status:
        count = len([line for line in status.splitlines() if line.strip()])
        return CheckResult(
            name, False, f"{count} uncommitted change(s) detected.",
            'Commit or stash your changes: git stash or git add -A && git commit -m "WIP"',
        )
    return CheckResult(name, True, "Working tree is clean.")


def check_no_in_progress_ops(git: GitCli) -> CheckResult:
    name = "No in-progress git operations"
    try:
        git_dir = git.git_dir()
    except GitError as e:
        return CheckResult(name, False, f"Could not locate git directory: {e}",
                           "Ensure you are inside a git repository.")
    active = [(op, abort) for op, marker, abort in IN_PROGRESS_OPS if (git_dir / marker).exists()]
    if active:
        return CheckResult(
            name, False,
            f"In-progress operation(s): {', '.join(op for op, _ in active)}.",
            f"Abort or complete the operation(s): {' or '.join(dict.fromkeys(a for _, a in active))}",
        )
    return CheckResult(name, True, "No in-progress operations.")


def check_remote_and_base_branch(git: GitCli, base_branch: str) -> CheckResult:
    name = "Remote reachable"
    try:
        git.check_remote()
    except GitError as e:
        return CheckResult(
            name, False, f'Cannot reach remote "{git.remote}": {e}',
            "Check your network connection and git remote configuration: git remote -v",
        )
    if not git.ref_exists(f"{git.remote}/{base_branch}"):
        return CheckResult(
            name, False, f'Base branch "{git.remote}/{base_branch}" does not exist on remote.',
            f'Ensure the branch "{base_branch}" exists on the remote, or set BASE_BRANCH.',
        )
    return CheckResult(name, True, f'Remote "{git.remote}" is reachable and "{base_branch}" exists.')


def check_github_repo(git: GitCli) -> CheckResult:
    """The remote must point at GitHub, since pull requests go through gh."""
    name = "GitHub repository"
    try:
        repo = repo_from_remote(git.remote_url())
    except (GitError, GitHubError) as e:
        return CheckResult(
            name, False, f"Could not detect a GitHub repository: {e}",
            f'Point the "{git.remote}" remote at a GitHub repository: git remote -v',
        )
    logger.info("GitHub repo: %s", repo)
    return CheckResult(name, True, f"Remote points at {repo}.")


def check_lock_file(lock: ProcessLock) -> CheckResult:
    """Removes stale or corrupted locks; fails only if another instance is live."""
    name = "Lock file"
    check = lock.clean_stale()
    if not check.exists:
        return CheckResult(name, True, "No lock file present.")
    if check.stale:
        return CheckResult(name, True, f"Stale lock removed ({check.reason}).")
    if not check.held_by_other:
        return CheckResult(name, True, "Lock file belongs to the current process.")
    return CheckResult(
        name, False,
        f"Another autopilot instance is running (PID {check.owner.pid}, started {check.owner.started_at}).",
        f"Wait for the other instance to finish, or stop it and remove {lock.path}",
    )


def check_tracker_connectivity(tracker) -> CheckResult:
    """tracker needs a ``get_user()`` method (ClickUpClient)."""
    name = "ClickUp connectivity"
    try:
        tracker.get_user()
    except Exception as e:
        status_code = getattr(e, "status_code", None)
        fix = (
            "Check your CLICKUP_API_TOKEN; it may be expired or invalid."
            if status_code == 401
            else "Check your network connection and CLICKUP_API_TOKEN."
        )
        return CheckResult(name, False, f"Cannot reach ClickUp API: {e}", fix)
    return CheckResult(name, True, "ClickUp API is accessible.")


def run_preflight_checks(
    git: GitCli,
    lock: ProcessLock,
    base_branch: str,
    tracker=None,
) -> PreflightResult:
    logger.info("Running preflight environment checks...")
    result = PreflightResult(checks=[
        check_clean_working_tree(git),
        check_no_in_progress_ops(git),
        check_remote_and_base_branch(git, base_branch),
        check_lock_file(lock),
    ])
    if tracker is not None:
        result.checks.append(check_tracker_connectivity(tracker))
    for check in result.failures:
        logger.error("Preflight check failed: %s: %s", check.name, check.message)
    return result
