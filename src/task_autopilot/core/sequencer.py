"""Git and pull request operations in the fixed order each task step needs.

Every method assumes the working directory is the git root. Only ``push``
retries; every other failure propagates to the state machine, except the
cleanup helpers, which are best-effort.
"""

import logging
import time
from typing import Callable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from task_autopilot.core import prompts
from task_autopilot.core.models import Task, WorkerResult
from task_autopilot.core.ports import GitPort, PrPort
from task_autopilot.core.tasks import TaskError, branch_name, branch_pattern, task_tag
from task_autopilot.integrations.git import GitError

logger = logging.getLogger(__name__)

PUSH_ATTEMPTS = 5  # first try plus retries after 2, 4, 8 and 16 seconds


class Sequencer:
    def __init__(
        self,
        git: GitPort,
        prs: PrPort,
        base_branch: str = "main",
        branch_prefix: str = "clickup",
        merge_strategy: str = "squash",
        remote: str = "origin",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.git = git
        self.prs = prs
        self.base_branch = base_branch
        self.branch_prefix = branch_prefix
        self.merge_strategy = merge_strategy
        self.remote = remote
        self._sleep = sleep

    @property
    def base_ref(self) -> str:
        return f"{self.remote}/{self.base_branch}"

    # ── Branches ────────────────────────────────────────────────────────────

    def sync_base(self):
        """Check out the base branch and hard-reset it to the remote."""
        logger.info("Syncing %s with %s", self.base_branch, self.base_ref)
        self.git.fetch(self.base_branch)
        self.git.checkout(self.base_branch)
        self.git.reset_hard(self.base_ref)

    def find_task_branch(self, task_id: str) -> str | None:
        """Existing branch for a task, local first, then remote."""
        pattern = branch_pattern(self.branch_prefix, task_id)
        local = self.git.list_branches(pattern)
        if local:
            return local[0]
        remote = self.git.list_remote_branches(pattern)
        if remote:
            return remote[0]
        return None

    def checkout_branch(self, branch: str):
        """Check out a task branch and bring in commits pushed to its remote copy."""
        logger.info("Checking out existing branch: %s", branch)
        remote_ref = f"{self.remote}/{branch}"
        try:
            self.git.fetch(branch)
        except GitError as e:
            logger.debug("Could not fetch %s: %s", branch, e)
        self.git.checkout_tracking(branch)
        if not self.git.ref_exists(remote_ref) or self.git.fast_forward(remote_ref):
            return
        logger.warning("%s has diverged from %s, merging", branch, remote_ref)
        if not self.git.merge(remote_ref):
            self._abort_merge()
            raise TaskError(f"Branch {branch} has diverged from {remote_ref} and could not be merged")

    def start_branch(self, task: Task) -> str:
        """Sync base, then reuse the task's branch or create a new one."""
        self.sync_base()
        existing = self.find_task_branch(task.id)
        if existing:
            logger.info("Branch already exists for task %s: %s", task.id, existing)
            self.checkout_branch(existing)
            return existing
        name = branch_name(self.branch_prefix, task.id, task.title)
        logger.info("Creating branch: %s", name)
        self.git.create_branch(name)
        return name

    def ensure_draft_pr(self, task: Task, branch: str) -> str:
        """Reuse the branch's PR, or push a scaffold commit and open a draft."""
        existing = self.prs.find_pr_for_branch(branch)
        if existing:
            logger.info("Existing PR found: %s", existing)
            return existing
        self.git.commit_empty(f"[{task_tag(task.id)}] Starting work on: {task.title}")
        self.push(branch)
        url = self.prs.create_pr(
            title=prompts.pr_title(task),
            body=prompts.draft_pr_body(task),
            branch=branch,
            base=self.base_branch,
            draft=True,
        )
        logger.info("Draft PR created: %s", url)
        return url

    # ── Commits and pushes ──────────────────────────────────────────────────

    def commit_all(self, message: str) -> str:
        sha = self.git.commit_all(message)
        logger.info("Committed %s", sha)
        return sha

    def push(self, branch: str):
        """Push with retries (2s, 4s, 8s, 16s between attempts)."""
        retrying = Retrying(
            stop=stop_after_attempt(PUSH_ATTEMPTS),
            wait=wait_exponential(multiplier=2, max=16),
            retry=retry_if_exception_type(GitError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                logger.info("Pushing %s (attempt %d)", branch, attempt.retry_state.attempt_number)
                self.git.push(branch)

    def finalize_pr(self, pr_url: str, body: str):
        """Replace the draft body and mark the PR ready for review."""
        self.prs.edit_pr(pr_url, body=body)
        self.prs.mark_ready(pr_url)

    def merge_pull_request(self, pr_url: str):
        logger.info("Merging PR %s (%s)", pr_url, self.merge_strategy)
        self.prs.merge_pr(pr_url, strategy=self.merge_strategy, admin=True)

    # ── Cleanup ─────────────────────────────────────────────────────────────

    def ensure_clean_state(self):
        """Abort any in-progress merge and discard uncommitted changes."""
        if self.git.in_merge():
            logger.warning("Detected in-progress merge, aborting to restore clean state")
            try:
                self.git.abort_merge()
            except GitError as e:
                logger.debug("merge --abort failed: %s", e)
        if self.git.has_changes():
            logger.warning("Detected uncommitted changes, discarding to restore clean state")
            self.git.discard_changes()

    def return_to_base(self):
        logger.info("Returning to %s", self.base_branch)
        self.ensure_clean_state()
        self.git.checkout(self.base_branch)

    def cleanup_branch(self, branch: str | None, pr_url: str | None = None, remote: bool = False):
        """Close the PR, return to base and delete the branch. Never raises."""
        if pr_url:
            try:
                self.prs.close_pr(pr_url, delete_branch=True)
                logger.info("Closed PR %s", pr_url)
            except Exception as e:
                logger.debug("Could not close PR %s during cleanup: %s", pr_url, e)
        try:
            self.return_to_base()
        except Exception as e:
            logger.warning("Could not return to %s during cleanup: %s", self.base_branch, e)
        if not branch:
            return
        try:
            self.git.delete_branch(branch)
        except Exception as e:
            logger.debug("Could not delete local branch %s: %s", branch, e)
        if remote:
            try:
                self.git.delete_remote_branch(branch)
            except Exception as e:
                logger.debug("Could not delete remote branch %s: %s", branch, e)

    def delete_branch_fully(self, branch: str):
        """Remove a branch locally and on the remote (best-effort)."""
        self.cleanup_branch(branch, remote=True)

    # ── Merging the base branch ─────────────────────────────────────────────

    def merge_base(self) -> bool:
        """Merge the latest remote base into the current branch. False on conflict."""
        logger.info("Merging %s into current branch", self.base_ref)
        self.git.fetch(self.base_branch)
        clean = self.git.merge(self.base_ref)
        if clean:
            logger.info("Merge completed cleanly")
        else:
            logger.warning("Merge resulted in conflicts")
        return clean

    def resolve_conflicts(self, resolver: Callable[[list[str]], WorkerResult]) -> bool:
        """Merge base in, asking resolver to fix conflicts if any.

        Returns True when the branch now contains base (cleanly or via a
        committed resolution). On any failure the merge is aborted and False
        returned, so the tree is never left half-merged.
        """
        if self.merge_base():
            return True

        paths = self.git.conflicted_files()
        logger.info("Conflicted files: %s", ", ".join(paths) or "(none reported)")
        try:
            result = resolver(paths)
        except Exception:
            self._abort_merge()
            raise

        if not result.succeeded:
            logger.warning("Conflict resolution failed: %s", result.error or result.outcome)
            self._abort_merge()
            return False

        if not self.git.in_merge():
            # The worker committed the merge itself.
            return True

        candidates = sorted(set(paths) | set(self.git.conflicted_files()))
        leftover = self.git.files_with_conflict_markers(candidates)
        if leftover:
            logger.warning("Conflicts remain after resolution: %s", ", ".join(leftover))
            self._abort_merge()
            return False

        try:
            self.git.commit_merge()
        except GitError as e:
            logger.warning("Could not commit merge resolution: %s", e)
            self._abort_merge()
            return False
        logger.info("Merge conflicts resolved and committed")
        return True

    def _abort_merge(self):
        try:
            self.git.abort_merge()
        except GitError as e:
            logger.debug("merge --abort failed: %s", e)

    # ── Queries ─────────────────────────────────────────────────────────────

    def has_changes(self) -> bool:
        return self.git.has_changes()

    def head(self) -> str:
        return self.git.head()

    def changed_files(self) -> list[str]:
        return self.git.changed_files(self.base_ref)

    def has_work_ahead(self) -> bool:
        """True if the current branch carries a real diff against base.

        Scaffold branches (no commits ahead, or only empty commits) do not count.
        """
        if self.git.commits_ahead(self.base_ref) == 0:
            return False
        return bool(self.git.changed_files(self.base_ref))

    def needs_push(self, branch: str) -> bool:
        """True unless the remote branch already holds the local HEAD."""
        remote_ref = f"{self.remote}/{branch}"
        if not self.git.ref_exists(remote_ref):
            return True
        return self.git.commits_ahead(remote_ref) > 0
