"""Task lifecycle: drives one tracker task through the status state machine.

New task:        todo -> in_progress -> in_review | completed | require_input | blocked
Returning task:  same, but the existing branch is updated with review feedback
Approved task:   approved -> completed | blocked
"""

import json
import logging
import time
from pathlib import Path

from task_autopilot.core import prompts
from task_autopilot.core.models import (
    BLOCKED,
    COMPLETED,
    CONFLICTING,
    IN_PROGRESS,
    IN_REVIEW,
    PR_CLOSED,
    PR_MERGED,
    PR_OPEN,
    REQUIRE_INPUT,
    RunOutcome,
    Task,
    WorkerResult,
)
from task_autopilot.core.ports import NotifierPort, TrackerPort, WorkerPort
from task_autopilot.core.sequencer import Sequencer
from task_autopilot.core.tasks import (
    CONFLICT_MARK,
    DONE_MARK,
    ERROR_MARK,
    MERGED_MARK,
    NEEDS_INPUT_MARK,
    PICKED_UP_MARK,
    RESTART_MARK,
    WARNING_MARK,
    TaskError,
    find_pr_url,
    is_valid_task_id,
)
from task_autopilot.integrations.claude import extract_needs_input_reason
from task_autopilot.integrations.clickup import ClickUpError
from task_autopilot.integrations.git import GitError
from task_autopilot.integrations.github import GitHubError

logger = logging.getLogger(__name__)


def categorize_error(exc: BaseException) -> str:
    if isinstance(exc, GitError):
        return "git"
    if isinstance(exc, GitHubError):
        return "github"
    if isinstance(exc, ClickUpError):
        return "tracker"
    if isinstance(exc, TaskError):
        return "task"
    return "unexpected"


class TaskProcessor:
    """Applies the transition table to single tasks.

    Holds no per-task state between calls: whether a task is new or
    returning is re-derived from its comment history every time.
    """

    def __init__(
        self,
        tracker: TrackerPort,
        sequencer: Sequencer,
        worker: WorkerPort,
        *,
        auto_approve: bool = False,
        todo_file: str | Path | None = None,
        status_names: dict[str, str] | None = None,
        notifier: NotifierPort | None = None,
    ):
        self.tracker = tracker
        self.seq = sequencer
        self.prs = sequencer.prs
        self.worker = worker
        self.auto_approve = auto_approve
        self.todo_file = Path(todo_file) if todo_file else None
        self.status_names = status_names or {}
        self.notifier = notifier

    # ── Helpers ─────────────────────────────────────────────────────────────

    def label(self, status: str) -> str:
        return self.status_names.get(status, status.replace("_", " "))

    def _set_status(self, task: Task, status: str, detail: str = ""):
        self.tracker.update_status(task.id, status)
        logger.info("Task %s -> %s", task.id, status)
        if self.notifier:
            self.notifier.notify(task, status, detail)

    def _comment(self, task: Task, text: str, notify: bool = False):
        self.tracker.add_comment(task.id, text, notify=task if notify else None)

    def _outcome(self, task: Task, status: str | None, start: float, kind: str = "task",
                 category: str | None = None, error: str | None = None) -> RunOutcome:
        return RunOutcome(
            task_id=task.id,
            final_status=status,
            kind=kind,
            error_category=category,
            error=error,
            duration_seconds=round(time.monotonic() - start, 3),
        )

    def _discard_branch(self, branch: str | None, pr_url: str | None, keep: bool):
        """Close the PR and delete the branch, unless it holds reviewed work to keep."""
        if not branch:
            return
        if keep:
            logger.info("Keeping branch %s and pull request %s for the next attempt", branch, pr_url)
            return
        self.seq.cleanup_branch(branch, pr_url)

    def _conflict_resolver(self, task: Task, branch: str):
        def resolve(paths: list[str]) -> WorkerResult:
            prompt = prompts.build_conflict_prompt(task, branch, self.seq.base_branch, paths)
            return self.worker.run(prompt, task.id)
        return resolve

    # ── Follow-up tasks ─────────────────────────────────────────────────────

    def process_todo_file(self) -> list[Task]:
        """Turn the worker's follow-up file into new tracker tasks, then delete it."""
        if not self.todo_file or not self.todo_file.exists():
            return []
        created = []
        try:
            entries = json.loads(self.todo_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable follow-up file %s: %s", self.todo_file, e)
            entries = []
        if not isinstance(entries, list):
            logger.warning("Follow-up file %s is not a JSON array", self.todo_file)
            entries = []

        for entry in entries:
            if not isinstance(entry, dict) or not str(entry.get("title", "")).strip():
                continue
            try:
                created.append(self.tracker.create_task(
                    str(entry["title"]).strip(), str(entry.get("description", ""))
                ))
            except Exception as e:
                logger.error("Failed to create follow-up task '%s': %s", entry["title"], e)

        self.todo_file.unlink(missing_ok=True)
        if created:
            logger.info("Created %d follow-up task(s)", len(created))
        return created

    # ── Entry points ────────────────────────────────────────────────────────

    def process(self, task: Task) -> RunOutcome:
        """Work a TODO task: new-task path, or returning path if it has a PR."""
        start = time.monotonic()
        if not is_valid_task_id(task.id):
            logger.error("Invalid task ID format: %r. Skipping.", task.id)
            return self._outcome(task, None, start, category="invalid_id")

        logger.info("Processing task: %s (%s)", task.title, task.id)
        comments = self.tracker.get_comments(task.id)
        pr_url = find_pr_url(comments)
        if not pr_url:
            return self.process_new(task, comments, start=start)

        state = self.prs.pr_state(pr_url)
        if state == PR_MERGED:
            logger.info("PR for returning task %s is already merged: %s", task.id, pr_url)
            self._comment(task, f"{DONE_MARK}: the pull request was already merged: {pr_url}\n\nMoving task to complete.")
            self._set_status(task, COMPLETED)
            return self._outcome(task, COMPLETED, start)
        if state == PR_CLOSED:
            return self._restart(task, comments, pr_url, start)
        return self._process_returning(task, comments, pr_url, start)

    def process_new(self, task: Task, comments=None, start: float | None = None) -> RunOutcome:
        start = start if start is not None else time.monotonic()
        comments = comments if comments is not None else self.tracker.get_comments(task.id)
        branch = pr_url = None
        try:
            self._set_status(task, IN_PROGRESS)
            branch = self.seq.start_branch(task)
            logger.info("Working on branch: %s", branch)
            pr_url = self.seq.ensure_draft_pr(task, branch)
            self._comment(task, f"{PICKED_UP_MARK} picked up this task and is now working on it.")
            prompt = prompts.build_task_prompt(task, comments)
            status, category, error = self._run_and_apply(task, branch, pr_url, prompt)
            return self._outcome(task, status, start, category=category, error=error)
        except Exception as e:
            logger.exception("Error processing task %s", task.id)
            self._fail(task, e, branch, pr_url)
            return self._outcome(task, BLOCKED, start, category=categorize_error(e), error=str(e))
        finally:
            self._finish()

    def _restart(self, task: Task, comments, pr_url: str, start: float) -> RunOutcome:
        """The previous PR was closed unmerged: drop its branch and start over."""
        logger.info("PR for task %s was closed, restarting from scratch: %s", task.id, pr_url)
        stale = self.prs.head_branch(pr_url) or self.seq.find_task_branch(task.id)
        self._comment(
            task,
            f"{RESTART_MARK}: the previous pull request was closed without merging ({pr_url}). "
            "Starting over on a fresh branch.",
        )
        if stale:
            self.seq.delete_branch_fully(stale)
        return self.process_new(task, comments, start=start)

    def _process_returning(self, task: Task, comments, pr_url: str, start: float) -> RunOutcome:
        branch = None
        try:
            self._set_status(task, IN_PROGRESS)
            branch = self.prs.head_branch(pr_url) or self.seq.find_task_branch(task.id)
            if not branch:
                raise TaskError(f"No branch found for pull request {pr_url}")
            self.seq.sync_base()
            self.seq.checkout_branch(branch)
            self._comment(task, f"{PICKED_UP_MARK} picked up the review feedback and is updating the pull request.")

            if not self.seq.resolve_conflicts(self._conflict_resolver(task, branch)):
                raise TaskError(
                    f"Merge conflicts with {self.seq.base_branch} could not be resolved automatically"
                )

            feedback = prompts.collect_review_feedback(
                self.prs.reviews(pr_url),
                self.prs.inline_comments(pr_url),
                comments,
                self.prs.review_decision(pr_url),
            )
            prompt = prompts.build_feedback_prompt(task, feedback, pr_url)
            status, category, error = self._run_and_apply(task, branch, pr_url, prompt, keep_branch=True)
            return self._outcome(task, status, start, category=category, error=error)
        except Exception as e:
            logger.exception("Error processing returning task %s", task.id)
            self._fail(task, e, branch, pr_url, keep_branch=True)
            return self._outcome(task, BLOCKED, start, category=categorize_error(e), error=str(e))
        finally:
            self._finish()

    # ── Worker result handling ──────────────────────────────────────────────

    def _run_and_apply(self, task: Task, branch: str, pr_url: str, prompt: str, keep_branch: bool = False):
        """Run the worker on the checked-out branch and apply its outcome.

        keep_branch leaves the branch and its PR in place on failure (a
        returning task whose PR already holds reviewed work).
        Returns (final status, error category, error message).
        """
        head_before = self.seq.head()
        result = self.worker.run(prompt, task.id)

        # Before any commit, so `git add -A` never picks the file up.
        self.process_todo_file()

        if result.needs_input:
            self._needs_input(task, result, branch, pr_url, keep_branch)
            return REQUIRE_INPUT, None, None
        if not result.succeeded:
            self._worker_error(task, result, branch, pr_url, head_before, keep_branch)
            return BLOCKED, "worker", result.error

        uncommitted = self.seq.has_changes()
        if not uncommitted and self.seq.head() == head_before:
            logger.warning("Worker completed but made no changes for task %s", task.id)
            self._comment(
                task,
                f"{WARNING_MARK} completed but no code changes were produced. This may mean:\n"
                "- The task was already done\n"
                "- The task description wasn't actionable\n"
                "- The worker couldn't determine what changes to make\n\n"
                "Please review and provide more specific instructions if needed.",
                notify=True,
            )
            self._set_status(task, REQUIRE_INPUT, "No changes produced")
            self._discard_branch(branch, pr_url, keep_branch)
            return REQUIRE_INPUT, None, None

        if uncommitted:
            self.seq.commit_all(prompts.commit_message(task, result.output))
        self.seq.push(branch)
        files = self.seq.changed_files()
        self.seq.finalize_pr(pr_url, prompts.pr_body(task, files))

        if self.auto_approve:
            self.seq.merge_pull_request(pr_url)
            self._set_status(task, COMPLETED, pr_url)
            self._comment(task, f"{MERGED_MARK}: changes were merged automatically.\n\n{pr_url}\n\nTask is now complete.")
            self.seq.cleanup_branch(branch)
            logger.info("Task %s completed and merged: %s", task.id, pr_url)
            return COMPLETED, None, None

        self._set_status(task, IN_REVIEW, pr_url)
        self._comment(
            task,
            f"{DONE_MARK} completed! The pull request is ready for review:\n\n"
            f"{pr_url}\n\n"
            f"Branch: `{branch}`\n"
            f"Files changed: {len(files)}\n\n"
            f'Please review the PR. When ready, move this task to "{self.label("approved")}" '
            "and the automation will merge it.",
        )
        logger.info("Task %s ready for review: %s", task.id, pr_url)
        return IN_REVIEW, None, None

    def _needs_input(self, task: Task, result: WorkerResult, branch: str, pr_url: str | None,
                     keep_branch: bool = False):
        reason = extract_needs_input_reason(result.output)
        logger.info("Task %s requires more input: %s", task.id, reason)
        self._comment(
            task,
            f"{NEEDS_INPUT_MARK} needs more information to complete this task:\n\n{reason}\n\n"
            f'Please add the requested details and move this task back to "{self.label("todo")}" to retry.',
            notify=True,
        )
        self._set_status(task, REQUIRE_INPUT, reason)
        self._discard_branch(branch, pr_url, keep_branch)

    def _worker_error(self, task: Task, result: WorkerResult, branch: str, pr_url: str | None, head_before: str,
                      keep_branch: bool = False):
        error = result.error or "Unknown error"
        logger.error("Task %s failed: %s", task.id, error)

        if self.seq.has_changes() or self.seq.head() != head_before:
            try:
                if self.seq.has_changes():
                    self.seq.commit_all(prompts.partial_commit_message(task))
                self.seq.push(branch)
            except Exception as e:
                logger.error("Failed to push partial changes for task %s: %s", task.id, e)
            else:
                self._comment(
                    task,
                    f"{WARNING_MARK} encountered an error but made partial changes.\n\n"
                    f"Error: `{error}`\n\n"
                    "Partial changes have been pushed to the PR for manual review.\n"
                    f"PR: {pr_url}\n"
                    "Please complete the work manually or provide more details and retry.",
                    notify=True,
                )
                self._set_status(task, BLOCKED, error)
                return

        self._comment(
            task,
            f"{ERROR_MARK} encountered an error:\n\n```\n{error}\n```\n\n"
            f'The task has been moved to "{self.label("blocked")}". Please investigate and retry.'
            + (f"\n\nThe pull request is left open: {pr_url}" if keep_branch else ""),
            notify=True,
        )
        self._set_status(task, BLOCKED, error)
        self._discard_branch(branch, pr_url, keep_branch)

    def _fail(self, task: Task, exc: Exception, branch: str | None, pr_url: str | None, keep_branch: bool = False):
        """Report an unexpected per-task error and clean up. Never raises."""
        try:
            self._comment(
                task,
                f"{ERROR_MARK} encountered an error:\n\n```\n{exc}\n```\n\n"
                f'The task has been moved to "{self.label("blocked")}". Please investigate and retry.'
                + (f"\n\nPR: {pr_url}" if pr_url else ""),
                notify=True,
            )
        except Exception as e:
            logger.error("Failed to comment on task %s: %s", task.id, e)
        try:
            self._set_status(task, BLOCKED, str(exc))
        except Exception as e:
            logger.error("Failed to update status of task %s: %s", task.id, e)
        self._discard_branch(branch, pr_url, keep_branch)

    def _finish(self):
        try:
            self.seq.return_to_base()
        except Exception as e:
            logger.warning("Could not return to %s: %s", self.seq.base_branch, e)
        self.process_todo_file()

    # ── Approval path ───────────────────────────────────────────────────────

    def process_approved(self, task: Task) -> RunOutcome:
        """Merge the PR of an approved task."""
        start = time.monotonic()
        if not is_valid_task_id(task.id):
            logger.error("Invalid task ID format: %r. Skipping.", task.id)
            return self._outcome(task, None, start, kind="approval", category="invalid_id")

        logger.info("Merging approved task: %s (%s)", task.title, task.id)
        branch = None
        try:
            pr_url = find_pr_url(self.tracker.get_comments(task.id))
            if not pr_url:
                logger.warning("No PR URL found in comments for task %s", task.id)
                self._comment(
                    task,
                    f"{WARNING_MARK} could not find a pull request URL in this task's comments.\n\n"
                    f'This task was moved to "{self.label("approved")}" but no associated PR was found. '
                    "Please add the PR URL in a comment and approve again, or merge the PR manually.",
                    notify=True,
                )
                self._set_status(task, BLOCKED, "No pull request found")
                return self._outcome(task, BLOCKED, start, kind="approval", category="task")

            state = self.prs.pr_state(pr_url)
            if state == PR_MERGED:
                logger.info("PR already merged for task %s: %s", task.id, pr_url)
                self._comment(task, f"{DONE_MARK}: the pull request was already merged: {pr_url}\n\nMoving task to complete.")
                self._set_status(task, COMPLETED, pr_url)
                return self._outcome(task, COMPLETED, start, kind="approval")

            if state != PR_OPEN:
                logger.warning("PR is %s for task %s: %s", state, task.id, pr_url)
                self._comment(
                    task,
                    f'{WARNING_MARK}: the associated pull request is "{state}" (expected "open"):\n'
                    f"{pr_url}\n\nCannot merge a {state} pull request. Please investigate.",
                    notify=True,
                )
                self._set_status(task, BLOCKED, f"PR is {state}")
                return self._outcome(task, BLOCKED, start, kind="approval", category="task")

            if self.prs.mergeability(pr_url) == CONFLICTING:
                branch = self.prs.head_branch(pr_url) or self.seq.find_task_branch(task.id)
                if not branch:
                    raise TaskError(f"No branch found for pull request {pr_url}")
                self._comment(
                    task,
                    f"{CONFLICT_MARK}: the pull request has conflicts with "
                    f"{self.seq.base_branch}. Attempting to resolve them automatically.",
                )
                self.seq.sync_base()
                self.seq.checkout_branch(branch)
                if not self.seq.resolve_conflicts(self._conflict_resolver(task, branch)):
                    self._comment(
                        task,
                        f"{ERROR_MARK} could not resolve the merge conflicts automatically.\n\n"
                        f"{pr_url}\n\nPlease resolve them manually and approve again.",
                        notify=True,
                    )
                    self._set_status(task, BLOCKED, "Unresolved merge conflicts")
                    return self._outcome(task, BLOCKED, start, kind="approval", category="conflict")
                self.seq.push(branch)

            self.seq.merge_pull_request(pr_url)
            self._set_status(task, COMPLETED, pr_url)
            self._comment(task, f"{MERGED_MARK}: pull request merged successfully!\n\n{pr_url}\n\nTask is now complete.")
            logger.info("Task %s approved and merged: %s", task.id, pr_url)
            branch = branch or self.prs.head_branch(pr_url)
            if branch:
                self.seq.cleanup_branch(branch)
            return self._outcome(task, COMPLETED, start, kind="approval")
        except Exception as e:
            logger.exception("Error merging approved task %s", task.id)
            try:
                self._comment(
                    task,
                    f"{ERROR_MARK} failed to merge the pull request:\n\n```\n{e}\n```\n\n"
                    "Please merge manually or investigate the error.",
                    notify=True,
                )
                self._set_status(task, BLOCKED, str(e))
            except Exception as report_err:
                logger.error("Failed to report merge error for task %s: %s", task.id, report_err)
            return self._outcome(task, BLOCKED, start, kind="approval", category=categorize_error(e), error=str(e))
        finally:
            if branch:
                try:
                    self.seq.return_to_base()
                except Exception as e:
                    logger.warning("Could not return to %s: %s", self.seq.base_branch, e)
