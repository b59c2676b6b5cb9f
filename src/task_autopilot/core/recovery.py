"""Crash recovery for tasks left in progress by a previous run."""

import logging
import time

from task_autopilot.core import prompts
from task_autopilot.core.models import BLOCKED, IN_PROGRESS, IN_REVIEW, TODO, RunOutcome, Task
from task_autopilot.core.state_machine import TaskProcessor, categorize_error
from task_autopilot.core.tasks import RESTART_MARK, WARNING_MARK, find_pr_url

logger = logging.getLogger(__name__)


def recover_task(processor: TaskProcessor, task: Task) -> RunOutcome:
    """Resume one orphaned task from whatever its branch shows."""
    tracker = processor.tracker
    seq = processor.seq
    start = time.monotonic()

    branch = seq.find_task_branch(task.id)
    if not branch:
        logger.info("No branch found for task %s. Resetting to %s.", task.id, TODO)
        tracker.update_status(task.id, TODO)
        tracker.add_comment(task.id, f"{RESTART_MARK} restarted: no prior work found. Retrying task.")
        return RunOutcome(task.id, TODO, kind="recovery", duration_seconds=time.monotonic() - start)

    logger.info("Found existing branch for task %s: %s", task.id, branch)
    seq.sync_base()
    seq.checkout_branch(branch)

    if not seq.has_work_ahead():
        logger.info("Branch %s has no work ahead of %s. Re-processing task %s.", branch, seq.base_branch, task.id)
        tracker.add_comment(
            task.id, f"{RESTART_MARK} restarted: found an empty branch from a prior run. Re-processing task."
        )
        seq.delete_branch_fully(branch)
        outcome = processor.process_new(task)
        outcome.kind = "recovery"
        return outcome

    if seq.needs_push(branch):
        logger.info("Pushing unpushed work on %s", branch)
        seq.push(branch)

    pr_url = find_pr_url(tracker.get_comments(task.id)) or seq.prs.find_pr_for_branch(branch)
    files = seq.changed_files()
    if pr_url:
        logger.info("PR already exists for task %s: %s", task.id, pr_url)
        try:
            seq.prs.mark_ready(pr_url)
        except Exception as e:
            logger.debug("Could not mark %s ready: %s", pr_url, e)
    else:
        pr_url = seq.prs.create_pr(
            title=prompts.pr_title(task),
            body=(
                "Recovered from interrupted automation run.\n\n"
                f"Files changed: {len(files)}\n\n"
                f"Branch: `{branch}`"
            ),
            branch=branch,
            base=seq.base_branch,
        )
        logger.info("Created recovery PR for task %s: %s", task.id, pr_url)

    tracker.add_comment(
        task.id,
        f"{RESTART_MARK} restarted and recovered prior work.\n\n"
        f"PR: {pr_url}\n"
        f"Branch: `{branch}`\n"
        f"Files changed: {len(files)}\n\n"
        "Please review the PR.",
    )
    tracker.update_status(task.id, IN_REVIEW)
    if processor.notifier:
        processor.notifier.notify(task, IN_REVIEW, pr_url)
    seq.return_to_base()
    return RunOutcome(task.id, IN_REVIEW, kind="recovery", duration_seconds=time.monotonic() - start)


def recover_orphaned_tasks(processor: TaskProcessor) -> list[RunOutcome]:
    """Recover every in-progress task; one failure never stops the others."""
    tasks = processor.tracker.list_tasks_by_status(IN_PROGRESS)
    if not tasks:
        logger.debug("No orphaned in-progress tasks found.")
        return []

    logger.info("Found %d orphaned in-progress task(s). Recovering...", len(tasks))
    outcomes = []
    for task in tasks:
        logger.info("Recovering task: %s (%s)", task.title, task.id)
        try:
            outcomes.append(recover_task(processor, task))
        except Exception as e:
            logger.error("Failed to recover task %s: %s", task.id, e)
            try:
                processor.tracker.add_comment(
                    task.id,
                    f"{WARNING_MARK} restarted but failed to recover this task:\n\n"
                    f"```\n{e}\n```\n\nMoving to blocked.",
                    notify=task,
                )
                processor.tracker.update_status(task.id, BLOCKED)
            except Exception as report_err:
                logger.error("Could not update task %s after recovery failure: %s", task.id, report_err)
            try:
                processor.seq.return_to_base()
            except Exception as base_err:
                logger.warning("Could not return to base branch during recovery: %s", base_err)
            outcomes.append(RunOutcome(
                task.id, BLOCKED, kind="recovery",
                error_category=categorize_error(e), error=str(e),
            ))
    logger.info("Orphaned task recovery complete.")
    return outcomes
