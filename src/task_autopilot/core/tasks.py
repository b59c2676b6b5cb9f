"""Task helpers: branch naming, PR discovery and comment classification.

The branch name is the only link between a tracker task and its git/PR
state, so everything that derives or matches branch names goes through
``branch_name`` and ``branch_pattern``.
"""

import re

from task_autopilot.core.models import Comment, Task

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
MAX_TASK_ID_LENGTH = 30
MAX_SLUG_LENGTH = 50

PR_URL_PATTERN = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/\d+")

# Every comment the automation posts starts with one of these, which is how
# human feedback is told apart from our own notes.
PICKED_UP_MARK = "🤖 Automation"
DONE_MARK = "✅ Automation"
WARNING_MARK = "⚠️ Automation"
ERROR_MARK = "❌ Automation"
RESTART_MARK = "🔄 Automation"
CONFLICT_MARK = "🔀 Automation"
NEEDS_INPUT_MARK = "🔍 Automation"
MERGED_MARK = "🎉 Automation"

AUTOMATION_MARKS = (
    PICKED_UP_MARK,
    DONE_MARK,
    WARNING_MARK,
    ERROR_MARK,
    RESTART_MARK,
    CONFLICT_MARK,
    NEEDS_INPUT_MARK,
    MERGED_MARK,
)


class TaskError(Exception):
    """A per-task recoverable failure; the task is moved to blocked."""


def slugify(title: str) -> str:
    """Convert a title to a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())
    return slug.strip("-")[:MAX_SLUG_LENGTH].strip("-")


def is_valid_task_id(task_id: str) -> bool:
    """Task IDs end up in branch names and command lines, so keep them simple."""
    return bool(TASK_ID_PATTERN.match(task_id or "")) and len(task_id) <= MAX_TASK_ID_LENGTH


def task_tag(task_id: str) -> str:
    return f"CU-{task_id}"


def branch_name(prefix: str, task_id: str, title: str) -> str:
    """Deterministic branch name for a task: ``{prefix}/CU-{id}-{slug}``."""
    slug = slugify(title) or "task"
    return f"{prefix}/{task_tag(task_id)}-{slug}"


def branch_pattern(prefix: str, task_id: str) -> str:
    """Glob matching any branch created for task_id, whatever its title was."""
    return f"{prefix}/{task_tag(task_id)}-*"


def find_pr_url(comments: list[Comment]) -> str | None:
    """Return the most recently posted PR URL in a comment history."""
    for comment in reversed(comments):
        matches = PR_URL_PATTERN.findall(comment.text or "")
        if matches:
            return matches[-1]
    return None


def is_automation_comment(text: str) -> bool:
    return any(mark in (text or "") for mark in AUTOMATION_MARKS)


def new_human_comments(comments: list[Comment]) -> list[Comment]:
    """Human comments posted after the automation's most recent comment.

    With no automation comment in the history, every non-empty human comment
    counts.
    """
    last_auto = -1
    for idx in range(len(comments) - 1, -1, -1):
        if is_automation_comment(comments[idx].text):
            last_auto = idx
            break
    return [
        c for c in comments[last_auto + 1:]
        if c.text and c.text.strip() and not is_automation_comment(c.text)
    ]


def sort_by_priority(tasks: list[Task]) -> list[Task]:
    """Priority rank ascending (unset last), then oldest first."""

    def key(task: Task):
        rank = task.priority if task.priority is not None else float("inf")
        created = task.created_at.timestamp() if task.created_at else 0.0
        return (rank, created)

    return sorted(tasks, key=key)
