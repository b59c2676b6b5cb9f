"""Prompt and message builders for the worker, commits and pull requests."""

import logging
import re

from task_autopilot.core.models import Comment, ReviewComment, Task
from task_autopilot.core.tasks import new_human_comments, task_tag

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_COMMENT_LENGTH = 2000
MAX_COMMENTS_COUNT = 10
MAX_CHECKLIST_ITEM_LENGTH = 500
MAX_PR_DESCRIPTION_LENGTH = 500

INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?previous\s+instructions", re.I),
    re.compile(r"ignore\s+(all\s+)?above\s+instructions", re.I),
    re.compile(r"disregard\s+(all\s+)?previous", re.I),
    re.compile(r"you\s+are\s+now\s+a", re.I),
    re.compile(r"new\s+system\s+prompt", re.I),
    re.compile(r"override\s+(the\s+)?system", re.I),
    re.compile(r"forget\s+(all\s+)?(your\s+)?instructions", re.I),
    re.compile(r"</task>", re.I),
    re.compile(r"IMPORTANT:\s*ignore", re.I),
    re.compile(r"CRITICAL:\s*override", re.I),
]

CHANGES_REQUESTED_DEFAULT = (
    "A reviewer requested changes on the pull request without leaving specific "
    "comments. Review the current diff against the base branch and improve the "
    "implementation."
)
NO_FEEDBACK_DEFAULT = (
    "The task was moved back for another pass but no review comments were found. "
    "Re-read the task description and make sure the implementation is complete."
)


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "... (truncated)"


def detect_injection_patterns(text: str) -> list[str]:
    """Return the fragments of text matching known prompt-injection phrasing."""
    matches = []
    for pattern in INJECTION_PATTERNS:
        match = pattern.search(text or "")
        if match:
            matches.append(match.group(0))
    return matches


def _warn_on_injection(task: Task, comments: list[Comment]):
    content = "\n".join([task.title, task.description] + [c.text for c in comments])
    found = detect_injection_patterns(content)
    if found:
        logger.warning(
            "Potential prompt injection detected in task %s: %s", task.id, ", ".join(found)
        )


def _task_header(task: Task) -> list[str]:
    parts = [
        f"# Task: {truncate(task.title, MAX_TITLE_LENGTH)}",
        f"Task ID: {task.id}",
    ]
    if task.url:
        parts.append(f"URL: {task.url}")
    if task.priority_label:
        parts.append(f"Priority: {task.priority_label}")
    if task.tags:
        parts.append(f"Tags: {', '.join(task.tags)}")
    parts.append("")
    if task.description:
        parts += ["## Description", truncate(task.description, MAX_DESCRIPTION_LENGTH), ""]
    return parts


def _format_comment(comment: Comment) -> str:
    user = comment.author or "Unknown"
    date = comment.created_at.date().isoformat() if comment.created_at else ""
    header = f"**{user}** ({date}):" if date else f"**{user}**:"
    return f"{header}\n{truncate(comment.text, MAX_COMMENT_LENGTH)}\n"


def build_task_prompt(task: Task, comments: list[Comment] | None = None) -> str:
    """Render a new task (description, checklists, recent comments) for the worker."""
    comments = comments or []
    _warn_on_injection(task, comments)

    parts = _task_header(task)

    if task.checklists:
        parts.append("## Checklist")
        for checklist in task.checklists:
            parts.append(f"### {truncate(checklist.name, MAX_CHECKLIST_ITEM_LENGTH)}")
            for item in checklist.items:
                check = "[x]" if item.resolved else "[ ]"
                parts.append(f"- {check} {truncate(item.name, MAX_CHECKLIST_ITEM_LENGTH)}")
        parts.append("")

    visible = [c for c in comments if c.text and c.text.strip()]
    if visible:
        recent = visible[-MAX_COMMENTS_COUNT:]
        parts.append("## Comments")
        if len(visible) > MAX_COMMENTS_COUNT:
            parts.append(f"(showing {MAX_COMMENTS_COUNT} most recent of {len(visible)} comments)")
        parts += [_format_comment(c) for c in recent]

    return "\n".join(parts)


def collect_review_feedback(
    reviews: list[ReviewComment],
    inline_comments: list[ReviewComment],
    comments: list[Comment],
    review_decision: str = "NONE",
) -> str:
    """Merge PR reviews, inline code comments and new tracker comments into one text."""
    sections = []

    if reviews:
        lines = ["### GitHub PR Reviews"]
        lines += [f"**{r.author}**:\n{truncate(r.body, MAX_COMMENT_LENGTH)}\n" for r in reviews]
        sections.append("\n".join(lines))

    if inline_comments:
        lines = ["### GitHub Inline Code Comments"]
        for c in inline_comments:
            location = f"`{c.path}:{c.line}`" if c.path and c.line else f"`{c.path}`" if c.path else ""
            prefix = f"{location} " if location else ""
            lines.append(f"{prefix}**{c.author}**:\n{truncate(c.body, MAX_COMMENT_LENGTH)}\n")
        sections.append("\n".join(lines))

    human = new_human_comments(comments)
    if human:
        lines = ["### ClickUp Review Comments"]
        lines += [_format_comment(c) for c in human[-MAX_COMMENTS_COUNT:]]
        sections.append("\n".join(lines))

    if sections:
        return "\n\n".join(sections)
    if review_decision == "CHANGES_REQUESTED":
        return CHANGES_REQUESTED_DEFAULT
    return NO_FEEDBACK_DEFAULT


def build_feedback_prompt(task: Task, feedback: str, pr_url: str) -> str:
    """Prompt for a returning task: the original task plus the review feedback."""
    _warn_on_injection(task, [Comment(text=feedback)])
    parts = _task_header(task)
    parts += [
        "## Review Feedback",
        f"This task already has a pull request ({pr_url}) and the work so far is "
        "on the current branch. Reviewers left the feedback below. Address every "
        "point, building on the existing changes rather than starting over.",
        "",
        feedback,
    ]
    return "\n".join(parts)


def build_conflict_prompt(task: Task, branch: str, base: str, paths: list[str]) -> str:
    """Prompt asking the worker to resolve merge conflicts in the listed files."""
    files = "\n".join(f"- {p}" for p in paths)
    return (
        f"# Resolve merge conflicts: {task_tag(task.id)} {truncate(task.title, MAX_TITLE_LENGTH)}\n\n"
        f"Merging `origin/{base}` into branch `{branch}` produced conflicts in these files:\n\n"
        f"{files}\n\n"
        "Resolve every conflict so that both the branch's changes and the base "
        "branch's changes are preserved where they are compatible. Remove all "
        "conflict markers (<<<<<<<, =======, >>>>>>>). Do not commit, do not run "
        "`git merge --abort`, and do not touch files outside this list unless the "
        "resolution requires it."
    )


def commit_message(task: Task, output: str) -> str:
    """``[CU-id] title`` plus a one-line summary taken from the end of the worker output."""
    msg = f"[{task_tag(task.id)}] {task.title}"
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    summary = ""
    for line in reversed(lines[-10:]):
        if len(line) > 20 and not line.startswith(("#", "```", "-")):
            summary = line
            break
    if summary and len(summary) < 200:
        return f"{msg}\n\n{summary}"
    return msg


def partial_commit_message(task: Task) -> str:
    return f"[{task_tag(task.id)}] WIP: {task.title} (partial - automation error)"


def pr_title(task: Task) -> str:
    return f"[{task_tag(task.id)}] {task.title}"


def draft_pr_body(task: Task) -> str:
    return (
        "🤖 Automation is working on this task.\n\n"
        f"**Task:** {task.url}\n\n"
        "This PR will be updated with changes once implementation is complete."
    )


def pr_body(task: Task, changed_files: list[str]) -> str:
    """Final PR description: summary, task description, changed files and test plan."""
    parts = [
        "## Summary",
        f"Automated implementation for ClickUp task: [{task.title}]({task.url})",
        "",
    ]
    if task.description:
        parts.append("## Task Description")
        parts.append(task.description[:MAX_PR_DESCRIPTION_LENGTH])
        if len(task.description) > MAX_PR_DESCRIPTION_LENGTH:
            parts.append("...")
        parts.append("")
    if changed_files:
        parts.append("## Files Changed")
        parts += [f"- `{f}`" for f in changed_files]
        parts.append("")
    parts += [
        "## Test Plan",
        "- [ ] Review the changes manually",
        "- [ ] Verify build succeeds",
        "- [ ] Run tests",
        "",
        "---",
        f"ClickUp Task: {task.url}",
    ]
    return "\n".join(parts)
