"""Capability interfaces the core depends on.

The concrete implementations live in ``task_autopilot.integrations``; tests
substitute in-memory fakes.
"""

from typing import Protocol

from task_autopilot.core.models import Comment, ReviewComment, Task, WorkerResult


class TrackerPort(Protocol):
    def list_tasks_by_status(self, status: str) -> list[Task]: ...

    def get_task(self, task_id: str) -> Task: ...

    def get_comments(self, task_id: str) -> list[Comment]: ...

    def update_status(self, task_id: str, status: str) -> None: ...

    def add_comment(self, task_id: str, text: str, notify: Task | None = None) -> None: ...

    def get_dependencies(self, task_id: str) -> list[str]: ...

    def create_task(self, title: str, description: str = "") -> Task: ...


class GitPort(Protocol):
    def fetch(self, branch: str) -> None: ...

    def checkout(self, branch: str) -> None: ...

    def create_branch(self, branch: str) -> None: ...

    def checkout_tracking(self, branch: str) -> None: ...

    def reset_hard(self, ref: str) -> None: ...

    def list_branches(self, pattern: str) -> list[str]: ...

    def list_remote_branches(self, pattern: str) -> list[str]: ...

    def delete_branch(self, branch: str) -> None: ...

    def delete_remote_branch(self, branch: str) -> None: ...

    def has_changes(self) -> bool: ...

    def is_clean(self, include_untracked: bool = True) -> bool: ...

    def commit_all(self, message: str) -> str: ...

    def commit_empty(self, message: str) -> str: ...

    def push(self, branch: str) -> None: ...

    def merge(self, ref: str) -> bool: ...

    def fast_forward(self, ref: str) -> bool: ...

    def conflicted_files(self) -> list[str]: ...

    def files_with_conflict_markers(self, paths: list[str]) -> list[str]: ...

    def abort_merge(self) -> None: ...

    def commit_merge(self) -> None: ...

    def in_merge(self) -> bool: ...

    def discard_changes(self) -> None: ...

    def head(self) -> str: ...

    def commits_ahead(self, base: str) -> int: ...

    def changed_files(self, base: str) -> list[str]: ...

    def ref_exists(self, ref: str) -> bool: ...


class PrPort(Protocol):
    def find_pr_for_branch(self, branch: str) -> str | None: ...

    def create_pr(
        self, title: str, body: str, branch: str, base: str, draft: bool = False
    ) -> str: ...

    def mark_ready(self, pr_url: str) -> None: ...

    def edit_pr(self, pr_url: str, title: str | None = None, body: str | None = None) -> None: ...

    def close_pr(self, pr_url: str, delete_branch: bool = True) -> None: ...

    def merge_pr(self, pr_url: str, strategy: str = "squash", admin: bool = True) -> None: ...

    def pr_state(self, pr_url: str) -> str: ...

    def mergeability(self, pr_url: str) -> str: ...

    def head_branch(self, pr_url: str) -> str | None: ...

    def review_decision(self, pr_url: str) -> str: ...

    def reviews(self, pr_url: str) -> list[ReviewComment]: ...

    def inline_comments(self, pr_url: str) -> list[ReviewComment]: ...


class WorkerPort(Protocol):
    def run(self, prompt: str, task_id: str) -> WorkerResult: ...


class NotifierPort(Protocol):
    def notify(self, task: Task, status: str, detail: str = "") -> None: ...
