"""Data models for the task autopilot."""

from dataclasses import dataclass, field
from datetime import datetime

# Lifecycle status keys. The tracker's display names are configurable and
# mapped onto these by the tracker client.
TODO = "todo"
IN_PROGRESS = "in_progress"
IN_REVIEW = "in_review"
APPROVED = "approved"
REQUIRE_INPUT = "require_input"
BLOCKED = "blocked"
COMPLETED = "completed"

STATUSES = (TODO, IN_PROGRESS, IN_REVIEW, APPROVED, REQUIRE_INPUT, BLOCKED, COMPLETED)

# Worker outcomes
SUCCESS = "success"
NEEDS_INPUT = "needs_input"
ERROR = "error"

# PR states
PR_OPEN = "open"
PR_MERGED = "merged"
PR_CLOSED = "closed"
PR_UNKNOWN = "unknown"

# PR mergeability
MERGEABLE = "MERGEABLE"
CONFLICTING = "CONFLICTING"
MERGEABILITY_UNKNOWN = "UNKNOWN"


@dataclass
class User:
    id: int | None = None
    username: str | None = None


@dataclass
class ChecklistItem:
    name: str
    resolved: bool = False


@dataclass
class Checklist:
    name: str
    items: list[ChecklistItem] = field(default_factory=list)


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = TODO
    priority: int | None = None
    priority_label: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    url: str = ""
    creator: User | None = None
    parent_id: str | None = None
    tags: list[str] = field(default_factory=list)
    checklists: list[Checklist] = field(default_factory=list)


@dataclass
class Comment:
    text: str
    author: str | None = None
    created_at: datetime | None = None


@dataclass
class ReviewComment:
    author: str
    body: str
    created_at: str | None = None
    path: str | None = None
    line: int | None = None


@dataclass
class WorkerResult:
    outcome: str
    output: str = ""
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS

    @property
    def needs_input(self) -> bool:
        return self.outcome == NEEDS_INPUT


@dataclass
class RunOutcome:
    task_id: str
    final_status: str | None
    kind: str = "task"
    error_category: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class LockInfo:
    pid: int
    started_at: str = ""
