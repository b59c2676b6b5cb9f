"""Shared fixtures: in-memory fakes of the tracker, git, PR and worker ports."""

import fnmatch
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest

from task_autopilot.core.models import (
    ERROR,
    MERGEABLE,
    NEEDS_INPUT,
    PR_CLOSED,
    PR_MERGED,
    PR_OPEN,
    PR_UNKNOWN,
    SUCCESS,
    TODO,
    Comment,
    ReviewComment,
    Task,
    User,
    WorkerResult,
)
from task_autopilot.core.sequencer import Sequencer
from task_autopilot.core.state_machine import TaskProcessor
from task_autopilot.core.tasks import sort_by_priority
from task_autopilot.integrations.clickup import ClickUpError
from task_autopilot.integrations.git import GitError
from task_autopilot.integrations.github import GitHubError

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_task(task_id="T1", title="Fix login", status=TODO, priority=None, age_minutes=0, **kwargs) -> Task:
    return Task(
        id=task_id,
        title=title,
        description=kwargs.pop("description", f"Please {title.lower()}."),
        status=status,
        priority=priority,
        created_at=BASE_TIME + timedelta(minutes=age_minutes),
        updated_at=BASE_TIME + timedelta(minutes=age_minutes),
        url=f"https://app.clickup.com/t/{task_id}",
        creator=User(id=7, username="alice"),
        **kwargs,
    )


# ── Tracker ──────────────────────────────────────────────────────────────────


class FakeTracker:
    def __init__(self, tasks=None):
        self.tasks: dict[str, Task] = {}
        self.comments: dict[str, list[Comment]] = {}
        self.dependencies: dict[str, list[str]] = {}
        self.failing_dependencies: set[str] = set()
        self.failing_tasks: set[str] = set()
        self.status_history: list[tuple[str, str]] = []
        self.notified: list[str] = []
        self.created: list[Task] = []
        self._ids = itertools.count(1)
        for task in tasks or []:
            self.add(task)

    def add(self, task: Task) -> Task:
        self.tasks[task.id] = task
        return task

    def add_human_comment(self, task_id: str, text: str, author: str = "alice"):
        self.comments.setdefault(task_id, []).append(
            Comment(text=text, author=author, created_at=datetime.now(timezone.utc))
        )

    def texts(self, task_id: str) -> list[str]:
        return [c.text for c in self.comments.get(task_id, [])]

    def list_tasks_by_status(self, status):
        return sort_by_priority([t for t in self.tasks.values() if t.status == status])

    def get_task(self, task_id):
        if task_id in self.failing_tasks or task_id not in self.tasks:
            raise ClickUpError(f"Task {task_id} not found", status_code=404)
        return self.tasks[task_id]

    def get_comments(self, task_id):
        return list(self.comments.get(task_id, []))

    def update_status(self, task_id, status):
        self.tasks[task_id].status = status
        self.status_history.append((task_id, status))

    def add_comment(self, task_id, text, notify=None):
        if notify is not None:
            self.notified.append(task_id)
        self.comments.setdefault(task_id, []).append(
            Comment(text=text, author="autopilot", created_at=datetime.now(timezone.utc))
        )

    def get_dependencies(self, task_id):
        if task_id in self.failing_dependencies:
            raise ClickUpError("dependency lookup failed", status_code=500)
        return list(self.dependencies.get(task_id, []))

    def create_task(self, title, description=""):
        task = make_task(f"N{next(self._ids)}", title, description=description)
        self.created.append(task)
        return self.add(task)


# ── Git ──────────────────────────────────────────────────────────────────────


class FakeGit:
    """Branches, commits and working-tree state of a repository and its origin."""

    def __init__(self):
        self.current = "main"
        self.local_branches = {"main"}
        self.remote_branches = {"main"}
        self.heads = {"main": "c0"}
        self.remote_heads = {"main": "c0"}
        # files touched by each branch's own commits (empty commits add "")
        self.branch_commits: dict[str, list[list[str]]] = {}
        self.dirty_files: list[str] = []
        self.merging = False
        self.conflicts: list[str] = []
        self.merge_conflicts: list[str] = []
        self.unresolved: set[str] = set()
        self.push_failures = 0
        self.failing_checkouts: set[str] = set()
        # branches whose remote copy has commits the local branch lacks
        self.remote_ahead: set[str] = set()
        self.diverged: set[str] = set()
        self.pushes: list[str] = []
        self.commit_messages: list[str] = []
        self.aborted = 0
        self._shas = itertools.count(1)

    def _new_sha(self) -> str:
        sha = f"c{next(self._shas)}"
        self.heads[self.current] = sha
        return sha

    def add_branch(self, name: str, files=None, pushed=True):
        """Create a task branch with one commit touching files (empty if None)."""
        self.local_branches.add(name)
        self.heads[name] = f"{name}-head"
        self.branch_commits[name] = [list(files or [])]
        if pushed:
            self.remote_branches.add(name)
            self.remote_heads[name] = self.heads[name]

    def fetch(self, branch):
        pass

    def checkout(self, branch):
        if branch not in self.local_branches:
            raise GitError(f"pathspec '{branch}' did not match")
        self.current = branch

    def create_branch(self, branch):
        if branch in self.local_branches:
            raise GitError(f"a branch named '{branch}' already exists")
        self.local_branches.add(branch)
        self.heads[branch] = self.heads[self.current]
        self.branch_commits[branch] = []
        self.current = branch

    def checkout_tracking(self, branch):
        if branch in self.failing_checkouts:
            raise GitError(f"cannot check out {branch}")
        if branch not in self.local_branches:
            if branch not in self.remote_branches:
                raise GitError(f"'origin/{branch}' is not a commit")
            self.local_branches.add(branch)
            self.heads[branch] = self.remote_heads[branch]
            self.branch_commits.setdefault(branch, [])
        self.current = branch

    def reset_hard(self, ref):
        name = ref.split("/", 1)[1] if ref.startswith("origin/") else ref
        self.heads[self.current] = self.remote_heads.get(name, self.heads[self.current])

    def list_branches(self, pattern):
        return sorted(b for b in self.local_branches if fnmatch.fnmatch(b, pattern))

    def list_remote_branches(self, pattern):
        return sorted(b for b in self.remote_branches if fnmatch.fnmatch(b, pattern))

    def delete_branch(self, branch):
        if branch == self.current:
            raise GitError(f"cannot delete branch '{branch}' checked out")
        if branch not in self.local_branches:
            raise GitError(f"branch '{branch}' not found")
        self.local_branches.discard(branch)

    def delete_remote_branch(self, branch):
        if branch not in self.remote_branches:
            raise GitError(f"remote ref does not exist: {branch}")
        self.remote_branches.discard(branch)

    def has_changes(self):
        return bool(self.dirty_files)

    def is_clean(self, include_untracked=True):
        return not self.dirty_files

    def commit_all(self, message):
        if not self.dirty_files:
            raise GitError("nothing to commit, working tree clean")
        self.branch_commits.setdefault(self.current, []).append(list(self.dirty_files))
        self.dirty_files = []
        self.commit_messages.append(message)
        return self._new_sha()

    def commit_empty(self, message):
        self.branch_commits.setdefault(self.current, []).append([])
        self.commit_messages.append(message)
        return self._new_sha()

    def push(self, branch):
        if self.push_failures > 0:
            self.push_failures -= 1
            raise GitError("failed to push some refs")
        if branch in self.remote_ahead or branch in self.diverged:
            raise GitError("rejected: non-fast-forward")
        self.remote_branches.add(branch)
        self.remote_heads[branch] = self.heads[branch]
        self.pushes.append(branch)

    def merge(self, ref):
        if self.merge_conflicts:
            self.merging = True
            self.conflicts = list(self.merge_conflicts)
            return False
        self.diverged.discard(ref[len("origin/"):])
        self._new_sha()
        return True

    def fast_forward(self, ref):
        name = ref[len("origin/"):]
        if name in self.diverged:
            return False
        if name in self.remote_ahead:
            self.remote_ahead.discard(name)
            self.heads[self.current] = self.remote_heads[name]
        return True

    def conflicted_files(self):
        return list(self.conflicts) if self.merging else []

    def files_with_conflict_markers(self, paths):
        return [p for p in paths if p in self.unresolved]

    def abort_merge(self):
        if not self.merging:
            raise GitError("There is no merge to abort (MERGE_HEAD missing)")
        self.merging = False
        self.conflicts = []
        self.dirty_files = []
        self.aborted += 1

    def commit_merge(self):
        self.merging = False
        self.conflicts = []
        self.merge_conflicts = []
        self.dirty_files = []
        self._new_sha()

    def in_merge(self):
        return self.merging

    def discard_changes(self):
        self.dirty_files = []

    def head(self):
        return self.heads[self.current]

    def commits_ahead(self, base):
        name = base[len("origin/"):]
        if name != "main":
            return 0 if self.heads[self.current] == self.remote_heads.get(name) else 1
        return len(self.branch_commits.get(self.current, []))

    def changed_files(self, base):
        files = []
        for commit in self.branch_commits.get(self.current, []):
            files += [f for f in commit if f and f not in files]
        return files

    def ref_exists(self, ref):
        if ref == "MERGE_HEAD":
            return self.merging
        if ref.startswith("origin/"):
            return ref[len("origin/"):] in self.remote_branches
        return ref in self.local_branches


# ── Pull requests ────────────────────────────────────────────────────────────


@dataclass
class FakePr:
    url: str
    branch: str
    title: str = ""
    body: str = ""
    state: str = PR_OPEN
    draft: bool = False
    mergeable: str = MERGEABLE
    reviews: list = field(default_factory=list)
    inline: list = field(default_factory=list)
    decision: str = "NONE"


class FakePrs:
    def __init__(self, git: FakeGit | None = None):
        self.git = git
        self.prs: dict[str, FakePr] = {}
        self.merged: list[tuple[str, str, bool]] = []
        self.merge_error: str | None = None
        self._numbers = itertools.count(1)

    def add_pr(self, branch, state=PR_OPEN, mergeable=MERGEABLE) -> str:
        url = f"https://github.com/acme/app/pull/{next(self._numbers)}"
        self.prs[url] = FakePr(url=url, branch=branch, state=state, mergeable=mergeable)
        return url

    def open_prs_for(self, branch):
        return [p for p in self.prs.values() if p.branch == branch and p.state == PR_OPEN]

    def find_pr_for_branch(self, branch):
        prs = self.open_prs_for(branch)
        return prs[0].url if prs else None

    def create_pr(self, title, body, branch, base, draft=False):
        if self.open_prs_for(branch):
            raise GitHubError(f"a pull request for branch '{branch}' already exists")
        url = self.add_pr(branch)
        self.prs[url].title = title
        self.prs[url].body = body
        self.prs[url].draft = draft
        return url

    def mark_ready(self, pr_url):
        self.prs[pr_url].draft = False

    def edit_pr(self, pr_url, title=None, body=None):
        if title:
            self.prs[pr_url].title = title
        if body:
            self.prs[pr_url].body = body

    def close_pr(self, pr_url, delete_branch=True):
        pr = self.prs[pr_url]
        pr.state = PR_CLOSED
        if delete_branch and self.git:
            self.git.remote_branches.discard(pr.branch)

    def merge_pr(self, pr_url, strategy="squash", admin=True):
        pr = self.prs[pr_url]
        if self.merge_error:
            raise GitHubError(self.merge_error)
        if pr.state != PR_OPEN:
            raise GitHubError(f"Pull request is {pr.state}")
        pr.state = PR_MERGED
        self.merged.append((pr_url, strategy, admin))
        if self.git:
            self.git.remote_branches.discard(pr.branch)

    def pr_state(self, pr_url):
        return self.prs[pr_url].state if pr_url in self.prs else PR_UNKNOWN

    def mergeability(self, pr_url):
        return self.prs[pr_url].mergeable

    def head_branch(self, pr_url):
        return self.prs[pr_url].branch if pr_url in self.prs else None

    def review_decision(self, pr_url):
        return self.prs[pr_url].decision

    def reviews(self, pr_url):
        return list(self.prs[pr_url].reviews)

    def inline_comments(self, pr_url):
        return list(self.prs[pr_url].inline)


# ── Worker ───────────────────────────────────────────────────────────────────


@dataclass
class Step:
    result: WorkerResult
    changes: list[str] = field(default_factory=list)
    commit: bool = False


class FakeWorker:
    """Replays queued results; by default succeeds without touching files."""

    def __init__(self, git: FakeGit | None = None):
        self.git = git
        self.steps: list[Step] = []
        self.prompts: list[str] = []

    def succeed(self, changes=("src/app.py",), output="Implemented the requested change in the app.", commit=False):
        self.steps.append(Step(WorkerResult(SUCCESS, output), list(changes), commit))
        return self

    def need_input(self, output="NEEDS_MORE_INFO: Which login page do you mean?"):
        self.steps.append(Step(WorkerResult(NEEDS_INPUT, output)))
        return self

    def fail(self, error="Worker exited with code 1", changes=()):
        self.steps.append(Step(WorkerResult(ERROR, "", error), list(changes)))
        return self

    def run(self, prompt, task_id):
        self.prompts.append(prompt)
        step = self.steps.pop(0) if self.steps else Step(WorkerResult(SUCCESS, "Nothing to do."))
        if self.git and step.changes:
            self.git.dirty_files += step.changes
            if step.commit:
                self.git.commit_all("worker commit")
        return step.result


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def git():
    return FakeGit()


@pytest.fixture
def prs(git):
    return FakePrs(git)


@pytest.fixture
def worker(git):
    return FakeWorker(git)


@pytest.fixture
def sequencer(git, prs):
    return Sequencer(git, prs, sleep=lambda seconds: None)


@pytest.fixture
def processor(tracker, sequencer, worker, tmp_path):
    return TaskProcessor(tracker, sequencer, worker, todo_file=tmp_path / ".autopilot.todo.json")


@pytest.fixture
def review(prs):
    """Attach a review comment to a PR."""
    def _add(pr_url, body="Please rename the helper.", author="bob", path=None, line=None):
        item = ReviewComment(author=author, body=body, path=path, line=line)
        if path:
            prs.prs[pr_url].inline.append(item)
        else:
            prs.prs[pr_url].reviews.append(item)
    return _add


