"""Tests for recovery of tasks left in progress by a crashed run."""

from conftest import make_task

from task_autopilot.core.models import BLOCKED, IN_PROGRESS, IN_REVIEW, PR_OPEN, TODO
from task_autopilot.core.recovery import recover_orphaned_tasks, recover_task
from task_autopilot.core.tasks import RESTART_MARK, WARNING_MARK, find_pr_url

BRANCH = "clickup/CU-T1-fix-login"


class TestRecoverTask:
    def test_no_branch_resets_to_todo(self, tracker, git, prs, processor):
        task = tracker.add(make_task(status=IN_PROGRESS))

        outcome = recover_task(processor, task)

        assert outcome.final_status == TODO
        assert outcome.kind == "recovery"
        assert task.status == TODO
        assert any(RESTART_MARK in t for t in tracker.texts("T1"))
        assert prs.prs == {}

    def test_unpushed_work_is_pushed_and_reviewed(self, tracker, git, prs, processor):
        git.add_branch(BRANCH, files=["src/login.py"], pushed=False)
        task = tracker.add(make_task(status=IN_PROGRESS))

        outcome = recover_task(processor, task)

        assert outcome.final_status == IN_REVIEW
        assert task.status == IN_REVIEW
        assert BRANCH in git.pushes
        [pr] = prs.open_prs_for(BRANCH)
        assert "Recovered from interrupted automation run" in pr.body
        assert find_pr_url(tracker.get_comments("T1")) == pr.url
        assert git.current == "main"

    def test_recovery_is_idempotent(self, tracker, git, prs, processor):
        git.add_branch(BRANCH, files=["src/login.py"], pushed=False)
        task = tracker.add(make_task(status=IN_PROGRESS))

        recover_task(processor, task)
        task.status = IN_PROGRESS
        recover_task(processor, task)

        assert len(prs.prs) == 1
        assert git.pushes.count(BRANCH) == 1

    def test_existing_pr_is_reused(self, tracker, git, prs, processor):
        git.add_branch(BRANCH, files=["src/login.py"])
        url = prs.add_pr(BRANCH)
        prs.prs[url].draft = True
        task = tracker.add(make_task(status=IN_PROGRESS))

        recover_task(processor, task)

        assert len(prs.prs) == 1
        assert not prs.prs[url].draft
        assert git.pushes == []

    def test_work_committed_after_scaffold_push_is_pushed(self, tracker, git, prs, processor):
        task = tracker.add(make_task(status=IN_PROGRESS))
        branch = processor.seq.start_branch(task)
        url = processor.seq.ensure_draft_pr(task, branch)
        git.dirty_files = ["src/login.py"]
        git.commit_all("[CU-T1] Fix login")

        outcome = recover_task(processor, task)

        assert outcome.final_status == IN_REVIEW
        assert git.remote_heads[BRANCH] == git.heads[BRANCH]
        assert list(prs.prs) == [url]
        assert not prs.prs[url].draft

    def test_scaffold_branch_is_reprocessed(self, tracker, git, prs, worker, processor):
        git.add_branch(BRANCH)
        task = tracker.add(make_task(status=IN_PROGRESS))
        worker.succeed(changes=["src/login.py"])

        outcome = recover_task(processor, task)

        assert outcome.kind == "recovery"
        assert outcome.final_status == IN_REVIEW
        assert len(worker.prompts) == 1
        [pr] = [p for p in prs.prs.values() if p.state == PR_OPEN]
        assert pr.branch == BRANCH
        assert any("empty branch" in t for t in tracker.texts("T1"))


class TestRecoverOrphanedTasks:
    def test_nothing_to_recover(self, processor):
        assert recover_orphaned_tasks(processor) == []

    def test_failure_is_isolated(self, tracker, git, prs, processor):
        git.add_branch("clickup/CU-T1-fix-login", files=["src/login.py"])
        git.add_branch("clickup/CU-T2-add-search", files=["src/search.py"])
        git.failing_checkouts.add("clickup/CU-T1-fix-login")
        first = tracker.add(make_task("T1", status=IN_PROGRESS, priority=1))
        second = tracker.add(make_task("T2", "Add search", status=IN_PROGRESS, priority=2))

        outcomes = recover_orphaned_tasks(processor)

        assert [(o.task_id, o.final_status) for o in outcomes] == [("T1", BLOCKED), ("T2", IN_REVIEW)]
        assert outcomes[0].error_category == "git"
        assert first.status == BLOCKED
        assert any(WARNING_MARK in t for t in tracker.texts("T1"))
        assert second.status == IN_REVIEW
        assert git.current == "main"

    def test_only_in_progress_tasks(self, tracker, git, processor):
        tracker.add(make_task("T1", status=TODO))
        tracker.add(make_task("T2", status=IN_REVIEW))

        assert recover_orphaned_tasks(processor) == []
        assert tracker.status_history == []
