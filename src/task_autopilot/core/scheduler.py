"""Poll loop: picks one task per cycle and hands it to the state machine."""

import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from task_autopilot.core.models import APPROVED, COMPLETED, TODO, RunOutcome, Task
from task_autopilot.core.ports import TrackerPort
from task_autopilot.core.state_machine import TaskProcessor
from task_autopilot.core.tasks import TaskError, is_valid_task_id, sort_by_priority

logger = logging.getLogger(__name__)

RELAUNCH = "relaunch"
STOPPED = "stopped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunState:
    """Mutable state of one autopilot process."""

    processing: bool = False
    stop_requested: bool = False
    # task id -> when this process finished handling it
    handled: dict[str, datetime] = field(default_factory=dict)
    relaunch_requested: bool = False
    last_activity: float = 0.0
    tasks_started: int = 0
    outcomes: list[RunOutcome] = field(default_factory=list)


class Scheduler:
    def __init__(
        self,
        tracker: TrackerPort,
        processor: TaskProcessor,
        *,
        poll_interval: float = 30.0,
        relaunch_interval: float = 0.0,
        max_tasks_per_run: int = 0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.tracker = tracker
        self.processor = processor
        self.poll_interval = poll_interval
        self.relaunch_interval = relaunch_interval
        self.max_tasks_per_run = max_tasks_per_run
        self._clock = clock
        self._now = now
        self._wake = threading.Event()
        self.state = RunState(last_activity=clock())

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    def record(self, outcome: RunOutcome):
        self.state.outcomes.append(outcome)
        self.state.handled[outcome.task_id] = self._now()
        self.state.last_activity = self._clock()
        if outcome.final_status == COMPLETED:
            self.state.relaunch_requested = True
        logger.info(
            "Outcome: task=%s kind=%s status=%s category=%s duration=%.1fs",
            outcome.task_id, outcome.kind, outcome.final_status,
            outcome.error_category, outcome.duration_seconds,
        )

    def is_handled(self, task: Task) -> bool:
        """Already handled by this process, and not touched in the tracker since."""
        handled_at = self.state.handled.get(task.id)
        if handled_at is None:
            return False
        if task.updated_at and task.updated_at > handled_at:
            logger.debug("Task %s was updated after we handled it; eligible again", task.id)
            del self.state.handled[task.id]
            return False
        return True

    @property
    def task_limit_reached(self) -> bool:
        return 0 < self.max_tasks_per_run <= self.state.tasks_started

    def relaunch_due(self) -> bool:
        if self.state.relaunch_requested:
            return True
        if self.relaunch_interval > 0:
            return self._clock() - self.state.last_activity >= self.relaunch_interval
        return False

    # ── Dependencies ────────────────────────────────────────────────────────

    def unresolved_dependencies(self, task_id: str) -> list[str] | None:
        """IDs of dependencies not yet completed, or None if undeterminable."""
        try:
            dep_ids = self.tracker.get_dependencies(task_id)
        except Exception as e:
            logger.warning("Could not fetch dependencies of task %s: %s", task_id, e)
            return None
        unresolved = []
        for dep_id in dep_ids:
            try:
                status = self.tracker.get_task(dep_id).status
            except Exception as e:
                logger.warning("Could not determine status of dependency %s: %s", dep_id, e)
                return None
            if status != COMPLETED:
                unresolved.append(dep_id)
        return unresolved

    def dependencies_resolved(self, task_id: str, fail_closed: bool = True) -> bool:
        unresolved = self.unresolved_dependencies(task_id)
        if unresolved is None:
            return not fail_closed
        return not unresolved

    # ── Cycle ───────────────────────────────────────────────────────────────

    def select_next_task(self) -> Task | None:
        """Highest-priority TODO task not yet handled and not waiting on others."""
        for task in sort_by_priority(self.tracker.list_tasks_by_status(TODO)):
            if self.is_handled(task):
                logger.debug("Skipping task %s: already handled by this process", task.id)
                continue
            if not self.dependencies_resolved(task.id):
                logger.info("Skipping task %s: waiting on unresolved dependencies", task.id)
                continue
            return task
        return None

    def _process_approved(self):
        for task in self.tracker.list_tasks_by_status(APPROVED):
            if self.state.stop_requested:
                break
            self.record(self.processor.process_approved(task))

    def run_cycle(self) -> bool:
        """Run one poll cycle. Returns True if the process should relaunch."""
        if self.state.processing:
            logger.debug("Previous cycle still running; skipping")
            return False

        self.state.processing = True
        try:
            self._process_approved()
            if self.state.stop_requested:
                return False
            if self.task_limit_reached:
                logger.info("Reached MAX_TASKS_PER_RUN=%d; not picking new tasks", self.max_tasks_per_run)
            else:
                task = self.select_next_task()
                if task:
                    self.state.tasks_started += 1
                    self.record(self.processor.process(task))
                else:
                    logger.debug("No eligible tasks. Waiting...")
        except Exception as e:
            logger.error("Polling error: %s", e)
        finally:
            self.state.processing = False

        if not self.state.stop_requested and self.relaunch_due():
            logger.info("Relaunch due; syncing %s before restart", self.processor.seq.base_branch)
            try:
                self.processor.seq.sync_base()
            except Exception as e:
                logger.warning("Could not sync base branch before relaunch: %s", e)
            return True
        return False

    def _wait(self, seconds: float):
        self._wake.wait(seconds)

    def run_forever(self, wait: Callable[[float], None] | None = None) -> str:
        """Poll until stopped or a relaunch is due. Returns RELAUNCH or STOPPED."""
        wait = wait or self._wait
        logger.info("Polling for tasks every %.0fs", self.poll_interval)
        while not self.state.stop_requested:
            if self.run_cycle():
                return RELAUNCH
            if self.state.stop_requested:
                break
            wait(self.poll_interval)
        logger.info("Scheduler stopped")
        return STOPPED

    # ── Single task mode ────────────────────────────────────────────────────

    def run_single(self, task_id: str) -> RunOutcome:
        """Drive one named task once, bypassing queue filters."""
        if not is_valid_task_id(task_id):
            raise TaskError(f"Invalid task ID format: {task_id!r}")
        task = self.tracker.get_task(task_id)

        unresolved = self.unresolved_dependencies(task.id)
        if unresolved is None:
            logger.warning("Could not check dependencies of task %s; proceeding anyway", task.id)
        elif unresolved:
            logger.warning(
                "Task %s has unresolved dependencies (%s); proceeding anyway",
                task.id, ", ".join(unresolved),
            )

        if task.status == APPROVED:
            outcome = self.processor.process_approved(task)
        else:
            outcome = self.processor.process(task)
        self.record(outcome)
        return outcome

    # ── Shutdown ────────────────────────────────────────────────────────────

    def request_shutdown(self):
        self.state.stop_requested = True
        self._wake.set()

    def install_signal_handlers(self):
        def handle(signum, frame):
            name = signal.Signals(signum).name
            if self.state.stop_requested:
                logger.warning("Received %s again. Exiting immediately.", name)
                sys.exit(130)
            if self.state.processing:
                logger.info("Received %s. Finishing the current task before shutting down...", name)
            else:
                logger.info("Received %s. Shutting down...", name)
            self.request_shutdown()

        signal.signal(signal.SIGINT, handle)
        signal.signal(signal.SIGTERM, handle)
