"""PID lock file ensuring a single autopilot instance per project directory."""

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from task_autopilot.core.models import LockInfo

logger = logging.getLogger(__name__)

PROCESS_MARKERS = ("python", "autopilot")


def is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def is_autopilot_process(pid: int) -> bool:
    """Best-effort check that a live PID is (or could be) an autopilot instance.

    Dead processes, and live ones whose command line clearly belongs to
    something else (PID reuse), return False. Where the command line cannot
    be read we assume it might be ours.
    """
    if pid == os.getpid():
        return True
    if not is_pid_alive(pid):
        return False
    if not sys.platform.startswith("linux"):
        return True
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return True
    cmdline = raw.replace(b"\0", b" ").decode(errors="replace").lower()
    return any(marker in cmdline for marker in PROCESS_MARKERS)


@dataclass
class LockCheck:
    """Result of inspecting the lock file without taking it."""

    exists: bool
    stale: bool = False
    owner: LockInfo | None = None
    reason: str = ""

    @property
    def held_by_other(self) -> bool:
        return self.exists and not self.stale and self.owner is not None and self.owner.pid != os.getpid()


class ProcessLock:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read(self) -> LockInfo | None:
        """Parse the lock file. Raises ValueError if it is corrupted."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            return LockInfo(pid=int(data["pid"]), started_at=str(data.get("startedAt", "")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Corrupted lock file {self.path}: {e}") from e

    def inspect(self) -> LockCheck:
        """Apply the staleness test to the current lock file."""
        try:
            owner = self.read()
        except ValueError as e:
            return LockCheck(exists=True, stale=True, reason=str(e))
        if owner is None:
            return LockCheck(exists=False)
        if is_autopilot_process(owner.pid):
            return LockCheck(exists=True, stale=False, owner=owner)
        if is_pid_alive(owner.pid):
            reason = f"PID {owner.pid} is alive but is not an autopilot process (PID reuse)"
        else:
            reason = f"PID {owner.pid} is no longer running"
        return LockCheck(exists=True, stale=True, owner=owner, reason=reason)

    def clean_stale(self) -> LockCheck:
        """Remove the lock file if it is stale or corrupted. Returns the check."""
        check = self.inspect()
        if check.exists and check.stale:
            self.path.unlink(missing_ok=True)
            logger.info("Removed stale lock %s (%s)", self.path, check.reason)
        return check

    def acquire(self) -> bool:
        """Take the lock. Returns False if another live instance holds it."""
        if self._create_exclusive():
            return True
        check = self.inspect()
        if check.held_by_other:
            logger.error(
                "Another autopilot instance is running (PID %s, started %s)",
                check.owner.pid, check.owner.started_at,
            )
            return False
        if check.exists and not check.stale:
            return True
        if check.stale:
            logger.warning("Reclaiming stale lock: %s", check.reason)
            self.path.unlink(missing_ok=True)
        # Another instance may reclaim the same stale lock; only one create wins.
        if self._create_exclusive():
            return True
        logger.error("Another autopilot instance took the lock %s first", self.path)
        return False

    def release(self):
        """Delete the lock file if it still names this process."""
        try:
            owner = self.read()
        except ValueError:
            return
        if owner and owner.pid == os.getpid():
            self.path.unlink(missing_ok=True)
            logger.debug("Released lock %s", self.path)

    def _payload(self) -> str:
        return json.dumps({
            "pid": os.getpid(),
            "startedAt": datetime.now(timezone.utc).isoformat(),
        })

    def _create_exclusive(self) -> bool:
        """Create the lock file only if none exists (atomic on POSIX)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(self._payload())
        logger.debug("Acquired lock %s", self.path)
        return True
