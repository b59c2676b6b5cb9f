"""Git subprocess wrappers for branch, commit, push and merge operations."""

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
CONFLICT_MARKERS = ("CONFLICT", "Automatic merge failed")
CONFLICT_LINE_PREFIXES = ("<<<<<<< ", ">>>>>>> ")


class GitError(Exception):
    """Raised when a git command fails."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    logger.debug("$ %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(
            f"git {' '.join(args)} failed: {(e.stderr or e.stdout or '').strip()}",
            stdout=e.stdout or "",
            stderr=e.stderr or "",
        ) from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout:.0f}s") from e


def _parse_branch_list(output: str) -> list[str]:
    branches = []
    for line in output.splitlines():
        name = line.strip().lstrip("*+").strip()
        if name and "->" not in name:
            branches.append(name)
    return branches


class GitCli:
    """GitPort implementation running the git CLI at the repository root."""

    def __init__(self, repo_path: str | Path, remote: str = "origin", timeout: float = DEFAULT_TIMEOUT):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.timeout = timeout

    def _git(self, *args: str, timeout: float | None = None) -> str:
        return run_git(list(args), cwd=self.repo_path, timeout=timeout or self.timeout)

    # ── Branches ────────────────────────────────────────────────────────────

    def fetch(self, branch: str):
        self._git("fetch", self.remote, branch, timeout=max(self.timeout, 120))

    def checkout(self, branch: str):
        self._git("checkout", branch)

    def create_branch(self, branch: str):
        self._git("checkout", "-b", branch)

    def checkout_tracking(self, branch: str):
        """Check out a branch, creating a local tracking branch from the remote if needed."""
        try:
            self._git("checkout", branch)
        except GitError:
            self._git("checkout", "-b", branch, f"{self.remote}/{branch}")

    def reset_hard(self, ref: str):
        self._git("reset", "--hard", ref)

    def list_branches(self, pattern: str) -> list[str]:
        return _parse_branch_list(self._git("branch", "--list", pattern))

    def list_remote_branches(self, pattern: str) -> list[str]:
        output = self._git("branch", "-r", "--list", f"{self.remote}/{pattern}")
        prefix = f"{self.remote}/"
        return [b[len(prefix):] if b.startswith(prefix) else b for b in _parse_branch_list(output)]

    def delete_branch(self, branch: str):
        self._git("branch", "-D", branch)

    def delete_remote_branch(self, branch: str):
        self._git("push", self.remote, "--delete", branch, timeout=max(self.timeout, 60))

    # ── Working tree ────────────────────────────────────────────────────────

    def status(self, include_untracked: bool = True) -> str:
        args = ["status", "--porcelain"]
        if not include_untracked:
            args.append("-uno")
        return self._git(*args)

    def has_changes(self) -> bool:
        return bool(self.status())

    def is_clean(self, include_untracked: bool = True) -> bool:
        return not self.status(include_untracked=include_untracked)

    def discard_changes(self):
        self._git("reset", "--hard", "HEAD")
        self._git("clean", "-fd")

    def head(self) -> str:
        return self._git("rev-parse", "HEAD")

    # ── Commits ─────────────────────────────────────────────────────────────

    def commit_all(self, message: str) -> str:
        self._git("add", "-A")
        self._git("commit", "-m", message)
        return self._git("rev-parse", "--short", "HEAD")

    def commit_empty(self, message: str) -> str:
        self._git("commit", "--allow-empty", "-m", message)
        return self._git("rev-parse", "--short", "HEAD")

    def push(self, branch: str):
        self._git("push", "-u", self.remote, branch, timeout=max(self.timeout, 120))

    # ── Merging ─────────────────────────────────────────────────────────────

    def merge(self, ref: str) -> bool:
        """Merge ref into the current branch. False on conflicts, GitError otherwise."""
        try:
            self._git("merge", ref, "--no-edit")
            return True
        except GitError as e:
            text = f"{e.stdout}\n{e.stderr}\n{e}"
            if any(marker in text for marker in CONFLICT_MARKERS):
                return False
            raise

    def fast_forward(self, ref: str) -> bool:
        """Move the current branch forward to ref. False if the histories diverged."""
        try:
            self._git("merge", "--ff-only", ref)
            return True
        except GitError as e:
            logger.debug("Cannot fast-forward to %s: %s", ref, e)
            return False

    def conflicted_files(self) -> list[str]:
        output = self._git("diff", "--name-only", "--diff-filter=U")
        return [line for line in output.splitlines() if line.strip()]

    def files_with_conflict_markers(self, paths: list[str]) -> list[str]:
        """Subset of paths that still contain merge conflict markers."""
        remaining = []
        for rel in paths:
            path = self.repo_path / rel
            if not path.is_file():
                continue
            try:
                lines = path.read_text(errors="replace").splitlines()
            except OSError:
                remaining.append(rel)
                continue
            if any(line.startswith(CONFLICT_LINE_PREFIXES) for line in lines):
                remaining.append(rel)
        return remaining

    def abort_merge(self):
        self._git("merge", "--abort")

    def commit_merge(self):
        self._git("add", "-A")
        self._git("commit", "--no-edit")

    def in_merge(self) -> bool:
        return self.ref_exists("MERGE_HEAD")

    # ── Queries ─────────────────────────────────────────────────────────────

    def ref_exists(self, ref: str) -> bool:
        try:
            self._git("rev-parse", "--verify", "--quiet", ref)
            return True
        except GitError:
            return False

    def commits_ahead(self, base: str) -> int:
        output = self._git("rev-list", "--count", f"{base}..HEAD")
        return int(output or 0)

    def changed_files(self, base: str) -> list[str]:
        output = self._git("diff", "--name-only", f"{base}...HEAD")
        return [line for line in output.splitlines() if line.strip()]

    def remote_url(self) -> str:
        return self._git("remote", "get-url", self.remote)

    def check_remote(self):
        """Raise GitError if the remote cannot be reached."""
        self._git("fetch", self.remote, "--dry-run", timeout=max(self.timeout, 60))

    def git_dir(self) -> Path:
        path = Path(self._git("rev-parse", "--git-dir"))
        return path if path.is_absolute() else self.repo_path / path
