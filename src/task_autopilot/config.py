"""Configuration loading from environment variables and the project .env file."""

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from task_autopilot.core.models import (
    APPROVED,
    BLOCKED,
    COMPLETED,
    IN_PROGRESS,
    IN_REVIEW,
    REQUIRE_INPUT,
    TODO,
)

ENV_FILE_NAMES = (".autopilot.env", ".env.clickup")
LOCK_FILE_NAME = ".autopilot.lock"
TODO_FILE_NAME = ".autopilot.todo.json"
MERGE_STRATEGIES = ("squash", "merge", "rebase")

DEFAULT_STATUSES = {
    TODO: "to do",
    IN_PROGRESS: "in progress",
    IN_REVIEW: "in review",
    APPROVED: "approved",
    REQUIRE_INPUT: "require input",
    BLOCKED: "blocked",
    COMPLETED: "complete",
}

_TRUTHY = ("1", "true", "yes", "on")


def load_env_file(project_root: Path) -> Path | None:
    """Load the first env file found in project_root.

    Variables already present in the environment are left untouched.
    Returns the path that was loaded, if any.
    """
    for name in ENV_FILE_NAMES:
        path = project_root / name
        if path.is_file():
            load_dotenv(path, override=False)
            return path
    return None


def resolve_git_root(project_root: Path) -> Path:
    """Return the repository top-level for project_root (monorepo aware)."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=project_root,
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return project_root


@dataclass
class Config:
    project_root: Path = field(default_factory=Path.cwd)
    git_root: Path | None = None
    clickup_api_token: str = ""
    clickup_list_id: str = ""
    clickup_parent_task_id: str = ""
    base_branch: str = "main"
    branch_prefix: str = "clickup"
    statuses: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STATUSES))
    poll_interval: float = 30.0
    claude_command: str = "claude"
    claude_timeout: float = 600.0
    claude_max_turns: int = 50
    extra_prompt: str = ""
    mcp_config_path: str | None = None
    merge_strategy: str = "squash"
    auto_approve: bool = False
    relaunch_interval: float = 0.0
    max_tasks_per_run: int = 0
    log_level: str = "info"
    log_format: str = "text"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def repo_root(self) -> Path:
        return self.git_root or self.project_root

    @property
    def lock_path(self) -> Path:
        return self.project_root / LOCK_FILE_NAME

    @property
    def todo_file_path(self) -> Path:
        return self.project_root / TODO_FILE_NAME

    def validate(self) -> list[str]:
        """Return a list of configuration problems; empty when usable."""
        problems = []
        if not self.clickup_api_token:
            problems.append("CLICKUP_API_TOKEN is not set")
        if not self.clickup_list_id and not self.clickup_parent_task_id:
            problems.append("Either CLICKUP_LIST_ID or CLICKUP_PARENT_TASK_ID must be set")
        if self.merge_strategy not in MERGE_STRATEGIES:
            problems.append(
                f"MERGE_STRATEGY must be one of {', '.join(MERGE_STRATEGIES)} "
                f"(got '{self.merge_strategy}')"
            )
        if self.poll_interval <= 0:
            problems.append("POLL_INTERVAL_SECONDS must be positive")
        return problems

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "Config":
        root = Path(project_root) if project_root else Path.cwd()
        load_env_file(root)
        config = cls(project_root=root)
        config.git_root = resolve_git_root(root)

        config.clickup_api_token = os.environ.get("CLICKUP_API_TOKEN", "")
        config.clickup_list_id = os.environ.get("CLICKUP_LIST_ID", "")
        config.clickup_parent_task_id = os.environ.get("CLICKUP_PARENT_TASK_ID", "")

        if base := os.environ.get("BASE_BRANCH"):
            config.base_branch = base

        if prefix := os.environ.get("BRANCH_PREFIX"):
            config.branch_prefix = prefix.strip("/")

        for key in DEFAULT_STATUSES:
            if name := os.environ.get(f"STATUS_{key.upper()}"):
                config.statuses[key] = name

        if interval := os.environ.get("POLL_INTERVAL_SECONDS"):
            config.poll_interval = float(interval)

        if command := os.environ.get("CLAUDE_COMMAND"):
            config.claude_command = command

        if timeout := os.environ.get("CLAUDE_TIMEOUT_SECONDS"):
            config.claude_timeout = float(timeout)

        if turns := os.environ.get("CLAUDE_MAX_TURNS"):
            config.claude_max_turns = int(turns)

        config.extra_prompt = os.environ.get("CLAUDE_EXTRA_PROMPT", "")
        config.mcp_config_path = os.environ.get("CLAUDE_MCP_CONFIG") or None

        if strategy := os.environ.get("MERGE_STRATEGY"):
            config.merge_strategy = strategy.lower()

        config.auto_approve = os.environ.get("AUTO_APPROVE", "").lower() in _TRUTHY

        if relaunch := os.environ.get("RELAUNCH_INTERVAL_SECONDS"):
            config.relaunch_interval = float(relaunch)

        if max_tasks := os.environ.get("MAX_TASKS_PER_RUN"):
            config.max_tasks_per_run = int(max_tasks)

        if level := os.environ.get("LOG_LEVEL"):
            config.log_level = level.lower()
        elif os.environ.get("DEBUG") == "1":
            config.log_level = "debug"

        if fmt := os.environ.get("LOG_FORMAT"):
            config.log_format = fmt.lower()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("SLACK_CHANNEL")

        return config


def get_config(project_root: Path | None = None) -> Config:
    return Config.from_env(project_root)
