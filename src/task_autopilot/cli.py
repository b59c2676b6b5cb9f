"""CLI entry point for the task autopilot."""

import json
import logging
import os
import sys

import click

from task_autopilot.config import Config, get_config
from task_autopilot.core.lock import ProcessLock
from task_autopilot.core.models import STATUSES
from task_autopilot.core.preflight import CheckResult, PreflightResult, check_github_repo, run_preflight_checks
from task_autopilot.core.recovery import recover_orphaned_tasks
from task_autopilot.core.scheduler import RELAUNCH, Scheduler
from task_autopilot.core.sequencer import Sequencer
from task_autopilot.core.state_machine import TaskProcessor
from task_autopilot.core.tasks import TaskError
from task_autopilot.integrations.claude import ClaudeWorker
from task_autopilot.integrations.clickup import ClickUpClient, ClickUpError
from task_autopilot.integrations.git import GitCli
from task_autopilot.integrations.github import GhCli
from task_autopilot.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
LOG_HANDLER_NAME = "autopilot"


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "info", fmt: str = "text"):
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    handler.set_name(LOG_HANDLER_NAME)
    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == LOG_HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_config(ctx: click.Context, require_tracker: bool = True) -> Config:
    config = get_config()
    opts = ctx.find_root().obj or {}
    if opts.get("debug"):
        config.log_level = "debug"
    if opts.get("json_log"):
        config.log_format = "json"
    configure_logging(config.log_level, config.log_format)

    if require_tracker:
        problems = config.validate()
        if problems:
            for p in problems:
                click.echo(f"Configuration error: {p}", err=True)
            sys.exit(1)
    return config


def _tracker(config: Config) -> ClickUpClient:
    return ClickUpClient(
        config.clickup_api_token,
        config.statuses,
        list_id=config.clickup_list_id,
        parent_task_id=config.clickup_parent_task_id,
    )


def build_scheduler(config: Config, tracker) -> Scheduler:
    """Wire the real adapters into a scheduler."""
    sequencer = Sequencer(
        GitCli(config.repo_root),
        GhCli(config.repo_root),
        base_branch=config.base_branch,
        branch_prefix=config.branch_prefix,
        merge_strategy=config.merge_strategy,
    )
    processor = TaskProcessor(
        tracker,
        sequencer,
        ClaudeWorker.from_config(config),
        auto_approve=config.auto_approve,
        todo_file=config.todo_file_path,
        status_names=config.statuses,
        notifier=SlackNotifier.from_config(config),
    )
    return Scheduler(
        tracker,
        processor,
        poll_interval=config.poll_interval,
        relaunch_interval=config.relaunch_interval,
        max_tasks_per_run=config.max_tasks_per_run,
    )


def _print_preflight(result: PreflightResult):
    click.echo("\nPreflight Environment Checks")
    click.echo("============================\n")
    for check in result.checks:
        mark = "PASS" if check.ok else "FAIL"
        click.echo(f"  [{mark}] {check.name}: {check.message}")
        if not check.ok and check.fix:
            click.echo(f"         Fix: {check.fix}")
    click.echo("")
    if result.passed:
        click.echo("All checks passed.")
    else:
        click.echo(f"{len(result.failures)} check(s) failed.")


def _relaunch():
    """Replace this process with a fresh one running the same command."""
    args = [sys.executable, "-m", "task_autopilot.cli"] + sys.argv[1:]
    logger.info("Relaunching: %s", " ".join(args))
    sys.stdout.flush()
    sys.stderr.flush()
    os.execv(sys.executable, args)


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-log", is_flag=True, help="Log one JSON object per line")
@click.pass_context
def main(ctx, debug, json_log):
    """autopilot - turn ClickUp tasks into pull requests"""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["json_log"] = json_log


# ── Runner Commands ──────────────────────────────────────────────────────────


@main.command("run")
@click.pass_context
def run(ctx):
    """Poll ClickUp and work tasks until stopped."""
    config = _load_config(ctx)
    tracker = _tracker(config)
    git = GitCli(config.repo_root)
    lock = ProcessLock(config.lock_path)

    result = run_preflight_checks(git, lock, config.base_branch, tracker=tracker)
    result.checks.append(check_github_repo(git))
    if not result.passed:
        _print_preflight(result)
        tracker.close()
        sys.exit(1)

    try:
        missing = tracker.missing_statuses()
        if missing:
            logger.warning("Statuses missing from the ClickUp list: %s", ", ".join(missing))
    except ClickUpError as e:
        logger.warning("Could not validate ClickUp statuses: %s", e)

    if not lock.acquire():
        click.echo("Another autopilot instance is running. Exiting.", err=True)
        tracker.close()
        sys.exit(1)

    logger.info("=== ClickUp task autopilot ===")
    logger.info("Base branch: %s, poll interval: %.0fs", config.base_branch, config.poll_interval)
    try:
        scheduler = build_scheduler(config, tracker)
        scheduler.install_signal_handlers()
        recover_orphaned_tasks(scheduler.processor)
        outcome = scheduler.run_forever()
    finally:
        lock.release()
        tracker.close()

    if outcome == RELAUNCH:
        _relaunch()


@main.command("once")
@click.argument("task_id")
@click.pass_context
def once(ctx, task_id):
    """Work a single task by ID, then exit."""
    config = _load_config(ctx)
    tracker = _tracker(config)
    lock = ProcessLock(config.lock_path)
    if not lock.acquire():
        click.echo("Another autopilot instance is running. Exiting.", err=True)
        tracker.close()
        sys.exit(1)
    try:
        scheduler = build_scheduler(config, tracker)
        outcome = scheduler.run_single(task_id)
    except (TaskError, ClickUpError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        lock.release()
        tracker.close()
    click.echo(f"Task {outcome.task_id}: {outcome.final_status or 'skipped'}")


# ── Diagnostics ──────────────────────────────────────────────────────────────


@main.command("doctor")
@click.pass_context
def doctor(ctx):
    """Check the environment and configuration."""
    config = _load_config(ctx, require_tracker=False)
    problems = config.validate()
    tracker = _tracker(config) if config.clickup_api_token else None

    git = GitCli(config.repo_root)
    result = run_preflight_checks(git, ProcessLock(config.lock_path), config.base_branch, tracker=tracker)
    result.checks.append(check_github_repo(git))
    result.checks.insert(0, CheckResult(
        "Configuration",
        not problems,
        "; ".join(problems) if problems else "Configuration is complete.",
        "Set the missing variables in .autopilot.env or the environment." if problems else None,
    ))

    if tracker is not None:
        if all(c.ok for c in result.checks if c.name == "ClickUp connectivity") and not problems:
            try:
                missing = tracker.missing_statuses()
                result.checks.append(CheckResult(
                    "ClickUp statuses",
                    not missing,
                    f"Missing statuses: {', '.join(missing)}" if missing else "All statuses exist.",
                    "Create them in the list settings or set STATUS_* variables." if missing else None,
                ))
            except ClickUpError as e:
                result.checks.append(CheckResult("ClickUp statuses", False, str(e)))
        tracker.close()

    _print_preflight(result)
    if not result.passed:
        sys.exit(1)


@main.command("statuses")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@click.pass_context
def statuses(ctx, json_output):
    """Show the ClickUp status name used for each lifecycle status."""
    config = _load_config(ctx, require_tracker=False)
    if json_output:
        click.echo(json.dumps({key: config.statuses[key] for key in STATUSES}, indent=2))
        return
    for key in STATUSES:
        click.echo(f"  {key:<15} {config.statuses[key]}")


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from task_autopilot.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
