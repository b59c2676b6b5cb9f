"""MCP server exposing ClickUp task tools to the worker."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from task_autopilot.config import get_config
from task_autopilot.core.models import STATUSES, Comment, Task
from task_autopilot.core.tasks import is_valid_task_id
from task_autopilot.integrations.clickup import ClickUpClient, ClickUpError

MAX_COMMENTS = 50


@dataclass
class AppContext:
    client: ClickUpClient
    config: object


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open a ClickUp client on startup, close it on shutdown."""
    config = get_config()
    client = ClickUpClient(
        config.clickup_api_token,
        config.statuses,
        list_id=config.clickup_list_id,
        parent_task_id=config.clickup_parent_task_id,
    )
    try:
        yield AppContext(client=client, config=config)
    finally:
        client.close()


mcp = FastMCP("task-autopilot", lifespan=app_lifespan)


def _client(ctx: Context) -> ClickUpClient:
    return ctx.request_context.lifespan_context.client


def _resolve_status(client: ClickUpClient, status: str) -> str | None:
    """Accept a lifecycle key (``in_review``) or a tracker display name."""
    if status in STATUSES:
        return status
    key = client.status_key(status)
    return key if key in STATUSES else None


def _invalid_id(task_id: str) -> dict | None:
    if not is_valid_task_id(task_id):
        return {"error": f"Invalid task ID: {task_id}"}
    return None


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a ClickUp task's details: title, description, status, priority, checklists."""
    if err := _invalid_id(task_id):
        return err
    try:
        return _task_to_dict(_client(ctx).get_task(task_id))
    except ClickUpError as e:
        return {"error": str(e)}


@mcp.tool()
def list_tasks_by_status(ctx: Context, status: str = "todo") -> list[dict] | dict:
    """List tasks in a status, most urgent first.

    Status may be a lifecycle key (todo, in_progress, in_review, approved,
    require_input, blocked, completed) or the tracker's display name.
    """
    client = _client(ctx)
    key = _resolve_status(client, status)
    if key is None:
        return {"error": f"Unknown status: {status}"}
    try:
        return [_task_to_dict(t) for t in client.list_tasks_by_status(key)]
    except ClickUpError as e:
        return {"error": str(e)}


@mcp.tool()
def create_task(ctx: Context, title: str, description: str = "") -> dict:
    """Create a follow-up task in the to-do status."""
    if not title.strip():
        return {"error": "Title must not be empty"}
    try:
        return _task_to_dict(_client(ctx).create_task(title.strip(), description))
    except ClickUpError as e:
        return {"error": str(e)}


@mcp.tool()
def update_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Move a task to another status."""
    if err := _invalid_id(task_id):
        return err
    client = _client(ctx)
    key = _resolve_status(client, status)
    if key is None:
        return {"error": f"Unknown status: {status}"}
    try:
        client.update_status(task_id, key)
    except ClickUpError as e:
        return {"error": str(e)}
    return {"task_id": task_id, "status": key, "status_name": client.status_name(key)}


@mcp.tool()
def add_comment(ctx: Context, task_id: str, comment: str) -> dict:
    """Add a comment to a task."""
    if err := _invalid_id(task_id):
        return err
    if not comment.strip():
        return {"error": "Comment must not be empty"}
    try:
        _client(ctx).add_comment(task_id, comment)
    except ClickUpError as e:
        return {"error": str(e)}
    return {"task_id": task_id, "added": True}


@mcp.tool()
def get_comments(ctx: Context, task_id: str) -> list[dict] | dict:
    """Get a task's comments in chronological order (most recent 50)."""
    if err := _invalid_id(task_id):
        return err
    try:
        comments = _client(ctx).get_comments(task_id)
    except ClickUpError as e:
        return {"error": str(e)}
    return [_comment_to_dict(c) for c in comments[-MAX_COMMENTS:]]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority_label,
        "url": task.url,
        "parent_id": task.parent_id,
        "tags": task.tags,
        "checklists": [
            {"name": cl.name, "items": [{"name": i.name, "resolved": i.resolved} for i in cl.items]}
            for cl in task.checklists
        ],
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }


def _comment_to_dict(comment: Comment) -> dict:
    return {
        "author": comment.author,
        "text": comment.text,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
    }
