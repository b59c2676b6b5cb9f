"""ClickUp API v2 client."""

import logging
from datetime import datetime, timezone

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from task_autopilot.core.models import (
    Checklist,
    ChecklistItem,
    Comment,
    Task,
    User,
)
from task_autopilot.core.tasks import sort_by_priority

logger = logging.getLogger(__name__)

BASE_URL = "https://api.clickup.com/api/v2"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 5


class ClickUpError(Exception):
    """Raised when a ClickUp API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ClickUpError) and exc.status_code is not None:
        return exc.status_code == 429 or exc.status_code >= 500
    return False


def _parse_ms(value) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def comment_text(data: dict) -> str:
    """Plain text of a comment, falling back to its rich-text blocks."""
    text = data.get("comment_text") or ""
    if text.strip():
        return text
    blocks = data.get("comment") or []
    return "".join(b.get("text") or "" for b in blocks if isinstance(b, dict))


class ClickUpClient:
    """TrackerPort implementation for a ClickUp list (or a parent task's subtasks)."""

    def __init__(
        self,
        token: str,
        statuses: dict[str, str],
        list_id: str = "",
        parent_task_id: str = "",
        *,
        base_url: str = BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_wait: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.statuses = dict(statuses)
        self.list_id = list_id
        self.parent_task_id = parent_task_id
        self._resolved_list_id: str | None = list_id or None
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": token, "Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )
        self._retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=retry_wait, max=30),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self._client.close()

    # ── HTTP ────────────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> dict:
        logger.debug("ClickUp API: %s %s", method, path)
        for attempt in self._retrying:
            with attempt:
                response = self._client.request(method, path, **kwargs)
                if response.is_error:
                    raise ClickUpError(
                        f"ClickUp API error {response.status_code} {method} {path}: "
                        f"{response.text[:500]}",
                        status_code=response.status_code,
                    )
                if not response.content:
                    return {}
                return response.json()
        return {}

    # ── Status mapping ──────────────────────────────────────────────────────

    def status_name(self, status: str) -> str:
        """Tracker display name for a lifecycle status key."""
        return self.statuses.get(status, status)

    def status_key(self, name: str) -> str:
        """Lifecycle status key for a tracker display name (raw name if unmapped)."""
        lowered = (name or "").lower()
        for key, value in self.statuses.items():
            if value.lower() == lowered:
                return key
        return name

    # ── Parsing ─────────────────────────────────────────────────────────────

    def parse_task(self, data: dict) -> Task:
        priority = data.get("priority") or None
        creator = data.get("creator") or None
        status = (data.get("status") or {}).get("status", "")
        return Task(
            id=str(data["id"]),
            title=data.get("name") or "",
            description=data.get("text_content") or data.get("description") or "",
            status=self.status_key(status),
            priority=int(priority["id"]) if priority and priority.get("id") else None,
            priority_label=priority.get("priority") if priority else None,
            created_at=_parse_ms(data.get("date_created")),
            updated_at=_parse_ms(data.get("date_updated")),
            url=data.get("url") or "",
            creator=User(id=creator.get("id"), username=creator.get("username")) if creator else None,
            parent_id=data.get("parent"),
            tags=[t.get("name", "") for t in data.get("tags") or []],
            checklists=[
                Checklist(
                    name=cl.get("name", ""),
                    items=[
                        ChecklistItem(name=i.get("name", ""), resolved=bool(i.get("resolved")))
                        for i in cl.get("items") or []
                    ],
                )
                for cl in data.get("checklists") or []
            ],
        )

    # ── List resolution ─────────────────────────────────────────────────────

    def effective_list_id(self) -> str:
        """The configured list, or the list owning the configured parent task."""
        if self._resolved_list_id:
            return self._resolved_list_id
        if not self.parent_task_id:
            raise ClickUpError("Either CLICKUP_LIST_ID or CLICKUP_PARENT_TASK_ID must be set")
        parent = self._request("GET", f"/task/{self.parent_task_id}")
        list_id = (parent.get("list") or {}).get("id")
        if not list_id:
            raise ClickUpError(f"Could not determine list of parent task {self.parent_task_id}")
        self._resolved_list_id = str(list_id)
        logger.info("Resolved list ID from parent task: %s", self._resolved_list_id)
        return self._resolved_list_id

    # ── TrackerPort ─────────────────────────────────────────────────────────

    def list_tasks_by_status(self, status: str) -> list[Task]:
        """Tasks in a status, urgent first, then oldest first."""
        list_id = self.effective_list_id()
        raw_tasks: list[dict] = []
        page = 0
        while True:
            params = [
                ("include_closed", "true"),
                ("subtasks", "true"),
                ("order_by", "created"),
                ("reverse", "false"),
                ("page", str(page)),
                ("statuses[]", self.status_name(status)),
            ]
            data = self._request("GET", f"/list/{list_id}/task", params=params)
            raw_tasks.extend(data.get("tasks") or [])
            if data.get("last_page", True) or not data.get("tasks"):
                break
            page += 1

        if self.parent_task_id:
            raw_tasks = [t for t in raw_tasks if t.get("parent") == self.parent_task_id]

        tasks = sort_by_priority([self.parse_task(t) for t in raw_tasks])
        logger.info("Found %d task(s) with status '%s'", len(tasks), self.status_name(status))
        return tasks

    def get_task(self, task_id: str) -> Task:
        return self.parse_task(self._request("GET", f"/task/{task_id}"))

    def get_comments(self, task_id: str) -> list[Comment]:
        data = self._request("GET", f"/task/{task_id}/comment")
        comments = [
            Comment(
                text=comment_text(c),
                author=(c.get("user") or {}).get("username"),
                created_at=_parse_ms(c.get("date")),
            )
            for c in data.get("comments") or []
        ]
        # The API returns newest first; the core expects chronological order.
        comments.sort(key=lambda c: c.created_at.timestamp() if c.created_at else 0.0)
        return comments

    def update_status(self, task_id: str, status: str):
        logger.info("Updating task %s status to '%s'", task_id, self.status_name(status))
        self._request("PUT", f"/task/{task_id}", json={"status": self.status_name(status)})

    def add_comment(self, task_id: str, text: str, notify: Task | None = None):
        """Post a comment, mentioning and assigning it to the task creator when given."""
        body: dict = {"comment_text": text, "notify_all": True}
        creator = notify.creator if notify else None
        if creator and creator.id:
            mention = f"@{creator.username} " if creator.username else ""
            body = {"comment_text": f"{mention}{text}", "assignee": creator.id, "notify_all": False}
        logger.info("Adding comment to task %s", task_id)
        self._request("POST", f"/task/{task_id}/comment", json=body)

    def get_dependencies(self, task_id: str) -> list[str]:
        """IDs of the tasks that task_id waits on."""
        data = self._request("GET", f"/task/{task_id}")
        deps = []
        for dep in data.get("dependencies") or []:
            if str(dep.get("task_id")) == str(task_id) and dep.get("depends_on"):
                deps.append(str(dep["depends_on"]))
        return deps

    def create_task(self, title: str, description: str = "") -> Task:
        list_id = self.effective_list_id()
        body: dict = {
            "name": title,
            "description": description,
            "status": self.status_name("todo"),
        }
        if self.parent_task_id:
            body["parent"] = self.parent_task_id
        logger.info("Creating task: %s", title)
        return self.parse_task(self._request("POST", f"/list/{list_id}/task", json=body))

    # ── Diagnostics ─────────────────────────────────────────────────────────

    def get_user(self) -> dict:
        return self._request("GET", "/user").get("user", {})

    def list_info(self) -> dict:
        return self._request("GET", f"/list/{self.effective_list_id()}")

    def missing_statuses(self) -> list[str]:
        """Configured status names that do not exist on the list."""
        available = {s.get("status", "").lower() for s in self.list_info().get("statuses") or []}
        return [name for name in self.statuses.values() if name.lower() not in available]
