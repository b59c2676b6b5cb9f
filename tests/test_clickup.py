"""Tests for the ClickUp API client over a mocked HTTP transport."""

import json

import httpx
import pytest
from conftest import make_task

from task_autopilot.config import DEFAULT_STATUSES
from task_autopilot.core.models import BLOCKED, IN_REVIEW, TODO, User
from task_autopilot.integrations.clickup import ClickUpClient, ClickUpError, comment_text


def raw_task(task_id, name="Fix login", status="to do", priority=None, created=1700000000000, parent=None):
    return {
        "id": task_id,
        "name": name,
        "text_content": f"Please {name.lower()}.",
        "status": {"status": status},
        "priority": {"id": str(priority), "priority": {1: "urgent", 2: "high", 3: "normal", 4: "low"}[priority]}
        if priority else None,
        "date_created": str(created),
        "date_updated": str(created + 1000),
        "url": f"https://app.clickup.com/t/{task_id}",
        "creator": {"id": 7, "username": "alice"},
        "parent": parent,
        "tags": [{"name": "frontend"}],
        "checklists": [{"name": "Steps", "items": [{"name": "Reproduce", "resolved": True}]}],
    }


class Api:
    """Routes requests to canned handlers and records them."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes = {}

    def route(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api/v2")
        responses = self.routes.get((request.method, path))
        if not responses:
            return httpx.Response(404, json={"err": "Not found"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, int):
            return httpx.Response(response, json={"err": "error"})
        return httpx.Response(200, json=response)


@pytest.fixture
def api():
    return Api()


@pytest.fixture
def client(api):
    client = ClickUpClient(
        "pk_test", DEFAULT_STATUSES, list_id="L1", retry_wait=0, transport=httpx.MockTransport(api)
    )
    yield client
    client.close()


class TestStatuses:
    def test_name_and_key(self, client):
        assert client.status_name(TODO) == "to do"
        assert client.status_key("In Review") == IN_REVIEW
        assert client.status_key("custom") == "custom"

    def test_overridden_names(self, api):
        statuses = dict(DEFAULT_STATUSES, blocked="stuck")
        client = ClickUpClient("pk", statuses, list_id="L1", transport=httpx.MockTransport(api))
        assert client.status_name(BLOCKED) == "stuck"
        assert client.status_key("STUCK") == BLOCKED


class TestTasks:
    def test_list_tasks_by_status(self, client, api):
        api.route("GET", "/list/L1/task", {
            "tasks": [raw_task("T1", priority=3), raw_task("T2", priority=1)],
            "last_page": True,
        })

        tasks = client.list_tasks_by_status(TODO)

        assert [t.id for t in tasks] == ["T2", "T1"]
        request = api.requests[0]
        assert request.headers["Authorization"] == "pk_test"
        assert request.url.params.get_list("statuses[]") == ["to do"]
        assert request.url.params["include_closed"] == "true"

    def test_pagination(self, client, api):
        api.route(
            "GET", "/list/L1/task",
            {"tasks": [raw_task("T1")], "last_page": False},
            {"tasks": [raw_task("T2", created=1600000000000)], "last_page": True},
        )

        tasks = client.list_tasks_by_status(TODO)

        assert [t.id for t in tasks] == ["T2", "T1"]
        assert [r.url.params["page"] for r in api.requests] == ["0", "1"]

    def test_parent_filter_and_list_resolution(self, api):
        client = ClickUpClient(
            "pk", DEFAULT_STATUSES, parent_task_id="P1", transport=httpx.MockTransport(api)
        )
        api.route("GET", "/task/P1", {"id": "P1", "list": {"id": "L9"}})
        api.route("GET", "/list/L9/task", {
            "tasks": [raw_task("T1", parent="P1"), raw_task("T2", parent="OTHER")],
            "last_page": True,
        })

        assert [t.id for t in client.list_tasks_by_status(TODO)] == ["T1"]
        assert client.effective_list_id() == "L9"
        assert [r.url.path for r in api.requests].count("/api/v2/task/P1") == 1

    def test_no_list_configured(self, api):
        client = ClickUpClient("pk", DEFAULT_STATUSES, transport=httpx.MockTransport(api))
        with pytest.raises(ClickUpError):
            client.effective_list_id()

    def test_parse_task(self, client, api):
        api.route("GET", "/task/T1", raw_task("T1", status="in review", priority=1))

        task = client.get_task("T1")

        assert task.title == "Fix login"
        assert task.description == "Please fix login."
        assert task.status == IN_REVIEW
        assert task.priority == 1
        assert task.priority_label == "urgent"
        assert task.creator == User(id=7, username="alice")
        assert task.tags == ["frontend"]
        assert task.checklists[0].items[0].resolved
        assert task.created_at.year == 2023

    def test_create_task(self, api):
        client = ClickUpClient("pk", DEFAULT_STATUSES, list_id="L1", parent_task_id="P1",
                               transport=httpx.MockTransport(api))
        api.route("POST", "/list/L1/task", raw_task("N1", name="Add tests", parent="P1"))

        task = client.create_task("Add tests", "Cover login.")

        assert task.id == "N1"
        body = json.loads(api.requests[0].content)
        assert body == {"name": "Add tests", "description": "Cover login.", "status": "to do", "parent": "P1"}

    def test_update_status_sends_display_name(self, client, api):
        api.route("PUT", "/task/T1", {})

        client.update_status("T1", IN_REVIEW)

        assert json.loads(api.requests[0].content) == {"status": "in review"}

    def test_dependencies(self, client, api):
        api.route("GET", "/task/T5", dict(raw_task("T5"), dependencies=[
            {"task_id": "T5", "depends_on": "T4"},
            {"task_id": "T9", "depends_on": "T5"},
        ]))

        assert client.get_dependencies("T5") == ["T4"]


class TestComments:
    def test_chronological_order_and_blocks(self, client, api):
        api.route("GET", "/task/T1/comment", {"comments": [
            {"comment_text": "second", "user": {"username": "bob"}, "date": "1700000002000"},
            {"comment_text": "", "comment": [{"text": "first "}, {"text": "part"}],
             "user": {"username": "alice"}, "date": "1700000001000"},
        ]})

        comments = client.get_comments("T1")

        assert [c.text for c in comments] == ["first part", "second"]
        assert comments[0].author == "alice"

    def test_comment_text_prefers_plain_text(self):
        assert comment_text({"comment_text": "plain", "comment": [{"text": "rich"}]}) == "plain"
        assert comment_text({}) == ""

    def test_add_comment(self, client, api):
        api.route("POST", "/task/T1/comment", {"id": "c1"})

        client.add_comment("T1", "Hello")

        assert json.loads(api.requests[0].content) == {"comment_text": "Hello", "notify_all": True}

    def test_add_comment_notifies_creator(self, client, api):
        api.route("POST", "/task/T1/comment", {"id": "c1"})

        client.add_comment("T1", "Need input", notify=make_task("T1"))

        body = json.loads(api.requests[0].content)
        assert body == {"comment_text": "@alice Need input", "assignee": 7, "notify_all": False}


class TestErrors:
    def test_retries_rate_limit(self, client, api):
        api.route("GET", "/task/T1", 429, 503, raw_task("T1"))

        assert client.get_task("T1").id == "T1"
        assert len(api.requests) == 3

    def test_client_error_is_not_retried(self, client, api):
        with pytest.raises(ClickUpError) as exc_info:
            client.get_task("MISSING")
        assert exc_info.value.status_code == 404
        assert len(api.requests) == 1

    def test_gives_up_after_max_attempts(self, api):
        client = ClickUpClient("pk", DEFAULT_STATUSES, list_id="L1", max_attempts=2, retry_wait=0,
                               transport=httpx.MockTransport(api))
        api.route("GET", "/task/T1", 500)

        with pytest.raises(ClickUpError) as exc_info:
            client.get_task("T1")
        assert exc_info.value.status_code == 500
        assert len(api.requests) == 2

    def test_transport_error_is_retried(self, api):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"user": {"id": 1, "username": "bot"}})

        client = ClickUpClient("pk", DEFAULT_STATUSES, retry_wait=0, transport=httpx.MockTransport(handler))
        assert client.get_user() == {"id": 1, "username": "bot"}
        assert len(calls) == 2


class TestDiagnostics:
    def test_missing_statuses(self, client, api):
        api.route("GET", "/list/L1", {"statuses": [
            {"status": "To Do"}, {"status": "in progress"}, {"status": "in review"},
            {"status": "approved"}, {"status": "complete"},
        ]})

        assert client.missing_statuses() == ["require input", "blocked"]
