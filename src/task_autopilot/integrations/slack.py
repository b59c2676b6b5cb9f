"""Slack Web API integration for task status notifications."""

import logging
from dataclasses import dataclass

from slack_sdk.errors import SlackApiError

from task_autopilot.core.models import (
    BLOCKED,
    COMPLETED,
    IN_REVIEW,
    REQUIRE_INPUT,
    Task,
)

logger = logging.getLogger(__name__)

NOTIFY_STATUSES = (IN_REVIEW, COMPLETED, BLOCKED, REQUIRE_INPUT)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_task_notification(task: Task, status: str, detail: str = "") -> list[dict]:
    """Format a task status change as Slack blocks."""
    status_emoji = {
        IN_REVIEW: ":eyes:",
        COMPLETED: ":white_check_mark:",
        BLOCKED: ":red_circle:",
        REQUIRE_INPUT: ":question:",
    }
    emoji = status_emoji.get(status, ":grey_question:")
    label = status.replace("_", " ")
    link = f"<{task.url}|{task.title}>" if task.url else f"*{task.title}*"

    text = f"{emoji} *Task Update*\n{link} (`CU-{task.id}`)\nStatus: *{label}*"
    if detail:
        text += f"\n{detail}"
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text},
        }
    ]


class SlackNotifier:
    """NotifierPort posting task transitions to one channel.

    Failures are logged and swallowed so a Slack outage never affects task
    processing.
    """

    def __init__(self, token: str, channel: str, client=None):
        self.token = token
        self.channel = channel
        self._client = client

    @classmethod
    def from_config(cls, config) -> "SlackNotifier | None":
        if not config.slack_bot_token or not config.slack_channel:
            return None
        return cls(config.slack_bot_token, config.slack_channel)

    def notify(self, task: Task, status: str, detail: str = ""):
        if status not in NOTIFY_STATUSES:
            return
        text = f"CU-{task.id} {task.title}: {status.replace('_', ' ')}"
        try:
            send_message(
                self.token,
                self.channel,
                text,
                blocks=format_task_notification(task, status, detail),
                client=self._client,
            )
        except SlackError as e:
            logger.warning("Slack notification failed for task %s: %s", task.id, e)
