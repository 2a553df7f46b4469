"""Slack Web API integration."""

from dataclasses import dataclass


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
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_task_notification(task_id: str, title: str, status: str, repos: list[dict]) -> list[dict]:
    """Format a task completion notification as Slack blocks.

    ``repos`` holds ``{"id", "status", "exitCode"}`` entries.
    """
    status_emoji = {
        "done": ":white_check_mark:",
        "error": ":x:",
        "canceled": ":no_entry_sign:",
    }
    emoji = status_emoji.get(status, ":grey_question:")

    lines = [f"{emoji} *Agent task {status}*", f"*{title}* (`{task_id}`)"]
    for repo in repos:
        code = repo.get("exitCode")
        suffix = f" (exit {code})" if code is not None else ""
        lines.append(f"• `{repo['id']}`: {repo['status']}{suffix}")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


def format_pr_review_request(
    task_id: str,
    title: str,
    branch: str,
    pr_url: str | None = None,
) -> list[dict]:
    """Format a PR review request as Slack blocks."""
    pr_link = f"\n<{pr_url}|View Pull Request>" if pr_url else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":eyes: *Review Requested*\n*{title}* (`{task_id}`)\nBranch: `{branch}`{pr_link}",
            },
        },
    ]
