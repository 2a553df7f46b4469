"""CLI entry point for the agent orchestrator."""

import json
import logging
import re
import sys

import click

from agent_orchestrator.client import OrchestratorClient, OrchestratorError
from agent_orchestrator.config import get_config


def _get_client() -> OrchestratorClient:
    config = get_config()
    return OrchestratorClient(config.api_url)


def _fail(e: OrchestratorError):
    click.echo(f"Error: {e.message} ({e.code})", err=True)
    sys.exit(1)


def parse_repo_spec(value: str) -> dict:
    """``[id=]path-or-url`` to a repo descriptor."""
    repo_id = None
    if m := re.match(r"^([A-Za-z0-9._-]+)=(.+)$", value):
        repo_id, value = m.group(1), m.group(2)
    is_url = "://" in value or value.startswith("git@")
    spec = {"type": "git", "url": value} if is_url else {"type": "local", "path": value}
    if repo_id:
        spec["id"] = repo_id
    return spec


@click.group()
def main():
    """ao - Agent Orchestrator CLI"""
    pass


# ── Server Command ────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to (default: AO_HOST)")
@click.option("--port", default=None, type=int, help="Port to listen on (default: AO_PORT)")
@click.option("--log-level", default="info", type=click.Choice(["debug", "info", "warning", "error"]))
def serve_command(host, port, log_level):
    """Run the orchestrator HTTP service."""
    from agent_orchestrator.web.app import run_server

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = get_config()
    host = host or config.host
    port = port or config.port
    click.echo(f"Starting agent orchestrator at http://{host}:{port}")
    run_server(host=host, port=port, config=config)


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage agent tasks."""
    pass


@task_group.command("create")
@click.argument("prompt")
@click.option("--command", "-c", default=None, help="Agent command (default: AO_DEFAULT_COMMAND)")
@click.option("--title", "-t", default=None, help="Task title")
@click.option("--repo", "-r", "repos", multiple=True, help="Repository as [id=]path-or-url (repeatable)")
def task_create(prompt, command, title, repos):
    """Create a task and start its agents."""
    specs = [parse_repo_spec(r) for r in repos]
    try:
        task = _get_client().create_task(prompt, command=command, title=title, repos=specs)
    except OrchestratorError as e:
        _fail(e)
    click.echo(f"Created task: {task['id']}")
    click.echo(f"  Title: {task['title']}")
    click.echo(f"  Command: {task['command']}")
    for repo in task["repos"]:
        click.echo(f"  Repo {repo['id']}: {repo['branch']}")


STATUS_ICONS = {
    "queued": "○",
    "running": "●",
    "done": "✓",
    "error": "✗",
    "canceled": "-",
}


@task_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(json_output):
    """List tasks, newest first."""
    try:
        tasks = _get_client().list_tasks()
    except OrchestratorError as e:
        _fail(e)

    if json_output:
        click.echo(json.dumps(tasks, indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        icon = STATUS_ICONS.get(task["status"], "?")
        repos = ", ".join(f"{r['id']}:{r['status']}" for r in task["repos"])
        click.echo(f"  {icon} {task['id']}: {task['title']} ({task['status']}) [{repos}]")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    try:
        task = _get_client().get_task(task_id)
    except OrchestratorError as e:
        _fail(e)

    click.echo(f"Task: {task['id']}")
    click.echo(f"  Title: {task['title']}")
    click.echo(f"  Status: {task['status']}")
    click.echo(f"  Command: {task['command']}")
    click.echo(f"  Last event: {task['lastSeq']}")
    for repo in task["repos"]:
        click.echo(f"  Repo {repo['id']} ({repo['type']}): {repo['status']}")
        click.echo(f"    Branch: {repo['branch']}")
        if repo.get("exitCode") is not None or repo.get("signal"):
            click.echo(f"    Exit: code={repo['exitCode']} signal={repo['signal']}")
        if repo.get("error"):
            click.echo(f"    Error: {repo['error']}")
        if repo.get("prUrl"):
            click.echo(f"    PR: {repo['prUrl']}")


@task_group.command("cancel")
@click.argument("task_id")
def task_cancel(task_id):
    """Cancel every running agent of a task."""
    try:
        result = _get_client().cancel(task_id)
    except OrchestratorError as e:
        _fail(e)
    signaled = ", ".join(result["canceled"]) or "none"
    click.echo(f"Canceled task {task_id} (signaled: {signaled})")


@task_group.command("resume")
@click.argument("task_id")
def task_resume(task_id):
    """Restart unfinished agents after a service restart."""
    try:
        result = _get_client().resume(task_id)
    except OrchestratorError as e:
        _fail(e)
    resumed = ", ".join(result["resumed"]) or "none"
    click.echo(f"Resumed task {task_id} (repos: {resumed})")


@task_group.command("input")
@click.argument("task_id")
@click.argument("text")
@click.option("--repo", "repo_id", default=None, help="Only send to this repository")
def task_input(task_id, text, repo_id):
    """Send a line of input to running agents."""
    try:
        delivered = _get_client().send_input(task_id, text, repo_id)
    except OrchestratorError as e:
        _fail(e)
    click.echo(f"Delivered to: {', '.join(delivered) or 'none'}")


@task_group.command("diff")
@click.argument("task_id")
@click.argument("repo_id")
@click.option("--refresh", is_flag=True, help="Re-extract the diff first")
def task_diff(task_id, repo_id, refresh):
    """Print the captured diff of a repository."""
    try:
        patch = _get_client().get_diff(task_id, repo_id, refresh=refresh)
    except OrchestratorError as e:
        _fail(e)
    click.echo(patch, nl=False)


@task_group.command("promote")
@click.argument("task_id")
@click.option("--repo", "repo_id", default=None, help="Only promote this repository")
@click.option("--message", "-m", default=None, help="Commit message")
@click.option("--pr-title", default=None, help="Pull request title")
@click.option("--pr-body", default=None, help="Pull request body")
def task_promote(task_id, repo_id, message, pr_title, pr_body):
    """Commit, push and open pull requests for a task."""
    try:
        results = _get_client().promote(
            task_id, repo_id=repo_id, message=message, pr_title=pr_title, pr_body=pr_body
        )
    except OrchestratorError as e:
        _fail(e)

    failed = False
    for result in results:
        rid = result["repoId"]
        if not result["ok"]:
            failed = True
            click.echo(f"  ✗ {rid}: {result['message']}", err=True)
        elif result.get("skipped"):
            click.echo(f"  - {rid}: nothing to commit")
        elif result.get("prUrl"):
            click.echo(f"  ✓ {rid}: {result['prUrl']}")
        else:
            click.echo(f"  ✓ {rid}: pushed ({result.get('reason', 'no PR')})")
    if failed:
        sys.exit(1)


@task_group.command("events")
@click.argument("task_id")
@click.option("--since", default=0, type=int, help="Only events after this sequence number")
@click.option("--json-output", "--json", is_flag=True, help="Print raw JSON events")
def task_events(task_id, since, json_output):
    """Follow a task's event feed."""
    try:
        for event in _get_client().iter_events(task_id, since=since):
            if json_output:
                click.echo(json.dumps(event))
            else:
                click.echo(_format_event(event))
    except OrchestratorError as e:
        _fail(e)


def _format_event(event: dict) -> str:
    prefix = f"[{event['seq']}] {event['type']}"
    if event.get("repoId"):
        prefix += f" {event['repoId']}"
    if event["type"] == "log":
        return f"{prefix}: {event['text'].rstrip()}"
    extra = {k: v for k, v in event.items() if k not in ("seq", "ts", "type", "repoId")}
    return f"{prefix} {json.dumps(extra)}" if extra else prefix


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_orchestrator.mcp.server import mcp
    from agent_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
