"""MCP server exposing agent orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_orchestrator.client import OrchestratorClient, OrchestratorError
from agent_orchestrator.config import Config, get_config

MAX_DIFF_CHARS = 10000


@dataclass
class AppContext:
    client: OrchestratorClient
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open an HTTP client to the orchestrator service, close it on shutdown."""
    config = get_config()
    client = OrchestratorClient(config.api_url)
    try:
        yield AppContext(client=client, config=config)
    finally:
        client.close()


mcp = FastMCP("agent-orchestrator", lifespan=app_lifespan)


def _client(ctx: Context) -> OrchestratorClient:
    return ctx.request_context.lifespan_context.client


def _error(e: OrchestratorError) -> dict:
    return {"error": e.message, "code": e.code}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    prompt: str,
    command: str | None = None,
    title: str | None = None,
    repos: list[dict] | None = None,
) -> dict:
    """Create an agent task and start it.

    Each repo is {"type": "local", "path": ...} or {"type": "git", "url": ...},
    with an optional "id". Without repos the service workspace is used.
    """
    try:
        return _client(ctx).create_task(prompt, command=command, title=title, repos=repos)
    except OrchestratorError as e:
        return _error(e)


@mcp.tool()
def list_tasks(ctx: Context, status: str | None = None) -> list[dict]:
    """List tasks, newest first, optionally filtered by status (queued/running/done/error/canceled)."""
    try:
        tasks = _client(ctx).list_tasks()
    except OrchestratorError as e:
        return [_error(e)]
    return [t for t in tasks if status is None or t["status"] == status]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with the status of each of its repositories."""
    try:
        return _client(ctx).get_task(task_id)
    except OrchestratorError as e:
        return _error(e)


@mcp.tool()
def cancel_task(ctx: Context, task_id: str) -> dict:
    """Cancel every running agent of a task."""
    try:
        return _client(ctx).cancel(task_id)
    except OrchestratorError as e:
        return _error(e)


@mcp.tool()
def resume_task(ctx: Context, task_id: str) -> dict:
    """Restart unfinished agents of a task after the service restarted."""
    try:
        return _client(ctx).resume(task_id)
    except OrchestratorError as e:
        return _error(e)


@mcp.tool()
def send_input(ctx: Context, task_id: str, text: str, repo_id: str | None = None) -> dict:
    """Send a line of text to the stdin of a task's running agents."""
    try:
        return {"delivered": _client(ctx).send_input(task_id, text, repo_id)}
    except OrchestratorError as e:
        return _error(e)


@mcp.tool()
def get_diff(ctx: Context, task_id: str, repo_id: str, refresh: bool = False) -> dict:
    """Read the diff an agent produced in one repository."""
    try:
        patch = _client(ctx).get_diff(task_id, repo_id, refresh=refresh)
    except OrchestratorError as e:
        return _error(e)
    if len(patch) > MAX_DIFF_CHARS:
        return {"diff": patch[:MAX_DIFF_CHARS], "truncated": True, "total_length": len(patch)}
    return {"diff": patch, "truncated": False}


@mcp.tool()
def promote(
    ctx: Context,
    task_id: str,
    repo_id: str | None = None,
    message: str | None = None,
    pr_title: str | None = None,
    pr_body: str | None = None,
) -> dict:
    """Commit and push a task's changes and open pull requests where possible.

    Promotes every repository unless repo_id is given.
    """
    try:
        results = _client(ctx).promote(
            task_id, repo_id=repo_id, message=message, pr_title=pr_title, pr_body=pr_body
        )
    except OrchestratorError as e:
        return _error(e)
    return {"results": results}
