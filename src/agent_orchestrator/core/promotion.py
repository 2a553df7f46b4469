"""Commit, push and pull-request workflow for a task repository."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from agent_orchestrator.integrations import git
from agent_orchestrator.integrations.github import GitHubClient, GitHubError, parse_remote
from agent_orchestrator.storage.models import Repository, Task

logger = logging.getLogger(__name__)

Emit = Callable[..., object]


@dataclass
class PromotionOptions:
    message: str | None = None
    pr_title: str | None = None
    pr_body: str | None = None


def default_commit_message(task: Task) -> str:
    return f"agent-orchestrator: {task.title}" if task.title else f"agent-orchestrator: {task.id}"


def default_pr_body(task: Task) -> str:
    return f"Prompt:\n\n{task.prompt}\n" if task.prompt else ""


async def _resolve_base_branch(workdir: str, env: dict[str, str], github: GitHubClient, gh) -> str:
    branch = await git.origin_default_branch(workdir, env=env)
    if branch:
        return branch
    try:
        branch = await github.default_branch(gh)
    except GitHubError as e:
        logger.warning("Could not read default branch for %s/%s: %s", gh.owner, gh.repo, e)
    return branch or "main"


async def promote_repository(
    task: Task,
    repo: Repository,
    options: PromotionOptions,
    env: dict[str, str],
    author_name: str,
    author_email: str,
    token: str | None = None,
    github: GitHubClient | None = None,
    emit: Emit | None = None,
) -> dict:
    """Commit the working copy, push the task branch and open a PR when possible.

    Returns a result dict: ``{"skipped": True}`` when there was nothing to
    commit, ``{"pushed": True, "prSkipped": True, "reason": ...}`` after a
    push without PR, or ``{"pushed": True, "prUrl": ...}``. ``emit(type,
    **fields)`` records each step. Failures raise.
    """
    def _emit(event_type: str, **fields):
        if emit:
            emit(event_type, **fields)

    if not repo.workdir or not Path(repo.workdir).is_dir():
        raise ValueError("repo_not_ready")
    if not repo.branch:
        raise ValueError("repo has no branch")
    workdir = repo.workdir

    _emit("promote_status", status="commit")
    await git.add_all(workdir, env=env)
    if not await git.has_staged_changes(workdir, env=env):
        await git.reset_index(workdir, env=env)
        _emit("promote_skip", reason="nothing_to_commit")
        return {"skipped": True}

    message = (options.message or "").strip() or default_commit_message(task)
    await git.commit(workdir, message, author_name, author_email, env=env)
    _emit("promote_status", status="committed")

    remote = await git.remote_url(workdir, env=env)
    gh = parse_remote(remote)
    refspec = f"HEAD:refs/heads/{repo.branch}"

    _emit("promote_status", status="push", branch=repo.branch)
    if token and gh:
        await git.push(workdir, gh.https_url, refspec, env=env)
    else:
        await git.push(workdir, "origin", refspec, env=env, set_upstream=True)
    _emit("promote_status", status="pushed", branch=repo.branch)

    if not gh:
        _emit("promote_status", status="pushed_no_pr", reason="unsupported_remote")
        return {"pushed": True, "prSkipped": True, "reason": "unsupported_remote"}
    if not token:
        _emit("promote_status", status="pushed_no_pr", reason="missing_github_token")
        return {"pushed": True, "prSkipped": True, "reason": "missing_github_token"}

    github = github or GitHubClient(token)
    base = await _resolve_base_branch(workdir, env, github, gh)
    title = (options.pr_title or "").strip() or message
    body = (options.pr_body or "").strip() or default_pr_body(task)

    _emit("promote_status", status="create_pr", base=base)
    pr_url = await github.create_pull_request(gh, title=title, head=repo.branch, base=base, body=body)
    repo.pr_url = pr_url or None
    _emit("pr_created", url=pr_url)
    logger.info("Opened pull request for %s/%s: %s", task.id, repo.id, pr_url)
    return {"pushed": True, "prUrl": pr_url}
