"""Working-copy preparation for task repositories."""

import logging
from collections.abc import Callable
from pathlib import Path

from agent_orchestrator.integrations import git
from agent_orchestrator.integrations.github import parse_remote
from agent_orchestrator.storage.models import Repository
from agent_orchestrator.storage.store import TaskStore

logger = logging.getLogger(__name__)

Emit = Callable[..., object]


def assign_paths(store: TaskStore, task_id: str, repo: Repository):
    """Record the per-(task, repository) working copy and diff artifact paths."""
    repo.workdir = str(store.workdir(task_id, repo.id))
    repo.diff_file = str(store.diff_file(task_id, repo.id))


def clone_url_for(url: str, token: str | None) -> str:
    """With a token, GitHub remotes are cloned over HTTPS so askpass can authenticate."""
    gh = parse_remote(url) if token else None
    return gh.https_url if gh else url


async def prepare_repository(
    store: TaskStore,
    task_id: str,
    repo: Repository,
    workspace_dir: str,
    env: dict[str, str],
    token: str | None = None,
    emit: Emit | None = None,
) -> Path:
    """Create an isolated working copy on the repository's task branch.

    ``emit(status, **fields)`` is called before each git step. Raises GitError,
    OSError or ValueError on failure; nothing is spawned by this function.
    """
    if not repo.branch:
        raise ValueError("repository has no branch assigned")

    assign_paths(store, task_id, repo)
    workdir = Path(repo.workdir)
    workdir.parent.mkdir(parents=True, exist_ok=True)
    if workdir.exists():
        raise ValueError(f"working copy already exists: {workdir}")

    if repo.kind == "local":
        src = (repo.path or "").strip() or workspace_dir
        repo.path = src
        if emit:
            emit("worktree_create", src=src)
        await git.worktree_add(src, workdir, repo.branch, env=env)
    elif repo.kind == "git":
        url = (repo.url or "").strip()
        if not url:
            raise ValueError("missing_repo_url")
        url = clone_url_for(url, token)
        repo.url = url
        if emit:
            emit("clone", url=git.redact_url(url))
        await git.clone(url, workdir, env=env)
        await git.checkout_new_branch(workdir, repo.branch, env=env)
    else:
        raise ValueError(f"invalid_repo_type: {repo.kind}")

    logger.info("Prepared %s working copy for %s/%s at %s", repo.kind, task_id, repo.id, workdir)
    return workdir
