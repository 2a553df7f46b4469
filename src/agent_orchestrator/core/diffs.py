"""Snapshot a working copy's changes as a unified diff artifact."""

from pathlib import Path

from agent_orchestrator.integrations import git
from agent_orchestrator.storage.models import Repository


async def extract_diff(repo: Repository, env: dict[str, str] | None = None) -> str:
    """Stage everything, capture the staged diff, write it out, then unstage.

    The index is reset even when capturing fails, so the working copy is left
    with nothing staged. Raises GitError/OSError/ValueError.
    """
    if not repo.workdir or not Path(repo.workdir).is_dir():
        raise ValueError("repo_not_prepared")
    if not repo.diff_file:
        raise ValueError("repo has no diff artifact path")

    workdir = repo.workdir
    await git.add_all(workdir, env=env)
    try:
        patch = await git.diff_cached(workdir, env=env)
    finally:
        await git.reset_index(workdir, env=env)

    path = Path(repo.diff_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(patch, encoding="utf-8")
    return patch


def read_diff(repo: Repository) -> str | None:
    """Return the last captured diff, or None if none has been written."""
    if not repo.diff_file:
        return None
    path = Path(repo.diff_file)
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")
