"""Task construction, naming and status derivation."""

import re
import secrets
import time
from datetime import datetime
from pathlib import PurePosixPath

from agent_orchestrator.integrations.git import redact_url
from agent_orchestrator.storage.models import (
    CANCELED,
    DONE,
    ERROR,
    QUEUED,
    RUNNING,
    Repository,
    Task,
)

BRANCH_PREFIX = "agent"
MAX_BRANCH_LENGTH = 120
MAX_TITLE_LENGTH = 80
REPO_KINDS = ("local", "git")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def now_ms() -> int:
    return int(time.time() * 1000)


def _base36(n: int) -> str:
    out = ""
    while n:
        n, rem = divmod(n, 36)
        out = _BASE36[rem] + out
    return out or "0"


def new_task_id() -> str:
    """Time-ordered, collision-resistant task id."""
    return f"task-{_base36(now_ms())}-{secrets.token_hex(8)}"


def sanitize_branch_name(value: str) -> str:
    """Reduce arbitrary text to a safe git branch name."""
    name = value.strip()
    name = re.sub(r"\s+", "-", name)
    name = re.sub(r"[^a-zA-Z0-9._/-]", "-", name)
    name = re.sub(r"-+", "-", name)
    name = re.sub(r"/+", "/", name)
    name = name.strip("-")
    return name or "agent-orchestrator"


def branch_name_for(task_id: str, repo_id: str) -> str:
    """Deterministic working branch for a (task, repository) pair."""
    return sanitize_branch_name(f"{BRANCH_PREFIX}/{task_id}/{repo_id}"[:MAX_BRANCH_LENGTH])


def sanitize_repo_id(value: str) -> str:
    repo_id = re.sub(r"[^A-Za-z0-9._-]", "-", value.strip())
    repo_id = re.sub(r"-+", "-", repo_id).strip("-.")
    return repo_id[:60]


def _repo_id_from_locator(locator: str) -> str:
    tail = locator.rstrip("/").rsplit(":", 1)[-1]
    name = PurePosixPath(tail).name
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return sanitize_repo_id(name)


def default_title(prompt: str) -> str:
    first_line = prompt.strip().split("\n")[0].strip() if prompt else ""
    if first_line:
        return first_line[:MAX_TITLE_LENGTH]
    return f"Task {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"


def build_repositories(specs: list[dict], workspace_dir: str) -> list[Repository]:
    """Turn request repo descriptors into Repository entries.

    Raises ValueError for descriptors that can never be prepared.
    """
    if not specs:
        return [Repository(id="workspace", name="Workspace", kind="local", path=workspace_dir)]

    repos: list[Repository] = []
    seen: set[str] = set()
    for idx, spec in enumerate(specs):
        if not isinstance(spec, dict):
            raise ValueError(f"repos[{idx}] must be an object")

        url = spec.get("url")
        path = spec.get("path")
        if url is not None and not isinstance(url, str):
            raise ValueError(f"repos[{idx}].url must be a string")
        if path is not None and not isinstance(path, str):
            raise ValueError(f"repos[{idx}].path must be a string")
        url = (url or "").strip() or None
        path = (path or "").strip() or None

        kind = spec.get("type") or ("git" if url else "local")
        if kind not in REPO_KINDS:
            raise ValueError(f"repos[{idx}].type must be one of: {', '.join(REPO_KINDS)}")
        if kind == "git" and not url:
            raise ValueError(f"repos[{idx}].url is required for git repositories")
        if kind == "local":
            path = path or workspace_dir

        raw_id = spec.get("id")
        repo_id = sanitize_repo_id(raw_id) if isinstance(raw_id, str) else ""
        if not repo_id:
            repo_id = _repo_id_from_locator(url or path or "") or f"repo{idx + 1}"
        base_id, n = repo_id, 2
        while repo_id in seen:
            repo_id = f"{base_id}-{n}"
            n += 1
        seen.add(repo_id)

        name = spec.get("name")
        repos.append(
            Repository(
                id=repo_id,
                name=name.strip() if isinstance(name, str) and name.strip() else repo_id,
                kind=kind,
                url=url if kind == "git" else None,
                path=path if kind == "local" else None,
            )
        )
    return repos


def new_task(
    prompt: str,
    command: str,
    repos: list[Repository],
    title: str | None = None,
) -> Task:
    ts = now_ms()
    task_id = new_task_id()
    for repo in repos:
        repo.branch = branch_name_for(task_id, repo.id)
    return Task(
        id=task_id,
        title=(title or "").strip() or default_title(prompt),
        prompt=prompt,
        command=command,
        status=QUEUED,
        created_at=ts,
        updated_at=ts,
        repos=repos,
    )


def derive_task_status(repos: list[Repository], active: set[str]) -> str:
    """Compute task status from repository states.

    ``active`` holds ids of repositories with a live process or with
    preparation/spawn in flight in this orchestrator process.
    """
    if any(r.id in active for r in repos):
        return RUNNING
    if any(not r.is_terminal for r in repos):
        return QUEUED
    if any(r.status == ERROR for r in repos):
        return ERROR
    if any(r.status == CANCELED for r in repos):
        return CANCELED
    return DONE


def repo_summary(repo: Repository) -> dict:
    return {
        "id": repo.id,
        "name": repo.name,
        "type": repo.kind,
        "url": redact_url(repo.url) if repo.url else None,
        "path": repo.path,
        "branch": repo.branch,
        "status": repo.status,
        "pid": repo.pid,
        "exitCode": repo.exit_code,
        "signal": repo.signal,
        "error": repo.error,
        "prUrl": repo.pr_url,
    }


def task_summary(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "prompt": task.prompt,
        "command": task.command,
        "createdAt": task.created_at,
        "updatedAt": task.updated_at,
        "lastSeq": task.next_seq - 1,
        "repos": [repo_summary(r) for r in task.repos],
    }
