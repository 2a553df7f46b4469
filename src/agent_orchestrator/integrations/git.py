"""Git subprocess wrappers for working-copy, diff and promotion operations."""

import asyncio
import os
import re
from pathlib import Path

ASKPASS_TOKEN_VAR = "AO_GIT_TOKEN"

ASKPASS_SCRIPT = f"""#!/usr/bin/env bash
set -euo pipefail
case "${{1:-}}" in
  *Username*) echo "x-access-token" ;;
  *Password*) echo "${{{ASKPASS_TOKEN_VAR}:-}}" ;;
  *) echo "" ;;
esac
"""


class GitError(Exception):
    """Raised when a git command fails."""


def redact_url(url: str) -> str:
    """Strip credentials from a URL before it is logged or recorded."""
    return re.sub(r"^(\w+://)[^@/]+@", r"\1", url)


def ensure_askpass_script(directory: str | Path) -> Path:
    """Write the askpass helper that answers git credential prompts."""
    path = Path(directory) / "git-askpass.sh"
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(ASKPASS_SCRIPT)
        path.chmod(0o700)
    return path


def git_env(token: str | None = None, askpass_dir: str | Path | None = None) -> dict[str, str]:
    """Environment for git calls; never prompts, authenticates with the token if given."""
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    if token and askpass_dir is not None:
        env[ASKPASS_TOKEN_VAR] = token
        env["GIT_ASKPASS"] = str(ensure_askpass_script(askpass_dir))
    return env


async def _exec(
    args: list[str],
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await proc.communicate()
    return (
        proc.returncode,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )


async def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    strip: bool = True,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    try:
        code, out, err = await _exec(args, cwd=cwd, env=env)
    except OSError as e:
        raise GitError(f"git {args[0]} failed: {e}") from e
    if code != 0:
        detail = redact_url(err.strip() or out.strip())
        raise GitError(f"git {args[0]} failed: {detail}")
    return out.strip() if strip else out


async def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    env: dict[str, str] | None = None,
) -> str:
    """Create (or reset) ``branch`` at the source HEAD in a linked worktree."""
    return await run_git(
        ["worktree", "add", "-B", branch, str(worktree_path)], cwd=repo_path, env=env
    )


async def clone(url: str, dest: str | Path, env: dict[str, str] | None = None) -> str:
    return await run_git(["clone", url, str(dest)], env=env)


async def checkout_new_branch(cwd: str | Path, branch: str, env: dict[str, str] | None = None) -> str:
    return await run_git(["checkout", "-B", branch], cwd=cwd, env=env)


async def add_all(cwd: str | Path, env: dict[str, str] | None = None) -> str:
    """Stage tracked and untracked changes."""
    return await run_git(["add", "-A"], cwd=cwd, env=env)


async def diff_cached(cwd: str | Path, env: dict[str, str] | None = None) -> str:
    return await run_git(["diff", "--cached", "--no-color"], cwd=cwd, env=env, strip=False)


async def reset_index(cwd: str | Path, env: dict[str, str] | None = None) -> str:
    """Unstage everything, leaving the working tree untouched."""
    return await run_git(["reset", "--quiet"], cwd=cwd, env=env)


async def has_staged_changes(cwd: str | Path, env: dict[str, str] | None = None) -> bool:
    code, _, err = await _exec(["diff", "--cached", "--quiet"], cwd=cwd, env=env)
    if code not in (0, 1):
        raise GitError(f"git diff failed: {err.strip()}")
    return code == 1


async def commit(
    cwd: str | Path,
    message: str,
    author_name: str,
    author_email: str,
    env: dict[str, str] | None = None,
) -> str:
    return await run_git(
        [
            "-c", f"user.name={author_name}",
            "-c", f"user.email={author_email}",
            "commit", "-m", message,
        ],
        cwd=cwd,
        env=env,
    )


async def remote_url(cwd: str | Path, remote: str = "origin", env: dict[str, str] | None = None) -> str | None:
    """Return the URL of ``remote``, or None if it is not configured."""
    try:
        return await run_git(["remote", "get-url", remote], cwd=cwd, env=env) or None
    except GitError:
        return None


async def push(
    cwd: str | Path,
    target: str,
    refspec: str,
    env: dict[str, str] | None = None,
    set_upstream: bool = False,
) -> str:
    args = ["push"]
    if set_upstream:
        args.append("-u")
    args += [target, refspec]
    return await run_git(args, cwd=cwd, env=env)


async def origin_default_branch(cwd: str | Path, env: dict[str, str] | None = None) -> str | None:
    """Read the default branch recorded in ``refs/remotes/origin/HEAD``."""
    try:
        ref = await run_git(
            ["symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD"], cwd=cwd, env=env
        )
    except GitError:
        return None
    _, _, branch = ref.partition("/")
    return branch or None


async def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return await run_git(["branch", "--show-current"], cwd=cwd)


async def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return await run_git(["status", "--short"], cwd=cwd)
