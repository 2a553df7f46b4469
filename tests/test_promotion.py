"""Tests for the commit, push and pull-request workflow."""

import asyncio
import json
import os
import subprocess
import tempfile
from pathlib import Path

import httpx
import pytest

from agent_orchestrator.core import promotion as promotion_mod
from agent_orchestrator.core.promotion import PromotionOptions
from agent_orchestrator.integrations import git
from agent_orchestrator.integrations.github import GitHubClient, GitHubError
from agent_orchestrator.storage.models import Repository, Task

BRANCH = "agent/task-1/r1"


def _git(*args, cwd):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


@pytest.fixture
def promotable():
    """A working copy cloned from a bare remote, on the task branch."""
    with tempfile.TemporaryDirectory() as tmp:
        src = Path(tmp) / "src"
        src.mkdir()
        subprocess.run(["git", "init"], cwd=src, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=src, capture_output=True, check=True)
        (src / "README.md").write_text("# Test\n")
        subprocess.run(["git", "add", "."], cwd=src, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=src,
            capture_output=True,
            check=True,
            env={**os.environ, "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
                 "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com"},
        )
        bare = Path(tmp) / "remote.git"
        subprocess.run(["git", "clone", "--bare", str(src), str(bare)], capture_output=True, check=True)
        work = Path(tmp) / "work"
        subprocess.run(["git", "clone", str(bare), str(work)], capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", BRANCH], cwd=work, capture_output=True, check=True)

        repo = Repository(id="r1", name="r1", kind="git", url=str(bare), workdir=str(work), branch=BRANCH)
        task = Task(id="task-1", title="Add greeting", prompt="Say hello", repos=[repo])
        yield task, repo, bare


def _promote(task, repo, options=None, token=None, github=None):
    emitted = []
    result = asyncio.run(
        promotion_mod.promote_repository(
            task,
            repo,
            options or PromotionOptions(),
            env=git.git_env(),
            author_name="Bot",
            author_email="bot@example.com",
            token=token,
            github=github,
            emit=lambda event_type, **fields: emitted.append((event_type, fields)),
        )
    )
    return result, emitted


@pytest.fixture
def fake_push(monkeypatch):
    pushes = []

    async def push(cwd, target, refspec, env=None, set_upstream=False):
        pushes.append((target, refspec, set_upstream))
        return ""

    monkeypatch.setattr(git, "push", push)
    return pushes


class TestPromoteToPlainRemote:
    def test_commits_and_pushes_without_pr(self, promotable):
        task, repo, bare = promotable
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")

        result, emitted = _promote(task, repo)
        assert result == {"pushed": True, "prSkipped": True, "reason": "unsupported_remote"}
        assert _git("log", "-1", "--format=%an <%ae> %s", BRANCH, cwd=bare) == (
            "Bot <bot@example.com> agent-orchestrator: Add greeting"
        )
        statuses = [f["status"] for t, f in emitted if t == "promote_status"]
        assert statuses == ["commit", "committed", "push", "pushed", "pushed_no_pr"]

    def test_custom_message(self, promotable):
        task, repo, bare = promotable
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")
        _promote(task, repo, PromotionOptions(message="Custom message"))
        assert _git("log", "-1", "--format=%s", BRANCH, cwd=bare) == "Custom message"

    def test_nothing_to_commit_is_skip(self, promotable):
        task, repo, bare = promotable
        before = _git("rev-list", "--count", "HEAD", cwd=repo.workdir)

        result, emitted = _promote(task, repo)
        assert result == {"skipped": True}
        assert ("promote_skip", {"reason": "nothing_to_commit"}) in emitted
        assert _git("rev-list", "--count", "HEAD", cwd=repo.workdir) == before
        assert _git("ls-remote", str(bare), f"refs/heads/{BRANCH}", cwd=repo.workdir) == ""

    def test_workdir_missing(self, promotable):
        task, repo, _ = promotable
        repo.workdir = "/nonexistent/workdir"
        with pytest.raises(ValueError, match="repo_not_ready"):
            _promote(task, repo)


class TestPromoteToGitHub:
    def _github(self, handler):
        return GitHubClient("tok", transport=httpx.MockTransport(handler))

    def test_opens_pull_request(self, promotable, fake_push):
        task, repo, _ = promotable
        _git("remote", "set-url", "origin", "https://github.com/acme/widgets.git", cwd=repo.workdir)
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"html_url": "https://github.com/acme/widgets/pull/7"})

        result, emitted = _promote(task, repo, token="tok", github=self._github(handler))

        assert result == {"pushed": True, "prUrl": "https://github.com/acme/widgets/pull/7"}
        assert repo.pr_url == "https://github.com/acme/widgets/pull/7"
        assert fake_push == [("https://github.com/acme/widgets.git", f"HEAD:refs/heads/{BRANCH}", False)]
        assert len(requests) == 1
        assert requests[0].url.path == "/repos/acme/widgets/pulls"
        assert requests[0].headers["Authorization"] == "Bearer tok"
        body = json.loads(requests[0].content)
        assert body["head"] == BRANCH
        assert body["base"] == "main"
        assert body["title"] == "agent-orchestrator: Add greeting"
        assert body["body"] == "Prompt:\n\nSay hello\n"
        assert ("pr_created", {"url": "https://github.com/acme/widgets/pull/7"}) in emitted

    def test_base_branch_from_api(self, promotable, fake_push):
        task, repo, _ = promotable
        _git("remote", "set-url", "origin", "git@github.com:acme/widgets.git", cwd=repo.workdir)
        _git("remote", "set-head", "origin", "-d", cwd=repo.workdir)
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")
        pulls = []

        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"default_branch": "develop"})
            pulls.append(json.loads(request.content))
            return httpx.Response(201, json={"html_url": "https://github.com/acme/widgets/pull/8"})

        options = PromotionOptions(pr_title="My PR", pr_body="Details")
        _promote(task, repo, options, token="tok", github=self._github(handler))
        assert pulls[0]["base"] == "develop"
        assert pulls[0]["title"] == "My PR"
        assert pulls[0]["body"] == "Details"

    def test_base_branch_falls_back_to_main(self, promotable, fake_push):
        task, repo, _ = promotable
        _git("remote", "set-url", "origin", "https://github.com/acme/widgets.git", cwd=repo.workdir)
        _git("remote", "set-head", "origin", "-d", cwd=repo.workdir)
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")
        pulls = []

        def handler(request):
            if request.method == "GET":
                return httpx.Response(500)
            pulls.append(json.loads(request.content))
            return httpx.Response(201, json={"html_url": "https://github.com/acme/widgets/pull/9"})

        _promote(task, repo, token="tok", github=self._github(handler))
        assert pulls[0]["base"] == "main"

    def test_missing_token_pushes_to_origin(self, promotable, fake_push):
        task, repo, _ = promotable
        _git("remote", "set-url", "origin", "https://github.com/acme/widgets.git", cwd=repo.workdir)
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")

        result, _ = _promote(task, repo)
        assert result == {"pushed": True, "prSkipped": True, "reason": "missing_github_token"}
        assert fake_push == [("origin", f"HEAD:refs/heads/{BRANCH}", True)]

    def test_pull_request_failure_raises(self, promotable, fake_push):
        task, repo, _ = promotable
        _git("remote", "set-url", "origin", "https://github.com/acme/widgets.git", cwd=repo.workdir)
        (Path(repo.workdir) / "hello.txt").write_text("hi\n")

        def handler(request):
            return httpx.Response(422, json={"message": "Validation Failed"})

        with pytest.raises(GitHubError, match="github_api_422"):
            _promote(task, repo, token="tok", github=self._github(handler))
        assert len(fake_push) == 1
        assert repo.pr_url is None
