"""Tests for the CLI and the HTTP client it uses."""

import json

import httpx
import pytest
from click.testing import CliRunner

from agent_orchestrator import cli as cli_mod
from agent_orchestrator.cli import main, parse_repo_spec
from agent_orchestrator.client import OrchestratorClient, OrchestratorError

TASK = {
    "id": "task-abc-0123456789abcdef",
    "title": "Fix the bug",
    "status": "done",
    "prompt": "Fix the bug",
    "command": "codex",
    "createdAt": 1,
    "updatedAt": 2,
    "lastSeq": 9,
    "repos": [
        {
            "id": "r1",
            "name": "r1",
            "type": "local",
            "url": None,
            "path": "/work",
            "branch": "agent/task-abc-0123456789abcdef/r1",
            "status": "done",
            "pid": 42,
            "exitCode": 0,
            "signal": None,
            "error": None,
            "prUrl": "https://github.com/acme/w/pull/1",
        }
    ],
}


@pytest.fixture
def cli_env(monkeypatch):
    """A CliRunner whose client talks to a canned transport."""
    requests = []
    routes = {}

    def handler(request):
        requests.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"ok": False, "code": "not_found", "message": "Task not found"})
        return routes[key]()

    client = OrchestratorClient("http://orchestrator.test", transport=httpx.MockTransport(handler))
    monkeypatch.setattr(cli_mod, "_get_client", lambda: client)
    yield CliRunner(), routes, requests


class TestParseRepoSpec:
    def test_local_path(self):
        assert parse_repo_spec("/src/app") == {"type": "local", "path": "/src/app"}

    def test_url(self):
        assert parse_repo_spec("https://github.com/a/b.git") == {"type": "git", "url": "https://github.com/a/b.git"}
        assert parse_repo_spec("git@github.com:a/b.git") == {"type": "git", "url": "git@github.com:a/b.git"}

    def test_with_id(self):
        assert parse_repo_spec("api=/src/api") == {"type": "local", "path": "/src/api", "id": "api"}
        assert parse_repo_spec("web=git@github.com:a/web.git")["id"] == "web"


class TestCLI:
    def test_help(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Agent Orchestrator" in result.output

    def test_create(self, cli_env):
        runner, routes, requests = cli_env
        routes[("POST", "/tasks")] = lambda: httpx.Response(200, json={"ok": True, "task": TASK})

        result = runner.invoke(
            main, ["task", "create", "Fix the bug", "--command", "codex", "--repo", "r1=/work"]
        )
        assert result.exit_code == 0, result.output
        assert TASK["id"] in result.output
        assert json.loads(requests[0].content) == {
            "prompt": "Fix the bug",
            "command": "codex",
            "repos": [{"type": "local", "path": "/work", "id": "r1"}],
        }

    def test_create_rejected(self, cli_env):
        runner, routes, _ = cli_env
        routes[("POST", "/tasks")] = lambda: httpx.Response(
            400, json={"ok": False, "code": "bad_request", "message": "repos[0].url is required for git repositories"}
        )
        result = runner.invoke(main, ["task", "create", "x", "--repo", "https://"])
        assert result.exit_code == 1
        assert "url is required" in result.output

    def test_list(self, cli_env):
        runner, routes, _ = cli_env
        routes[("GET", "/tasks")] = lambda: httpx.Response(200, json={"ok": True, "tasks": [TASK]})

        result = runner.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "Fix the bug" in result.output
        assert "r1:done" in result.output

        result = runner.invoke(main, ["task", "list", "--json"])
        assert json.loads(result.output)[0]["id"] == TASK["id"]

    def test_list_empty(self, cli_env):
        runner, routes, _ = cli_env
        routes[("GET", "/tasks")] = lambda: httpx.Response(200, json={"ok": True, "tasks": []})
        result = runner.invoke(main, ["task", "list"])
        assert "No tasks found." in result.output

    def test_show(self, cli_env):
        runner, routes, _ = cli_env
        routes[("GET", f"/tasks/{TASK['id']}")] = lambda: httpx.Response(200, json={"ok": True, "task": TASK})
        result = runner.invoke(main, ["task", "show", TASK["id"]])
        assert result.exit_code == 0
        assert "PR: https://github.com/acme/w/pull/1" in result.output

    def test_show_not_found(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["task", "show", "nope"])
        assert result.exit_code == 1
        assert "Task not found" in result.output

    def test_cancel_and_resume(self, cli_env):
        runner, routes, _ = cli_env
        routes[("POST", "/tasks/t1/cancel")] = lambda: httpx.Response(
            200, json={"ok": True, "canceled": ["r1"], "task": TASK}
        )
        routes[("POST", "/tasks/t1/resume")] = lambda: httpx.Response(
            200, json={"ok": True, "resumed": [], "task": TASK}
        )
        assert "signaled: r1" in runner.invoke(main, ["task", "cancel", "t1"]).output
        assert "repos: none" in runner.invoke(main, ["task", "resume", "t1"]).output

    def test_input(self, cli_env):
        runner, routes, requests = cli_env
        routes[("POST", "/tasks/t1/input")] = lambda: httpx.Response(200, json={"ok": True, "delivered": ["r1"]})
        result = runner.invoke(main, ["task", "input", "t1", "yes", "--repo", "r1"])
        assert "Delivered to: r1" in result.output
        assert json.loads(requests[0].content) == {"text": "yes", "repoId": "r1"}

    def test_diff(self, cli_env):
        runner, routes, requests = cli_env
        patch_text = "diff --git a/x b/x\n+hello\n"
        routes[("GET", "/tasks/t1/repos/r1/diff")] = lambda: httpx.Response(200, text=patch_text)
        result = runner.invoke(main, ["task", "diff", "t1", "r1", "--refresh"])
        assert result.output == patch_text
        assert requests[0].url.params["refresh"] == "1"

    def test_promote_all(self, cli_env):
        runner, routes, _ = cli_env
        routes[("POST", "/tasks/t1/promote")] = lambda: httpx.Response(200, json={"ok": True, "results": [
            {"repoId": "r1", "ok": True, "pushed": True, "prUrl": "https://github.com/a/b/pull/3"},
            {"repoId": "r2", "ok": True, "skipped": True},
            {"repoId": "r3", "ok": False, "message": "repo_busy"},
        ]})
        result = runner.invoke(main, ["task", "promote", "t1"])
        assert result.exit_code == 1
        assert "r1: https://github.com/a/b/pull/3" in result.output
        assert "r2: nothing to commit" in result.output
        assert "r3: repo_busy" in result.output

    def test_promote_one(self, cli_env):
        runner, routes, requests = cli_env
        routes[("POST", "/tasks/t1/repos/r1/promote")] = lambda: httpx.Response(200, json={
            "ok": True, "repoId": "r1", "pushed": True, "prSkipped": True, "reason": "unsupported_remote",
        })
        result = runner.invoke(main, ["task", "promote", "t1", "--repo", "r1", "-m", "Ship"])
        assert result.exit_code == 0
        assert "pushed (unsupported_remote)" in result.output
        assert json.loads(requests[0].content) == {"message": "Ship"}

    def test_events(self, cli_env):
        runner, routes, requests = cli_env
        body = (
            ": ok\n\n"
            'data: {"seq": 4, "ts": 1, "type": "log", "repoId": "r1", "stream": "stdout", "text": "hi\\n"}\n\n'
            ": ping\n\n"
            'data: {"seq": 5, "ts": 2, "type": "task_status", "status": "done"}\n\n'
        )
        routes[("GET", "/tasks/t1/events")] = lambda: httpx.Response(
            200, text=body, headers={"content-type": "text/event-stream"}
        )
        result = runner.invoke(main, ["task", "events", "t1", "--since", "3"])
        assert result.exit_code == 0
        assert result.output.splitlines() == [
            "[4] log r1: hi",
            '[5] task_status {"status": "done"}',
        ]
        assert requests[0].url.params["since"] == "3"


class TestOrchestratorClient:
    def test_error_raised(self):
        transport = httpx.MockTransport(
            lambda r: httpx.Response(404, json={"ok": False, "code": "not_found", "message": "Diff not ready"})
        )
        client = OrchestratorClient("http://orchestrator.test", transport=transport)
        with pytest.raises(OrchestratorError) as exc:
            client.get_diff("t1", "r1")
        assert exc.value.code == "not_found"
        assert exc.value.status_code == 404

    def test_single_promote_failure_is_result(self):
        transport = httpx.MockTransport(
            lambda r: httpx.Response(200, json={
                "ok": False, "code": "promote_failed", "message": "git push failed", "repoId": "r1",
            })
        )
        client = OrchestratorClient("http://orchestrator.test", transport=transport)
        assert client.promote("t1", repo_id="r1") == [
            {"repoId": "r1", "ok": False, "message": "git push failed"}
        ]
