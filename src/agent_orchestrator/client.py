"""HTTP client for a running agent orchestrator service."""

import json
from collections.abc import Iterator

import httpx


class OrchestratorError(Exception):
    """The service answered with ``ok: false``."""

    def __init__(self, code: str, message: str, status_code: int | None = None):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.status_code = status_code


class OrchestratorClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8092",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _json(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise OrchestratorError("bad_response", response.text[:200], response.status_code)
        if not isinstance(data, dict) or not data.get("ok"):
            data = data if isinstance(data, dict) else {}
            raise OrchestratorError(
                data.get("code", "http_error"),
                data.get("message", f"HTTP {response.status_code}"),
                response.status_code,
            )
        return data

    def _get(self, path: str, **params) -> dict:
        return self._json(self._http.get(path, params=params or None))

    def _post(self, path: str, body: dict | None = None) -> dict:
        return self._json(self._http.post(path, json=body or {}))

    # ── Tasks ────────────────────────────────────────────────────────────────

    def create_task(
        self,
        prompt: str,
        command: str | None = None,
        title: str | None = None,
        repos: list[dict] | None = None,
    ) -> dict:
        body: dict = {"prompt": prompt}
        if command:
            body["command"] = command
        if title:
            body["title"] = title
        if repos:
            body["repos"] = repos
        return self._post("/tasks", body)["task"]

    def list_tasks(self) -> list[dict]:
        return self._get("/tasks")["tasks"]

    def get_task(self, task_id: str) -> dict:
        return self._get(f"/tasks/{task_id}")["task"]

    def cancel(self, task_id: str) -> dict:
        return self._post(f"/tasks/{task_id}/cancel")

    def resume(self, task_id: str) -> dict:
        return self._post(f"/tasks/{task_id}/resume")

    def send_input(self, task_id: str, text: str, repo_id: str | None = None) -> list[str]:
        body = {"text": text}
        if repo_id:
            body["repoId"] = repo_id
        return self._post(f"/tasks/{task_id}/input", body)["delivered"]

    def get_diff(self, task_id: str, repo_id: str, refresh: bool = False) -> str:
        """Return the captured patch text. Raises OrchestratorError when not ready."""
        params = {"refresh": "1"} if refresh else None
        response = self._http.get(f"/tasks/{task_id}/repos/{repo_id}/diff", params=params)
        if response.status_code != 200:
            self._json(response)
        return response.text

    def promote(
        self,
        task_id: str,
        repo_id: str | None = None,
        message: str | None = None,
        pr_title: str | None = None,
        pr_body: str | None = None,
    ) -> list[dict]:
        """Promote one repository or all of them. Always returns a list of results."""
        body = {}
        if message:
            body["message"] = message
        if pr_title:
            body["prTitle"] = pr_title
        if pr_body:
            body["prBody"] = pr_body

        if repo_id is None:
            return self._post(f"/tasks/{task_id}/promote", body)["results"]

        response = self._http.post(f"/tasks/{task_id}/repos/{repo_id}/promote", json=body)
        data = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
        if data.get("code") == "promote_failed":
            return [{"repoId": data.get("repoId", repo_id), "ok": False, "message": data.get("message")}]
        return [self._json(response)]

    # ── Events ───────────────────────────────────────────────────────────────

    def iter_events(self, task_id: str, since: int = 0) -> Iterator[dict]:
        """Yield events from the live feed until the server closes it."""
        with self._http.stream(
            "GET", f"/tasks/{task_id}/events", params={"since": since}, timeout=None
        ) as response:
            if response.status_code != 200:
                response.read()
                self._json(response)
            for line in response.iter_lines():
                if line.startswith("data:"):
                    yield json.loads(line[len("data:"):].strip())
