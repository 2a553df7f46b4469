"""HTTP/JSON API and live event feed for the agent orchestrator."""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.routing import Route

from agent_orchestrator.config import Config, get_config
from agent_orchestrator.core.events import stream_events
from agent_orchestrator.core.orchestrator import Orchestrator
from agent_orchestrator.core.promotion import PromotionOptions
from agent_orchestrator.core.tasks import task_summary

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RequestError(Exception):
    """A request the API rejects synchronously."""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def _ok(status_code: int = 200, **body) -> JSONResponse:
    return JSONResponse({"ok": True, **body}, status_code=status_code, headers=NO_STORE)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "code": code, "message": message, **extra},
        status_code=status_code,
        headers=NO_STORE,
    )


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _config(request: Request) -> Config:
    return request.app.state.config


def _task_or_404(request: Request):
    task = _orchestrator(request).get_task(request.path_params["task_id"])
    if task is None:
        raise RequestError(404, "not_found", "Task not found")
    return task


async def _read_json(request: Request) -> dict:
    """Read a JSON object body, enforcing the configured size limit."""
    limit = _config(request).max_json_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise RequestError(413, "payload_too_large", f"Body exceeds {limit} bytes")

    raw = b""
    async for chunk in request.stream():
        raw += chunk
        if len(raw) > limit:
            raise RequestError(413, "payload_too_large", f"Body exceeds {limit} bytes")

    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise RequestError(400, "invalid_json", "Body is not valid JSON")
    if not isinstance(data, dict):
        raise RequestError(400, "invalid_json", "Body must be a JSON object")
    return data


def _optional_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RequestError(400, "bad_request", f"'{key}' must be a string")
    return value


# ── Handlers ──────────────────────────────────────────────────────────────────


async def healthz(request: Request):
    return PlainTextResponse("ok\n", headers=NO_STORE)


async def api_list_tasks(request: Request):
    tasks = _orchestrator(request).list_tasks()
    return _ok(tasks=[task_summary(t) for t in tasks])


async def api_create_task(request: Request):
    body = await _read_json(request)
    prompt = _optional_str(body, "prompt") or ""
    command = _optional_str(body, "command")
    title = _optional_str(body, "title")
    repos = body.get("repos")
    if repos is not None and not isinstance(repos, list):
        raise RequestError(400, "bad_request", "'repos' must be a list")

    try:
        task = _orchestrator(request).create_task(prompt, command=command, repos=repos, title=title)
    except ValueError as e:
        raise RequestError(400, "bad_request", str(e))
    return _ok(task=task_summary(task))


async def api_get_task(request: Request):
    task = _task_or_404(request)
    return _ok(task=task_summary(task))


async def api_task_events(request: Request):
    task = _task_or_404(request)
    try:
        since = int(request.query_params.get("since") or 0)
    except ValueError:
        since = 0
    stream = stream_events(
        _orchestrator(request).events,
        task,
        since=max(since, 0),
        ping_interval=_config(request).sse_ping_seconds,
    )
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


async def api_cancel_task(request: Request):
    task = _task_or_404(request)
    signaled = _orchestrator(request).cancel_task(task)
    return _ok(canceled=signaled, task=task_summary(task))


async def api_resume_task(request: Request):
    task = _task_or_404(request)
    resumed = await _orchestrator(request).resume_task(task)
    return _ok(resumed=resumed, task=task_summary(task))


async def api_send_input(request: Request):
    task = _task_or_404(request)
    body = await _read_json(request)
    text = _optional_str(body, "text")
    if not text:
        raise RequestError(400, "bad_request", "Missing text")
    repo_id = _optional_str(body, "repoId") or None
    delivered = _orchestrator(request).send_input(task, text, repo_id)
    return _ok(delivered=delivered)


async def api_repo_diff(request: Request):
    task = _task_or_404(request)
    repo_id = request.path_params["repo_id"]
    refresh = request.query_params.get("refresh") in ("1", "true", "yes")
    try:
        patch = await _orchestrator(request).get_diff(task, repo_id, refresh=refresh)
    except KeyError:
        raise RequestError(404, "not_found", "Repo not found")
    if patch is None:
        raise RequestError(404, "not_found", "Diff not ready")
    return PlainTextResponse(patch, headers=NO_STORE)


async def _promotion_options(request: Request) -> PromotionOptions:
    body = await _read_json(request)
    return PromotionOptions(
        message=_optional_str(body, "message"),
        pr_title=_optional_str(body, "prTitle"),
        pr_body=_optional_str(body, "prBody"),
    )


async def api_promote_task(request: Request):
    task = _task_or_404(request)
    options = await _promotion_options(request)
    results = await _orchestrator(request).promote(task, options)
    return _ok(results=results)


async def api_promote_repo(request: Request):
    task = _task_or_404(request)
    options = await _promotion_options(request)
    try:
        results = await _orchestrator(request).promote(
            task, options, repo_id=request.path_params["repo_id"]
        )
    except KeyError:
        raise RequestError(404, "not_found", "Repo not found")
    result = dict(results[0])
    if not result.pop("ok"):
        return _error(200, "promote_failed", result.pop("message"), **result)
    return _ok(**result)


# ── Error handlers ────────────────────────────────────────────────────────────


async def _request_error(request: Request, exc: RequestError):
    return _error(exc.status_code, exc.code, exc.message)


async def _http_error(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "method_not_allowed" if exc.status_code == 405 else "http_error"
    message = "Unknown endpoint" if exc.status_code == 404 else str(exc.detail)
    return _error(exc.status_code, code, message)


async def _internal_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", str(exc) or "internal_error")


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, orchestrator: Orchestrator | None = None) -> Starlette:
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        orch = orchestrator or Orchestrator(config)
        orch.load()
        app.state.config = config
        app.state.orchestrator = orch
        logger.info("Agent orchestrator ready (storage: %s)", config.storage_dir)
        try:
            yield
        finally:
            await orch.shutdown()

    routes = [
        Route("/healthz", healthz),
        Route("/tasks", api_list_tasks, methods=["GET"]),
        Route("/tasks", api_create_task, methods=["POST"]),
        Route("/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/tasks/{task_id}/events", api_task_events, methods=["GET"]),
        Route("/tasks/{task_id}/cancel", api_cancel_task, methods=["POST"]),
        Route("/tasks/{task_id}/resume", api_resume_task, methods=["POST"]),
        Route("/tasks/{task_id}/input", api_send_input, methods=["POST"]),
        Route("/tasks/{task_id}/promote", api_promote_task, methods=["POST"]),
        Route("/tasks/{task_id}/repos/{repo_id}/diff", api_repo_diff, methods=["GET"]),
        Route("/tasks/{task_id}/repos/{repo_id}/promote", api_promote_repo, methods=["POST"]),
    ]
    return Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            RequestError: _request_error,
            HTTPException: _http_error,
            Exception: _internal_error,
        },
    )


def run_server(host: str = "127.0.0.1", port: int = 8092, config: Config | None = None):
    app = create_app(config)
    uvicorn.run(app, host=host, port=port)
