"""Task orchestrator: owns task state, runs repositories, records every transition."""

import asyncio
import logging
from collections.abc import Coroutine
from functools import partial
from pathlib import Path

from agent_orchestrator.config import Config
from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import diffs as diffs_mod
from agent_orchestrator.core import promotion as promotion_mod
from agent_orchestrator.core import worktrees as worktrees_mod
from agent_orchestrator.core.events import EventLog
from agent_orchestrator.core.tasks import (
    build_repositories,
    derive_task_status,
    new_task,
    now_ms,
)
from agent_orchestrator.integrations import git
from agent_orchestrator.integrations import slack as slack_mod
from agent_orchestrator.integrations.github import GitHubClient, GitHubError
from agent_orchestrator.storage.models import (
    CANCELED,
    DONE,
    ERROR,
    PREPARING,
    READY,
    RUNNING,
    TERMINAL_STATES,
    Repository,
    Task,
)
from agent_orchestrator.storage.store import TaskStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """In-memory registry of tasks and live processes, hydrated from disk.

    All methods run on one event loop; task and repository state is only
    mutated between awaits, so no locking is needed.
    """

    def __init__(
        self,
        config: Config,
        store: TaskStore | None = None,
        github: GitHubClient | None = None,
    ):
        self.config = config
        self.store = store or TaskStore(config.tasks_dir)
        self.events = EventLog(self.store, subscriber_limit=config.subscriber_buffer)
        self._github = github
        self._tasks: dict[str, Task] = {}
        self._processes: dict[str, dict[str, asyncio.subprocess.Process]] = {}
        self._in_flight: dict[str, set[str]] = {}
        self._promoting: set[tuple[str, str]] = set()
        self._background: set[asyncio.Task] = set()

    # ── Registry ─────────────────────────────────────────────────────────────

    def load(self) -> int:
        """Hydrate tasks from disk. Nothing is restarted until resume_task."""
        for task in self.store.load_tasks():
            if task.id in self._tasks:
                continue
            self._tasks[task.id] = task
            self._refresh_status(task, notify=False)
            self._persist(task)
        logger.info("Loaded %d task(s) from %s", len(self._tasks), self.store.root)
        return len(self._tasks)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list_tasks(self) -> list[Task]:
        """All tasks, newest first."""
        return sorted(self._tasks.values(), key=lambda t: (t.created_at, t.id), reverse=True)

    def live_repo_ids(self, task_id: str) -> set[str]:
        return set(self._processes.get(task_id, {}))

    def _active(self, task_id: str) -> set[str]:
        return self.live_repo_ids(task_id) | self._in_flight.get(task_id, set())

    # ── Internal helpers ─────────────────────────────────────────────────────

    def _emit(self, task: Task, event_type: str, repo_id: str | None = None, **fields) -> dict:
        return self.events.append(task, event_type, repo_id, **fields)

    def _persist(self, task: Task):
        try:
            self.store.save_task(task)
        except OSError:
            logger.exception("Failed to persist task %s", task.id)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        bg = asyncio.create_task(coro)
        self._background.add(bg)
        bg.add_done_callback(self._background_done)
        return bg

    def _background_done(self, bg: asyncio.Task):
        self._background.discard(bg)
        if not bg.cancelled() and bg.exception() is not None:
            logger.error("Background work failed", exc_info=bg.exception())

    def _git_env(self) -> dict[str, str]:
        return git.git_env(self.config.github_token, self.config.storage_dir)

    def _github_client(self) -> GitHubClient | None:
        if self._github is not None:
            return self._github
        if not self.config.github_token:
            return None
        return GitHubClient(self.config.github_token, self.config.github_api_url)

    def _mark_in_flight(self, task: Task, repo: Repository):
        self._in_flight.setdefault(task.id, set()).add(repo.id)

    def _clear_in_flight(self, task: Task, repo: Repository):
        ids = self._in_flight.get(task.id)
        if ids is not None:
            ids.discard(repo.id)
            if not ids:
                del self._in_flight[task.id]

    def _set_repo_status(self, task: Task, repo: Repository, status: str, **fields):
        repo.status = status
        self._emit(task, "repo_status", repo.id, status=status, **fields)

    def _refresh_status(self, task: Task, notify: bool = True):
        """Recompute the derived task status; the only writer of Task.status."""
        task.updated_at = now_ms()
        status = derive_task_status(task.repos, self._active(task.id))
        if status == task.status:
            return
        task.status = status
        self._emit(task, "task_status", status=status)
        if notify and status in TERMINAL_STATES:
            self._notify_task(task)

    # ── Create ───────────────────────────────────────────────────────────────

    def create_task(
        self,
        prompt: str = "",
        command: str | None = None,
        repos: list[dict] | None = None,
        title: str | None = None,
    ) -> Task:
        """Register a task and start preparing its repositories in the background.

        Raises ValueError for repo descriptors that cannot be prepared.
        """
        entries = build_repositories(repos or [], str(self.config.workspace_dir))
        task = new_task(prompt, (command or "").strip() or self.config.default_command, entries, title)
        self.store.save_task(task)
        self._tasks[task.id] = task
        self._emit(task, "task_created", title=task.title, command=task.command)
        self._persist(task)
        logger.info("Created task %s with %d repo(s)", task.id, len(task.repos))
        self._spawn(self._run_task(task))
        return task

    async def _run_task(self, task: Task):
        await asyncio.gather(*(self._run_repository(task, repo) for repo in task.repos))

    async def _run_repository(self, task: Task, repo: Repository):
        if repo.status == CANCELED:
            return
        self._mark_in_flight(task, repo)
        try:
            self._set_repo_status(task, repo, PREPARING)
            self._refresh_status(task)
            self._persist(task)
            try:
                await worktrees_mod.prepare_repository(
                    self.store,
                    task.id,
                    repo,
                    str(self.config.workspace_dir),
                    env=self._git_env(),
                    token=self.config.github_token,
                    emit=partial(self._emit_repo_status, task, repo),
                )
            except (git.GitError, OSError, ValueError) as e:
                if repo.status == CANCELED:
                    return
                repo.status = ERROR
                repo.error = str(e) or "prepare_failed"
                self._emit(task, "repo_error", repo.id, message=repo.error)
                logger.warning("Preparing %s/%s failed: %s", task.id, repo.id, repo.error)
                return
            if repo.status == CANCELED:
                return
            self._set_repo_status(task, repo, READY)
            await self._start_runner(task, repo)
        finally:
            self._clear_in_flight(task, repo)
            self._refresh_status(task)
            self._persist(task)

    def _emit_repo_status(self, task: Task, repo: Repository, status: str, **fields):
        self._emit(task, "repo_status", repo.id, status=status, **fields)

    # ── Process runner ───────────────────────────────────────────────────────

    async def _start_runner(self, task: Task, repo: Repository) -> bool:
        if repo.id in self.live_repo_ids(task.id):
            return False
        self._mark_in_flight(task, repo)
        try:
            try:
                proc = await agents_mod.launch_agent(task.command, repo.workdir)
            except OSError as e:
                repo.status = ERROR
                repo.error = f"spawn_failed: {e}"
                self._emit(task, "repo_error", repo.id, message=repo.error)
                logger.warning("Spawning agent for %s/%s failed: %s", task.id, repo.id, e)
                return False

            self._processes.setdefault(task.id, {})[repo.id] = proc
            repo.pid = proc.pid
            repo.exit_code = None
            repo.signal = None
            repo.started_at = now_ms()
            repo.finished_at = None
            if repo.status == CANCELED:
                agents_mod.cancel_agent(proc)
            else:
                repo.error = None
                self._set_repo_status(task, repo, RUNNING, pid=proc.pid)
            if task.prompt:
                agents_mod.send_input(proc, task.prompt)
            self._spawn(self._supervise(task, repo, proc))
            return True
        finally:
            self._clear_in_flight(task, repo)

    async def _supervise(self, task: Task, repo: Repository, proc: asyncio.subprocess.Process):
        on_output = partial(self._on_output, task, repo)
        status = await agents_mod.supervise_agent(proc, on_output)

        self._mark_in_flight(task, repo)
        try:
            live = self._processes.get(task.id, {})
            live.pop(repo.id, None)
            if not live:
                self._processes.pop(task.id, None)

            repo.exit_code = status.code
            repo.signal = status.signal
            repo.finished_at = now_ms()
            if repo.status != CANCELED:
                repo.status = DONE if status.succeeded else ERROR
            self._emit(task, "repo_exit", repo.id, code=status.code, signal=status.signal)
            self._emit(task, "repo_status", repo.id, status=repo.status)
            await self._extract_diff(task, repo)
        finally:
            self._clear_in_flight(task, repo)
            self._refresh_status(task)
            self._persist(task)

    def _on_output(self, task: Task, repo: Repository, stream: str, text: str):
        self._emit(task, "log", repo.id, stream=stream, text=text)

    async def _extract_diff(self, task: Task, repo: Repository) -> str | None:
        try:
            patch = await diffs_mod.extract_diff(repo, env=self._git_env())
        except (git.GitError, OSError, ValueError) as e:
            self._emit(task, "diff_error", repo.id, message=str(e) or "diff_failed")
            logger.warning("Diff for %s/%s failed: %s", task.id, repo.id, e)
            return None
        self._emit(task, "diff_ready", repo.id, bytes=len(patch.encode("utf-8")))
        return patch

    # ── Cancel / resume / input ──────────────────────────────────────────────

    def cancel_task(self, task: Task) -> list[str]:
        """Signal every live process and mark unfinished repositories canceled.

        Returns the ids of repositories whose process was signaled.
        """
        live = self._processes.get(task.id, {})
        signaled = []
        self._emit(task, "cancel_requested")
        for repo in task.repos:
            proc = live.get(repo.id)
            if proc is not None and agents_mod.cancel_agent(proc):
                signaled.append(repo.id)
            if proc is not None or not repo.is_terminal:
                if repo.status != CANCELED:
                    self._set_repo_status(task, repo, CANCELED)
        self._refresh_status(task)
        self._persist(task)
        logger.info("Canceled task %s (signaled %s)", task.id, signaled)
        return signaled

    async def resume_task(self, task: Task) -> list[str]:
        """Restart agents for unfinished repositories whose working copy still exists."""
        resumed = []
        for repo in task.repos:
            if repo.id in self._active(task.id):
                continue
            if repo.status in (DONE, CANCELED):
                continue
            if not repo.workdir or not Path(repo.workdir).is_dir():
                continue
            if await self._start_runner(task, repo):
                resumed.append(repo.id)
        self._emit(task, "task_resumed", repoIds=resumed)
        self._refresh_status(task)
        self._persist(task)
        logger.info("Resumed task %s: %s", task.id, resumed)
        return resumed

    def send_input(self, task: Task, text: str, repo_id: str | None = None) -> list[str]:
        """Write a line to live processes' stdin. Repositories without one are skipped."""
        live = self._processes.get(task.id, {})
        targets = [repo_id] if repo_id else list(live)
        delivered = [rid for rid in targets if rid in live and agents_mod.send_input(live[rid], text)]
        self._emit(task, "stdin", repo_id, text=text)
        return delivered

    # ── Diff / promotion ─────────────────────────────────────────────────────

    async def get_diff(self, task: Task, repo_id: str, refresh: bool = False) -> str | None:
        """Return the captured diff, optionally re-extracting it first.

        Raises KeyError if the repository does not belong to the task.
        """
        repo = task.get_repo(repo_id)
        if repo is None:
            raise KeyError(repo_id)
        idle = repo.id not in self._active(task.id)
        if refresh and idle and repo.workdir and Path(repo.workdir).is_dir():
            self._mark_in_flight(task, repo)
            try:
                await self._extract_diff(task, repo)
            finally:
                self._clear_in_flight(task, repo)
                self._refresh_status(task)
        return diffs_mod.read_diff(repo)

    async def promote(
        self,
        task: Task,
        options: promotion_mod.PromotionOptions,
        repo_id: str | None = None,
    ) -> list[dict]:
        """Promote one repository or all of them; failures are per-repository results.

        Raises KeyError if ``repo_id`` does not belong to the task.
        """
        targets = [r for r in task.repos if repo_id is None or r.id == repo_id]
        if not targets:
            raise KeyError(repo_id)
        results = []
        for repo in targets:
            results.append(await self._promote_repository(task, repo, options))
        task.updated_at = now_ms()
        self._persist(task)
        return results

    async def _promote_repository(
        self, task: Task, repo: Repository, options: promotion_mod.PromotionOptions
    ) -> dict:
        key = (task.id, repo.id)
        if repo.id in self._active(task.id) or key in self._promoting:
            self._emit(task, "promote_error", repo.id, message="repo_busy")
            return {"repoId": repo.id, "ok": False, "message": "repo_busy"}

        self._promoting.add(key)
        try:
            out = await promotion_mod.promote_repository(
                task,
                repo,
                options,
                env=self._git_env(),
                author_name=self.config.git_name,
                author_email=self.config.git_email,
                token=self.config.github_token,
                github=self._github_client(),
                emit=partial(self._emit, task, repo_id=repo.id),
            )
        except (git.GitError, GitHubError, OSError, ValueError) as e:
            message = str(e) or "promote_failed"
            self._emit(task, "promote_error", repo.id, message=message)
            logger.warning("Promoting %s/%s failed: %s", task.id, repo.id, message)
            return {"repoId": repo.id, "ok": False, "message": message}
        finally:
            self._promoting.discard(key)

        if out.get("prUrl"):
            self._notify_pr(task, repo)
        logger.info("Promoted %s/%s: %s", task.id, repo.id, out)
        return {"repoId": repo.id, "ok": True, **out}

    # ── Notifications ────────────────────────────────────────────────────────

    def _notify(self, text: str, blocks: list[dict]):
        if not (self.config.slack_bot_token and self.config.slack_channel):
            return
        self._spawn(self._send_slack(text, blocks))

    async def _send_slack(self, text: str, blocks: list[dict]):
        try:
            await asyncio.to_thread(
                slack_mod.send_message,
                self.config.slack_bot_token,
                self.config.slack_channel,
                text,
                blocks,
            )
        except Exception:
            logger.exception("Failed to send Slack notification")

    def _notify_task(self, task: Task):
        repos = [{"id": r.id, "status": r.status, "exitCode": r.exit_code} for r in task.repos]
        blocks = slack_mod.format_task_notification(task.id, task.title, task.status, repos)
        self._notify(f"Agent task {task.status}: {task.title}", blocks)

    def _notify_pr(self, task: Task, repo: Repository):
        blocks = slack_mod.format_pr_review_request(task.id, task.title, repo.branch or "", repo.pr_url)
        self._notify(f"Pull request opened: {task.title}", blocks)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def join(self):
        """Wait until no background work remains."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self):
        """Signal live processes, stop background work and persist every task.

        Repositories keep their last recorded state so resume_task can pick
        them up after a restart.
        """
        for live in self._processes.values():
            for proc in live.values():
                agents_mod.cancel_agent(proc)
        pending = list(self._background)
        for bg in pending:
            bg.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._processes.clear()
        self._in_flight.clear()
        self.events.close_all()
        for task in self._tasks.values():
            self._persist(task)
