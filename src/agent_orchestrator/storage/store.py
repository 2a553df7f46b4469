"""On-disk task store: one directory per task, atomic metadata, append-only events."""

import json
import logging
import os
import secrets
from pathlib import Path

from agent_orchestrator.storage.models import Task

logger = logging.getLogger(__name__)

META_FILE = "task.json"
EVENTS_FILE = "events.ndjson"
DIFF_FILE = "diff.patch"


def write_json_atomic(path: Path, data: dict):
    """Write JSON to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp-{secrets.token_hex(6)}")
    try:
        with open(tmp, "x", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class TaskStore:
    """Filesystem layout for tasks under a single root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def task_dir(self, task_id: str) -> Path:
        return self.root / task_id

    def meta_file(self, task_id: str) -> Path:
        return self.task_dir(task_id) / META_FILE

    def events_file(self, task_id: str) -> Path:
        return self.task_dir(task_id) / EVENTS_FILE

    def repo_root(self, task_id: str, repo_id: str) -> Path:
        return self.task_dir(task_id) / "repos" / repo_id

    def workdir(self, task_id: str, repo_id: str) -> Path:
        return self.repo_root(task_id, repo_id) / "workdir"

    def diff_file(self, task_id: str, repo_id: str) -> Path:
        return self.repo_root(task_id, repo_id) / DIFF_FILE

    # ── Metadata ─────────────────────────────────────────────────────────────

    def save_task(self, task: Task):
        write_json_atomic(self.meta_file(task.id), task.to_dict())

    def load_task(self, task_id: str) -> Task | None:
        path = self.meta_file(task_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Skipping unreadable task metadata %s: %s", path, e)
            return None
        if not isinstance(data, dict) or data.get("id") != task_id:
            logger.warning("Skipping task metadata with mismatched id: %s", path)
            return None
        try:
            task = Task.from_dict(data)
        except TypeError as e:
            logger.warning("Skipping malformed task metadata %s: %s", path, e)
            return None
        task.next_seq = max(task.next_seq, self.last_seq(task_id) + 1)
        return task

    def load_tasks(self) -> list[Task]:
        """Load every task found under the root."""
        self.root.mkdir(parents=True, exist_ok=True)
        tasks = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            task = self.load_task(entry.name)
            if task:
                tasks.append(task)
        return tasks

    # ── Events ───────────────────────────────────────────────────────────────

    def append_event(self, task_id: str, event: dict):
        path = self.events_file(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event) + "\n")

    def read_events(self, task_id: str, since: int = 0) -> list[dict]:
        """Read durable events with ``seq > since`` in file order."""
        try:
            raw = self.events_file(task_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        events = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError:
                continue
            if not isinstance(event, dict) or not isinstance(event.get("seq"), int):
                continue
            if event["seq"] > since:
                events.append(event)
        return events

    def last_seq(self, task_id: str) -> int:
        events = self.read_events(task_id)
        return max((e["seq"] for e in events), default=0)
