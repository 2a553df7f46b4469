"""Data models for the agent orchestrator."""

from dataclasses import asdict, dataclass, field, fields

# Repository states
PENDING = "pending"
PREPARING = "preparing"
READY = "ready"
RUNNING = "running"
DONE = "done"
ERROR = "error"
CANCELED = "canceled"

# Task-only state
QUEUED = "queued"

TERMINAL_STATES = frozenset({DONE, ERROR, CANCELED})
TASK_STATES = frozenset({QUEUED, RUNNING, DONE, ERROR, CANCELED})


@dataclass
class Repository:
    id: str
    name: str
    kind: str = "local"
    url: str | None = None
    path: str | None = None
    branch: str | None = None
    workdir: str | None = None
    diff_file: str | None = None
    status: str = PENDING
    pid: int | None = None
    exit_code: int | None = None
    signal: str | None = None
    error: str | None = None
    pr_url: str | None = None
    started_at: int | None = None
    finished_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Repository":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Task:
    id: str
    title: str
    prompt: str = ""
    command: str = ""
    status: str = QUEUED
    created_at: int = 0
    updated_at: int = 0
    next_seq: int = 1
    repos: list[Repository] = field(default_factory=list)

    def get_repo(self, repo_id: str) -> Repository | None:
        for repo in self.repos:
            if repo.id == repo_id:
                return repo
        return None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["repos"] = [r.to_dict() for r in self.repos]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and k != "repos"}
        values["repos"] = [Repository.from_dict(r) for r in data.get("repos") or []]
        if not isinstance(values.get("next_seq"), int) or values["next_seq"] < 1:
            values["next_seq"] = 1
        return cls(**values)
