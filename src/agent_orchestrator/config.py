"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    storage_dir: Path = field(default_factory=lambda: Path.home() / ".agent_orchestrator")
    workspace_dir: Path = field(default_factory=lambda: Path.cwd())
    default_command: str = "codex"
    git_name: str = "agent-orchestrator"
    git_email: str = "agent-orchestrator@localhost"
    github_token: str | None = field(default=None, repr=False)
    github_api_url: str = "https://api.github.com"
    host: str = "127.0.0.1"
    port: int = 8092
    max_json_bytes: int = 1024 * 1024
    sse_ping_seconds: float = 15.0
    subscriber_buffer: int = 10000
    slack_bot_token: str | None = field(default=None, repr=False)
    slack_channel: str | None = None
    api_url: str = "http://127.0.0.1:8092"

    @property
    def tasks_dir(self) -> Path:
        return self.storage_dir / "tasks"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if storage := os.environ.get("AO_STORAGE_DIR"):
            config.storage_dir = Path(storage)

        if workspace := os.environ.get("AO_WORKSPACE_DIR"):
            config.workspace_dir = Path(workspace)

        if command := os.environ.get("AO_DEFAULT_COMMAND"):
            config.default_command = command

        if name := os.environ.get("AO_GIT_NAME") or os.environ.get("GIT_AUTHOR_NAME"):
            config.git_name = name

        if email := os.environ.get("AO_GIT_EMAIL") or os.environ.get("GIT_AUTHOR_EMAIL"):
            config.git_email = email

        token = (
            os.environ.get("AO_GITHUB_TOKEN")
            or os.environ.get("GITHUB_TOKEN")
            or os.environ.get("GITHUB_PAT")
            or ""
        ).strip()
        config.github_token = token or None

        if api := os.environ.get("AO_GITHUB_API_URL"):
            config.github_api_url = api.rstrip("/")

        if host := os.environ.get("AO_HOST"):
            config.host = host

        if port := os.environ.get("AO_PORT"):
            config.port = int(port)

        if max_bytes := os.environ.get("AO_MAX_JSON_BYTES"):
            config.max_json_bytes = int(max_bytes)

        if ping := os.environ.get("AO_SSE_PING_SECONDS"):
            config.sse_ping_seconds = float(ping)

        if buffer := os.environ.get("AO_SUBSCRIBER_BUFFER"):
            config.subscriber_buffer = int(buffer)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("AO_SLACK_CHANNEL")

        if api_url := os.environ.get("AO_API_URL"):
            config.api_url = api_url.rstrip("/")

        return config


def get_config() -> Config:
    return Config.from_env()
