"""GitHub remote parsing and REST API calls for pull-request creation."""

import re
from dataclasses import dataclass

import httpx

_HTTPS_REMOTE = re.compile(r"^https?://(?:[^@/]+@)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$", re.IGNORECASE)
_SSH_REMOTE = re.compile(r"^(?:ssh://)?git@github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$", re.IGNORECASE)


class GitHubError(Exception):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class GitHubRepo:
    owner: str
    repo: str

    @property
    def https_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}.git"


def parse_remote(url: str | None) -> GitHubRepo | None:
    """Recognize a github.com remote in HTTPS or SSH form."""
    raw = (url or "").strip()
    if not raw:
        return None
    for pattern in (_HTTPS_REMOTE, _SSH_REMOTE):
        m = pattern.match(raw)
        if m:
            return GitHubRepo(owner=m.group(1), repo=m.group(2))
    return None


class GitHubClient:
    """Minimal async client for the endpoints promotion needs."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self._token = token
        self.api_url = api_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            transport=self._transport,
            timeout=self._timeout,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": "agent-orchestrator",
                "Authorization": f"Bearer {self._token}",
            },
        )

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        async with self._client() as client:
            try:
                response = await client.request(method, path, json=json)
            except httpx.HTTPError as e:
                raise GitHubError(f"github_api_unreachable: {e}") from e
        if response.status_code < 200 or response.status_code >= 300:
            raise GitHubError(f"github_api_{response.status_code}", response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise GitHubError("github_api_invalid_json", response.status_code) from e
        if not isinstance(data, dict):
            raise GitHubError("github_api_invalid_json", response.status_code)
        return data

    async def default_branch(self, gh: GitHubRepo) -> str | None:
        data = await self._request("GET", f"/repos/{gh.owner}/{gh.repo}")
        branch = data.get("default_branch")
        return branch if isinstance(branch, str) and branch else None

    async def create_pull_request(
        self,
        gh: GitHubRepo,
        title: str,
        head: str,
        base: str,
        body: str = "",
    ) -> str:
        """Open a pull request and return its html_url."""
        data = await self._request(
            "POST",
            f"/repos/{gh.owner}/{gh.repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body, "draft": False},
        )
        url = data.get("html_url")
        return url if isinstance(url, str) else ""
