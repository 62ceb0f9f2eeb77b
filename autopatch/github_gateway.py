"""Remote repository gateway for GitHub.

Everything the pipeline reads from or writes to the hosted repository goes
through the ``RepositoryGateway`` protocol. ``GitHubGateway`` implements it
over the GitHub REST API with httpx; tests substitute an AsyncMock or a
respx-mocked transport.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from .config import GitHubConfig, get_config
from .models import UNKNOWN_AUTHOR

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"


class GitHubError(Exception):
    """A GitHub API call returned a non-success status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_missing(self) -> bool:
        """404 or 422: what GitHub answers for a ref that does not exist."""
        return self.status_code in (404, 422)


@dataclass
class ChangedFile:
    filename: str
    status: str = "modified"

    @property
    def is_removed(self) -> bool:
        return self.status == "removed"


@dataclass
class CommitDetails:
    """One commit's author identity and file-level change list."""

    sha: str
    author_name: str = UNKNOWN_AUTHOR
    author_avatar: str | None = None
    files: list[ChangedFile] | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CommitDetails:
        account = data.get("author") or {}
        git_author = (data.get("commit") or {}).get("author") or {}
        raw_files = data.get("files")
        files = None
        if isinstance(raw_files, list):
            files = [
                ChangedFile(filename=f["filename"], status=f.get("status", "modified"))
                for f in raw_files
            ]
        return cls(
            sha=data.get("sha", ""),
            author_name=account.get("login") or git_author.get("name") or UNKNOWN_AUTHOR,
            author_avatar=account.get("avatar_url"),
            files=files,
        )


@dataclass
class RemoteFile:
    """A file's decoded content and blob sha at some ref."""

    path: str
    sha: str
    content: str


@dataclass
class PullRequest:
    number: int
    html_url: str
    head: str | None = None
    base: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PullRequest:
        return cls(
            number=data["number"],
            html_url=data["html_url"],
            head=(data.get("head") or {}).get("ref"),
            base=(data.get("base") or {}).get("ref"),
            raw=data,
        )


@runtime_checkable
class RepositoryGateway(Protocol):
    """Read and write operations against the hosted repository."""

    async def list_recent_commits(self, owner: str, repo: str, limit: int) -> list[str]:
        """Most recent commit shas on the default branch, newest first."""
        ...

    async def get_default_branch(self, owner: str, repo: str) -> str:
        ...

    async def get_commit(self, owner: str, repo: str, sha: str) -> CommitDetails:
        ...

    async def get_file(self, owner: str, repo: str, path: str, ref: str) -> RemoteFile:
        ...

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> str:
        ...

    async def update_branch(
        self, owner: str, repo: str, branch: str, sha: str, force: bool = False
    ) -> None:
        ...

    async def create_branch(self, owner: str, repo: str, branch: str, sha: str) -> None:
        ...

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        branch: str,
        message: str,
        sha: str | None = None,
    ) -> None:
        ...

    async def list_open_pull_requests(
        self, owner: str, repo: str, head_branch: str
    ) -> list[PullRequest]:
        ...

    async def create_pull_request(
        self, owner: str, repo: str, title: str, head: str, base: str, body: str
    ) -> PullRequest:
        ...

    async def close(self) -> None:
        ...


class GitHubGateway:
    """GitHub REST implementation of RepositoryGateway."""

    def __init__(self, config: GitHubConfig | None = None):
        self._config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> GitHubConfig:
        if self._config is None:
            self._config = get_config().github
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.config.timeout_seconds,
                headers=self._headers(),
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": self.config.user_agent,
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.client.request(method, path, **kwargs)
        if response.is_error:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            logger.debug("GitHub %s %s -> %d: %s", method, path, response.status_code, message)
            raise GitHubError(response.status_code, message)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def list_recent_commits(self, owner: str, repo: str, limit: int) -> list[str]:
        commits = await self._request(
            "GET", f"/repos/{owner}/{repo}/commits", params={"per_page": limit}
        )
        return [commit["sha"] for commit in commits]

    async def get_default_branch(self, owner: str, repo: str) -> str:
        data = await self._request("GET", f"/repos/{owner}/{repo}")
        return data["default_branch"]

    async def get_commit(self, owner: str, repo: str, sha: str) -> CommitDetails:
        data = await self._request("GET", f"/repos/{owner}/{repo}/commits/{sha}")
        return CommitDetails.from_api(data)

    async def get_file(self, owner: str, repo: str, path: str, ref: str) -> RemoteFile:
        data = await self._request(
            "GET", f"/repos/{owner}/{repo}/contents/{quote(path)}", params={"ref": ref}
        )
        if isinstance(data, list) or data.get("type") not in (None, "file"):
            raise GitHubError(422, f"{path} is not a file")
        content = base64.b64decode(data.get("content") or "").decode("utf-8", errors="replace")
        return RemoteFile(path=path, sha=data["sha"], content=content)

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> str:
        data = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        return data["object"]["sha"]

    async def update_branch(
        self, owner: str, repo: str, branch: str, sha: str, force: bool = False
    ) -> None:
        await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
            json={"sha": sha, "force": force},
        )

    async def create_branch(self, owner: str, repo: str, branch: str, sha: str) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        branch: str,
        message: str,
        sha: str | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        await self._request("PUT", f"/repos/{owner}/{repo}/contents/{quote(path)}", json=body)

    async def list_open_pull_requests(
        self, owner: str, repo: str, head_branch: str
    ) -> list[PullRequest]:
        pulls = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "open", "head": f"{owner}:{head_branch}"},
        )
        return [PullRequest.from_api(pull) for pull in pulls]

    async def create_pull_request(
        self, owner: str, repo: str, title: str, head: str, base: str, body: str
    ) -> PullRequest:
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return PullRequest.from_api(data)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Global gateway instance
_gateway: RepositoryGateway | None = None


def get_gateway() -> RepositoryGateway:
    """Get the global repository gateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = GitHubGateway()
    return _gateway
