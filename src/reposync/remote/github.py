"""GitHub REST API client for manifests, file contents and pull requests.

Every read is idempotent and safe to retry. HTTP failures are mapped onto the
engine's error taxonomy: rate limits, timeouts and 5xx responses raise
``GitHubTransientError`` subclasses, everything else ``GitHubTerminalError``.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from reposync.errors import ReposyncError, TerminalError, TransientError

logger = logging.getLogger(__name__)


class GitHubClientError(ReposyncError):
    """Raised when a GitHub API request fails."""


class GitHubTransientError(GitHubClientError, TransientError):
    """Timeouts, connection failures and server errors."""


class RateLimitExceeded(GitHubTransientError):
    """Raised when GitHub rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}")


class GitHubTerminalError(GitHubClientError, TerminalError):
    """Auth failures, missing resources and malformed responses."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass
class ManifestItem:
    path: str
    kind: str  # file | tree
    content_hash: str | None
    size: int | None = None


@dataclass
class Manifest:
    items: list[ManifestItem]
    truncated: bool = False


@dataclass
class FileContent:
    content: str
    hash: str


class RemoteSource(Protocol):
    """What the sync pipeline consumes from a remote repository host."""

    def get_manifest(self, owner: str, repo: str, branch: str) -> Manifest: ...

    def get_content(self, owner: str, repo: str, path: str, ref: str) -> FileContent: ...


class PullRequestHost(Protocol):
    """What the review pipeline consumes from a code host."""

    def get_pull_request(self, owner: str, repo: str, pr_number: int) -> dict[str, Any]: ...

    def get_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[dict[str, Any]]: ...

    def create_review(
        self, owner: str, repo: str, pr_number: int, body: str, event: str
    ) -> dict[str, Any]: ...


class GitHubClient:
    """Synchronous GitHub REST client using httpx with Bearer token auth."""

    BASE_URL = "https://api.github.com"

    CONNECT_TIMEOUT = 5.0
    READ_TIMEOUT = 30.0
    WRITE_TIMEOUT = 10.0
    POOL_TIMEOUT = 5.0

    DEFAULT_PER_PAGE = 100

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "reposync/0.1",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=self.CONNECT_TIMEOUT,
                read=self.READ_TIMEOUT,
                write=self.WRITE_TIMEOUT,
                pool=self.POOL_TIMEOUT,
            ),
            transport=transport,
        )

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ── Repository contents ──

    def get_manifest(self, owner: str, repo: str, branch: str) -> Manifest:
        """List every blob and tree on a branch via the recursive git trees API."""
        data = self._request("GET", f"/repos/{owner}/{repo}/git/trees/{branch}",
                             params={"recursive": "1"})
        if not isinstance(data, dict) or "tree" not in data:
            raise GitHubTerminalError(f"Malformed tree response for {owner}/{repo}@{branch}")
        items = []
        for entry in data["tree"]:
            entry_type = entry.get("type")
            if entry_type not in ("blob", "tree"):
                continue
            items.append(
                ManifestItem(
                    path=entry["path"],
                    kind="file" if entry_type == "blob" else "tree",
                    content_hash=entry.get("sha"),
                    size=entry.get("size"),
                )
            )
        truncated = bool(data.get("truncated", False))
        if truncated:
            logger.warning("Tree listing for %s/%s@%s was truncated", owner, repo, branch)
        return Manifest(items=items, truncated=truncated)

    def get_content(self, owner: str, repo: str, path: str, ref: str) -> FileContent:
        """Fetch and decode one file's content at a ref."""
        data = self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})
        if not isinstance(data, dict) or data.get("type") != "file":
            raise GitHubTerminalError(f"{path} is not a file in {owner}/{repo}@{ref}")
        encoded = data.get("content") or ""
        if data.get("encoding") == "base64":
            content = base64.b64decode(encoded).decode("utf-8", errors="replace")
        else:
            content = encoded
        return FileContent(content=content, hash=data.get("sha", ""))

    # ── Pull requests ──

    def get_pull_request(self, owner: str, repo: str, pr_number: int) -> dict[str, Any]:
        return self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")

    def get_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[dict[str, Any]]:
        """List changed files of a PR (filename, status, additions, deletions, patch)."""
        files: list[dict[str, Any]] = []
        page = 1
        while True:
            batch = self._request(
                "GET",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/files",
                params={"per_page": str(self.DEFAULT_PER_PAGE), "page": str(page)},
            )
            files.extend(batch)
            if len(batch) < self.DEFAULT_PER_PAGE:
                return files
            page += 1

    def create_review(
        self, owner: str, repo: str, pr_number: int, body: str, event: str
    ) -> dict[str, Any]:
        """Post a review with the given event (APPROVE, REQUEST_CHANGES, COMMENT)."""
        return self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls/{pr_number}/reviews",
            json={"body": body, "event": event},
        )

    # ── Internal ──

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GitHubTransientError(f"Timeout on {method} {path}: {e}") from e
        except httpx.TransportError as e:
            raise GitHubTransientError(f"Connection error on {method} {path}: {e}") from e

        if response.status_code < 400:
            try:
                return response.json()
            except ValueError as e:
                raise GitHubTerminalError(f"Malformed JSON from {method} {path}") from e

        self._raise_for_status(method, path, response)

    @staticmethod
    def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
        status = response.status_code
        if status == 429 or (
            status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            reset = response.headers.get("X-RateLimit-Reset")
            retry_after = response.headers.get("Retry-After")
            if reset:
                reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)
            elif retry_after:
                reset_at = datetime.fromtimestamp(
                    datetime.now(timezone.utc).timestamp() + int(retry_after), tz=timezone.utc
                )
            else:
                reset_at = datetime.now(timezone.utc)
            raise RateLimitExceeded(reset_at)
        if status >= 500:
            raise GitHubTransientError(f"GitHub {status} on {method} {path}")

        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise GitHubTerminalError(f"GitHub {status} on {method} {path}: {message}", status)
