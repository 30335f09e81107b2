"""Shared test helpers: fake remotes and provider stubs."""

from __future__ import annotations

import hashlib
import json
import uuid
from unittest.mock import MagicMock

from reposync.remote.github import FileContent, Manifest, ManifestItem
from reposync.workflow.engine import new_workflow_id
from reposync.workflow.status import JobKind, StatusTracker


def _sha(content: str) -> str:
    return hashlib.sha1(content.encode()).hexdigest()


def _fake_embed(texts: list[str]) -> list[list[float]]:
    """Return deterministic fake embeddings based on text hash."""
    results = []
    for t in texts:
        h = hashlib.md5(t.encode()).digest()
        results.append([float(b) / 255.0 for b in h[:8]])
    return results


def make_embedding_provider() -> MagicMock:
    provider = MagicMock()
    provider.embed = MagicMock(side_effect=_fake_embed)
    return provider


class FakeRemote:
    """In-memory remote source serving a dict of path -> content."""

    def __init__(self, files: dict[str, str] | None = None, truncated: bool = False) -> None:
        self.files = dict(files or {})
        self.truncated = truncated
        self.fail_paths: dict[str, Exception] = {}
        self.manifest_errors: list[Exception] = []
        self.manifest_calls = 0
        self.content_calls: list[str] = []

    def get_manifest(self, owner: str, repo: str, branch: str) -> Manifest:
        self.manifest_calls += 1
        if self.manifest_errors:
            raise self.manifest_errors.pop(0)
        items = [
            ManifestItem(path=p, kind="file", content_hash=_sha(c), size=len(c.encode()))
            for p, c in sorted(self.files.items())
        ]
        return Manifest(items=items, truncated=self.truncated)

    def get_content(self, owner: str, repo: str, path: str, ref: str) -> FileContent:
        self.content_calls.append(path)
        if path in self.fail_paths:
            raise self.fail_paths[path]
        content = self.files[path]
        return FileContent(content=content, hash=_sha(content))


class FakePullRequestHost:
    """Records posted reviews; serves one PR."""

    def __init__(self, files: list[dict] | None = None, body: str = "Adds a feature") -> None:
        self.files = files if files is not None else [
            {"filename": "src/a.ts", "status": "modified", "additions": 3, "deletions": 1,
             "patch": "@@ -1 +1 @@\n-old\n+new"},
        ]
        self.body = body
        self.reviews: list[dict] = []
        self.create_calls = 0
        # Raised by create_review after the review is recorded, as a lost response
        self.post_errors: list[Exception] = []

    def get_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        return {"number": pr_number, "body": self.body}

    def get_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[dict]:
        return list(self.files)

    def create_review(self, owner: str, repo: str, pr_number: int, body: str, event: str) -> dict:
        self.create_calls += 1
        self.reviews.append({"pr_number": pr_number, "body": body, "event": event})
        if self.post_errors:
            raise self.post_errors.pop(0)
        return {"id": 1000 + len(self.reviews)}


def review_json(findings: list[dict] | None = None, summary: str = "Looks reasonable.") -> str:
    return json.dumps({"summary": summary, "findings": findings or []})


def create_job(store, kind: JobKind, **fields) -> tuple[str, str]:
    """Insert a pending job bound to a fresh workflow id. Returns (job_id, workflow_id)."""
    job_id = uuid.uuid4().hex
    workflow_id = new_workflow_id()
    StatusTracker(store, kind).upsert(job_id, owner=workflow_id, phase="pending", **fields)
    return job_id, workflow_id
