"""API router: repos, sync and review jobs, workflows, tracked files, webhooks."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from reposync import config
from reposync.errors import NotFoundError
from reposync.service import PullRequestMeta, ReposyncService

logger = logging.getLogger(__name__)

router = APIRouter()

# Set by the server lifespan; created lazily for direct router use.
_service: ReposyncService | None = None


# ── Lazy-initialized collaborators ──


def _get_sqlite_store():
    from reposync.storage.sqlite_store import SqliteStore
    store = SqliteStore(config.SQLITE_PATH)
    store.init_db()
    return store


def _get_service() -> ReposyncService:
    global _service
    if _service is None:
        from reposync.service import create_service
        _service = create_service()
    return _service


def _require_repo(store, repo_id: int) -> dict:
    repo = store.get_repo(repo_id)
    if not repo:
        raise HTTPException(status_code=404, detail="Repo not found")
    return repo


# ── Repos ──


class CreateRepoRequest(BaseModel):
    owner: str
    name: str
    default_branch: str = "main"
    auto_review: bool = False
    review_drafts: bool = False


class UpdateRepoRequest(BaseModel):
    default_branch: str | None = None
    auto_review: bool | None = None
    review_drafts: bool | None = None


@router.get("/repos")
def list_repos():
    """List all repositories."""
    store = _get_sqlite_store()
    try:
        return store.list_repos()
    finally:
        store.close()


@router.post("/repos")
def create_repo(req: CreateRepoRequest):
    """Register a repository to sync."""
    store = _get_sqlite_store()
    try:
        full_name = f"{req.owner}/{req.name}"
        if store.get_repo_by_full_name(full_name):
            raise HTTPException(status_code=409, detail=f"Repo '{full_name}' already exists")
        repo_id = store.insert_repo(
            req.owner, req.name,
            default_branch=req.default_branch,
            auto_review=req.auto_review,
            review_drafts=req.review_drafts,
        )
        return store.get_repo(repo_id)
    finally:
        store.close()


@router.get("/repos/{repo_id}")
def get_repo(repo_id: int):
    """Get a single repository by ID."""
    store = _get_sqlite_store()
    try:
        return _require_repo(store, repo_id)
    finally:
        store.close()


@router.patch("/repos/{repo_id}")
def update_repo(repo_id: int, req: UpdateRepoRequest):
    store = _get_sqlite_store()
    try:
        _require_repo(store, repo_id)
        store.update_repo(repo_id, **req.model_dump(exclude_none=True))
        return store.get_repo(repo_id)
    finally:
        store.close()


@router.delete("/repos/{repo_id}")
def delete_repo(repo_id: int):
    """Delete a repository and everything tracked for it."""
    store = _get_sqlite_store()
    try:
        _require_repo(store, repo_id)
        store.delete_repo(repo_id)
        return {"deleted": True, "repo_id": repo_id}
    finally:
        store.close()


# ── Sync jobs ──


class SyncRequest(BaseModel):
    branch: str | None = None
    trigger_type: str = "manual"
    commit_sha: str | None = None


@router.post("/repos/{repo_id}/sync")
def start_sync(repo_id: int, req: SyncRequest | None = None):
    """Start (or join) a sync of one branch."""
    req = req or SyncRequest()
    try:
        job_id = _get_service().start_sync(
            repo_id, req.branch, trigger_type=req.trigger_type, commit_sha=req.commit_sha
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"job_id": job_id}


@router.get("/repos/{repo_id}/sync")
def get_sync_status(repo_id: int, branch: str | None = Query(None)):
    """Latest sync job of a repo (optionally of one branch), or null."""
    return _get_service().get_sync_status(repo_id, branch)


# ── Review jobs ──


class ReviewRequest(BaseModel):
    pr_number: int
    title: str
    base_branch: str
    head_branch: str | None = None
    head_sha: str | None = None
    author: str | None = None
    url: str | None = None


@router.post("/repos/{repo_id}/reviews")
def start_review(repo_id: int, req: ReviewRequest):
    """Start a review of a pull request, replacing any earlier review of it."""
    meta = PullRequestMeta(**req.model_dump(exclude={"pr_number"}))
    try:
        job_id = _get_service().start_review(repo_id, req.pr_number, meta)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"job_id": job_id}


@router.get("/repos/{repo_id}/reviews")
def list_reviews(repo_id: int):
    store = _get_sqlite_store()
    try:
        return store.list_review_jobs(repo_id)
    finally:
        store.close()


@router.get("/repos/{repo_id}/reviews/{pr_number}")
def get_review_status(repo_id: int, pr_number: int):
    return _get_service().get_review_status(repo_id, pr_number)


# ── Workflows ──


@router.get("/workflows/{workflow_id}")
def get_workflow(workflow_id: str):
    """Workflow instance state and the keys of its checkpointed steps."""
    store = _get_sqlite_store()
    try:
        workflow = store.get_workflow(workflow_id)
        if not workflow:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return {**workflow, "steps": store.list_step_keys(workflow_id)}
    finally:
        store.close()


@router.post("/workflows/{workflow_id}/cancel")
def cancel_workflow(workflow_id: str):
    try:
        canceled = _get_service().cancel(workflow_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Workflow not found")
    if not canceled:
        raise HTTPException(status_code=409, detail="Workflow is not running")
    return {"workflow_id": workflow_id, "cancel_requested": True}


# ── Tracked files ──


class UpdateFileRequest(BaseModel):
    content: str
    branch: str | None = None


class FilePathsRequest(BaseModel):
    branch: str | None = None
    paths: list[str] | None = None


@router.get("/repos/{repo_id}/files")
def list_files(repo_id: int, branch: str | None = Query(None)):
    store = _get_sqlite_store()
    try:
        repo = _require_repo(store, repo_id)
        return store.list_files(repo_id, branch or repo["default_branch"])
    finally:
        store.close()


@router.post("/repos/{repo_id}/files/discard")
def discard_changes(repo_id: int, req: FilePathsRequest | None = None):
    """Restore synced content of locally modified files."""
    req = req or FilePathsRequest()
    store = _get_sqlite_store()
    try:
        repo = _require_repo(store, repo_id)
        count = store.discard_changes(repo_id, req.branch or repo["default_branch"], req.paths)
        return {"discarded": count}
    finally:
        store.close()


@router.post("/repos/{repo_id}/files/mark-clean")
def mark_files_clean(repo_id: int, req: FilePathsRequest):
    """Accept local edits as the new baseline."""
    store = _get_sqlite_store()
    try:
        repo = _require_repo(store, repo_id)
        count = store.mark_files_clean(repo_id, req.branch or repo["default_branch"], req.paths or [])
        return {"cleaned": count}
    finally:
        store.close()


@router.get("/repos/{repo_id}/files/{file_path:path}")
def get_file(repo_id: int, file_path: str, branch: str | None = Query(None)):
    store = _get_sqlite_store()
    try:
        repo = _require_repo(store, repo_id)
        record = store.get_file(repo_id, branch or repo["default_branch"], file_path)
        if not record:
            raise HTTPException(status_code=404, detail="File not found")
        return record
    finally:
        store.close()


@router.put("/repos/{repo_id}/files/{file_path:path}")
def update_file(repo_id: int, file_path: str, req: UpdateFileRequest):
    """Edit a tracked file locally; it stays dirty until discarded or marked clean."""
    store = _get_sqlite_store()
    try:
        repo = _require_repo(store, repo_id)
        branch = req.branch or repo["default_branch"]
        if not store.update_file_content(repo_id, branch, file_path, req.content):
            raise HTTPException(status_code=404, detail="File not found")
        return store.get_file(repo_id, branch, file_path)
    finally:
        store.close()


# ── GitHub webhooks ──


@router.post("/github/webhook")
async def github_webhook(request: Request):
    """Verify, deduplicate and route a GitHub delivery."""
    if not config.GITHUB_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")

    event = request.headers.get("x-github-event")
    delivery_id = request.headers.get("x-github-delivery")
    if not event or not delivery_id:
        raise HTTPException(status_code=400, detail="Missing GitHub event headers")

    body = await request.body()
    from reposync.webhooks import verify_signature
    if not verify_signature(config.GITHUB_WEBHOOK_SECRET, body, request.headers.get("x-hub-signature-256")):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    def _dispatch():
        from reposync.webhooks import WebhookDispatcher
        store = _get_sqlite_store()
        try:
            return WebhookDispatcher(store, _get_service()).handle(event, delivery_id, payload)
        finally:
            store.close()

    logger.info("Webhook %s delivery %s", event, delivery_id)
    try:
        return await run_in_threadpool(_dispatch)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
