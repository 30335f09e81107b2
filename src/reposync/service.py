"""Entry points for starting and observing sync and review jobs."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Callable

from pydantic import BaseModel

from reposync import config
from reposync.errors import NotFoundError
from reposync.indexer.embedder import ChunkEmbedder
from reposync.indexer.parser import CodeChunker
from reposync.pipelines.review import REVIEW_WORKFLOW, ReviewArgs, ReviewDeps, build_review_workflow
from reposync.pipelines.sync import SYNC_WORKFLOW, SyncArgs, SyncDeps, build_sync_workflow
from reposync.provider import GeminiProvider
from reposync.remote.github import GitHubClient
from reposync.storage.sqlite_store import SqliteStore
from reposync.storage.vector_store import VectorStore
from reposync.workflow.engine import RetryPolicy, WorkflowEngine, new_workflow_id
from reposync.workflow.outcomes import OutcomeReconciler
from reposync.workflow.status import REVIEW_JOB, SYNC_JOB, JobKind, StatusTracker

logger = logging.getLogger(__name__)

TRIGGER_TYPES = ("manual", "push", "initial")


class PullRequestMeta(BaseModel):
    title: str
    base_branch: str
    head_branch: str | None = None
    head_sha: str | None = None
    author: str | None = None
    url: str | None = None


class ReposyncService:
    """Creates job records and launches the workflow bound to each one."""

    def __init__(
        self,
        store_factory: Callable[[], SqliteStore],
        engine: WorkflowEngine,
        reconciler: OutcomeReconciler | None = None,
        batch_size: int = config.BATCH_SIZE,
    ) -> None:
        self._store_factory = store_factory
        self.engine = engine
        self.reconciler = reconciler or OutcomeReconciler(store_factory, engine.outcomes)
        self._batch_size = batch_size
        # Serializes the check-then-create of jobs sharing a natural key.
        self._lock = threading.Lock()

    def start(self) -> list[str]:
        """Start consuming outcomes, fail orphaned jobs and resume workflows left running."""
        self.reconciler.start()
        with self._lock:
            store = self._store_factory()
            try:
                self.reconciler.reconcile_orphans(store)
            finally:
                store.close()
        return self.engine.recover()

    def stop(self) -> None:
        self.engine.shutdown(wait=True)
        self.reconciler.stop()
        self.reconciler.drain()

    # ── Sync ──

    def start_sync(
        self,
        repo_id: int,
        branch: str | None = None,
        trigger_type: str = "manual",
        commit_sha: str | None = None,
    ) -> str:
        """Create a sync job for (repo, branch) and launch its workflow.

        If a sync of the same branch is still running, its job id is returned
        and nothing new is started.
        """
        if trigger_type not in TRIGGER_TYPES:
            raise ValueError(f"Unknown trigger type {trigger_type!r}")

        with self._lock:
            store = self._store_factory()
            try:
                repo = self._require_repo(store, repo_id)
                branch = branch or repo["default_branch"]
                active = store.get_active_sync_job(repo_id, branch)
                if active is not None and self._is_live(store, SYNC_JOB, active):
                    logger.info(
                        "Sync of %s@%s already running as job %s",
                        repo["full_name"], branch, active["id"],
                    )
                    return active["id"]

                job_id = uuid.uuid4().hex
                workflow_id = new_workflow_id()
                args = SyncArgs(
                    repo_id=repo_id,
                    owner=repo["owner"],
                    name=repo["name"],
                    branch=branch,
                    commit_sha=commit_sha,
                    batch_size=self._batch_size,
                )
                with store.transaction():
                    StatusTracker(store, SYNC_JOB).upsert(
                        job_id,
                        owner=workflow_id,
                        repo_id=repo_id,
                        branch=branch,
                        trigger_type=trigger_type,
                        commit_sha=commit_sha,
                        phase="pending",
                    )
                    store.insert_workflow(workflow_id, SYNC_WORKFLOW, job_id, args.model_dump(mode="json"))
            finally:
                store.close()

            self.engine.submit(workflow_id)
        logger.info("Started %s sync of %s@%s as job %s", trigger_type, repo["full_name"], branch, job_id)
        return job_id

    def sync_and_wait(
        self,
        repo_id: int,
        branch: str | None = None,
        trigger_type: str = "manual",
        timeout: float | None = None,
    ) -> dict:
        """Start (or join) a sync and block until its workflow finishes.

        Call ``start()`` first so a sync left running by a dead process is
        resumed here instead of being joined and never executed.
        """
        job_id = self.start_sync(repo_id, branch, trigger_type=trigger_type)
        job = self._get_job(SYNC_JOB.table, job_id)
        if job.get("workflow_id"):
            outcome = self.engine.wait(job["workflow_id"], timeout=timeout)
            if outcome is None:
                logger.warning("Sync job %s is not executing in this process", job_id)
        return self._get_job(SYNC_JOB.table, job_id)

    def get_sync_status(self, repo_id: int, branch: str | None = None) -> dict | None:
        store = self._store_factory()
        try:
            return store.get_latest_sync_job(repo_id, branch)
        finally:
            store.close()

    # ── Review ──

    def start_review(self, repo_id: int, pr_number: int, pr: PullRequestMeta) -> str:
        """Create or reset the review job of a PR and launch its workflow.

        A PR has at most one review job. Re-triggering it cancels the previous
        workflow and reuses the record.
        """
        with self._lock:
            store = self._store_factory()
            try:
                repo = self._require_repo(store, repo_id)
                tracker = StatusTracker(store, REVIEW_JOB)
                workflow_id = new_workflow_id()
                fields = dict(
                    pr_title=pr.title,
                    pr_author=pr.author,
                    pr_url=pr.url,
                    base_branch=pr.base_branch,
                    head_branch=pr.head_branch,
                    head_sha=pr.head_sha,
                )
                args = ReviewArgs(
                    repo_id=repo_id,
                    owner=repo["owner"],
                    name=repo["name"],
                    pr_number=pr_number,
                    pr_title=pr.title,
                    base_branch=pr.base_branch,
                    head_branch=pr.head_branch,
                    pr_author=pr.author,
                    pr_url=pr.url,
                )
                existing = store.get_review_job_by_pr(repo_id, pr_number)
                if existing is not None and existing.get("workflow_id"):
                    self.engine.cancel(existing["workflow_id"])
                with store.transaction():
                    if existing is not None:
                        job_id = existing["id"]
                        tracker.reset(job_id, owner=workflow_id, **fields)
                    else:
                        job_id = uuid.uuid4().hex
                        tracker.upsert(
                            job_id,
                            owner=workflow_id,
                            repo_id=repo_id,
                            pr_number=pr_number,
                            phase="pending",
                            **fields,
                        )
                    store.insert_workflow(workflow_id, REVIEW_WORKFLOW, job_id, args.model_dump(mode="json"))
            finally:
                store.close()

            self.engine.submit(workflow_id)
        logger.info("Started review of %s#%d as job %s", repo["full_name"], pr_number, job_id)
        return job_id

    def get_review_status(self, repo_id: int, pr_number: int) -> dict | None:
        store = self._store_factory()
        try:
            return store.get_review_job_by_pr(repo_id, pr_number)
        finally:
            store.close()

    # ── Workflows ──

    def cancel(self, workflow_id: str) -> bool:
        """Request cancellation of a running workflow instance."""
        store = self._store_factory()
        try:
            if store.get_workflow(workflow_id) is None:
                raise NotFoundError(f"Workflow {workflow_id} not found")
        finally:
            store.close()
        return self.engine.cancel(workflow_id)

    def _get_job(self, table: str, job_id: str) -> dict:
        store = self._store_factory()
        try:
            job = store.get_job(table, job_id)
        finally:
            store.close()
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _is_live(self, store: SqliteStore, kind: JobKind, job: dict) -> bool:
        """True while the job's workflow is running; otherwise fail the orphan."""
        workflow = store.get_workflow(job["workflow_id"]) if job.get("workflow_id") else None
        if workflow is not None and workflow["status"] == "running":
            return True
        logger.warning("%s job %s has no running workflow", kind.name.capitalize(), job["id"])
        self.reconciler.reconcile_orphan(store, kind, job, workflow)
        return False

    @staticmethod
    def _require_repo(store: SqliteStore, repo_id: int) -> dict:
        repo = store.get_repo(repo_id)
        if repo is None:
            raise NotFoundError(f"Repo {repo_id} not found")
        return repo


def create_service(
    sqlite_path: Path | None = None,
    lancedb_path: Path | None = None,
    github: GitHubClient | None = None,
    provider: GeminiProvider | None = None,
    retry_policy: RetryPolicy | None = None,
) -> ReposyncService:
    """Wire the engine, both workflows and the reconciler from configuration."""
    sqlite_path = sqlite_path or config.SQLITE_PATH
    lancedb_path = lancedb_path or config.LANCEDB_PATH

    store = SqliteStore(sqlite_path)
    store.init_db()
    store.close()

    def store_factory() -> SqliteStore:
        return SqliteStore(sqlite_path)

    def vector_store_factory(repo_id: int) -> VectorStore:
        return VectorStore(
            lancedb_path,
            dims=config.EMBEDDING_DIMS,
            table_name=config.get_lancedb_table_name(repo_id),
        )

    github = github or GitHubClient(config.GITHUB_TOKEN, config.GITHUB_API_URL)
    provider = provider or GeminiProvider()
    embedder = ChunkEmbedder(provider, provider)

    engine = WorkflowEngine(store_factory, retry_policy=retry_policy)
    engine.register(
        build_sync_workflow(
            SyncDeps(
                remote=github,
                chunker=CodeChunker(),
                embedder=embedder,
                vector_store_factory=vector_store_factory,
            )
        )
    )
    engine.register(
        build_review_workflow(
            ReviewDeps(
                github=github,
                generator=provider,
                embedder=embedder,
                vector_store_factory=vector_store_factory,
            )
        )
    )
    return ReposyncService(store_factory, engine)
