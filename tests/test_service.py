"""Tests for starting and observing jobs through the service facade."""

from __future__ import annotations

import queue
from unittest.mock import MagicMock, patch

import pytest

from reposync.errors import NotFoundError
from reposync.indexer.embedder import ChunkEmbedder
from reposync.indexer.parser import CodeChunker
from reposync.pipelines.sync import SYNC_WORKFLOW, SyncArgs, SyncDeps, build_sync_workflow
from reposync.service import PullRequestMeta, ReposyncService
from reposync.storage.sqlite_store import SqliteStore
from reposync.workflow.outcomes import OutcomeReconciler
from reposync.workflow.status import SYNC_JOB

from tests.helpers import FakeRemote, create_job, make_embedding_provider

_PR = PullRequestMeta(title="Add login", base_branch="main", head_branch="feature/login", author="octocat")


@pytest.fixture
def mock_engine() -> MagicMock:
    return MagicMock()


@pytest.fixture
def service(store_factory, mock_engine) -> ReposyncService:
    """Service whose engine records launches instead of running them."""
    return ReposyncService(store_factory, mock_engine, reconciler=MagicMock())


class TestStartSync:
    def test_creates_pending_job_and_launches(self, service, mock_engine, store, repo_id) -> None:
        job_id = service.start_sync(repo_id)
        job = store.get_job("sync_jobs", job_id)
        assert job["phase"] == "pending"
        assert job["branch"] == "main"
        assert job["trigger_type"] == "manual"

        mock_engine.submit.assert_called_once_with(job["workflow_id"])
        workflow = store.get_workflow(job["workflow_id"])
        assert workflow["name"] == SYNC_WORKFLOW
        assert workflow["job_id"] == job_id
        assert workflow["status"] == "running"
        assert workflow["args"]["branch"] == "main"
        assert workflow["args"]["batch_size"] == 5

    def test_running_sync_is_joined(self, service, mock_engine, repo_id) -> None:
        first = service.start_sync(repo_id, "main")
        second = service.start_sync(repo_id, "main", trigger_type="push")
        assert first == second
        assert mock_engine.submit.call_count == 1

    def test_other_branch_gets_own_job(self, service, repo_id) -> None:
        assert service.start_sync(repo_id, "main") != service.start_sync(repo_id, "dev")

    def test_finished_sync_is_not_joined(self, service, store, repo_id) -> None:
        first = service.start_sync(repo_id)
        store.update_job("sync_jobs", first, phase="completed")
        assert service.start_sync(repo_id) != first

    def test_unknown_repo(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.start_sync(999)

    def test_unknown_trigger(self, service, repo_id) -> None:
        with pytest.raises(ValueError):
            service.start_sync(repo_id, trigger_type="cron")


class TestOrphanedJobs:
    @pytest.fixture
    def live_service(self, store_factory, mock_engine):
        """Service with a real reconciler, so orphaned jobs are actually patched."""
        svc = ReposyncService(store_factory, mock_engine, OutcomeReconciler(store_factory, queue.Queue()))
        yield svc
        svc.stop()

    def test_job_without_workflow_failed_on_start(self, live_service, store, repo_id) -> None:
        job_id, _ = create_job(store, SYNC_JOB, repo_id=repo_id, branch="main")
        live_service.start()
        job = store.get_job("sync_jobs", job_id)
        assert job["phase"] == "failed"
        assert job["error"] == "sync interrupted"

    def test_job_of_finished_workflow_failed_on_start(self, live_service, store, repo_id) -> None:
        job_id, wid = create_job(store, SYNC_JOB, repo_id=repo_id, branch="main")
        store.insert_workflow(wid, SYNC_WORKFLOW, job_id, {})
        store.finish_workflow(wid, "canceled")
        live_service.start()
        job = store.get_job("sync_jobs", job_id)
        assert job["phase"] == "failed"
        assert job["error"] == "sync canceled"

    def test_running_workflow_left_alone(self, live_service, store, repo_id) -> None:
        job_id, wid = create_job(store, SYNC_JOB, repo_id=repo_id, branch="main")
        store.insert_workflow(wid, SYNC_WORKFLOW, job_id, {})
        live_service.start()
        assert store.get_job("sync_jobs", job_id)["phase"] == "pending"

    def test_orphan_is_not_joined(self, live_service, mock_engine, store, repo_id) -> None:
        orphan, _ = create_job(store, SYNC_JOB, repo_id=repo_id, branch="main")
        job_id = live_service.start_sync(repo_id)
        assert job_id != orphan
        assert store.get_job("sync_jobs", orphan)["phase"] == "failed"
        assert mock_engine.submit.call_count == 1

    def test_failed_workflow_insert_leaves_no_job(self, service, mock_engine, store, repo_id) -> None:
        with patch.object(SqliteStore, "insert_workflow", side_effect=RuntimeError("disk I/O error")):
            with pytest.raises(RuntimeError):
                service.start_sync(repo_id)
        assert store.get_latest_sync_job(repo_id) is None
        mock_engine.submit.assert_not_called()


class TestSyncStatus:
    def test_absent_before_first_sync(self, service, repo_id) -> None:
        assert service.get_sync_status(repo_id) is None

    def test_latest_job_returned(self, service, store, repo_id) -> None:
        first = service.start_sync(repo_id)
        store.update_job("sync_jobs", first, phase="completed", started_at="2020-01-01T00:00:00+00:00")
        second = service.start_sync(repo_id)
        assert service.get_sync_status(repo_id)["id"] == second
        assert service.get_sync_status(repo_id, "main")["id"] == second
        assert service.get_sync_status(repo_id, "dev") is None


class TestStartReview:
    def test_creates_review_job(self, service, mock_engine, store, repo_id) -> None:
        job_id = service.start_review(repo_id, 42, _PR)
        job = service.get_review_status(repo_id, 42)
        assert job["id"] == job_id
        assert job["phase"] == "pending"
        assert job["pr_title"] == "Add login"
        assert job["pr_author"] == "octocat"
        assert store.get_workflow(job["workflow_id"])["args"]["pr_number"] == 42
        mock_engine.submit.assert_called_once_with(job["workflow_id"])

    def test_retrigger_reuses_record_and_cancels_previous(self, service, mock_engine, store, repo_id) -> None:
        first = service.start_review(repo_id, 42, _PR)
        old_workflow = store.get_job("review_jobs", first)["workflow_id"]
        store.update_job("review_jobs", first, phase="completed", summary="old")

        second = service.start_review(repo_id, 42, _PR.model_copy(update={"title": "Add login v2"}))
        assert second == first
        mock_engine.cancel.assert_called_once_with(old_workflow)
        job = store.get_job("review_jobs", first)
        assert job["phase"] == "pending"
        assert job["summary"] is None
        assert job["pr_title"] == "Add login v2"
        assert job["workflow_id"] != old_workflow

    def test_absent_review(self, service, repo_id) -> None:
        assert service.get_review_status(repo_id, 1) is None


class TestCancel:
    def test_unknown_workflow(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.cancel("nope")

    def test_delegates_to_engine(self, service, mock_engine, store) -> None:
        store.insert_workflow("wf1", SYNC_WORKFLOW, "job1", {})
        mock_engine.cancel.return_value = True
        assert service.cancel("wf1") is True
        mock_engine.cancel.assert_called_once_with("wf1")


class TestEndToEnd:
    def test_background_sync_completes(self, store_factory, engine, store, repo_id) -> None:
        remote = FakeRemote({"src/a.ts": "export function a() {}\n"})
        engine.register(
            build_sync_workflow(
                SyncDeps(
                    remote=remote,
                    chunker=CodeChunker(),
                    embedder=ChunkEmbedder(make_embedding_provider()),
                    vector_store_factory=lambda rid: None,
                )
            )
        )
        service = ReposyncService(store_factory, engine, OutcomeReconciler(store_factory, engine.outcomes))
        job_id = service.start_sync(repo_id)
        engine.wait(store.get_job("sync_jobs", job_id)["workflow_id"], timeout=30)
        service.stop()

        job = service.get_sync_status(repo_id)
        assert job["id"] == job_id
        assert job["phase"] == "completed"
        assert store.get_repo(repo_id)["indexed_branches"] == ["main"]

    def test_start_resumes_interrupted_sync(self, store_factory, engine, store, repo_id) -> None:
        remote = FakeRemote({"src/a.ts": "export function a() {}\n"})
        engine.register(
            build_sync_workflow(
                SyncDeps(
                    remote=remote,
                    chunker=CodeChunker(),
                    embedder=ChunkEmbedder(make_embedding_provider()),
                    vector_store_factory=lambda rid: None,
                )
            )
        )
        # A previous process died with this sync still running
        job_id, wid = create_job(store, SYNC_JOB, repo_id=repo_id, branch="main", trigger_type="manual")
        args = SyncArgs(repo_id=repo_id, owner="acme", name="web", branch="main")
        store.insert_workflow(wid, SYNC_WORKFLOW, job_id, args.model_dump(mode="json"))

        service = ReposyncService(store_factory, engine, OutcomeReconciler(store_factory, engine.outcomes))
        assert service.start() == [wid]
        try:
            job = service.sync_and_wait(repo_id, timeout=30)
            assert engine.wait(wid, timeout=30).kind == "completed"
        finally:
            service.stop()

        assert job["phase"] == "completed"
        assert store.get_job("sync_jobs", job_id)["phase"] == "completed"
