"""Tests for the incremental sync workflow."""

from __future__ import annotations

import pytest

from reposync.indexer.embedder import ChunkEmbedder
from reposync.indexer.parser import CodeChunker
from reposync.pipelines.sync import SYNC_WORKFLOW, SyncArgs, SyncDeps, build_sync_workflow
from reposync.remote.github import GitHubTerminalError, GitHubTransientError
from reposync.storage.vector_store import VectorStore
from reposync.workflow.status import SYNC_JOB

from tests.helpers import FakeRemote, create_job, make_embedding_provider


class _Crash(BaseException):
    """Simulates the process dying mid-workflow."""


def _source(name: str) -> str:
    return f"export function {name}() {{\n  return '{name}';\n}}\n"


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote(
        {
            "src/a.ts": _source("a"),
            "src/b.ts": _source("b"),
            "README.md": "# web\n",
        }
    )


@pytest.fixture
def embedding_provider():
    return make_embedding_provider()


@pytest.fixture
def vector_stores() -> list:
    """Successive vector_store_factory results; the last one repeats. None disables vector writes."""
    return []


@pytest.fixture
def deps(remote, embedding_provider, vector_stores) -> SyncDeps:
    def factory(repo_id: int):
        if not vector_stores:
            return None
        result = vector_stores.pop(0) if len(vector_stores) > 1 else vector_stores[0]
        if isinstance(result, BaseException):
            raise result
        return result

    return SyncDeps(
        remote=remote,
        chunker=CodeChunker(),
        embedder=ChunkEmbedder(embedding_provider),
        vector_store_factory=factory,
        max_workers=2,
    )


@pytest.fixture
def sync_engine(engine, deps):
    engine.register(build_sync_workflow(deps))
    return engine


def _sync(engine, store, repo_id: int, branch: str = "main", batch_size: int = 5):
    job_id, wid = create_job(store, SYNC_JOB, repo_id=repo_id, branch=branch)
    args = SyncArgs(
        repo_id=repo_id, owner="acme", name="web", branch=branch, batch_size=batch_size
    )
    outcome = engine.run_inline(SYNC_WORKFLOW, args, job_id, workflow_id=wid)
    return outcome, store.get_job("sync_jobs", job_id), wid


class TestInitialSync:
    def test_indexes_supported_files(self, sync_engine, store, repo_id, remote) -> None:
        outcome, job, _ = _sync(sync_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert job["phase"] == "completed"
        assert job["progress"] == 100
        assert job["total_items"] == 2
        assert job["processed_items"] == 2
        assert job["failed_items"] == 0
        assert job["completed_at"] is not None

        paths = [f["path"] for f in store.list_files(repo_id, "main")]
        assert paths == ["src/a.ts", "src/b.ts"]
        chunks = store.get_chunks_by_file(repo_id, "main", "src/a.ts")
        assert [c["name"] for c in chunks] == ["a"]
        assert chunks[0]["docstring"] == "typescript code"
        assert job["stored_units"] == job["total_units"] == 2

    def test_marks_branch_synced(self, sync_engine, store, repo_id) -> None:
        _sync(sync_engine, store, repo_id, branch="dev")
        repo = store.get_repo(repo_id)
        assert repo["indexed_branches"] == ["dev"]
        assert repo["last_indexed_at"] is not None

    def test_step_keys_in_order(self, sync_engine, store, repo_id) -> None:
        _, _, wid = _sync(sync_engine, store, repo_id)
        assert store.list_step_keys(wid) == [
            "mark:cloning",
            "diff_against_remote",
            "mark:parsing",
            "mark:embedding",
            "process_fetch_batch:0",
            "mark:storing",
            "mark_branch_synced",
            "mark:completed",
        ]


class TestIncrementalSync:
    def test_unchanged_resync_fetches_nothing(self, sync_engine, store, repo_id, remote) -> None:
        _sync(sync_engine, store, repo_id)
        fetched = len(remote.content_calls)

        outcome, job, _ = _sync(sync_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert len(remote.content_calls) == fetched
        assert job["total_items"] == 0
        assert job["progress"] == 100
        assert len(store.list_files(repo_id, "main")) == 2

    def test_changed_and_removed_files(self, sync_engine, store, repo_id, remote) -> None:
        _sync(sync_engine, store, repo_id)
        remote.content_calls.clear()
        remote.files["src/a.ts"] = _source("a") + _source("a2")
        del remote.files["src/b.ts"]

        _, job, _ = _sync(sync_engine, store, repo_id)
        assert remote.content_calls == ["src/a.ts"]
        assert job["total_items"] == 2
        assert job["processed_items"] == 2
        assert store.get_file(repo_id, "main", "src/b.ts") is None
        assert store.get_chunks_by_file(repo_id, "main", "src/b.ts") == []
        names = [c["name"] for c in store.get_chunks_by_file(repo_id, "main", "src/a.ts")]
        assert names == ["a", "a2"]

    def test_branches_are_independent(self, sync_engine, store, repo_id, remote) -> None:
        _sync(sync_engine, store, repo_id, branch="main")
        _, job, _ = _sync(sync_engine, store, repo_id, branch="dev")
        assert job["total_items"] == 2
        assert len(store.list_files(repo_id, "dev")) == 2


class TestBatches:
    def test_fetches_split_into_batches(self, sync_engine, store, repo_id, remote) -> None:
        remote.files = {f"src/f{i:02d}.ts": _source(f"f{i}") for i in range(12)}
        _, job, wid = _sync(sync_engine, store, repo_id, batch_size=5)
        keys = store.list_step_keys(wid)
        assert [k for k in keys if k.startswith("process_fetch_batch")] == [
            "process_fetch_batch:0", "process_fetch_batch:1", "process_fetch_batch:2",
        ]
        assert job["processed_items"] == 12

    def test_deletes_split_into_batches(self, sync_engine, store, repo_id, remote) -> None:
        remote.files = {f"src/f{i:02d}.ts": _source(f"f{i}") for i in range(7)}
        _sync(sync_engine, store, repo_id)
        remote.files = {}
        _, job, wid = _sync(sync_engine, store, repo_id, batch_size=5)
        keys = store.list_step_keys(wid)
        assert [k for k in keys if k.startswith("delete_stale_batch")] == [
            "delete_stale_batch:0", "delete_stale_batch:1",
        ]
        assert job["processed_items"] == 7
        assert store.list_files(repo_id, "main") == []

    def test_failed_item_does_not_fail_batch(self, sync_engine, store, repo_id, remote) -> None:
        remote.files["src/c.ts"] = _source("c")
        remote.fail_paths["src/c.ts"] = GitHubTerminalError("Not Found", 404)

        outcome, job, _ = _sync(sync_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert job["failed_items"] == 1
        assert job["processed_items"] == 2
        assert store.get_file(repo_id, "main", "src/c.ts") is None

        # The failed file is picked up again by the next run.
        del remote.fail_paths["src/c.ts"]
        _, job, _ = _sync(sync_engine, store, repo_id)
        assert job["total_items"] == 1
        assert store.get_file(repo_id, "main", "src/c.ts") is not None


class TestFailures:
    def test_transient_manifest_error_is_retried(self, sync_engine, store, repo_id, remote) -> None:
        remote.manifest_errors = [GitHubTransientError("timeout"), GitHubTransientError("502")]
        outcome, job, _ = _sync(sync_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert remote.manifest_calls == 3
        assert job["phase"] == "completed"

    def test_terminal_manifest_error_fails_job(self, sync_engine, store, repo_id, remote) -> None:
        remote.manifest_errors = [GitHubTerminalError("GitHub 401: Bad credentials", 401)]
        outcome, job, _ = _sync(sync_engine, store, repo_id)
        assert outcome.kind == "failed"
        assert remote.manifest_calls == 1
        assert job["phase"] == "failed"
        assert "Bad credentials" in job["error"]
        assert store.list_files(repo_id, "main") == []

    def test_crash_resumes_at_pending_batch(
        self, sync_engine, store, repo_id, remote, vector_stores
    ) -> None:
        remote.files = {f"src/f{i:02d}.ts": _source(f"f{i}") for i in range(8)}
        # Batch 0 gets no vector store; batch 1 dies after fetching.
        vector_stores.extend([None, _Crash(), None])
        job_id, wid = create_job(store, SYNC_JOB, repo_id=repo_id, branch="main")
        args = SyncArgs(repo_id=repo_id, owner="acme", name="web", branch="main", batch_size=5)
        with pytest.raises(_Crash):
            sync_engine.run_inline(SYNC_WORKFLOW, args, job_id, workflow_id=wid)

        job = store.get_job("sync_jobs", job_id)
        assert job["phase"] == "embedding"
        assert job["processed_items"] == 5
        assert "process_fetch_batch:0" in store.list_step_keys(wid)

        remote.content_calls.clear()
        outcome = sync_engine.execute(wid)
        assert outcome.kind == "completed"
        assert sorted(remote.content_calls) == [f"src/f{i:02d}.ts" for i in range(5, 8)]
        job = store.get_job("sync_jobs", job_id)
        assert job["processed_items"] == 8
        assert job["progress"] == 100
        assert len(store.list_files(repo_id, "main")) == 8


class TestLocalEdits:
    def test_dirty_file_not_overwritten(self, sync_engine, store, repo_id, remote) -> None:
        _sync(sync_engine, store, repo_id)
        store.update_file_content(repo_id, "main", "src/a.ts", "// local edit\n")
        remote.files["src/a.ts"] = _source("changed")

        _, job, _ = _sync(sync_engine, store, repo_id)
        record = store.get_file(repo_id, "main", "src/a.ts")
        assert record["content"] == "// local edit\n"
        assert record["dirty"] is True
        assert job["processed_items"] == 1
        assert "src/a.ts" not in remote.content_calls[2:]

    def test_dirty_file_not_deleted(self, sync_engine, store, repo_id, remote) -> None:
        _sync(sync_engine, store, repo_id)
        store.update_file_content(repo_id, "main", "src/b.ts", "// keep me\n")
        del remote.files["src/b.ts"]

        _sync(sync_engine, store, repo_id)
        assert store.get_file(repo_id, "main", "src/b.ts")["content"] == "// keep me\n"


class TestTruncatedManifest:
    def test_truncated_listing_never_deletes(self, sync_engine, store, repo_id, remote) -> None:
        _sync(sync_engine, store, repo_id)
        del remote.files["src/b.ts"]
        remote.truncated = True

        outcome, job, _ = _sync(sync_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert job["total_items"] == 0
        assert store.get_file(repo_id, "main", "src/b.ts") is not None


class TestVectorIndex:
    def test_vectors_follow_tracked_files(
        self, sync_engine, store, repo_id, remote, vector_stores, tmp_path
    ) -> None:
        vs = VectorStore(tmp_path / "lancedb", dims=8, table_name=f"chunks_{repo_id}")
        vector_stores.append(vs)

        _sync(sync_engine, store, repo_id)
        assert vs.count() == 2

        del remote.files["src/b.ts"]
        _sync(sync_engine, store, repo_id)
        assert vs.count() == 1
        results = vs.search([0.5] * 8, branch="main", limit=5)
        assert [r.file_path for r in results] == ["src/a.ts"]
