"""Incremental sync workflow: diff a branch against the remote, then index the changes.

Steps, in order:

    mark(cloning) -> diff_against_remote -> mark(parsing, totals)
    -> delete_stale_batch x N -> mark(embedding) -> process_fetch_batch x M
    -> mark(storing) -> mark_branch_synced -> mark(completed)

Each batch is its own checkpointed step. Batch steps carry the running
counters of the batches before them, so re-running a batch after a crash
writes the same totals instead of adding to them.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel

from reposync import config
from reposync.diff import diff
from reposync.indexer.embedder import ChunkEmbedder
from reposync.indexer.parser import CodeChunker
from reposync.indexer.paths import is_indexable
from reposync.remote.github import FileContent, ManifestItem, RemoteSource
from reposync.storage.sqlite_store import CodeChunk
from reposync.storage.vector_store import VectorStore
from reposync.workflow.batching import batch_count, chunk
from reposync.workflow.engine import Step, StepContext, Workflow, WorkflowContext
from reposync.workflow.status import SYNC_JOB, StatusTracker

logger = logging.getLogger(__name__)

SYNC_WORKFLOW = "sync"


@dataclass
class SyncDeps:
    remote: RemoteSource
    chunker: CodeChunker
    embedder: ChunkEmbedder
    vector_store_factory: Callable[[int], VectorStore | None]
    max_workers: int = 5
    max_file_size: int = config.MAX_FILE_SIZE


# ── Step inputs and outputs ──


class SyncArgs(BaseModel):
    repo_id: int
    owner: str
    name: str
    branch: str
    commit_sha: str | None = None
    batch_size: int = config.BATCH_SIZE


class PhaseUpdate(BaseModel):
    phase: str | None = None
    total_items: int | None = None
    processed_items: int | None = None
    error: str | None = None


class PhaseMarked(BaseModel):
    phase: str


class BranchRef(BaseModel):
    repo_id: int
    owner: str
    name: str
    branch: str


class ManifestEntry(BaseModel):
    path: str
    content_hash: str | None = None
    size: int | None = None


class BranchDiff(BaseModel):
    to_fetch: list[ManifestEntry]
    to_delete: list[str]
    skipped_count: int
    truncated: bool = False


class Counters(BaseModel):
    processed: int = 0
    failed: int = 0
    protected: int = 0
    total_units: int = 0
    stored_units: int = 0


class DeleteBatch(BaseModel):
    ref: BranchRef
    paths: list[str]
    before: Counters


class FetchBatch(BaseModel):
    ref: BranchRef
    items: list[ManifestEntry]
    before: Counters


class BatchResult(BaseModel):
    totals: Counters


class BranchSynced(BaseModel):
    indexed_branches: list[str]


# ── Step functions ──


def _mark_phase(ctx: StepContext, update: PhaseUpdate) -> PhaseMarked:
    tracker = StatusTracker(ctx.store, SYNC_JOB)
    record = tracker.upsert(ctx.job_id, owner=ctx.workflow_id, **update.model_dump())
    return PhaseMarked(phase=record["phase"])


def _diff_against_remote(ctx: StepContext, ref: BranchRef) -> BranchDiff:
    deps: SyncDeps = ctx.deps
    manifest = deps.remote.get_manifest(ref.owner, ref.name, ref.branch)
    remote = [
        item for item in manifest.items
        if item.kind == "file" and is_indexable(item.path, item.size, deps.max_file_size)
    ]
    local = [
        ManifestItem(path=row["path"], kind="file", content_hash=row["content_hash"], size=row["size"])
        for row in ctx.store.list_files(ref.repo_id, ref.branch)
    ]
    result = diff(
        remote,
        local,
        key_of=lambda item: item.path,
        hash_of=lambda item: item.content_hash,
    )

    to_delete = [item.path for item in result.to_delete]
    if manifest.truncated and to_delete:
        logger.warning(
            "Remote listing for %s/%s@%s is truncated; keeping %d local file(s) not seen",
            ref.owner, ref.name, ref.branch, len(to_delete),
        )
        to_delete = []

    logger.info(
        "Diff for %s/%s@%s: %d changed, %d removed, %d unchanged",
        ref.owner, ref.name, ref.branch,
        len(result.to_fetch), len(to_delete), result.skipped_count,
    )
    return BranchDiff(
        to_fetch=[
            ManifestEntry(path=item.path, content_hash=item.content_hash, size=item.size)
            for item in result.to_fetch
        ],
        to_delete=to_delete,
        skipped_count=result.skipped_count,
        truncated=manifest.truncated,
    )


def _record_progress(ctx: StepContext, totals: Counters) -> None:
    StatusTracker(ctx.store, SYNC_JOB).upsert(
        ctx.job_id,
        owner=ctx.workflow_id,
        processed_items=totals.processed,
        failed_items=totals.failed,
        total_units=totals.total_units,
        stored_units=totals.stored_units,
    )


def _delete_stale_batch(ctx: StepContext, batch: DeleteBatch) -> BatchResult:
    deps: SyncDeps = ctx.deps
    ref = batch.ref
    vector_store = deps.vector_store_factory(ref.repo_id)
    totals = batch.before.model_copy()
    for path in batch.paths:
        existing = ctx.store.get_file(ref.repo_id, ref.branch, path)
        if existing is not None and existing["dirty"]:
            logger.info("Keeping locally modified %s", path)
            totals.protected += 1
            totals.processed += 1
            continue
        ctx.store.delete_file_chunks(ref.repo_id, ref.branch, path)
        if vector_store is not None:
            vector_store.delete_file(ref.branch, path)
        ctx.store.delete_file(ref.repo_id, ref.branch, path)
        totals.processed += 1

    _record_progress(ctx, totals)
    logger.info("Deleted batch of %d stale file(s) from %s@%s", len(batch.paths), ref.name, ref.branch)
    return BatchResult(totals=totals)


@dataclass
class _PreparedFile:
    entry: ManifestEntry
    content: FileContent
    chunks: list[CodeChunk]
    vectors: list[list[float]]


def _prepare_file(deps: SyncDeps, ref: BranchRef, entry: ManifestEntry) -> _PreparedFile:
    """Fetch, parse and embed one file. Touches no local storage."""
    content = deps.remote.get_content(ref.owner, ref.name, entry.path, ref.branch)
    chunks = deps.chunker.chunk(entry.path, content.content)
    vectors = deps.embedder.embed_chunks(chunks) if chunks else []
    return _PreparedFile(entry=entry, content=content, chunks=chunks, vectors=vectors)


def _process_fetch_batch(ctx: StepContext, batch: FetchBatch) -> BatchResult:
    deps: SyncDeps = ctx.deps
    ref = batch.ref
    totals = batch.before.model_copy()

    pending: list[ManifestEntry] = []
    for entry in batch.items:
        existing = ctx.store.get_file(ref.repo_id, ref.branch, entry.path)
        if existing is not None and existing["dirty"]:
            logger.info("Skipping locally modified %s", entry.path)
            totals.protected += 1
            totals.processed += 1
        else:
            pending.append(entry)

    prepared: list[_PreparedFile] = []
    if pending:
        with ThreadPoolExecutor(max_workers=min(deps.max_workers, len(pending))) as pool:
            futures = [pool.submit(_prepare_file, deps, ref, entry) for entry in pending]
            for entry, future in zip(pending, futures):
                try:
                    prepared.append(future.result())
                except Exception as e:
                    logger.warning("Failed to index %s: %s", entry.path, e)
                    totals.failed += 1

    vector_store = deps.vector_store_factory(ref.repo_id)
    for item in prepared:
        path = item.entry.path
        file_hash = item.entry.content_hash or item.content.hash
        ctx.store.replace_file_chunks(ref.repo_id, ref.branch, path, item.chunks, file_sha=file_hash)
        if vector_store is not None:
            vector_store.replace_file(ref.branch, path, item.chunks, item.vectors)
        # Written last: a file only counts as synced once its chunks are stored.
        if ctx.store.upsert_file(ref.repo_id, ref.branch, path, item.content.content, file_hash, item.entry.size):
            totals.stored_units += len(item.chunks)
        else:
            totals.protected += 1
        totals.total_units += len(item.chunks)
        totals.processed += 1

    _record_progress(ctx, totals)
    logger.info(
        "Indexed batch of %d file(s) from %s@%s (%d failed)",
        len(batch.items), ref.name, ref.branch, totals.failed - batch.before.failed,
    )
    return BatchResult(totals=totals)


def _mark_branch_synced(ctx: StepContext, ref: BranchRef) -> BranchSynced:
    branches = ctx.store.add_indexed_branch(ref.repo_id, ref.branch)
    return BranchSynced(indexed_branches=branches)


mark_phase = Step("mark", _mark_phase, PhaseMarked)
diff_against_remote = Step("diff_against_remote", _diff_against_remote, BranchDiff)
delete_stale_batch = Step("delete_stale_batch", _delete_stale_batch, BatchResult)
process_fetch_batch = Step("process_fetch_batch", _process_fetch_batch, BatchResult)
mark_branch_synced = Step("mark_branch_synced", _mark_branch_synced, BranchSynced)


# ── Workflow ──


def run_sync(ctx: WorkflowContext, args: SyncArgs) -> None:
    ref = BranchRef(repo_id=args.repo_id, owner=args.owner, name=args.name, branch=args.branch)

    ctx.run(mark_phase, PhaseUpdate(phase="cloning"), key="mark:cloning")
    branch_diff = ctx.run(diff_against_remote, ref)
    ctx.run(
        mark_phase,
        PhaseUpdate(
            phase="parsing",
            total_items=len(branch_diff.to_fetch) + len(branch_diff.to_delete),
            processed_items=0,
        ),
        key="mark:parsing",
    )
    logger.info(
        "Syncing %s@%s in %d delete and %d fetch batch(es) of %d",
        args.name, args.branch,
        batch_count(len(branch_diff.to_delete), args.batch_size),
        batch_count(len(branch_diff.to_fetch), args.batch_size),
        args.batch_size,
    )

    totals = Counters()
    for index, paths in enumerate(chunk(branch_diff.to_delete, args.batch_size)):
        result = ctx.run(
            delete_stale_batch,
            DeleteBatch(ref=ref, paths=paths, before=totals),
            key=f"delete_stale_batch:{index}",
        )
        totals = result.totals

    ctx.run(mark_phase, PhaseUpdate(phase="embedding"), key="mark:embedding")
    for index, items in enumerate(chunk(branch_diff.to_fetch, args.batch_size)):
        result = ctx.run(
            process_fetch_batch,
            FetchBatch(ref=ref, items=items, before=totals),
            key=f"process_fetch_batch:{index}",
        )
        totals = result.totals

    ctx.run(mark_phase, PhaseUpdate(phase="storing"), key="mark:storing")
    ctx.run(mark_branch_synced, ref)
    ctx.run(mark_phase, PhaseUpdate(phase="completed"), key="mark:completed")


def build_sync_workflow(deps: SyncDeps) -> Workflow[SyncArgs]:
    return Workflow(
        name=SYNC_WORKFLOW,
        args_model=SyncArgs,
        handler=run_sync,
        job_kind=SYNC_JOB,
        deps=deps,
    )
