"""Terminal workflow outcomes and the reconciler that consumes them."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from reposync.storage.sqlite_store import SqliteStore
from reposync.workflow.status import JOB_KINDS, JobKind, StatusTracker, is_terminal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowOutcome:
    workflow_id: str
    workflow_name: str
    job_kind: str
    job_id: str
    kind: str  # completed | failed | canceled
    error: str | None = None


class OutcomeReconciler:
    """Moves jobs to ``failed`` when their workflow ended without recording it.

    Steps normally record their own failure. This handler only acts when the
    job is still non-terminal after a failed or canceled outcome.
    """

    def __init__(
        self,
        store_factory: Callable[[], SqliteStore],
        outcomes: queue.Queue,
        poll_interval: float = 0.2,
    ) -> None:
        self._store_factory = store_factory
        self._outcomes = outcomes
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def handle(self, outcome: WorkflowOutcome, store: SqliteStore) -> bool:
        """Reconcile one outcome. Returns True if the job record was patched."""
        if outcome.kind == "completed":
            return False
        if outcome.job_kind in JOB_KINDS:
            candidates = [JOB_KINDS[outcome.job_kind]]
        else:
            candidates = list(JOB_KINDS.values())

        for kind in candidates:
            tracker = StatusTracker(store, kind)
            job = tracker.get(outcome.job_id)
            if job is not None:
                break
        else:
            logger.warning(
                "Outcome of workflow %s refers to unknown job %s",
                outcome.workflow_id, outcome.job_id,
            )
            return False
        if is_terminal(job["phase"]):
            return False

        error = outcome.error or f"{outcome.workflow_name} canceled"
        logger.info(
            "Reconciling %s job %s to failed after %s outcome: %s",
            kind.name, outcome.job_id, outcome.kind, error,
        )
        updated = tracker.upsert(
            outcome.job_id, owner=outcome.workflow_id, phase="failed", error=error
        )
        return updated["phase"] == "failed"

    def reconcile_orphan(
        self, store: SqliteStore, kind: JobKind, job: dict, workflow: dict | None
    ) -> bool:
        """Fail a non-terminal job whose workflow will never report back.

        Covers a job left without a workflow row, and a workflow that finished
        while no reconciler was consuming its outcome.
        """
        if workflow is not None and workflow["status"] == "running":
            return False
        if workflow is not None and workflow["status"] == "canceled":
            outcome_kind, error = "canceled", None
        else:
            outcome_kind = "failed"
            error = (workflow or {}).get("error") or f"{kind.name} interrupted"
        outcome = WorkflowOutcome(
            workflow_id=job.get("workflow_id") or "",
            workflow_name=(workflow or {}).get("name") or kind.name,
            job_kind=kind.name,
            job_id=job["id"],
            kind=outcome_kind,
            error=error,
        )
        return self.handle(outcome, store)

    def reconcile_orphans(self, store: SqliteStore) -> list[str]:
        """Fail every orphaned job. Returns the ids of the jobs patched."""
        patched = []
        for kind in JOB_KINDS.values():
            for job in store.list_orphaned_jobs(kind.table):
                workflow = None
                if job["workflow_status"] is not None:
                    workflow = {
                        "name": job["workflow_name"],
                        "status": job["workflow_status"],
                        "error": job["workflow_error"],
                    }
                if self.reconcile_orphan(store, kind, job, workflow):
                    patched.append(job["id"])
        if patched:
            logger.warning("Failed %d orphaned job(s): %s", len(patched), ", ".join(patched))
        return patched

    def drain(self) -> int:
        """Handle every queued outcome in the calling thread."""
        handled = 0
        while True:
            try:
                outcome = self._outcomes.get_nowait()
            except queue.Empty:
                return handled
            self._handle_one(outcome)
            handled += 1

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="outcome-reconciler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                outcome = self._outcomes.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            self._handle_one(outcome)

    def _handle_one(self, outcome: WorkflowOutcome) -> None:
        store = self._store_factory()
        try:
            self.handle(outcome, store)
        except Exception:
            logger.exception("Failed to reconcile outcome of workflow %s", outcome.workflow_id)
        finally:
            store.close()
