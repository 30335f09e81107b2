"""Job status records: partial upserts with monotonic phases and counters.

Each job kind has a fixed phase order. A phase may only move forward along
that order, ``failed`` is reachable from any non-terminal phase, and once a
job is terminal only its ``error`` field can still be patched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from reposync.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

TERMINAL_PHASES = frozenset({"completed", "failed"})


@dataclass(frozen=True)
class JobKind:
    name: str
    table: str
    phases: tuple[str, ...]
    created_field: str
    # (processed column, total column) pair used to derive progress, if any
    progress_fields: tuple[str, str] | None = None

    def rank(self, phase: str) -> int:
        try:
            return self.phases.index(phase)
        except ValueError:
            raise ValueError(f"Unknown {self.name} phase {phase!r}") from None


SYNC_JOB = JobKind(
    name="sync",
    table="sync_jobs",
    phases=("pending", "cloning", "parsing", "embedding", "storing", "completed", "failed"),
    created_field="started_at",
    progress_fields=("processed_items", "total_items"),
)

REVIEW_JOB = JobKind(
    name="review",
    table="review_jobs",
    phases=("pending", "analyzing", "reviewing", "posting", "completed", "failed"),
    created_field="triggered_at",
)

JOB_KINDS = {k.name: k for k in (SYNC_JOB, REVIEW_JOB)}


def is_terminal(phase: str | None) -> bool:
    return phase in TERMINAL_PHASES


def compute_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(processed / total * 100)


class StatusTracker:
    """Reads and patches the status records of one job kind."""

    def __init__(self, store: SqliteStore, kind: JobKind) -> None:
        self._store = store
        self._kind = kind

    @property
    def kind(self) -> JobKind:
        return self._kind

    def get(self, job_id: str) -> dict | None:
        return self._store.get_job(self._kind.table, job_id)

    def upsert(self, job_id: str, owner: str | None = None, **fields) -> dict:
        """Create the record on first call, otherwise patch the given fields.

        ``None`` values are ignored rather than written. When ``owner`` is set
        and the record is bound to a different workflow, the write is dropped:
        a superseded workflow never touches the record of its replacement.
        """
        fields = {k: v for k, v in fields.items() if v is not None}
        fields.pop("completed_at", None)
        now = datetime.now(timezone.utc).isoformat()

        current = self.get(job_id)
        if current is None:
            phase = fields.setdefault("phase", "pending")
            self._kind.rank(phase)
            fields.setdefault(self._kind.created_field, now)
            if owner is not None:
                fields.setdefault("workflow_id", owner)
            if is_terminal(phase):
                fields["completed_at"] = now
            self._store.insert_job(self._kind.table, job_id, **fields)
            return self.get(job_id)  # type: ignore[return-value]

        if owner is not None and current.get("workflow_id") not in (None, owner):
            self._log_superseded(job_id, owner)
            return current

        patch = self._filter_patch(job_id, current, fields)
        if patch:
            new_phase = patch.get("phase")
            if is_terminal(new_phase) and current.get("completed_at") is None:
                patch["completed_at"] = now
            written = self._store.update_job(
                self._kind.table, job_id, expected_workflow=owner, **patch
            )
            if not written:
                # Rebound to another workflow after the read above
                self._log_superseded(job_id, owner)
                return self.get(job_id)  # type: ignore[return-value]
            current.update(patch)
        return current

    def _log_superseded(self, job_id: str, owner: str | None) -> None:
        logger.info(
            "Dropping update to %s job %s from superseded workflow %s",
            self._kind.name, job_id, owner,
        )

    def reset(self, job_id: str, owner: str, **fields) -> dict:
        """Rebind an existing record to a new workflow and restart it from ``pending``.

        Used when a job's natural key is triggered again. Clears the results
        and terminal fields of the previous run.
        """
        now = datetime.now(timezone.utc).isoformat()
        patch = {k: v for k, v in fields.items() if v is not None}
        patch.update(
            {
                "phase": "pending",
                "error": None,
                "completed_at": None,
                "workflow_id": owner,
                self._kind.created_field: now,
            }
        )
        if self._kind is REVIEW_JOB:
            patch.update({"summary": None, "findings": None, "review_id": None})
        self._store.update_job(self._kind.table, job_id, **patch)
        return self.get(job_id)  # type: ignore[return-value]

    def _filter_patch(self, job_id: str, current: dict, fields: dict) -> dict:
        if is_terminal(current["phase"]):
            rejected = set(fields) - {"error"}
            if rejected:
                logger.warning(
                    "Ignoring update of %s on terminal %s job %s",
                    sorted(rejected), self._kind.name, job_id,
                )
            return {"error": fields["error"]} if "error" in fields else {}

        patch = dict(fields)
        new_phase = patch.get("phase")
        if new_phase is not None:
            if new_phase != "failed" and self._kind.rank(new_phase) < self._kind.rank(current["phase"]):
                logger.warning(
                    "Ignoring phase regression %s -> %s for %s job %s",
                    current["phase"], new_phase, self._kind.name, job_id,
                )
                patch.pop("phase")
            else:
                self._kind.rank(new_phase)

        if self._kind.progress_fields is not None:
            processed_col, total_col = self._kind.progress_fields
            if processed_col in patch and patch[processed_col] < (current.get(processed_col) or 0):
                patch.pop(processed_col)
            if processed_col in patch or total_col in patch:
                processed = patch.get(processed_col, current.get(processed_col) or 0)
                total = patch.get(total_col, current.get(total_col) or 0)
                patch["progress"] = compute_progress(processed, total)
            if patch.get("phase") == "completed":
                patch["progress"] = 100
        return patch
