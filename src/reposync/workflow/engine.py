"""Durable step runner for long-running batch workflows.

A workflow is a handler that calls ``ctx.run(step, payload)`` for each of its
steps in order. Every step result is checkpointed in SQLite under a step key
before the handler moves on, so a workflow resumed after a crash replays the
completed steps from their checkpoints and re-executes only the first step
whose checkpoint is missing.

Instances run on a thread pool and report their terminal outcome on a
``queue.Queue`` that the reconciler consumes.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from pydantic import BaseModel
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from reposync import config
from reposync.errors import NotFoundError, WorkflowCanceled, is_transient
from reposync.storage.sqlite_store import SqliteStore
from reposync.workflow.outcomes import WorkflowOutcome
from reposync.workflow.status import JobKind, StatusTracker

logger = logging.getLogger(__name__)

In = TypeVar("In", bound=BaseModel)
Out = TypeVar("Out", bound=BaseModel)
A = TypeVar("A", bound=BaseModel)


@dataclass
class StepContext:
    """What a step function sees: its job, its workflow, and its collaborators."""

    workflow_id: str
    job_id: str
    store: SqliteStore
    deps: Any
    attempt: int = 1


@dataclass(frozen=True)
class Step(Generic[In, Out]):
    """A named, typed unit of durable work.

    ``fn`` receives a ``StepContext`` and an ``In`` model and returns an
    ``Out`` model, which is what gets checkpointed.
    """

    name: str
    fn: Callable[[StepContext, In], Out]
    output: type[Out]
    retry: bool = True


@dataclass(frozen=True)
class Workflow(Generic[A]):
    name: str
    args_model: type[A]
    handler: Callable[["WorkflowContext", A], None]
    job_kind: JobKind
    deps: Any = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.STEP_MAX_ATTEMPTS
    backoff_seconds: float = config.STEP_BACKOFF_SECONDS
    backoff_max: float = config.STEP_BACKOFF_MAX

    def retrying(self, step_key: str, retry: bool = True) -> Retrying:
        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "Step %s failed (attempt %d/%d), retrying: %s",
                step_key, state.attempt_number, self.max_attempts, exc,
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts if retry else 1),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max),
            retry=retry_if_exception(is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )


def new_workflow_id() -> str:
    return uuid.uuid4().hex


class WorkflowContext:
    """Per-instance handle passed explicitly to a workflow handler."""

    def __init__(
        self,
        workflow_id: str,
        workflow_name: str,
        job_id: str,
        store: SqliteStore,
        deps: Any,
        retry_policy: RetryPolicy,
    ) -> None:
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self.job_id = job_id
        self.store = store
        self.deps = deps
        self._retry_policy = retry_policy
        self.executed: list[str] = []
        self.replayed: list[str] = []

    def check_canceled(self) -> None:
        if self.store.is_cancel_requested(self.workflow_id):
            raise WorkflowCanceled(self.workflow_id, self.workflow_name)

    def run(self, step: Step[In, Out], payload: In, key: str | None = None) -> Out:
        """Run a step once per workflow instance, or replay its checkpoint."""
        step_key = key or step.name
        saved = self.store.get_step_result(self.workflow_id, step_key)
        if saved is not None:
            self.replayed.append(step_key)
            return step.output.model_validate_json(saved)

        self.check_canceled()
        step_ctx = StepContext(
            workflow_id=self.workflow_id,
            job_id=self.job_id,
            store=self.store,
            deps=self.deps,
            attempt=0,
        )
        retrying = self._retry_policy.retrying(step_key, retry=step.retry)
        result = retrying(self._attempt, step, step_ctx, payload)
        if not isinstance(result, step.output):
            raise TypeError(
                f"Step {step_key} returned {type(result).__name__}, expected {step.output.__name__}"
            )
        self.store.save_step_result(
            self.workflow_id, step_key, result.model_dump_json(), attempts=step_ctx.attempt
        )
        self.executed.append(step_key)
        logger.debug("Workflow %s checkpointed step %s", self.workflow_id, step_key)
        return result

    @staticmethod
    def _attempt(step: Step[In, Out], step_ctx: StepContext, payload: In) -> Out:
        step_ctx.attempt += 1
        return step.fn(step_ctx, payload)


class WorkflowEngine:
    """Runs registered workflows on a thread pool with durable checkpoints."""

    def __init__(
        self,
        store_factory: Callable[[], SqliteStore],
        retry_policy: RetryPolicy | None = None,
        max_workers: int | None = None,
        outcomes: queue.Queue | None = None,
    ) -> None:
        self._store_factory = store_factory
        self._retry_policy = retry_policy or RetryPolicy()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="workflow")
        self._workflows: dict[str, Workflow] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self.outcomes: queue.Queue[WorkflowOutcome] = outcomes or queue.Queue()

    def register(self, workflow: Workflow) -> None:
        self._workflows[workflow.name] = workflow

    def get_workflow(self, name: str) -> Workflow:
        try:
            return self._workflows[name]
        except KeyError:
            raise NotFoundError(f"Unknown workflow {name!r}") from None

    # ── Lifecycle of instances ──

    def start(
        self,
        name: str,
        args: BaseModel,
        job_id: str,
        workflow_id: str | None = None,
    ) -> str:
        """Persist a new instance and submit it for background execution."""
        self.get_workflow(name)
        workflow_id = workflow_id or new_workflow_id()
        store = self._store_factory()
        try:
            store.insert_workflow(workflow_id, name, job_id, args.model_dump(mode="json"))
        finally:
            store.close()
        logger.info("Starting workflow %s (%s) for job %s", workflow_id, name, job_id)
        self.submit(workflow_id)
        return workflow_id

    def run_inline(
        self,
        name: str,
        args: BaseModel,
        job_id: str,
        workflow_id: str | None = None,
    ) -> WorkflowOutcome:
        """Persist a new instance and execute it in the calling thread."""
        self.get_workflow(name)
        workflow_id = workflow_id or new_workflow_id()
        store = self._store_factory()
        try:
            store.insert_workflow(workflow_id, name, job_id, args.model_dump(mode="json"))
        finally:
            store.close()
        return self.execute(workflow_id)

    def cancel(self, workflow_id: str) -> bool:
        """Request cancellation; observed at the next step or batch boundary."""
        store = self._store_factory()
        try:
            requested = store.request_cancel(workflow_id)
        finally:
            store.close()
        if requested:
            logger.info("Cancellation requested for workflow %s", workflow_id)
        return requested

    def recover(self) -> list[str]:
        """Resume every persisted instance left running by a previous process."""
        store = self._store_factory()
        try:
            running = store.list_workflows(status="running")
        finally:
            store.close()
        resumed = []
        for row in running:
            with self._lock:
                if row["id"] in self._futures:
                    continue
            logger.info("Resuming workflow %s (%s)", row["id"], row["name"])
            self.submit(row["id"])
            resumed.append(row["id"])
        return resumed

    def wait(self, workflow_id: str, timeout: float | None = None) -> WorkflowOutcome | None:
        """Block until an instance finishes.

        An instance that already finished is answered from its persisted row.
        Returns None for an instance still marked running that this engine is
        not executing.
        """
        with self._lock:
            future = self._futures.get(workflow_id)
        if future is not None:
            return future.result(timeout=timeout)
        store = self._store_factory()
        try:
            row = store.get_workflow(workflow_id)
        finally:
            store.close()
        if row is None or row["status"] == "running":
            return None
        return self._outcome_from_row(row)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def submit(self, workflow_id: str) -> None:
        """Execute an already persisted instance in the background."""
        future = self._executor.submit(self.execute, workflow_id)
        with self._lock:
            self._futures[workflow_id] = future
        future.add_done_callback(lambda done: self._forget(workflow_id, done))

    def _forget(self, workflow_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(workflow_id) is future:
                del self._futures[workflow_id]

    def _outcome_from_row(self, row: dict) -> WorkflowOutcome:
        definition = self._workflows.get(row["name"])
        return WorkflowOutcome(
            workflow_id=row["id"],
            workflow_name=row["name"],
            job_kind=definition.job_kind.name if definition else "",
            job_id=row["job_id"],
            kind=row["status"],
            error=row["error"],
        )

    # ── Execution ──

    def execute(self, workflow_id: str) -> WorkflowOutcome:
        """Run (or resume) one instance to a terminal outcome and publish it."""
        store = self._store_factory()
        try:
            outcome = self._execute(store, workflow_id)
        finally:
            store.close()
        self.outcomes.put(outcome)
        return outcome

    def _execute(self, store: SqliteStore, workflow_id: str) -> WorkflowOutcome:
        row = store.get_workflow(workflow_id)
        if row is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        if row["status"] != "running":
            logger.info("Workflow %s already finished as %s", workflow_id, row["status"])
            return self._outcome_from_row(row)

        definition = self._workflows.get(row["name"])
        if definition is None:
            error = f"Unknown workflow {row['name']!r}"
            logger.error("Workflow %s cannot run: %s", workflow_id, error)
            store.finish_workflow(workflow_id, "failed", error)
            return WorkflowOutcome(
                workflow_id=workflow_id,
                workflow_name=row["name"],
                job_kind="",
                job_id=row["job_id"],
                kind="failed",
                error=error,
            )

        ctx = WorkflowContext(
            workflow_id=workflow_id,
            workflow_name=definition.name,
            job_id=row["job_id"],
            store=store,
            deps=definition.deps,
            retry_policy=self._retry_policy,
        )
        outcome = dict(
            workflow_id=workflow_id,
            workflow_name=definition.name,
            job_kind=definition.job_kind.name,
            job_id=row["job_id"],
        )
        try:
            args = definition.args_model.model_validate(row["args"])
            definition.handler(ctx, args)
        except WorkflowCanceled as e:
            logger.info("Workflow %s (%s) canceled", workflow_id, definition.name)
            store.finish_workflow(workflow_id, "canceled", str(e))
            return WorkflowOutcome(**outcome, kind="canceled", error=str(e))
        except Exception as e:
            logger.exception("Workflow %s (%s) failed", workflow_id, definition.name)
            error = str(e) or type(e).__name__
            self._record_failure(ctx, definition, error)
            store.finish_workflow(workflow_id, "failed", error)
            return WorkflowOutcome(**outcome, kind="failed", error=error)

        store.finish_workflow(workflow_id, "completed")
        logger.info(
            "Workflow %s (%s) completed: %d step(s) run, %d replayed",
            workflow_id, definition.name, len(ctx.executed), len(ctx.replayed),
        )
        return WorkflowOutcome(**outcome, kind="completed")

    def _record_failure(self, ctx: WorkflowContext, definition: Workflow, error: str) -> None:
        tracker = StatusTracker(ctx.store, definition.job_kind)
        try:
            tracker.upsert(ctx.job_id, owner=ctx.workflow_id, phase="failed", error=error)
        except Exception:
            # The reconciler patches the job from the failed outcome instead.
            logger.exception("Could not record failure of job %s", ctx.job_id)
