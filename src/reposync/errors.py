"""Error taxonomy shared by the workflow engine and its collaborators.

The engine only distinguishes two kinds of failure: ``TransientError``s are
retried with backoff up to the attempt ceiling, anything else aborts the
workflow instance on first raise.
"""

from __future__ import annotations


class ReposyncError(Exception):
    """Base class for all reposync errors."""


class TransientError(ReposyncError):
    """A remote call failed in a way that may succeed if repeated."""


class TerminalError(ReposyncError):
    """A failure that retrying cannot fix (auth, not found, malformed data)."""


class WorkflowCanceled(ReposyncError):
    """Raised at a step boundary once cancellation has been requested."""

    def __init__(self, workflow_id: str, workflow_name: str) -> None:
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        super().__init__(f"{workflow_name} canceled")


class NotFoundError(ReposyncError):
    """A repo, job or workflow referenced by an external caller does not exist."""


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientError)
