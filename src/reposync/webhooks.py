"""GitHub webhook handling: signature check, delivery dedup and event routing."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from reposync.service import PullRequestMeta, ReposyncService
from reposync.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

PR_REVIEW_ACTIONS = ("opened", "synchronize")


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw request body."""
    if not secret or not signature or not signature.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class WebhookDispatcher:
    """Turns deliveries into sync/review jobs, each delivery id at most once."""

    def __init__(self, store: SqliteStore, service: ReposyncService) -> None:
        self._store = store
        self._service = service

    def handle(self, event: str, delivery_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        repo_full_name = (payload.get("repository") or {}).get("full_name")
        recorded = self._store.record_webhook_event(
            delivery_id, event, action=payload.get("action"), repo_full_name=repo_full_name
        )
        if not recorded:
            logger.info("Ignoring replayed delivery %s (%s)", delivery_id, event)
            return {"status": "duplicate", "delivery_id": delivery_id}

        self._store.update_webhook_event(delivery_id, "processing")
        try:
            if event == "push":
                result = self._handle_push(payload)
            elif event == "pull_request":
                result = self._handle_pull_request(payload)
            else:
                result = {"status": "ignored", "reason": f"unhandled event {event}"}
        except Exception as e:
            logger.exception("Webhook delivery %s (%s) failed", delivery_id, event)
            self._store.update_webhook_event(delivery_id, "failed", error=str(e))
            raise

        self._store.update_webhook_event(delivery_id, "completed")
        return {**result, "delivery_id": delivery_id}

    def _find_repo(self, payload: dict[str, Any]) -> dict | None:
        full_name = (payload.get("repository") or {}).get("full_name")
        if not full_name:
            return None
        return self._store.get_repo_by_full_name(full_name)

    def _handle_push(self, payload: dict[str, Any]) -> dict[str, Any]:
        repo = self._find_repo(payload)
        if repo is None:
            return {"status": "ignored", "reason": "unknown repository"}
        ref = payload.get("ref", "")
        if not ref.startswith("refs/heads/"):
            return {"status": "ignored", "reason": "not a branch push"}
        branch = ref[len("refs/heads/"):]
        if branch not in repo["indexed_branches"]:
            return {"status": "ignored", "reason": f"branch {branch} is not synced"}

        job_id = self._service.start_sync(
            repo["id"], branch, trigger_type="push", commit_sha=payload.get("after")
        )
        return {"status": "sync_started", "job_id": job_id}

    def _handle_pull_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        action = payload.get("action")
        if action not in PR_REVIEW_ACTIONS:
            return {"status": "ignored", "reason": f"action {action}"}
        repo = self._find_repo(payload)
        if repo is None:
            return {"status": "ignored", "reason": "unknown repository"}
        if not repo["auto_review"]:
            return {"status": "ignored", "reason": "auto review disabled"}

        pr = payload.get("pull_request") or {}
        if pr.get("draft") and not repo["review_drafts"]:
            return {"status": "ignored", "reason": "draft pull request"}

        meta = PullRequestMeta(
            title=pr.get("title", ""),
            base_branch=(pr.get("base") or {}).get("ref", repo["default_branch"]),
            head_branch=(pr.get("head") or {}).get("ref"),
            head_sha=(pr.get("head") or {}).get("sha"),
            author=(pr.get("user") or {}).get("login"),
            url=pr.get("html_url"),
        )
        job_id = self._service.start_review(repo["id"], int(pr["number"]), meta)
        return {"status": "review_started", "job_id": job_id}
