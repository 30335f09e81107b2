"""Tests for the pull request review workflow."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from reposync.indexer.embedder import ChunkEmbedder
from reposync.pipelines.review import (
    REVIEW_WORKFLOW,
    ContextChunk,
    Finding,
    PRContext,
    PRFile,
    ReviewArgs,
    ReviewDeps,
    ReviewParseError,
    build_prompt,
    build_review_workflow,
    format_review_comment,
    parse_review,
    review_event,
)
from reposync.provider import ProviderTransientError
from reposync.remote.github import GitHubTransientError
from reposync.storage.sqlite_store import CodeChunk
from reposync.storage.vector_store import VectorStore
from reposync.workflow.status import REVIEW_JOB

from tests.helpers import FakePullRequestHost, create_job, make_embedding_provider, review_json

_HIGH_FINDING = {
    "type": "security",
    "severity": "high",
    "title": "Token logged",
    "description": "The access token is written to the log.",
    "filePath": "src/a.ts",
    "line": 12,
    "suggestion": "logger.info('token redacted')",
}


@pytest.fixture
def host() -> FakePullRequestHost:
    return FakePullRequestHost()


@pytest.fixture
def generator() -> MagicMock:
    gen = MagicMock()
    gen.generate = MagicMock(return_value=review_json())
    return gen


@pytest.fixture
def review_engine(engine, host, generator):
    engine.register(
        build_review_workflow(
            ReviewDeps(
                github=host,
                generator=generator,
                embedder=None,
                vector_store_factory=lambda repo_id: None,
            )
        )
    )
    return engine


def _review(engine, store, repo_id: int, pr_number: int = 7):
    job_id, wid = create_job(
        store, REVIEW_JOB, repo_id=repo_id, pr_number=pr_number, pr_title="Add login"
    )
    args = ReviewArgs(
        repo_id=repo_id, owner="acme", name="web", pr_number=pr_number,
        pr_title="Add login", base_branch="main", head_branch="feature/login",
    )
    outcome = engine.run_inline(REVIEW_WORKFLOW, args, job_id, workflow_id=wid)
    return outcome, store.get_job("review_jobs", job_id)


class TestParseReview:
    def test_plain_json(self) -> None:
        result = parse_review(review_json([_HIGH_FINDING], summary="Risky"))
        assert result.summary == "Risky"
        assert result.findings[0].file_path == "src/a.ts"
        assert result.findings[0].line == 12

    def test_json_inside_prose_and_fences(self) -> None:
        text = "Here is my review:\n```json\n" + review_json() + "\n```\nThanks!"
        assert parse_review(text).findings == []

    def test_garbage_raises(self) -> None:
        with pytest.raises(ReviewParseError):
            parse_review("I could not review this PR.")

    def test_missing_summary_raises(self) -> None:
        with pytest.raises(ReviewParseError):
            parse_review('{"findings": []}')


class TestReviewEvent:
    def test_no_findings_approves(self) -> None:
        assert review_event([]) == "APPROVE"

    def test_low_findings_comment(self) -> None:
        assert review_event([Finding(title="nit", severity="low")]) == "COMMENT"

    def test_high_or_critical_requests_changes(self) -> None:
        assert review_event([Finding(title="x", severity="critical")]) == "REQUEST_CHANGES"
        assert review_event([Finding.model_validate(_HIGH_FINDING)]) == "REQUEST_CHANGES"


class TestFormatting:
    def test_comment_without_findings(self) -> None:
        comment = format_review_comment("All good.", [])
        assert "All good." in comment
        assert "No issues found" in comment

    def test_comment_lists_findings(self) -> None:
        comment = format_review_comment("Risky", [Finding.model_validate(_HIGH_FINDING)])
        assert "### Findings (1)" in comment
        assert "Token logged" in comment
        assert "`src/a.ts`:12" in comment
        assert "Suggestion" in comment

    def test_prompt_includes_diff_and_context(self) -> None:
        pr = PRContext(
            files=[PRFile(filename="src/a.ts", status="added", patch="+const x = 1;")],
            body=None,
            context=[ContextChunk(file_path="src/auth.ts", name="login", docstring="Logs in", code="function login() {}")],
        )
        prompt = build_prompt("Add login", pr)
        assert "Add login" in prompt
        assert "No description provided" in prompt
        assert "### src/a.ts (added)" in prompt
        assert "+const x = 1;" in prompt
        assert "### src/auth.ts - login" in prompt

    def test_prompt_without_context(self) -> None:
        prompt = build_prompt("T", PRContext(files=[PRFile(filename="a.ts")]))
        assert "No codebase context available" in prompt
        assert "No diff available" in prompt


class TestReviewWorkflow:
    def test_clean_pr_is_approved(self, review_engine, store, repo_id, host) -> None:
        outcome, job = _review(review_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert job["phase"] == "completed"
        assert job["summary"] == "Looks reasonable."
        assert job["findings"] == []
        assert job["review_id"] == 1001
        assert job["completed_at"] is not None
        assert host.reviews[0]["event"] == "APPROVE"

    def test_findings_stored_and_posted(self, review_engine, store, repo_id, host, generator) -> None:
        generator.generate.return_value = review_json([_HIGH_FINDING], summary="Risky")
        _, job = _review(review_engine, store, repo_id)
        assert job["findings"][0]["title"] == "Token logged"
        assert job["findings"][0]["file_path"] == "src/a.ts"
        assert host.reviews[0]["event"] == "REQUEST_CHANGES"
        assert "Token logged" in host.reviews[0]["body"]

    def test_unparseable_response_fails_without_posting(
        self, review_engine, store, repo_id, host, generator
    ) -> None:
        generator.generate.return_value = "no json here"
        outcome, job = _review(review_engine, store, repo_id)
        assert outcome.kind == "failed"
        assert job["phase"] == "failed"
        assert "parse" in job["error"]
        assert generator.generate.call_count == 1
        assert host.reviews == []

    def test_transient_llm_error_retried(self, review_engine, store, repo_id, host, generator) -> None:
        generator.generate.side_effect = [ProviderTransientError("429"), review_json()]
        outcome, _ = _review(review_engine, store, repo_id)
        assert outcome.kind == "completed"
        assert generator.generate.call_count == 2
        assert len(host.reviews) == 1

    def test_failed_post_is_not_retried(self, review_engine, store, repo_id, host, generator) -> None:
        generator.generate.return_value = review_json()
        host.post_errors = [GitHubTransientError("Timeout on POST /reviews")]
        outcome, job = _review(review_engine, store, repo_id)
        assert outcome.kind == "failed"
        assert job["phase"] == "failed"
        assert "Timeout" in job["error"]
        assert host.create_calls == 1
        assert generator.generate.call_count == 1
        steps = store.list_step_keys(outcome.workflow_id)
        assert "generate_review" in steps
        assert "post_review" not in steps

    def test_context_search_uses_base_branch_index(
        self, engine, store, repo_id, host, generator, tmp_path
    ) -> None:
        provider = make_embedding_provider()
        embedder = ChunkEmbedder(provider)
        vs = VectorStore(tmp_path / "lancedb", dims=8, table_name=f"chunks_{repo_id}")
        chunk = CodeChunk(
            file_path="src/auth.ts", chunk_index=0, chunk_type="function", name="login",
            code="function login() {}", start_line=1, end_line=1, language="typescript",
            docstring="Logs a user in",
        )
        vs.replace_file("main", "src/auth.ts", [chunk], embedder.embed_chunks([chunk]))
        engine.register(
            build_review_workflow(
                ReviewDeps(
                    github=host, generator=generator, embedder=embedder,
                    vector_store_factory=lambda rid: vs,
                )
            )
        )

        outcome, _ = _review(engine, store, repo_id)
        assert outcome.kind == "completed"
        prompt = generator.generate.call_args[0][0]
        assert "### src/auth.ts - login" in prompt
