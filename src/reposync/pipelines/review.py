"""Pull request review workflow.

    mark(analyzing) -> fetch_pr_context -> mark(reviewing)
    -> generate_review -> post_review -> mark(completed, review_id)

The review is generated by the LLM as JSON, stored on the job when it enters
``posting``, then posted to the PR as a single review comment.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from reposync import config
from reposync.errors import TerminalError
from reposync.indexer.embedder import ChunkEmbedder
from reposync.provider import GenerationProvider
from reposync.remote.github import PullRequestHost
from reposync.storage.vector_store import VectorStore
from reposync.workflow.engine import Step, StepContext, Workflow, WorkflowContext
from reposync.workflow.status import REVIEW_JOB, StatusTracker

logger = logging.getLogger(__name__)

REVIEW_WORKFLOW = "review"

MAX_PROMPT_FILES = 20
MAX_PATCH_CHARS = 1_000
MAX_CONTEXT_CODE_CHARS = 500

SYSTEM_PROMPT = (
    "You are an expert code reviewer. "
    "Review pull requests in the context of the existing codebase and "
    "respond only with valid JSON."
)

SEVERITY_EMOJI = {
    "critical": "🔴",
    "high": "🟠",
    "medium": "🟡",
    "low": "🔵",
}

TYPE_EMOJI = {
    "bug": "🐛",
    "security": "🔒",
    "performance": "⚡",
    "code_quality": "✨",
    "test": "🧪",
    "documentation": "📝",
}


class ReviewParseError(TerminalError):
    """The LLM response could not be read as a review."""


@dataclass
class ReviewDeps:
    github: PullRequestHost
    generator: GenerationProvider
    embedder: ChunkEmbedder | None
    vector_store_factory: Callable[[int], VectorStore | None]
    context_limit: int = config.REVIEW_CONTEXT_LIMIT


# ── Step inputs and outputs ──


class ReviewArgs(BaseModel):
    repo_id: int
    owner: str
    name: str
    pr_number: int
    pr_title: str
    base_branch: str
    head_branch: str | None = None
    pr_author: str | None = None
    pr_url: str | None = None


class ReviewPhaseUpdate(BaseModel):
    phase: str | None = None
    review_id: int | None = None


class PhaseMarked(BaseModel):
    phase: str


class PRFile(BaseModel):
    filename: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    patch: str | None = None


class ContextChunk(BaseModel):
    file_path: str
    name: str
    docstring: str
    code: str


class PRContext(BaseModel):
    files: list[PRFile]
    body: str | None = None
    context: list[ContextChunk] = []


class Finding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "code_quality"
    severity: str = "low"
    title: str
    description: str = ""
    file_path: str = Field(default="", alias="filePath")
    line: int | None = None
    suggestion: str | None = None


class ReviewResult(BaseModel):
    summary: str
    findings: list[Finding] = []


class ReviewRequest(BaseModel):
    args: ReviewArgs
    pr: PRContext


class PostRequest(BaseModel):
    args: ReviewArgs
    review: ReviewResult


class PostedReview(BaseModel):
    summary: str
    findings: list[Finding]
    event: str
    review_id: int


# ── Prompt and comment formatting ──


def build_prompt(title: str, pr: PRContext) -> str:
    context_str = "\n\n".join(
        f"### {c.file_path} - {c.name}\n{c.docstring}\n```\n{c.code[:MAX_CONTEXT_CODE_CHARS]}\n```"
        for c in pr.context
    )
    diff_str = "\n\n".join(
        f"### {f.filename} ({f.status})\n```diff\n{(f.patch or '')[:MAX_PATCH_CHARS] or 'No diff available'}\n```"
        for f in pr.files[:MAX_PROMPT_FILES]
    )
    return f"""Review this pull request with full codebase context.

## PR Title
{title}

## PR Description
{pr.body or 'No description provided'}

## Relevant Codebase Context
{context_str or 'No codebase context available'}

## Changed Files
{diff_str}

## Instructions
1. Analyze the changes in context of the existing codebase
2. Identify any bugs, security issues, performance problems, or code quality concerns
3. Check for consistency with existing patterns in the codebase
4. Provide a brief summary and specific findings

Respond in this exact JSON format:
{{
  "summary": "Brief 2-3 sentence summary of the PR and overall assessment",
  "findings": [
    {{
      "type": "bug|security|performance|code_quality|test|documentation",
      "severity": "critical|high|medium|low",
      "title": "Short title",
      "description": "Detailed explanation",
      "filePath": "path/to/file.ts",
      "line": 42,
      "suggestion": "Optional code suggestion"
    }}
  ]
}}

If the PR looks good with no issues, return an empty findings array."""


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_review(text: str) -> ReviewResult:
    """Parse the LLM's JSON answer, tolerating prose or fences around it."""
    try:
        data = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ReviewParseError("Failed to parse review response") from None
        try:
            data = json.loads(match.group(0))
        except ValueError as e:
            raise ReviewParseError("Failed to parse review response") from e
    try:
        return ReviewResult.model_validate(data)
    except ValidationError as e:
        raise ReviewParseError(f"Malformed review response: {e.error_count()} error(s)") from e


def review_event(findings: list[Finding]) -> str:
    if any(f.severity in ("critical", "high") for f in findings):
        return "REQUEST_CHANGES"
    if findings:
        return "COMMENT"
    return "APPROVE"


def format_review_comment(summary: str, findings: list[Finding]) -> str:
    comment = f"## 🤖 Reposync Review\n\n{summary}\n\n"
    if not findings:
        comment += "✅ **No issues found!** This PR looks good to merge.\n"
    else:
        comment += f"### Findings ({len(findings)})\n\n"
        for f in findings:
            emoji = f"{SEVERITY_EMOJI.get(f.severity, '⚪')} {TYPE_EMOJI.get(f.type, '📌')}"
            location = f"`{f.file_path}`" + (f":{f.line}" if f.line else "")
            comment += f"#### {emoji} {f.title}\n\n"
            comment += f"**Severity:** {f.severity} | **Type:** {f.type}\n"
            comment += f"**File:** {location}\n\n"
            comment += f"{f.description}\n\n"
            if f.suggestion:
                comment += (
                    "<details>\n<summary>💡 Suggestion</summary>\n\n"
                    f"```\n{f.suggestion}\n```\n</details>\n\n"
                )
    comment += "\n---\n*Reviewed by reposync with full codebase context*"
    return comment


# ── Step functions ──


def _mark_phase(ctx: StepContext, update: ReviewPhaseUpdate) -> PhaseMarked:
    tracker = StatusTracker(ctx.store, REVIEW_JOB)
    record = tracker.upsert(ctx.job_id, owner=ctx.workflow_id, **update.model_dump())
    return PhaseMarked(phase=record["phase"])


def _search_context(deps: ReviewDeps, args: ReviewArgs, files: list[PRFile]) -> list[ContextChunk]:
    if deps.embedder is None:
        return []
    vector_store = deps.vector_store_factory(args.repo_id)
    if vector_store is None or not vector_store.exists():
        logger.info("No index for repo %d, reviewing PR #%d without context", args.repo_id, args.pr_number)
        return []
    query = f"{args.pr_title} {' '.join(f.filename for f in files)}"
    try:
        results = vector_store.search(
            deps.embedder.embed_query(query), branch=args.base_branch, limit=deps.context_limit
        )
    except Exception as e:
        logger.info("Context search failed for PR #%d, reviewing without context: %s", args.pr_number, e)
        return []
    return [
        ContextChunk(file_path=r.file_path, name=r.name, docstring=r.docstring, code=r.code)
        for r in results
    ]


def _fetch_pr_context(ctx: StepContext, args: ReviewArgs) -> PRContext:
    deps: ReviewDeps = ctx.deps
    raw_files = deps.github.get_pull_request_files(args.owner, args.name, args.pr_number)
    pr = deps.github.get_pull_request(args.owner, args.name, args.pr_number)
    files = [PRFile.model_validate(f) for f in raw_files]
    return PRContext(
        files=files,
        body=pr.get("body"),
        context=_search_context(deps, args, files),
    )


def _generate_review(ctx: StepContext, req: ReviewRequest) -> ReviewResult:
    deps: ReviewDeps = ctx.deps
    text = deps.generator.generate(build_prompt(req.args.pr_title, req.pr), system=SYSTEM_PROMPT)
    return parse_review(text)


def _post_review(ctx: StepContext, req: PostRequest) -> PostedReview:
    deps: ReviewDeps = ctx.deps
    args, review = req.args, req.review
    StatusTracker(ctx.store, REVIEW_JOB).upsert(
        ctx.job_id,
        owner=ctx.workflow_id,
        phase="posting",
        summary=review.summary,
        findings=[f.model_dump() for f in review.findings],
    )

    event = review_event(review.findings)
    posted = deps.github.create_review(
        args.owner, args.name, args.pr_number,
        body=format_review_comment(review.summary, review.findings),
        event=event,
    )
    logger.info(
        "Posted %s review on %s/%s#%d with %d finding(s)",
        event, args.owner, args.name, args.pr_number, len(review.findings),
    )
    return PostedReview(
        summary=review.summary,
        findings=review.findings,
        event=event,
        review_id=int(posted["id"]),
    )


mark_phase = Step("mark", _mark_phase, PhaseMarked)
fetch_pr_context = Step("fetch_pr_context", _fetch_pr_context, PRContext)
generate_review = Step("generate_review", _generate_review, ReviewResult)
post_review = Step("post_review", _post_review, PostedReview, retry=False)


# ── Workflow ──


def run_review(ctx: WorkflowContext, args: ReviewArgs) -> None:
    ctx.run(mark_phase, ReviewPhaseUpdate(phase="analyzing"), key="mark:analyzing")
    pr = ctx.run(fetch_pr_context, args)
    ctx.run(mark_phase, ReviewPhaseUpdate(phase="reviewing"), key="mark:reviewing")
    review = ctx.run(generate_review, ReviewRequest(args=args, pr=pr))
    posted = ctx.run(post_review, PostRequest(args=args, review=review))
    ctx.run(
        mark_phase,
        ReviewPhaseUpdate(phase="completed", review_id=posted.review_id),
        key="mark:completed",
    )


def build_review_workflow(deps: ReviewDeps) -> Workflow[ReviewArgs]:
    return Workflow(
        name=REVIEW_WORKFLOW,
        args_model=ReviewArgs,
        handler=run_review,
        job_kind=REVIEW_JOB,
        deps=deps,
    )
