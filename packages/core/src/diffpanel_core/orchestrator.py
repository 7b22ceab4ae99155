"""Multi-reviewer review pipeline.

N reviewer calls run concurrently over the same diff. Every successful
review feeds one validator call, which merges duplicates and drops false
positives, and the validated issues feed one formatter call that writes the
final markdown body.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from rich.console import Console

from diffpanel_core.errors import (
    AllReviewsFailed,
    FormatterCallError,
    NoFilesMatched,
    ReviewCallError,
    ValidationCallError,
)
from diffpanel_core.models import (
    HumanComment,
    IndividualReview,
    Issue,
    ModelResponse,
    ModelSpec,
    PRData,
    ReviewContext,
    ReviewSetup,
    TokenUsage,
    ValidatedReview,
)
from diffpanel_core.prompts import (
    SEVERITIES,
    Prompt,
    PromptOptions,
    create_formatter_prompt,
    create_review_prompt,
    create_validation_prompt,
)
from diffpanel_core.providers.base import ModelCaller, parse_json_payload
from diffpanel_core.usage import (
    STAGE_FORMATTING,
    STAGE_REVIEW,
    STAGE_VALIDATION,
    UsageBreakdown,
    UsageLedger,
)

console = Console()
logger = logging.getLogger(__name__)

HumanCommentLoader = Callable[[], Awaitable[Sequence[HumanComment]]]


class RunState(str, Enum):
    IDLE = "idle"
    FILES_RESOLVED = "files_resolved"
    REVIEWS_IN_FLIGHT = "reviews_in_flight"
    REVIEWS_SETTLED = "reviews_settled"
    VALIDATION_IN_FLIGHT = "validation_in_flight"
    VALIDATION_SETTLED = "validation_settled"
    FORMATTED = "formatted"
    DONE = "done"
    ALL_REVIEWS_FAILED = "all_reviews_failed"
    FAILED = "failed"


_TERMINAL = {RunState.DONE, RunState.ALL_REVIEWS_FAILED, RunState.FAILED}

_NEXT = {
    RunState.IDLE: RunState.FILES_RESOLVED,
    RunState.FILES_RESOLVED: RunState.REVIEWS_IN_FLIGHT,
    RunState.REVIEWS_IN_FLIGHT: RunState.REVIEWS_SETTLED,
    RunState.REVIEWS_SETTLED: RunState.VALIDATION_IN_FLIGHT,
    RunState.VALIDATION_IN_FLIGHT: RunState.VALIDATION_SETTLED,
    RunState.VALIDATION_SETTLED: RunState.FORMATTED,
    RunState.FORMATTED: RunState.DONE,
}


@dataclass
class ReviewFanOut:
    reviews: list[IndividualReview]
    failures: list[ReviewCallError] = field(default_factory=list)


@dataclass
class ReviewOutcome:
    validated: ValidatedReview
    reviews: list[IndividualReview]
    failures: list[ReviewCallError]
    breakdown: UsageBreakdown
    transitions: list[RunState]

    @property
    def total_usage(self) -> TokenUsage:
        return self.breakdown.total


class TranscriptWriter:
    """Writes each model call's prompt and response to ``logs_dir`` as JSON."""

    def __init__(self, logs_dir: str | Path, run_id: str | None = None):
        self.logs_dir = Path(logs_dir)
        self.run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")

    def write(self, label: str, model: ModelSpec, prompt: Prompt, response: ModelResponse) -> Path:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        path = self.logs_dir / f"{self.run_id}-{label}.json"
        record = {
            "label": label,
            "provider": model.provider,
            "model": model.model,
            "options": dict(model.options),
            "system_prompt": prompt.system,
            "user_prompt": prompt.user,
            "response": response.text,
            "usage": response.usage.as_dict(),
        }
        path.write_text(json.dumps(record, indent=2))
        return path


async def _call(
    caller: ModelCaller,
    prompt: Prompt,
    model: ModelSpec,
    label: str,
    transcripts: TranscriptWriter | None,
) -> ModelResponse:
    response = await caller.invoke(prompt.system, prompt.user, model)
    if transcripts is not None:
        try:
            transcripts.write(label, model, prompt, response)
        except OSError as e:
            logger.warning("Could not write transcript for %s: %s", label, e)
    return response


async def run_single_review(
    caller: ModelCaller,
    context: ReviewContext,
    pr_data: PRData | None,
    changed_files: Sequence[str],
    diff: str,
    reviewer_index: int,
    model: ModelSpec,
    prompt_options: PromptOptions | None = None,
    transcripts: TranscriptWriter | None = None,
) -> IndividualReview:
    """Run one reviewer. Exactly one model call; any failure is a ReviewCallError."""
    prompt = create_review_prompt(context, pr_data, changed_files, diff, prompt_options)
    try:
        response = await _call(caller, prompt, model, f"reviewer-{reviewer_index}", transcripts)
    except Exception as e:
        raise ReviewCallError(reviewer_index, model.display_name, e) from e
    if not response.text.strip():
        raise ReviewCallError(reviewer_index, model.display_name, "empty response")
    return IndividualReview(
        reviewer_id=reviewer_index,
        content=response.text,
        usage=response.usage,
        model=model.display_name,
    )


async def run_reviews(
    caller: ModelCaller,
    context: ReviewContext,
    pr_data: PRData | None,
    changed_files: Sequence[str],
    diff: str,
    reviewers: Sequence[ModelSpec],
    prompt_options: PromptOptions | None = None,
    ledger: UsageLedger | None = None,
    transcripts: TranscriptWriter | None = None,
) -> ReviewFanOut:
    """Fan out one call per reviewer and wait for every one of them to settle.

    A failed reviewer is logged and left out; siblings keep running. Reviews
    come back in reviewer order regardless of completion order. Raises
    AllReviewsFailed when nothing succeeded.
    """
    tasks = [
        asyncio.ensure_future(
            run_single_review(
                caller, context, pr_data, changed_files, diff, index, model, prompt_options, transcripts
            )
        )
        for index, model in enumerate(reviewers, 1)
    ]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    reviews: list[IndividualReview] = []
    failures: list[ReviewCallError] = []
    for index, (model, result) in enumerate(zip(reviewers, results), 1):
        if isinstance(result, IndividualReview):
            reviews.append(result)
            if ledger is not None:
                ledger.record(STAGE_REVIEW, f"reviewer-{index}", result.usage)
        elif isinstance(result, ReviewCallError):
            logger.error("Review failed: %s", result)
            failures.append(result)
        elif isinstance(result, Exception):
            logger.error("Review failed: reviewer %d (%s): %s", index, model.display_name, result)
            failures.append(ReviewCallError(index, model.display_name, result))
        else:
            # CancelledError / KeyboardInterrupt belong to the caller.
            raise result

    if not reviews:
        raise AllReviewsFailed(failures, usage=ledger.total() if ledger is not None else None)
    return ReviewFanOut(reviews=reviews, failures=failures)


def _coerce_line(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or None
    return None


def _coerce_issue(entry: Any, known_reviewers: set[int]) -> Issue | None:
    if not isinstance(entry, dict):
        return None
    title = entry.get("title")
    description = entry.get("description")
    title = title.strip() if isinstance(title, str) else ""
    description = description.strip() if isinstance(description, str) else ""
    if not title and not description:
        return None

    severity = str(entry.get("severity") or "minor").lower()
    if severity not in SEVERITIES:
        severity = "minor"
    raw_reviewers = entry.get("reviewers")
    if not isinstance(raw_reviewers, list):
        raw_reviewers = []
    reviewers = []
    for rid in raw_reviewers:
        rid = _coerce_line(rid)
        if rid in known_reviewers and rid not in reviewers:
            reviewers.append(rid)
    file = entry.get("file")
    suggestion = entry.get("suggestion")
    return Issue(
        title=title or description.splitlines()[0][:80],
        description=description or title,
        severity=severity,
        file=file if isinstance(file, str) and file.strip() else None,
        line=_coerce_line(entry.get("line")),
        reviewers=reviewers,
        suggestion=suggestion if isinstance(suggestion, str) and suggestion.strip() else None,
    )


def parse_validator_output(raw: str, known_reviewers: set[int]) -> tuple[list[Issue], str]:
    """Turn the validator's JSON answer into issues, keeping the validator's order.

    Accepts ``{"summary": ..., "issues": [...]}`` or a bare issue list.
    Malformed entries and unknown reviewer ids are dropped. Raises ValueError
    when the payload is not JSON of either shape.
    """
    payload = parse_json_payload(raw)
    if isinstance(payload, list):
        entries, summary = payload, ""
    elif isinstance(payload, dict) and isinstance(payload.get("issues", []), list):
        entries = payload.get("issues", [])
        summary = payload.get("summary") if isinstance(payload.get("summary"), str) else ""
    else:
        raise ValueError("validator output is neither an issue list nor an object with 'issues'")

    issues = []
    for entry in entries:
        issue = _coerce_issue(entry, known_reviewers)
        if issue is None:
            logger.debug("Dropping malformed validator issue: %r", entry)
            continue
        issues.append(issue)
    return issues, summary.strip()


async def review_validator(
    caller: ModelCaller,
    context: ReviewContext,
    reviews: Sequence[IndividualReview],
    pr_data: PRData | None,
    changed_files: Sequence[str],
    diff: str,
    human_comments: Sequence[HumanComment] | None,
    validator_model: ModelSpec,
    formatter_model: ModelSpec,
    prompt_options: PromptOptions | None = None,
    ledger: UsageLedger | None = None,
    transcripts: TranscriptWriter | None = None,
    on_validated: Callable[[], None] | None = None,
) -> ValidatedReview:
    """Validate the reviewers' findings, then format the survivors.

    The formatter only runs once validation produced a parseable issue list.
    """

    def spent() -> TokenUsage | None:
        return ledger.total() if ledger is not None else None

    prompt = create_validation_prompt(context, reviews, pr_data, changed_files, diff, human_comments, prompt_options)
    try:
        response = await _call(caller, prompt, validator_model, "validator", transcripts)
    except Exception as e:
        raise ValidationCallError(f"Validator ({validator_model.display_name}) failed: {e}", spent()) from e
    if ledger is not None:
        ledger.record(STAGE_VALIDATION, "validator", response.usage)

    known = {review.reviewer_id for review in reviews}
    try:
        issues, summary = parse_validator_output(response.text, known)
    except ValueError as e:
        raise ValidationCallError(
            f"Validator ({validator_model.display_name}) returned unparseable output: {e}", spent()
        ) from e
    if on_validated is not None:
        on_validated()

    format_prompt = create_formatter_prompt(context, issues, summary)
    try:
        formatted = await _call(caller, format_prompt, formatter_model, "formatter", transcripts)
    except Exception as e:
        raise FormatterCallError(f"Formatter ({formatter_model.display_name}) failed: {e}", spent()) from e
    if ledger is not None:
        ledger.record(STAGE_FORMATTING, "formatter", formatted.usage)
    if not formatted.text.strip():
        raise FormatterCallError(f"Formatter ({formatter_model.display_name}) returned an empty response", spent())

    return ValidatedReview(
        issues=issues,
        usage=response.usage,
        formatter_usage=formatted.usage,
        formatted=formatted.text.strip(),
        summary=summary,
    )


class ReviewOrchestrator:
    """Drives one review run and records every state it passes through.

    ``ledger`` stays readable after a failed run, so the caller can still
    report what the completed calls cost.
    """

    def __init__(
        self,
        caller: ModelCaller,
        setup: ReviewSetup,
        prompt_options: PromptOptions | None = None,
        logs_dir: str | Path | None = None,
    ):
        self.caller = caller
        self.setup = setup
        self.prompt_options = prompt_options or PromptOptions()
        self.transcripts = TranscriptWriter(logs_dir) if logs_dir else None
        self.ledger = UsageLedger()
        self.state = RunState.IDLE
        self.transitions: list[RunState] = [RunState.IDLE]

    def _advance(self, state: RunState | None = None) -> None:
        if self.state in _TERMINAL:
            raise RuntimeError(f"Run already finished in state {self.state.value}")
        target = state or _NEXT[self.state]
        if state is not None and state not in (_NEXT.get(self.state), RunState.FAILED, RunState.ALL_REVIEWS_FAILED):
            raise RuntimeError(f"Invalid transition {self.state.value} -> {state.value}")
        logger.debug("review run: %s -> %s", self.state.value, target.value)
        self.state = target
        self.transitions.append(target)

    async def _load_human_comments(self, loader: HumanCommentLoader | None) -> list[HumanComment]:
        if loader is None:
            return []
        console.print("Fetching human review comments...")
        try:
            comments = list(await loader())
        except Exception as e:
            logger.warning("Failed to fetch human comments: %s", e)
            console.print(f"[yellow]Could not fetch human comments: {e}[/yellow]")
            return []
        console.print(f"Found {len(comments)} comment(s) from humans")
        return comments

    async def run(
        self,
        context: ReviewContext,
        changed_files: Sequence[str],
        diff: str,
        pr_data: PRData | None = None,
        load_human_comments: HumanCommentLoader | None = None,
    ) -> ReviewOutcome:
        if self.state is not RunState.IDLE:
            raise RuntimeError("A ReviewOrchestrator runs exactly once")
        if not changed_files:
            self._advance(RunState.FAILED)
            raise NoFilesMatched("No files to review after applying the scope and exclude patterns.")
        self._advance(RunState.FILES_RESOLVED)

        try:
            self._advance(RunState.REVIEWS_IN_FLIGHT)
            console.print(f"Running {len(self.setup.reviewers)} independent review(s)...")
            fan_out = await run_reviews(
                self.caller,
                context,
                pr_data,
                changed_files,
                diff,
                self.setup.reviewers,
                self.prompt_options,
                self.ledger,
                self.transcripts,
            )
        except AllReviewsFailed:
            self._advance(RunState.ALL_REVIEWS_FAILED)
            raise
        except BaseException:
            self._advance(RunState.FAILED)
            raise
        self._advance(RunState.REVIEWS_SETTLED)
        if fan_out.failures:
            console.print(
                f"[yellow]{len(fan_out.failures)} reviewer(s) failed; "
                f"continuing with {len(fan_out.reviews)}.[/yellow]"
            )

        try:
            human_comments = await self._load_human_comments(load_human_comments)
            self._advance(RunState.VALIDATION_IN_FLIGHT)
            console.print("Validating findings...")
            validated = await review_validator(
                self.caller,
                context,
                fan_out.reviews,
                pr_data,
                changed_files,
                diff,
                human_comments,
                self.setup.validator,
                self.setup.formatter,
                self.prompt_options,
                self.ledger,
                self.transcripts,
                on_validated=self._advance,
            )
        except BaseException:
            self._advance(RunState.FAILED)
            raise
        self._advance(RunState.FORMATTED)
        console.print(f"Validation complete: {len(validated.issues)} validated issue(s)")
        self._advance(RunState.DONE)

        return ReviewOutcome(
            validated=validated,
            reviews=fan_out.reviews,
            failures=fan_out.failures,
            breakdown=UsageBreakdown(
                reviews=tuple(fan_out.reviews),
                validator_usage=validated.usage,
                formatter_usage=validated.formatter_usage,
            ),
            transitions=list(self.transitions),
        )
