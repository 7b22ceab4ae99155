"""Final markdown report."""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path

from diffpanel_core.diff import format_num
from diffpanel_core.models import ReviewContext, TokenUsage, ValidatedReview
from diffpanel_core.prompts import SEVERITIES
from diffpanel_core.usage import UsageBreakdown

logger = logging.getLogger(__name__)

# Hidden marker that identifies our PR comments so reposting replaces them.
REPORT_MARKER = "<!-- diffpanel-review -->"


def _usage_cells(usage: TokenUsage) -> str:
    return (
        f"{format_num(usage.prompt_tokens)} | {format_num(usage.completion_tokens)} | "
        f"{format_num(usage.reasoning_tokens)} | {format_num(usage.total_tokens)}"
    )


def _verdict(validated: ValidatedReview) -> str:
    if not validated.issues:
        return "No issues found. The changes look good."
    counts = Counter(issue.severity for issue in validated.issues)
    parts = [f"{counts[sev]} {sev}" for sev in SEVERITIES if counts.get(sev)]
    noun = "issue" if len(validated.issues) == 1 else "issues"
    return f"{len(validated.issues)} validated {noun}: {', '.join(parts)}."


def _usage_table(breakdown: UsageBreakdown) -> list[str]:
    lines = [
        "<details>",
        f"<summary>Token usage: {format_num(breakdown.total.total_tokens)} total</summary>",
        "",
        "| Stage | Model | Input | Output | Reasoning | Total |",
        "|-------|-------|------:|-------:|----------:|------:|",
    ]
    for review in breakdown.reviews:
        lines.append(f"| Reviewer {review.reviewer_id} | {review.model or '-'} | {_usage_cells(review.usage)} |")
    lines.append(f"| Validator | - | {_usage_cells(breakdown.validator_usage)} |")
    lines.append(f"| Formatter | - | {_usage_cells(breakdown.formatter_usage)} |")
    lines.append(f"| **Total** | | {_usage_cells(breakdown.total)} |")
    lines.append("")
    lines.append("</details>")
    return lines


def format_validated_review(
    validated: ValidatedReview,
    author: str,
    context: ReviewContext,
    head_ref: str,
    breakdown: UsageBreakdown,
) -> str:
    """Render the review document.

    Pure function of its inputs: no clock, no environment, so the same
    review always renders to the same text.
    """
    meta = [f"**Author:** @{author}", f"**Branch:** `{head_ref}`"]
    if context.pr_number is not None:
        meta.append(f"**PR:** #{context.pr_number}")
    meta.append(f"**Reviewers:** {len(breakdown.reviews)}")

    lines = [
        f"# Code Review: {context.source_description}",
        "",
        " · ".join(meta),
        "",
        f"> {_verdict(validated)}",
        "",
    ]
    body = validated.formatted.strip()
    if body:
        lines.extend([body, ""])
    lines.extend(_usage_table(breakdown))
    lines.extend(["", REPORT_MARKER])
    return "\n".join(lines) + "\n"


def write_report(content: str, output: str | Path) -> Path:
    path = Path(output)
    if path.parent != Path("."):
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.debug("Wrote review report to %s", path)
    return path
