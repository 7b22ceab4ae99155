"""Token usage aggregation across reviewer, validator and formatter calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Union

from rich.console import Console
from rich.table import Table

from diffpanel_core.diff import format_num
from diffpanel_core.models import IndividualReview, TokenUsage

logger = logging.getLogger(__name__)

UsageLike = Union[TokenUsage, Mapping[str, object], None]

STAGE_REVIEW = "review"
STAGE_VALIDATION = "validation"
STAGE_FORMATTING = "formatting"


def zero_usage() -> TokenUsage:
    return TokenUsage()


def _coerce(usage: UsageLike) -> TokenUsage:
    if isinstance(usage, TokenUsage):
        return usage
    return TokenUsage.from_mapping(usage)


def aggregate_usage(usages: Iterable[UsageLike]) -> TokenUsage:
    """Field-wise sum. Missing entries and fields count as zero."""
    total = zero_usage()
    for usage in usages:
        total = total + _coerce(usage)
    return total


def calculate_reviews_usage(reviews: Sequence[IndividualReview]) -> TokenUsage:
    return aggregate_usage(review.usage for review in reviews)


@dataclass(frozen=True)
class UsageBreakdown:
    """Per-stage usage handed to the report renderer."""

    reviews: tuple[IndividualReview, ...]
    validator_usage: TokenUsage
    formatter_usage: TokenUsage

    @property
    def reviews_usage(self) -> TokenUsage:
        return calculate_reviews_usage(self.reviews)

    @property
    def total(self) -> TokenUsage:
        return aggregate_usage([self.reviews_usage, self.validator_usage, self.formatter_usage])


class UsageLedger:
    """Records the usage of every successful call in the order it settled.

    The orchestrator hands the ledger to the caller even when the run aborts,
    so work already paid for still shows up in the breakdown.
    """

    def __init__(self):
        self._entries: list[tuple[str, str, TokenUsage]] = []

    def record(self, stage: str, label: str, usage: UsageLike) -> TokenUsage:
        usage = _coerce(usage)
        self._entries.append((stage, label, usage))
        logger.debug("usage[%s] %s: %d tokens", stage, label, usage.total_tokens)
        return usage

    @property
    def entries(self) -> list[tuple[str, str, TokenUsage]]:
        return list(self._entries)

    def by_stage(self) -> dict[str, TokenUsage]:
        stages: dict[str, TokenUsage] = {}
        for stage, _label, usage in self._entries:
            stages[stage] = stages.get(stage, zero_usage()) + usage
        return stages

    def total(self) -> TokenUsage:
        return aggregate_usage(usage for _stage, _label, usage in self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def _usage_row(name: str, usage: TokenUsage) -> list[str]:
    return [
        name,
        format_num(usage.prompt_tokens),
        format_num(usage.completion_tokens),
        format_num(usage.reasoning_tokens),
        format_num(usage.total_tokens),
    ]


def usage_rows(
    reviews_usage: TokenUsage, validator_usage: TokenUsage, formatter_usage: TokenUsage
) -> list[list[str]]:
    total = aggregate_usage([reviews_usage, validator_usage, formatter_usage])
    return [
        _usage_row("Reviewers", reviews_usage),
        _usage_row("Validator", validator_usage),
        _usage_row("Formatter", formatter_usage),
        _usage_row("Total", total),
    ]


def log_token_usage_breakdown(
    reviews_usage: TokenUsage,
    validator_usage: TokenUsage,
    formatter_usage: TokenUsage,
    console: Console | None = None,
) -> None:
    """Print the per-stage usage table to the console."""
    console = console or Console()
    table = Table(title="Token Usage", show_header=True)
    table.add_column("Stage", style="bold")
    for column in ("Input", "Output", "Reasoning", "Total"):
        table.add_column(column, justify="right")
    rows = usage_rows(reviews_usage, validator_usage, formatter_usage)
    for row in rows[:-1]:
        table.add_row(*row)
    table.add_row(*rows[-1], style="bold")
    console.print(table)
