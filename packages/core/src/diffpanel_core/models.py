"""Value types shared across the review pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

_USAGE_FIELDS = ("prompt_tokens", "completion_tokens", "reasoning_tokens", "total_tokens")


@dataclass(frozen=True)
class ModelSpec:
    """A provider + model name plus the options passed on every call."""

    provider: str
    model: str
    label: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        if self.label:
            return self.label
        effort = self.options.get("reasoning_effort")
        base = f"{self.provider}:{self.model}"
        return f"{base} ({effort})" if effort else base

    @property
    def reasoning_effort(self) -> str | None:
        return self.options.get("reasoning_effort")


@dataclass(frozen=True)
class ReviewSetup:
    """The ensemble used for one run: N reviewers, one validator, one formatter."""

    reviewers: tuple[ModelSpec, ...]
    validator: ModelSpec
    formatter: ModelSpec

    def __post_init__(self):
        if not self.reviewers:
            raise ValueError("A review setup needs at least one reviewer.")
        # Accept any sequence from callers but store an immutable tuple.
        object.__setattr__(self, "reviewers", tuple(self.reviewers))

    @property
    def providers(self) -> set[str]:
        return {m.provider for m in (*self.reviewers, self.validator, self.formatter)}


@dataclass(frozen=True)
class FileListContext:
    """Point-in-time snapshot of the changed files a scope can choose from."""

    staged_files: tuple[str, ...] = ()
    all_files: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "staged_files", tuple(self.staged_files))
        object.__setattr__(self, "all_files", tuple(self.all_files))


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self):
        for name in _USAGE_FIELDS:
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        # Some providers leave total unset or report it without the prompt.
        floor = self.prompt_tokens + self.completion_tokens
        if self.total_tokens < floor:
            object.__setattr__(self, "total_tokens", floor)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(**{name: getattr(self, name) + getattr(other, name) for name in _USAGE_FIELDS})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> TokenUsage:
        """Build usage from a loose mapping, treating missing or None fields as 0."""
        data = data or {}
        return cls(**{name: int(data.get(name) or 0) for name in _USAGE_FIELDS})

    def as_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in _USAGE_FIELDS}


@dataclass(frozen=True)
class ModelResponse:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class IndividualReview:
    """Raw output of one reviewer call. Consumed only by the validator stage."""

    reviewer_id: int
    content: str
    usage: TokenUsage
    model: str = ""


@dataclass
class Issue:
    """One validated finding. ``reviewers`` lists every reviewer that raised it."""

    title: str
    description: str
    severity: str = "minor"
    file: str | None = None
    line: int | None = None
    reviewers: list[int] = field(default_factory=list)
    suggestion: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "file": self.file,
            "line": self.line,
            "reviewers": list(self.reviewers),
            "suggestion": self.suggestion,
        }


@dataclass
class ValidatedReview:
    issues: list[Issue]
    usage: TokenUsage
    formatter_usage: TokenUsage
    formatted: str = ""
    summary: str = ""


@dataclass(frozen=True)
class PRData:
    number: int
    title: str
    base_branch: str
    head_branch: str
    author: str
    changed_file_count: int


@dataclass(frozen=True)
class HumanComment:
    author: str
    body: str
    created_at: str


@dataclass(frozen=True)
class ReviewContext:
    """What is being reviewed, as shown to the models and in the report."""

    source_description: str
    pr_number: int | None = None
    additional_instructions: str | None = None
