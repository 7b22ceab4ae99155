"""Review setups: which models review, validate and format.

Built-in presets trade cost for coverage by scaling the number of reviewers.
Custom setups come from ``.diffpanel.yml``::

    default_validator: {model: "openai:gpt-5.2", reasoning_effort: high}
    setups:
      - label: duo
        reviewers:
          - "openai:gpt-5.2"
          - {model: "anthropic:claude-sonnet-4-20250514", reasoning_effort: medium}
        formatter: "openai:gpt-5-mini"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from diffpanel_core.errors import ConfigError, UnknownSelectionError
from diffpanel_core.models import ModelSpec, ReviewSetup

KNOWN_PROVIDERS = ("openai", "anthropic")

GPT5_MINI = ModelSpec("openai", "gpt-5-mini", options={"reasoning_effort": "medium"})
GPT5 = ModelSpec("openai", "gpt-5.2", options={"reasoning_effort": "medium"})
GPT5_HIGH = ModelSpec("openai", "gpt-5.2", options={"reasoning_effort": "high"})
CLAUDE_SONNET = ModelSpec("anthropic", "claude-sonnet-4-20250514")
CLAUDE_SONNET_HIGH = ModelSpec("anthropic", "claude-sonnet-4-20250514", options={"reasoning_effort": "high"})
CLAUDE_HAIKU = ModelSpec("anthropic", "claude-3-5-haiku-latest")

DEFAULT_VALIDATOR = GPT5_HIGH
DEFAULT_FORMATTER = GPT5_MINI

BUILT_IN_SETUPS: dict[str, ReviewSetup] = {
    "veryLight": ReviewSetup(reviewers=(GPT5_MINI,), validator=GPT5_HIGH, formatter=GPT5_MINI),
    "light": ReviewSetup(reviewers=(GPT5,), validator=GPT5_HIGH, formatter=GPT5_MINI),
    "medium": ReviewSetup(reviewers=(GPT5_HIGH, GPT5_HIGH), validator=GPT5_HIGH, formatter=GPT5_MINI),
    "heavy": ReviewSetup(reviewers=(GPT5_HIGH,) * 4, validator=GPT5_HIGH, formatter=GPT5_MINI),
    "lightAnthropic": ReviewSetup(reviewers=(CLAUDE_SONNET,), validator=CLAUDE_SONNET_HIGH, formatter=CLAUDE_HAIKU),
    "mediumAnthropic": ReviewSetup(
        reviewers=(CLAUDE_SONNET, CLAUDE_SONNET), validator=CLAUDE_SONNET_HIGH, formatter=CLAUDE_HAIKU
    ),
}

SETUP_DESCRIPTIONS = {
    "veryLight": "1 GPT-5-mini reviewer",
    "light": "1 GPT-5 reviewer",
    "medium": "2 GPT-5 reviewers (high effort)",
    "heavy": "4 GPT-5 reviewers (high effort)",
    "lightAnthropic": "1 Claude Sonnet reviewer",
    "mediumAnthropic": "2 Claude Sonnet reviewers",
}


@dataclass(frozen=True)
class SetupDefinition:
    """A custom setup as written in the config; validator/formatter may be unset."""

    label: str
    reviewers: tuple[ModelSpec, ...]
    validator: ModelSpec | None = None
    formatter: ModelSpec | None = None


def parse_model_spec(value: Any) -> ModelSpec:
    """Parse ``"provider:model"`` or ``{model: "provider:model", label: ..., **options}``."""
    if isinstance(value, ModelSpec):
        return value
    if isinstance(value, str):
        ref, label, options = value, None, {}
    elif isinstance(value, Mapping) and isinstance(value.get("model"), str):
        ref = value["model"]
        label = value.get("label")
        options = {k: v for k, v in value.items() if k not in ("model", "label")}
    else:
        raise ConfigError(f"Model definitions must be 'provider:model' or a mapping with 'model': {value!r}")

    provider, sep, model = ref.partition(":")
    if not sep or not model:
        raise ConfigError(f"Model reference {ref!r} must look like 'provider:model'")
    if provider not in KNOWN_PROVIDERS:
        raise ConfigError(f"Unknown model provider {provider!r}. Choose one of: {', '.join(KNOWN_PROVIDERS)}")
    return ModelSpec(provider=provider, model=model, label=label, options=options)


def setup_from_config(entry: Mapping[str, Any]) -> SetupDefinition:
    if not isinstance(entry, Mapping) or not entry.get("label"):
        raise ConfigError(f"Setup definitions need a 'label': {entry!r}")
    reviewers = tuple(parse_model_spec(r) for r in entry.get("reviewers") or ())
    if not reviewers:
        raise ConfigError(f"Setup {entry['label']!r} needs at least one reviewer")
    return SetupDefinition(
        label=str(entry["label"]),
        reviewers=reviewers,
        validator=parse_model_spec(entry["validator"]) if entry.get("validator") else None,
        formatter=parse_model_spec(entry["formatter"]) if entry.get("formatter") else None,
    )


def _to_review_setup(setup: SetupDefinition, config: Mapping[str, Any]) -> ReviewSetup:
    # validator: setup > config default > first reviewer
    validator = setup.validator or config.get("default_validator") or setup.reviewers[0]
    # formatter: setup > config default > lightweight built-in
    formatter = setup.formatter or config.get("default_formatter") or DEFAULT_FORMATTER
    return ReviewSetup(reviewers=setup.reviewers, validator=validator, formatter=formatter)


def resolve_setup(config: Mapping[str, Any], label: str | None) -> ReviewSetup | None:
    """Resolve a setup label: custom setups first, then built-in presets.

    Returns None when no label was given so the caller can fall back to
    ``default_setup`` or ask interactively. Raises UnknownSelectionError when a
    label was given but matches nothing.
    """
    if not label:
        return None

    for setup in config.get("setups") or []:
        if setup.label == label:
            return _to_review_setup(setup, config)

    if label in BUILT_IN_SETUPS:
        return BUILT_IN_SETUPS[label]

    raise UnknownSelectionError("setup", label, available_setups(config))


def available_setups(config: Mapping[str, Any]) -> list[str]:
    labels = list(BUILT_IN_SETUPS)
    for setup in config.get("setups") or []:
        if setup.label not in labels:
            labels.append(setup.label)
    return labels


def describe_setup(label: str, config: Mapping[str, Any]) -> str:
    for setup in config.get("setups") or []:
        if setup.label == label:
            return f"{label} (custom) - {len(setup.reviewers)} reviewer(s)"
    return f"{label} - {SETUP_DESCRIPTIONS.get(label, '')}".rstrip(" -")
