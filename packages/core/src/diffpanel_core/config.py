import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from diffpanel_core.diff import matches_glob
from diffpanel_core.errors import ConfigError
from diffpanel_core.scopes import scope_from_config
from diffpanel_core.setups import parse_model_spec, setup_from_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = ".diffpanel.yml"

DEFAULT_CONFIG: dict = {
    "base_branch": "main",  # a branch name, or {branch-glob: base} evaluated against the current branch
    "exclude": [],  # glob patterns, e.g. "pnpm-lock.yaml", "**/*.svg"
    "review_instructions": None,  # markdown file with project-specific review rules
    "custom_instruction": None,  # appended under "Additional Focus"
    "include_default_instructions": True,
    "include_agents_file": False,  # inline AGENTS.md from the repo root into reviewer prompts
    "default_setup": None,
    "default_validator": None,
    "default_formatter": None,
    "setups": [],
    "scopes": [],
    "output": "pr-review.md",
    "logs_dir": None,  # write per-call prompt/response transcripts here
    "max_diff_tokens": 60_000,
}


def _fresh_defaults() -> dict:
    return {**DEFAULT_CONFIG, "exclude": [], "setups": [], "scopes": []}


def load_config(config_path: str = DEFAULT_CONFIG_PATH, cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .diffpanel.yml in the current directory
      3. CLI argument overrides

    Setup, scope and model definitions are compiled into their typed forms
    here, so a malformed entry fails at load time rather than mid-review.
    """
    config = _fresh_defaults()

    path = Path(config_path)
    if config_path and path.is_file():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    config["exclude"] = list(config.get("exclude") or [])
    config["setups"] = [setup_from_config(s) for s in config.get("setups") or []]
    config["scopes"] = [scope_from_config(s) for s in config.get("scopes") or []]
    for key in ("default_validator", "default_formatter"):
        if config.get(key):
            config[key] = parse_model_spec(config[key])

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")

    return config


def load_instructions(config: dict) -> Optional[str]:
    """
    Load custom review instructions.

    Returns the file content when ``review_instructions`` is set, or None
    when only the built-in instructions apply.
    """
    custom_path = config.get("review_instructions")
    if not custom_path:
        return None
    p = Path(custom_path)
    if not p.exists():
        raise FileNotFoundError(f"Review instructions file not found: {custom_path}")
    return p.read_text()


def resolve_base_branch(value, current_branch: str, default: str = "main") -> str:
    """Pick the base branch for a diff.

    ``value`` may be a plain branch name or a mapping of branch globs to base
    branches, checked in order against the current branch::

        base_branch:
          "release/*": main
          "*": develop
    """
    if not value:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for pattern, base in value.items():
            if matches_glob(current_branch, str(pattern)):
                return str(base)
        return default
    raise ConfigError(f"base_branch must be a string or a mapping, got {type(value).__name__}")


def get_exclude_patterns(config: dict) -> list[str]:
    return list(config.get("exclude") or [])


class ConfigSource:
    """Loads the config once and hands out the same dict afterwards.

    A broken config file is not fatal: the failure is logged and the built-in
    defaults are used, so a typo never blocks a review.
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, cli_overrides: Optional[dict] = None):
        self.config_path = config_path
        self.cli_overrides = cli_overrides
        self._cached: Optional[dict] = None

    def load(self) -> dict:
        if self._cached is None:
            try:
                self._cached = load_config(self.config_path, self.cli_overrides)
            except (OSError, yaml.YAMLError, ConfigError) as e:
                logger.warning("Failed to load config from %s: %s", self.config_path, e)
                self._cached = load_config("", self.cli_overrides)
        return self._cached


class RunContext:
    """State owned by one CLI invocation.

    The config cache lives here instead of at module level; a fresh
    RunContext is a fresh cache.
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, verbose: bool = False):
        self.config_source = ConfigSource(config_path)
        self.verbose = verbose

    @property
    def config(self) -> dict:
        return self.config_source.load()
