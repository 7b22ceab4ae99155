"""init command: interactive wizard that writes .diffpanel.yml.

Optionally generates .github/workflows/diffpanel.yml so pull requests get a
panel review posted as a comment.
"""

from __future__ import annotations

import importlib.metadata
from pathlib import Path

import click
import yaml
from rich.console import Console

from diffpanel_core.config import DEFAULT_CONFIG_PATH

console = Console()

_PROVIDER_SETUPS = {"openai": "light", "anthropic": "lightAnthropic"}
_PROVIDER_KEYS = {"openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY"}

_WORKFLOW_TEMPLATE = """\
name: diffpanel review

on:
  pull_request:
    types: [opened, synchronize, reopened]

jobs:
  review:
    runs-on: ubuntu-latest
    permissions:
      contents: read
      pull-requests: write

    steps:
      - uses: actions/checkout@v4
        with:
          fetch-depth: 0

      - name: Set up Python
        uses: actions/setup-python@v5
        with:
          python-version: "3.12"

      - name: Install diffpanel
        run: pip install "diffpanel[{provider}]=={version}"

      - name: Run panel review
        env:
          GITHUB_TOKEN: ${{{{ secrets.GITHUB_TOKEN }}}}
          {api_key_env}: ${{{{ secrets.{api_key_env} }}}}
        run: |
          diffpanel review \\
            --repo ${{{{ github.repository }}}} \\
            --pr ${{{{ github.event.pull_request.number }}}} \\
            --setup {setup} \\
            --post --yes
"""


@click.command("init")
def init_cmd():
    """Create .diffpanel.yml and, optionally, a GitHub Actions workflow."""
    console.print("\n[bold cyan]diffpanel init[/bold cyan]: project setup\n")

    provider = click.prompt("AI provider", type=click.Choice(list(_PROVIDER_SETUPS)), default="openai")
    api_key_env = _PROVIDER_KEYS[provider]
    setup = _PROVIDER_SETUPS[provider]

    base_branch = click.prompt("Base branch", default="main")
    exclude = click.prompt(
        "Files to exclude (comma-separated globs, empty for none)",
        default="",
        show_default=False,
    )

    config: dict = {
        "base_branch": base_branch,
        "default_setup": setup,
        "exclude": [p.strip() for p in exclude.split(",") if p.strip()],
    }

    instructions = click.prompt(
        "Markdown file with project review rules (empty for none)", default="", show_default=False
    )
    if instructions:
        config["review_instructions"] = instructions
        if not Path(instructions).exists():
            console.print(f"[yellow]{instructions} does not exist yet; create it before the first review.[/yellow]")

    _write_config(config)
    console.print(f"[green]Wrote {DEFAULT_CONFIG_PATH}[/green]")

    if click.confirm("\nGenerate .github/workflows/diffpanel.yml for GitHub Actions?", default=True):
        _write_workflow(provider, api_key_env, setup)
        console.print("[green]Created .github/workflows/diffpanel.yml[/green]")
        console.print(
            f"\n[yellow]Remember to add [bold]{api_key_env}[/bold] to your "
            "GitHub repository secrets (Settings → Secrets → Actions).[/yellow]"
        )

    console.print("\n[bold green]Setup complete![/bold green]")
    console.print("Run a review with: [bold]diffpanel review[/bold]")


def _write_config(config: dict) -> None:
    """Write or update .diffpanel.yml, preserving keys the wizard does not ask about."""
    path = Path(DEFAULT_CONFIG_PATH)
    existing: dict = {}
    if path.exists():
        existing = yaml.safe_load(path.read_text()) or {}
    existing.update(config)
    path.write_text(yaml.dump(existing, default_flow_style=False, sort_keys=False))


def _write_workflow(provider: str, api_key_env: str, setup: str) -> None:
    workflow_dir = Path(".github/workflows")
    workflow_dir.mkdir(parents=True, exist_ok=True)
    (workflow_dir / "diffpanel.yml").write_text(
        _WORKFLOW_TEMPLATE.format(
            provider=provider,
            api_key_env=api_key_env,
            setup=setup,
            version=importlib.metadata.version("diffpanel"),
        )
    )
