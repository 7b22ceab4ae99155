"""setups command: show every reviewer setup and what it resolves to."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from diffpanel_core.setups import BUILT_IN_SETUPS, available_setups, resolve_setup

console = Console()


@click.command("setups")
@click.pass_context
def setups_cmd(ctx):
    """List built-in and custom reviewer setups."""
    config = ctx.obj["run"].config
    default = config.get("default_setup")

    table = Table(title="Review Setups", show_header=True, header_style="bold cyan")
    table.add_column("Setup", style="bold")
    table.add_column("Kind")
    table.add_column("Reviewers")
    table.add_column("Validator")
    table.add_column("Formatter")

    custom = {s.label for s in config.get("setups") or []}
    for label in available_setups(config):
        setup = resolve_setup(config, label)
        reviewers = "\n".join(f"{i}. {m.display_name}" for i, m in enumerate(setup.reviewers, 1))
        kind = "custom" if label in custom else "built-in"
        if label in custom and label in BUILT_IN_SETUPS:
            kind = "custom (overrides built-in)"
        name = f"{label} [green](default)[/green]" if label == default else label
        table.add_row(name, kind, reviewers, setup.validator.display_name, setup.formatter.display_name)

    console.print(table)
