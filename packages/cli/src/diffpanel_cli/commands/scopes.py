"""scopes command: show the review scopes and how many files each selects."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from diffpanel_core.config import resolve_base_branch
from diffpanel_core.errors import SubprocessError
from diffpanel_core.models import FileListContext
from diffpanel_core.scopes import CustomScope, file_count, list_scopes
from diffpanel_core.vcs.git import GitClient

console = Console()


async def _snapshot(base_branch: str | None, config: dict) -> tuple[str, FileListContext]:
    git = GitClient()
    base = base_branch or resolve_base_branch(config.get("base_branch"), await git.current_branch())
    staged, changed = await asyncio.gather(git.staged_file_names(), git.changed_file_names(base))
    return base, FileListContext(staged_files=staged, all_files=changed)


@click.command("scopes")
@click.option("--base-branch", default=None, help="Base branch used to count changed files.")
@click.pass_context
def scopes_cmd(ctx, base_branch: str | None):
    """List review scopes with the number of files each would review."""
    config = ctx.obj["run"].config
    try:
        base, snapshot = asyncio.run(_snapshot(base_branch, config))
    except SubprocessError as e:
        raise click.ClickException(str(e))

    table = Table(title=f"Review Scopes (vs {base})", show_header=True, header_style="bold cyan")
    table.add_column("Scope", style="bold")
    table.add_column("Label")
    table.add_column("Source")
    table.add_column("Files", justify="right")
    for scope in list_scopes(config):
        count = file_count(scope, snapshot)
        kind = "custom" if isinstance(scope, CustomScope) else "built-in"
        table.add_row(scope.id, scope.label, f"{scope.source} ({kind})", "-" if count is None else str(count))
    console.print(table)
