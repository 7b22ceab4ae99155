"""CLI entry point for diffpanel.

Commands:
  review   run a multi-reviewer review of a branch, staged changes or a PR
  setups   list the reviewer setups the config resolves to
  scopes   list the review scopes and how many files each selects
  init     interactive wizard that writes .diffpanel.yml
"""

from __future__ import annotations

import importlib.metadata
import logging

import click

from diffpanel_cli.commands.init import init_cmd
from diffpanel_cli.commands.review import review_cmd
from diffpanel_cli.commands.scopes import scopes_cmd
from diffpanel_cli.commands.setups import setups_cmd


@click.group()
@click.version_option(
    version=importlib.metadata.version("diffpanel"),
    prog_name="diffpanel",
)
@click.option(
    "--config",
    "config_path",
    default=".diffpanel.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="DIFFPANEL_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output, including every git command.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Code review by a panel of LLM reviewers, merged by a validator."""
    from diffpanel_cli.auth import resolve_github_token
    from diffpanel_core.config import RunContext

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)

    run = RunContext(config_path, verbose=verbose)
    token = resolve_github_token()
    if token:
        run.config["github_token"] = token
    ctx.obj["run"] = run


main.add_command(review_cmd)
main.add_command(setups_cmd)
main.add_command(scopes_cmd)
main.add_command(init_cmd)
