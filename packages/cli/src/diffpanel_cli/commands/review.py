"""review command: run the reviewer panel over a diff and write the report."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console

from diffpanel_core.config import get_exclude_patterns, resolve_base_branch
from diffpanel_core.diff import (
    apply_exclude_patterns,
    drop_excluded_files,
    estimate_token_count,
    filter_import_only_changes,
    format_num,
)
from diffpanel_core.errors import (
    DiffPanelError,
    NoFilesMatched,
    PipelineAborted,
    SubprocessError,
    UnknownSelectionError,
)
from diffpanel_core.gh.pull_request import GitHubHost, detect_repo_slug
from diffpanel_core.models import FileListContext, ReviewContext, ReviewSetup, TokenUsage
from diffpanel_core.orchestrator import ReviewOrchestrator
from diffpanel_core.prompts import PromptOptions
from diffpanel_core.providers import build_model_caller, missing_api_keys
from diffpanel_core.report import REPORT_MARKER, format_validated_review, write_report
from diffpanel_core.scopes import CustomScope, get_files, list_scopes, resolve_scope, scope_options
from diffpanel_core.setups import available_setups, describe_setup, resolve_setup
from diffpanel_core.usage import STAGE_FORMATTING, STAGE_REVIEW, STAGE_VALIDATION, log_token_usage_breakdown
from diffpanel_core.vcs.git import GitClient

console = Console()


def _choose_setup(config: dict, label: str | None) -> tuple[str, ReviewSetup]:
    label = label or config.get("default_setup")
    setup = resolve_setup(config, label)
    if setup is not None:
        return label, setup

    labels = available_setups(config)
    console.print("\nReview setups (heavier setups cost more):")
    for name in labels:
        console.print(f"  [bold]{name}[/bold]  {describe_setup(name, config)}")
    label = click.prompt("\nSelect the review setup", type=click.Choice(labels), default="light")
    return label, resolve_setup(config, label)


def _choose_scope(config: dict, scope_id: str | None, files: FileListContext, yes: bool):
    scope = resolve_scope(config, scope_id)
    if scope is not None:
        return scope
    if yes:
        return resolve_scope(config, "all")

    options = scope_options(list_scopes(config), files)
    console.print("\nReview scopes:")
    for option_id, label in options:
        console.print(f"  [bold]{option_id}[/bold]  {label}")
    chosen = click.prompt("\nSelect the review scope", type=click.Choice([o[0] for o in options]), default="all")
    return resolve_scope(config, chosen)


def _print_partial_usage(ledger) -> None:
    stages = ledger.by_stage()
    if not stages:
        return
    console.print("[yellow]Tokens spent before the run failed:[/yellow]")
    log_token_usage_breakdown(
        stages.get(STAGE_REVIEW, TokenUsage()),
        stages.get(STAGE_VALIDATION, TokenUsage()),
        stages.get(STAGE_FORMATTING, TokenUsage()),
        console=console,
    )


async def _fetch_base(git: GitClient, base_branch: str) -> None:
    try:
        await git.fetch_branch(base_branch)
    except SubprocessError as e:
        # Missing remote branch or already up to date; the diff below reports real problems.
        console.print(f"[dim]Could not fetch {base_branch}: {e}[/dim]")


async def _run(
    config: dict,
    setup_label: str,
    setup: ReviewSetup,
    scope_id: str | None,
    pr_number: int | None,
    repo: str | None,
    post: bool,
    yes: bool,
    note: str | None = None,
) -> None:
    git = GitClient()
    current_branch = await git.current_branch()
    base_branch = resolve_base_branch(config.get("base_branch"), current_branch)
    excludes = get_exclude_patterns(config)

    host = None
    pr_data = None
    if pr_number is not None or post:
        if pr_number is None:
            raise click.UsageError("--post needs --pr to know which pull request to comment on.")
        repo = repo or detect_repo_slug(await git.remote_url())
        if not repo:
            raise click.UsageError("Could not detect the GitHub repository from origin. Pass --repo owner/name.")
        if not config.get("github_token"):
            raise click.UsageError("No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.")
        host = GitHubHost(repo, config["github_token"])

    if pr_number is not None:
        pr_data, pr_files = await asyncio.gather(host.pr_metadata(pr_number), host.pr_changed_files(pr_number))
        base_branch = pr_data.base_branch
        await _fetch_base(git, base_branch)
        snapshot = FileListContext(all_files=pr_files)
    else:
        await _fetch_base(git, base_branch)
        staged, changed = await asyncio.gather(git.staged_file_names(), git.changed_file_names(base_branch))
        snapshot = FileListContext(staged_files=staged, all_files=changed)

    scope = _choose_scope(config, scope_id, snapshot, yes)
    if pr_number is not None and scope.source == "staged":
        raise click.UsageError("Staged scopes cannot be combined with --pr.")

    selected = get_files(scope, snapshot)
    files = apply_exclude_patterns(selected, excludes)
    if not files:
        raise NoFilesMatched(
            f"No files to review in scope {scope.id!r}"
            + (f" after excluding {len(selected)} file(s)" if selected else "")
            + "."
        )
    if len(files) != len(selected):
        console.print(f"Reviewing {len(files)} file(s) ({len(selected) - len(files)} excluded)")

    include = files if isinstance(scope, CustomScope) else None
    if scope.source == "staged":
        raw_diff = await git.staged_diff(include=include, exclude=excludes)
        source_description = "staged changes"
    else:
        raw_diff = await git.diff_between(base_branch, include=include, exclude=excludes)
        source_description = f"PR #{pr_number}" if pr_number is not None else f"{current_branch} vs {base_branch}"
    diff = filter_import_only_changes(drop_excluded_files(raw_diff, excludes))
    if not diff.strip():
        raise NoFilesMatched("Nothing to review: the selected changes only touch import/export lines.")

    diff_tokens = estimate_token_count(diff)
    console.print(
        f"Diff: {round(len(diff) / 1024)}KB, {len(diff.splitlines())} lines, {format_num(diff_tokens)} tokens"
    )
    max_tokens = config.get("max_diff_tokens") or 0
    if max_tokens and diff_tokens > max_tokens:
        console.print(
            f"[yellow]Warning: the diff has {format_num(diff_tokens)} tokens "
            f"(max recommended: {format_num(max_tokens)})[/yellow]"
        )

    context = ReviewContext(source_description=source_description, pr_number=pr_number, additional_instructions=note)
    console.print(f"\nProcessing {source_description} with the [bold]{setup_label}[/bold] setup")

    orchestrator = ReviewOrchestrator(
        build_model_caller(config),
        setup,
        PromptOptions.from_config(config),
        config.get("logs_dir"),
    )
    loader = (lambda: host.pr_human_comments(pr_number)) if host is not None and pr_number is not None else None
    try:
        outcome = await orchestrator.run(context, files, diff, pr_data=pr_data, load_human_comments=loader)
    except PipelineAborted:
        _print_partial_usage(orchestrator.ledger)
        raise

    breakdown = outcome.breakdown
    log_token_usage_breakdown(
        breakdown.reviews_usage, breakdown.validator_usage, breakdown.formatter_usage, console=console
    )

    author = pr_data.author if pr_data is not None else "local"
    head_ref = pr_data.head_branch if pr_data is not None else current_branch
    content = format_validated_review(outcome.validated, author, context, head_ref, breakdown)
    path = write_report(content, config.get("output") or "pr-review.md")
    console.print(f"\n[green]Review written to {path}[/green]")

    if post:
        if not yes and not click.confirm(f"Post the review to PR #{pr_number}?", default=True):
            return
        await host.post_report(pr_number, content, REPORT_MARKER)
        console.print(f"[green]Review posted to PR #{pr_number}[/green]")


@click.command("review")
@click.option("--setup", "setup_label", default=None, help="Reviewer setup label (built-in or from .diffpanel.yml).")
@click.option("--scope", "scope_id", default=None, help="Review scope id: all, staged or a custom scope.")
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request number to review.")
@click.option("--repo", default=None, help="GitHub repository in owner/name format. Detected from origin if omitted.")
@click.option("--base-branch", default=None, help="Base branch for the diff. Overrides config file.")
@click.option("--output", default=None, help="Report file path. Overrides config file.")
@click.option(
    "--instructions",
    "instructions_path",
    default=None,
    help="Path to a Markdown file with extra review instructions. Overrides config file.",
)
@click.option("--note", default=None, help="Free-form context for the reviewers, e.g. what the change is meant to do.")
@click.option("--post", is_flag=True, help="Post the report as a comment on the pull request.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts.")
@click.pass_context
def review_cmd(
    ctx,
    setup_label: str | None,
    scope_id: str | None,
    pr_number: int | None,
    repo: str | None,
    base_branch: str | None,
    output: str | None,
    instructions_path: str | None,
    note: str | None,
    post: bool,
    yes: bool,
):
    """Review code changes with a panel of AI reviewers.

    Each reviewer in the setup reviews the same diff independently. A
    validator merges their findings, drops false positives and a formatter
    writes the final report.

    \b
    Environment variables:
      OPENAI_API_KEY       Required by setups with OpenAI models
      ANTHROPIC_API_KEY    Required by setups with Anthropic models
      GITHUB_TOKEN         Required with --pr / --post (or use gh CLI)
    """
    config = dict(ctx.obj["run"].config)
    overrides = {"base_branch": base_branch, "output": output, "review_instructions": instructions_path}
    for key, value in overrides.items():
        if value is not None:
            config[key] = value

    try:
        label, setup = _choose_setup(config, setup_label)
        missing = missing_api_keys(setup, config)
        if missing:
            raise click.UsageError(f"{', '.join(missing)} environment variable is not set.")
        asyncio.run(_run(config, label, setup, scope_id, pr_number, repo, post, yes, note))
    except (UnknownSelectionError, NoFilesMatched) as e:
        raise click.UsageError(str(e))
    except FileNotFoundError as e:
        raise click.UsageError(str(e))
    except DiffPanelError as e:
        raise click.ClickException(str(e))
