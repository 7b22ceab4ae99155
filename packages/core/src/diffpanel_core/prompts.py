"""Prompt construction for the reviewer, validator and formatter passes.

All three passes share the same instruction block so the validator judges
findings against the same rules the reviewers were given.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from diffpanel_core.config import load_instructions
from diffpanel_core.models import HumanComment, IndividualReview, Issue, PRData, ReviewContext

logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "major", "minor", "nitpick")

AGENTS_FILE = "AGENTS.md"

DEFAULT_REVIEW_INSTRUCTIONS = """\
# Code Review Instructions

Review the change for problems a careful senior engineer would block or flag.

## What to look for
- Bugs and logic errors, including broken edge cases and off-by-one mistakes.
- Security issues: injection, missing authorization checks, leaked secrets.
- Error handling that swallows failures or leaves resources in a bad state.
- Concurrency problems: races, missing awaits, shared mutable state.
- Performance regressions with a real cost (N+1 queries, quadratic loops on large inputs).
- Removed lines matter too: deleted guards, validation or cleanup.

## What to skip
- Trust the tooling: formatting, lint and type errors are caught by CI, do not report them.
- Personal style preferences and naming bikesheds.
- Speculation about code you cannot see. If context is missing, say what you would check."""

FALLBACK_INSTRUCTIONS = "Focus on concrete, actionable issues in the changed code."

_REVIEWER_OUTPUT_FORMAT = """\
## Output Format
Write a markdown list of findings. For each finding give:
- severity: critical, major, minor or nitpick
- the file path and line number in the new file
- what is wrong and why it matters
- a concrete suggestion, with a fenced code block when it helps

If you find nothing worth reporting, reply exactly: No issues identified in this review."""

_VALIDATOR_ROLE = """\
You are the validator for a panel of independent code reviewers.
Each reviewer saw the same diff. Their findings overlap, disagree and sometimes are wrong.

Your job:
1. Merge duplicates: when several reviewers report the same problem, emit ONE issue and list every
   reviewer id that raised it in "reviewers".
2. Verify each finding against the diff. Drop false positives and findings about code the diff does
   not touch.
3. Drop findings that human reviewers already raised or that the human comments show were addressed.
4. Assign a severity (critical, major, minor, nitpick) and order issues from most to least severe."""

_VALIDATOR_OUTPUT_FORMAT = """\
## Output Format
Respond with **only** a valid JSON object:

{
  "summary": "<one or two sentences on the overall state of the change>",
  "issues": [
    {
      "title": "<short title>",
      "description": "<what is wrong and why it matters>",
      "severity": "<critical|major|minor|nitpick>",
      "file": "<path or null>",
      "line": <line number in the new file or null>,
      "reviewers": [<reviewer ids that raised it>],
      "suggestion": "<concrete fix, markdown allowed, or null>"
    }
  ]
}

If no finding survives validation, return an empty "issues" list.
Do not return any text outside the JSON object."""

_FORMATTER_SYSTEM = """\
You turn validated code review findings into the final review comment.

Rules:
- Use GitHub-flavored markdown.
- Start with the summary, then one section per severity that has issues, most severe first.
- For each issue show the title in bold, the location as `path:line` when known, the description
  and the suggestion. Keep code suggestions in fenced blocks with a language tag.
- Mention which reviewers raised each issue, e.g. "(reviewers 1, 3)".
- Do not add, drop, merge or re-rank issues. Do not invent findings.
- If there are no issues, say the change looks good in one short paragraph.
- Output only the markdown body, without a top-level title."""


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str


@dataclass(frozen=True)
class PromptOptions:
    include_default_instructions: bool = True
    custom_instruction: str | None = None
    # Project instructions from the review_instructions file.
    instructions: str | None = None
    # AGENTS.md content, inlined for reviewers only.
    agents_file: str | None = None

    @classmethod
    def from_config(cls, config: dict, root: Path | None = None) -> PromptOptions:
        agents_file = None
        if config.get("include_agents_file"):
            agents_path = (root or Path.cwd()) / AGENTS_FILE
            if agents_path.is_file():
                agents_file = agents_path.read_text()
            else:
                logger.debug("include_agents_file is set but %s does not exist", agents_path)
        return cls(
            include_default_instructions=config.get("include_default_instructions", True),
            custom_instruction=config.get("custom_instruction"),
            instructions=load_instructions(config),
            agents_file=agents_file,
        )


def build_instructions(options: PromptOptions) -> str:
    sections = []
    if options.include_default_instructions:
        sections.append(DEFAULT_REVIEW_INSTRUCTIONS)
    if options.instructions:
        sections.append(options.instructions.strip())
    if options.custom_instruction:
        sections.append(f"## Additional Focus\n{options.custom_instruction.strip()}")
    if not sections:
        sections.append(FALLBACK_INSTRUCTIONS)
    return "\n\n".join(sections)


def _describe_change(context: ReviewContext, pr_data: PRData | None) -> str:
    lines = [f"Reviewing: {context.source_description}"]
    if pr_data is not None:
        lines.append(f"PR #{pr_data.number}: {pr_data.title}")
        lines.append(f"Author: @{pr_data.author}")
        lines.append(f"Branches: {pr_data.head_branch} → {pr_data.base_branch}")
    if context.additional_instructions:
        lines.append(f"\nNotes from the requester:\n{context.additional_instructions}")
    return "\n".join(lines)


def _file_list(changed_files: Sequence[str]) -> str:
    listing = "\n".join(f"- {path}" for path in changed_files) or "- (none)"
    return f"## Changed Files ({len(changed_files)})\n{listing}"


def _diff_block(diff: str) -> str:
    return f"## Diff\n```diff\n{diff}\n```"


def create_review_prompt(
    context: ReviewContext,
    pr_data: PRData | None,
    changed_files: Sequence[str],
    diff: str,
    options: PromptOptions | None = None,
) -> Prompt:
    options = options or PromptOptions()
    system_parts = [
        "You are an expert code reviewer working independently of other reviewers.",
        build_instructions(options),
    ]
    if options.agents_file:
        system_parts.append(f"## Project Guidelines ({AGENTS_FILE})\n{options.agents_file.strip()}")
    system_parts.append(_REVIEWER_OUTPUT_FORMAT)

    user = "\n\n".join([_describe_change(context, pr_data), _file_list(changed_files), _diff_block(diff)])
    return Prompt(system="\n\n".join(system_parts), user=user)


def _human_comments_section(human_comments: Sequence[HumanComment] | None) -> str:
    if not human_comments:
        return ""
    blocks = "\n\n".join(f"**@{c.author}** ({c.created_at}):\n{c.body.strip()}" for c in human_comments)
    return (
        "## Human Comments on the PR\n"
        "Findings already raised or resolved here must be dropped.\n\n" + blocks
    )


def create_validation_prompt(
    context: ReviewContext,
    reviews: Sequence[IndividualReview],
    pr_data: PRData | None,
    changed_files: Sequence[str],
    diff: str,
    human_comments: Sequence[HumanComment] | None = None,
    options: PromptOptions | None = None,
) -> Prompt:
    options = options or PromptOptions()
    system = "\n\n".join(
        [
            _VALIDATOR_ROLE,
            "The reviewers followed these instructions; judge findings by the same rules:\n\n"
            + build_instructions(options),
            _VALIDATOR_OUTPUT_FORMAT,
        ]
    )

    review_blocks = "\n\n".join(f"### Reviewer {r.reviewer_id}\n{r.content.strip()}" for r in reviews)
    parts = [
        _describe_change(context, pr_data),
        f"## Reviewer Findings ({len(reviews)} reviewer(s))\n\n{review_blocks}",
    ]
    comments = _human_comments_section(human_comments)
    if comments:
        parts.append(comments)
    parts.extend([_file_list(changed_files), _diff_block(diff)])
    return Prompt(system=system, user="\n\n".join(parts))


def create_formatter_prompt(
    context: ReviewContext,
    issues: Sequence[Issue],
    summary: str = "",
) -> Prompt:
    payload = {"summary": summary, "issues": [issue.as_dict() for issue in issues]}
    user = (
        f"Reviewing: {context.source_description}\n\n"
        "## Validated Findings\n"
        f"```json\n{json.dumps(payload, indent=2)}\n```"
    )
    return Prompt(system=_FORMATTER_SYSTEM, user=user)
