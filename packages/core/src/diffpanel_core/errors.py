"""Error taxonomy for the review pipeline.

Every error the pipeline raises on purpose derives from DiffPanelError so the
CLI can turn it into a one-line message and a non-zero exit without catching
programming errors by accident.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from diffpanel_core.models import TokenUsage


class DiffPanelError(Exception):
    """Base class for every expected pipeline failure."""


class ConfigError(DiffPanelError):
    """A setup, scope or model definition in the config file is malformed."""


class UnknownSelectionError(DiffPanelError):
    """A --setup or --scope value matched neither a custom nor a built-in entry."""

    def __init__(self, kind: str, value: str, available: Sequence[str]):
        self.kind = kind
        self.value = value
        self.available = list(available)
        super().__init__(f"Invalid {kind}: {value}. Valid options: {', '.join(self.available)}")


class SubprocessError(DiffPanelError):
    """An external command exited non-zero or could not be spawned."""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str = ""):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr
        cmd = " ".join(self.args_list)
        if returncode is None:
            message = f"Could not run `{cmd}`: {stderr}"
        else:
            message = f"`{cmd}` exited with status {returncode}"
            if stderr:
                message += f": {stderr}"
        super().__init__(message)


class HostingError(DiffPanelError):
    """The code-hosting API (GitHub) rejected or failed a request."""


class ParseError(DiffPanelError):
    """External output did not match the shape we expected."""


class ModelCallError(DiffPanelError):
    """A model provider call failed, timed out or returned nothing usable."""


class ReviewCallError(DiffPanelError):
    """One reviewer's call failed. Recovered unless every reviewer fails."""

    def __init__(self, reviewer_id: int, model: str, cause: BaseException | str):
        self.reviewer_id = reviewer_id
        self.model = model
        self.cause = cause
        super().__init__(f"Reviewer {reviewer_id} ({model}) failed: {cause}")


class PipelineAborted(DiffPanelError):
    """Fatal pipeline failure that still carries the usage spent so far."""

    def __init__(self, message: str, usage: TokenUsage | None = None):
        self.usage = usage
        super().__init__(message)


class AllReviewsFailed(PipelineAborted):
    def __init__(self, failures: Sequence[ReviewCallError], usage: TokenUsage | None = None):
        self.failures = list(failures)
        super().__init__("All reviewers failed - cannot proceed with review", usage)


class ValidationCallError(PipelineAborted):
    pass


class FormatterCallError(PipelineAborted):
    pass


class NoFilesMatched(DiffPanelError):
    """The selected scope and filters left nothing to review."""
