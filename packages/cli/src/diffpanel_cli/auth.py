"""Finding a GitHub token for PR reviews.

Local branch and staged reviews never touch GitHub. Only ``--pr`` and
``--post`` need a token, taken from the environment when one is exported
and otherwise borrowed from an existing GitHub CLI login.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

# Same variables the GitHub CLI itself honours, in the same order.
TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")
GH_CLI_TIMEOUT = 5


def _token_from_env() -> str | None:
    for name in TOKEN_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            logger.debug("Using GitHub token from %s", name)
            return value
    return None


def _token_from_gh_cli() -> str | None:
    try:
        proc = subprocess.run(["gh", "auth", "token"], capture_output=True, text=True, timeout=GH_CLI_TIMEOUT)
    except FileNotFoundError:
        logger.debug("gh is not installed")
        return None
    except subprocess.TimeoutExpired:
        logger.debug("gh auth token did not answer within %ss", GH_CLI_TIMEOUT)
        return None

    token = (proc.stdout or "").strip()
    if proc.returncode != 0 or not token:
        logger.debug("gh has no active login (exit %s)", proc.returncode)
        return None
    logger.debug("Using GitHub token from the gh login")
    return token


def resolve_github_token() -> str | None:
    """Environment first, then ``gh auth token``; None if both come up empty."""
    return _token_from_env() or _token_from_gh_cli()
