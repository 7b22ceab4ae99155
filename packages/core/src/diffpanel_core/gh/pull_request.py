from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime

import requests
from github import Github, GithubException

from diffpanel_core.errors import HostingError, ParseError
from diffpanel_core.models import HumanComment, PRData
from diffpanel_core.report import REPORT_MARKER

logger = logging.getLogger(__name__)

_REMOTE_RE = re.compile(r"github\.com[:/](?P<slug>[^/\s]+/[^/\s]+?)(?:\.git)?/?$")


def is_human_user(user) -> bool:
    if user is None:
        return False
    login = getattr(user, "login", "") or ""
    return "[bot]" not in login and getattr(user, "type", "User") != "Bot"


def detect_repo_slug(remote_url: str) -> str | None:
    """Return ``owner/name`` for a GitHub remote URL (https or ssh), else None."""
    match = _REMOTE_RE.search(remote_url.strip())
    return match.group("slug") if match else None


def _timestamp(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value or "")


class GitHubHost:
    """Pull request access through PyGithub.

    PyGithub is blocking, so every call runs in a worker thread. API failures
    surface as HostingError; responses missing fields we rely on surface as
    ParseError.
    """

    def __init__(self, repo_name: str, token: str | None, client: Github | None = None):
        self.repo_name = repo_name
        self._client = client or Github(token)
        self._repo = None

    def _get_repo(self):
        if self._repo is None:
            self._repo = self._client.get_repo(self.repo_name)
        return self._repo

    def _get_pull(self, number: int):
        return self._get_repo().get_pull(number)

    async def _run(self, what: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except GithubException as e:
            raise HostingError(f"GitHub request failed ({what}) for {self.repo_name}: {e}") from e
        except requests.RequestException as e:
            raise HostingError(f"Could not reach GitHub ({what}) for {self.repo_name}: {e}") from e

    async def pr_metadata(self, number: int) -> PRData:
        def fetch():
            pr = self._get_pull(number)
            try:
                return PRData(
                    number=pr.number,
                    title=pr.title or "",
                    base_branch=pr.base.ref,
                    head_branch=pr.head.ref,
                    author=pr.user.login,
                    changed_file_count=pr.changed_files,
                )
            except AttributeError as e:
                raise ParseError(f"Unexpected pull request payload for #{number}: {e}") from e

        return await self._run(f"PR #{number}", fetch)

    async def pr_changed_files(self, number: int) -> list[str]:
        def fetch():
            return [f.filename for f in self._get_pull(number).get_files()]

        return await self._run(f"files of PR #{number}", fetch)

    async def pr_human_comments(self, number: int) -> list[HumanComment]:
        """General comments plus top-level review comments written by humans.

        Bots and threaded replies are skipped, as are earlier diffpanel reports.
        """

        def fetch():
            pr = self._get_pull(number)
            comments = list(pr.get_issue_comments()) + list(pr.get_review_comments())
            result = []
            for c in comments:
                if not is_human_user(c.user) or getattr(c, "in_reply_to_id", None):
                    continue
                if not isinstance(c.body, str):
                    raise ParseError(f"Comment {getattr(c, 'id', '?')} on PR #{number} has no body")
                if REPORT_MARKER in c.body:
                    continue
                result.append(HumanComment(author=c.user.login, body=c.body, created_at=_timestamp(c.created_at)))
            result.sort(key=lambda hc: hc.created_at)
            return result

        return await self._run(f"comments of PR #{number}", fetch)

    async def post_report(self, number: int, body: str, marker: str) -> None:
        """Post ``body`` as a PR comment, deleting earlier comments that carry ``marker``."""

        def post():
            pr = self._get_pull(number)
            for comment in pr.get_issue_comments():
                if marker in (comment.body or ""):
                    logger.debug("Deleting previous review comment %s", comment.id)
                    comment.delete()
            pr.create_issue_comment(body)

        await self._run(f"post to PR #{number}", post)
