"""Async wrapper around the local ``git`` executable."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

from diffpanel_core.errors import SubprocessError

logger = logging.getLogger(__name__)


async def run_cmd(args: Sequence[str], timeout: float | None = None, cwd: str | Path | None = None) -> str:
    """Run a command and return its stdout.

    Raises SubprocessError when the command cannot be spawned, exits non-zero
    or outlives ``timeout`` seconds.
    """
    args = list(args)
    logger.debug("run: %s", " ".join(args))
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as e:
        raise SubprocessError(args, None, str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise SubprocessError(args, None, f"timed out after {timeout}s")

    if proc.returncode != 0:
        raise SubprocessError(args, proc.returncode, stderr.decode(errors="replace").strip())
    return stdout.decode(errors="replace")


def _pathspec(include: Sequence[str] | None, exclude: Sequence[str] | None) -> list[str]:
    if not include and not exclude:
        return []
    # Includes are exact paths; excludes are globs where "**/" also matches the top level.
    return [
        "--",
        *(f":(literal){path}" for path in include or []),
        *(f":(glob,exclude){pattern}" for pattern in exclude or []),
    ]


def _lines(output: str) -> list[str]:
    return [line for line in output.strip().split("\n") if line]


class GitClient:
    def __init__(self, repo_path: str | Path | None = None, timeout: float | None = None):
        self.repo_path = repo_path
        self.timeout = timeout

    async def _git(self, *args: str) -> str:
        return await run_cmd(["git", *args], timeout=self.timeout, cwd=self.repo_path)

    async def current_branch(self) -> str:
        return (await self._git("rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def diff_between(
        self,
        base: str,
        head: str = "HEAD",
        include: Sequence[str] | None = None,
        exclude: Sequence[str] | None = None,
    ) -> str:
        """Diff from the merge base of ``base`` and ``head`` to ``head``."""
        return await self._git("diff", f"{base}...{head}", *_pathspec(include, exclude))

    async def staged_diff(
        self, include: Sequence[str] | None = None, exclude: Sequence[str] | None = None
    ) -> str:
        return await self._git("diff", "--cached", *_pathspec(include, exclude))

    async def changed_file_names(self, base: str) -> list[str]:
        return _lines(await self._git("diff", "--name-only", f"origin/{base}...HEAD"))

    async def staged_file_names(self) -> list[str]:
        return _lines(await self._git("diff", "--cached", "--name-only"))

    async def fetch_branch(self, branch: str) -> None:
        await self._git("fetch", "origin", f"{branch}:{branch}")

    async def remote_url(self, remote: str = "origin") -> str:
        return (await self._git("remote", "get-url", remote)).strip()
