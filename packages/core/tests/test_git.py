"""Tests for the async git wrapper."""

import shutil
import subprocess
import sys
from unittest.mock import AsyncMock

import pytest

from diffpanel_core.errors import SubprocessError
from diffpanel_core.vcs.git import GitClient, run_cmd


class TestRunCmd:
    @pytest.mark.asyncio
    async def test_returns_stdout(self):
        out = await run_cmd([sys.executable, "-c", "print('hello')"])
        assert out.strip() == "hello"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        script = "import sys; sys.stderr.write('fatal: bad revision'); sys.exit(128)"
        with pytest.raises(SubprocessError) as exc:
            await run_cmd([sys.executable, "-c", script])
        assert exc.value.returncode == 128
        assert exc.value.stderr == "fatal: bad revision"
        assert "exited with status 128" in str(exc.value)

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(SubprocessError) as exc:
            await run_cmd(["definitely-not-a-real-binary-xyz"])
        assert exc.value.returncode is None

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(SubprocessError, match="timed out"):
            await run_cmd([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.2)


@pytest.fixture
def git(mocker):
    client = GitClient(repo_path="/repo")
    run = mocker.patch("diffpanel_core.vcs.git.run_cmd", new=AsyncMock(return_value=""))
    return client, run


class TestGitClient:
    @pytest.mark.asyncio
    async def test_diff_between_uses_merge_base_syntax(self, git):
        client, run = git
        await client.diff_between("main")
        run.assert_awaited_once_with(["git", "diff", "main...HEAD"], timeout=None, cwd="/repo")

    @pytest.mark.asyncio
    async def test_diff_between_with_pathspecs(self, git):
        client, run = git
        await client.diff_between("origin/main", "feature", include=["src/a.ts"], exclude=["**/*.svg"])
        args = run.await_args.args[0]
        assert args == ["git", "diff", "origin/main...feature", "--", ":(literal)src/a.ts", ":(glob,exclude)**/*.svg"]

    @pytest.mark.asyncio
    async def test_staged_diff(self, git):
        client, run = git
        await client.staged_diff(exclude=["*.lock"])
        assert run.await_args.args[0] == ["git", "diff", "--cached", "--", ":(glob,exclude)*.lock"]

    @pytest.mark.asyncio
    async def test_changed_file_names_splits_lines(self, git):
        client, run = git
        run.return_value = "src/a.ts\nsrc/b.ts\n\n"
        assert await client.changed_file_names("main") == ["src/a.ts", "src/b.ts"]
        assert run.await_args.args[0] == ["git", "diff", "--name-only", "origin/main...HEAD"]

    @pytest.mark.asyncio
    async def test_no_staged_files(self, git):
        client, run = git
        run.return_value = "\n"
        assert await client.staged_file_names() == []

    @pytest.mark.asyncio
    async def test_current_branch_is_stripped(self, git):
        client, run = git
        run.return_value = "feature/x\n"
        assert await client.current_branch() == "feature/x"

    @pytest.mark.asyncio
    async def test_fetch_branch(self, git):
        client, run = git
        await client.fetch_branch("main")
        assert run.await_args.args[0] == ["git", "fetch", "origin", "main:main"]

    @pytest.mark.asyncio
    async def test_timeout_is_forwarded(self, mocker):
        run = mocker.patch("diffpanel_core.vcs.git.run_cmd", new=AsyncMock(return_value="x\n"))
        await GitClient(timeout=5).remote_url()
        run.assert_awaited_once_with(["git", "remote", "get-url", "origin"], timeout=5, cwd=None)


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
class TestPathspecsAgainstRealRepo:
    @pytest.fixture
    def repo(self, tmp_path):
        subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
        (tmp_path / "icon.svg").write_text("<svg/>\n")
        (tmp_path / "app.ts").write_text("export const app = 1;\n")
        (tmp_path / "assets").mkdir()
        (tmp_path / "assets" / "logo.svg").write_text("<svg/>\n")
        subprocess.run(["git", "add", "."], cwd=tmp_path, check=True)
        return tmp_path

    @pytest.mark.asyncio
    async def test_double_star_exclude_matches_top_level_files(self, repo):
        diff = await GitClient(repo_path=repo).staged_diff(exclude=["**/*.svg"])
        assert "app.ts" in diff
        assert "icon.svg" not in diff
        assert "logo.svg" not in diff

    @pytest.mark.asyncio
    async def test_single_star_stays_in_one_directory(self, repo):
        diff = await GitClient(repo_path=repo).staged_diff(exclude=["*.svg"])
        assert "icon.svg" not in diff
        assert "assets/logo.svg" in diff
