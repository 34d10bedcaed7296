"""Tests for the VCS drivers and the driver registry."""

import sys

import pytest

from crawld.errors import UnknownVCSError
from crawld.repo import (
    GitRepo,
    HgRepo,
    NetworkError,
    OperationError,
    is_network_error,
    new_repo,
)
from crawld.repo.base import CommandRepo


class ScriptRepo(CommandRepo):
    """Runs small Python snippets in place of a VCS tool."""

    vcs = "script"

    def __init__(self, abs_path, script, timeout=None):
        super().__init__(abs_path, "https://example.com/r.git", timeout=timeout)
        self.script = script

    async def clone(self):
        await self._clone_with([sys.executable, "-c", self.script])

    async def update(self):
        await self._run([sys.executable, "-c", self.script], cwd=self.abs_path)

    async def cleanup(self):
        pass


@pytest.mark.parametrize(
    "stderr",
    [
        "fatal: unable to access 'https://github.com/a/b.git/': Could not resolve host: github.com",
        "fatal: the remote end hung up unexpectedly",
        "error: RPC failed; curl 56 GnuTLS recv error",
        "ssh: connect to host github.com port 22: Connection refused",
    ],
)
def test_network_stderr(stderr):
    assert is_network_error(stderr)


@pytest.mark.parametrize(
    "stderr",
    [
        "fatal: repository 'https://github.com/a/missing.git/' not found",
        "fatal: Not possible to fast-forward, aborting.",
        "",
    ],
)
def test_operation_stderr(stderr):
    assert not is_network_error(stderr)


class TestRegistry:

    @pytest.mark.parametrize(
        "vcs, cls", [("git", GitRepo), ("GIT", GitRepo), ("hg", HgRepo), ("mercurial", HgRepo)]
    )
    def test_known_kinds(self, tmp_path, vcs, cls):
        repo = new_repo(vcs, tmp_path / "r", "https://example.com/r", timeout=5)
        assert isinstance(repo, cls)
        assert repo.abs_path == tmp_path / "r"
        assert repo.url == "https://example.com/r"
        assert repo.timeout == 5

    def test_unknown_kind(self, tmp_path):
        with pytest.raises(UnknownVCSError, match="svn"):
            new_repo("svn", tmp_path / "r", "svn://example.com/r")


class TestCommands:
    """The drivers issue the expected command lines."""

    @pytest.fixture
    def recorded(self, monkeypatch):
        calls = []

        async def fake_run(self, cmd, cwd=None):
            calls.append((list(cmd), cwd))
            return ""

        monkeypatch.setattr(CommandRepo, "_run", fake_run)
        return calls

    @pytest.mark.asyncio
    async def test_git(self, tmp_path, recorded):
        path = tmp_path / "github.com" / "o" / "r"
        repo = GitRepo(path, "https://github.com/o/r.git")

        await repo.clone()
        assert path.parent.is_dir()
        path.mkdir()
        await repo.update()
        await repo.cleanup()

        assert recorded == [
            (["git", "clone", "--quiet", "https://github.com/o/r.git", str(path)], None),
            (["git", "pull", "--quiet", "--ff-only"], path),
            (["git", "gc", "--auto", "--quiet"], path),
        ]

    @pytest.mark.asyncio
    async def test_git_cleanup_skips_missing_copy(self, tmp_path, recorded):
        await GitRepo(tmp_path / "archived", "u").cleanup()
        assert recorded == []

    @pytest.mark.asyncio
    async def test_hg(self, tmp_path, recorded):
        path = tmp_path / "r"
        repo = HgRepo(path, "https://hg.example.com/r")

        await repo.clone()
        await repo.update()
        await repo.cleanup()

        assert recorded == [
            (["hg", "clone", "--quiet", "https://hg.example.com/r", str(path)], None),
            (["hg", "pull", "--update", "--quiet"], path),
        ]


class TestRun:
    """Error classification from real subprocesses."""

    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        repo = ScriptRepo(tmp_path / "r", "print('ok')")
        await repo.clone()

    @pytest.mark.asyncio
    async def test_network_failure(self, tmp_path):
        script = (
            "import sys; sys.stderr.write('fatal: Could not resolve host: example.com'); "
            "sys.exit(128)"
        )
        with pytest.raises(NetworkError, match="Could not resolve host"):
            await ScriptRepo(tmp_path / "r", script).clone()

    @pytest.mark.asyncio
    async def test_operation_failure(self, tmp_path):
        script = "import sys; sys.stderr.write('fatal: repository not found'); sys.exit(128)"
        repo = ScriptRepo(tmp_path / "r", script)
        with pytest.raises(OperationError, match="status 128") as excinfo:
            await repo.clone()
        assert excinfo.value.repo is repo

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self, tmp_path):
        repo = ScriptRepo(tmp_path / "r", "import time; time.sleep(30)", timeout=0.2)
        with pytest.raises(NetworkError, match="timed out"):
            await repo.clone()

    @pytest.mark.asyncio
    async def test_partial_clone_is_removed(self, tmp_path):
        path = tmp_path / "partial"
        script = (
            f"import os, sys; os.makedirs({str(path)!r}); "
            f"open(os.path.join({str(path)!r}, 'HEAD'), 'w').close(); sys.exit(1)"
        )
        with pytest.raises(OperationError):
            await ScriptRepo(path, script).clone()
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        repo = GitRepo(tmp_path / "r", "u")

        async def run_missing(cmd, cwd=None):
            return await CommandRepo._run(repo, ["crawld-no-such-tool"], cwd)

        repo._run = run_missing
        with pytest.raises(OperationError, match="cannot run"):
            await repo.update()
