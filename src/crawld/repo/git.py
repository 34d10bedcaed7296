"""Git repository driver."""

from crawld.repo.base import CommandRepo


class GitRepo(CommandRepo):
    """Repository managed with the ``git`` command line tool."""

    vcs = "git"

    async def clone(self) -> None:
        await self._clone_with(
            ["git", "clone", "--quiet", self.url, str(self.abs_path)]
        )

    async def update(self) -> None:
        await self._run(["git", "pull", "--quiet", "--ff-only"], cwd=self.abs_path)

    async def cleanup(self) -> None:
        # Nothing to do once the working copy has been archived away.
        if not self.abs_path.is_dir():
            return
        await self._run(["git", "gc", "--auto", "--quiet"], cwd=self.abs_path)
