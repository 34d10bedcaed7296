"""Mercurial repository driver."""

from crawld.repo.base import CommandRepo


class HgRepo(CommandRepo):
    """Repository managed with the ``hg`` command line tool."""

    vcs = "hg"

    async def clone(self) -> None:
        await self._clone_with(
            ["hg", "clone", "--quiet", self.url, str(self.abs_path)]
        )

    async def update(self) -> None:
        await self._run(["hg", "pull", "--update", "--quiet"], cwd=self.abs_path)

    async def cleanup(self) -> None:
        pass
