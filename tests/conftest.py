"""Shared test doubles: scripted repositories and an in-memory catalog."""

import asyncio
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from crawld.database import CatalogRecord
from crawld.repo import Repo


class FakeRepo(Repo):
    """Repository whose clone/update results are scripted by the test."""

    vcs = "fake"

    def __init__(
        self,
        abs_path: Path,
        url: str = "https://example.com/repo.git",
        clone_errors: Sequence[Optional[BaseException]] = (),
        update_error: Optional[BaseException] = None,
        cleanup_error: Optional[BaseException] = None,
        delay: float = 0.0,
        calls: Optional[list] = None,
    ):
        super().__init__(abs_path, url)
        self.clone_errors = list(clone_errors)
        self.update_error = update_error
        self.cleanup_error = cleanup_error
        self.delay = delay
        self.calls = calls if calls is not None else []
        self.existed_before_clone: List[bool] = []

    async def clone(self) -> None:
        self.calls.append("clone")
        self.existed_before_clone.append(self.abs_path.exists())
        if self.delay:
            await asyncio.sleep(self.delay)
        err = self.clone_errors.pop(0) if self.clone_errors else None
        if err is not None:
            raise err
        self.abs_path.mkdir(parents=True, exist_ok=True)
        (self.abs_path / "README").write_text("cloned\n")

    async def update(self) -> None:
        self.calls.append("update")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.update_error is not None:
            raise self.update_error
        (self.abs_path / "UPDATED").write_text("updated\n")

    async def cleanup(self) -> None:
        self.calls.append("cleanup")
        if self.cleanup_error is not None:
            raise self.cleanup_error


class FakeCatalog:
    """Catalog returning fixed records and remembering each query."""

    def __init__(self, records: Sequence[CatalogRecord] = (), error: Optional[Exception] = None):
        self.records = list(records)
        self.error = error
        self.queries: list = []
        self.on_query = None

    async def get_all_repos(self, start_id=0, languages=None):
        self.queries.append((start_id, languages))
        if self.on_query is not None:
            self.on_query()
        if self.error is not None:
            raise self.error
        return [r for r in self.records if r.id >= start_id]


def make_record(repo_id: int, clone_path: Optional[str] = None, vcs: str = "git") -> CatalogRecord:
    return CatalogRecord(
        id=repo_id,
        vcs=vcs,
        clone_path=clone_path or f"example.com/owner/repo{repo_id}",
        clone_url=f"https://example.com/owner/repo{repo_id}.git",
    )


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def clone_dir(tmp_path):
    path = tmp_path / "repos"
    path.mkdir()
    return path
