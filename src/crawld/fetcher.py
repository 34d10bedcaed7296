"""Periodic repository fetcher.

Each cycle loads the work set from the catalog, hands it to a fixed pool of
worker tasks through a pre-filled queue and waits for all of them before
sleeping. Per repository, a worker:

1. extracts ``<path>.tar`` if present (on failure, removes the mess and
   carries on as if the repository were absent);
2. clones the repository if its path is absent or empty;
3. otherwise updates it. A network failure skips the repository for this
   cycle; any other failure deletes the working copy and re-clones;
4. archives the working copy if archiving is enabled;
5. runs the driver's cleanup;
6. reports the repository id on the completion stream.

A repository that fails is dropped for the current cycle and retried on the
next one.
"""

import asyncio
import logging
import shutil
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from crawld import archive
from crawld.database import CatalogRecord
from crawld.errbag import ErrorBag
from crawld.errors import CatalogError, UnknownVCSError
from crawld.repo import NetworkError, Repo, new_repo

logger = logging.getLogger(__name__)


class FetchOutcome(Enum):
    """Result of processing a single work item."""

    CLONED = "cloned"
    UPDATED = "updated"
    RECLONED = "recloned"
    FAILED = "failed"


@dataclass
class WorkItem:
    """One repository's unit of fetch work for a single cycle."""

    id: int
    repo: Repo


def is_dir_empty(path: Path) -> bool:
    """Return True if ``path`` is a directory without entries."""
    try:
        return not any(Path(path).iterdir())
    except OSError:
        return False


class RepoFetcher:
    """Fetch cycle orchestrator.

    Args:
        catalog: Object with an async ``get_all_repos(start_id, languages)``.
        errbag: Error bag every recorded failure is forwarded to.
        completions: Stream the id of every completed repository is put on.
        clone_dir: Base directory catalog clone paths are relative to.
        max_workers: Number of worker tasks per cycle.
        fetch_interval: Seconds to sleep between cycles.
        languages: Optional primary language filter.
        tar_repos: Archive working copies after each fetch.
        start_id: Resume threshold for the first cycle only.
        clone_timeout: Timeout handed to the repository drivers.
        repo_factory: Builds a Repo from (vcs, abs_path, url).
    """

    def __init__(
        self,
        catalog,
        errbag: ErrorBag,
        completions: "asyncio.Queue[int]",
        clone_dir: Path,
        max_workers: int = 8,
        fetch_interval: float = 3600.0,
        languages: Optional[Sequence[str]] = None,
        tar_repos: bool = False,
        start_id: int = 0,
        clone_timeout: Optional[float] = None,
        repo_factory: Optional[Callable[[str, Path, str], Repo]] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.catalog = catalog
        self.errbag = errbag
        self.completions = completions
        self.clone_dir = Path(clone_dir)
        self.max_workers = max_workers
        self.fetch_interval = fetch_interval
        self.languages = list(languages) if languages else None
        self.tar_repos = tar_repos
        self.start_id = start_id
        self.clone_timeout = clone_timeout
        self._repo_factory = repo_factory or self._default_repo_factory
        self.cycles = 0

    def _default_repo_factory(self, vcs: str, abs_path: Path, url: str) -> Repo:
        return new_repo(vcs, abs_path, url, timeout=self.clone_timeout)

    def _record(self, err: BaseException) -> None:
        self.errbag.record(err)

    async def load_work(self) -> List[WorkItem]:
        """Load this cycle's work set. Catalog failures are fatal."""
        try:
            records: List[CatalogRecord] = await self.catalog.get_all_repos(
                self.start_id, self.languages
            )
        except CatalogError:
            raise
        except Exception as e:
            raise CatalogError(f"cannot load repositories: {e}") from e

        # next time, we want to get all repos from the first one
        self.start_id = 0

        items = []
        for record in records:
            try:
                repo = self._repo_factory(
                    record.vcs, self.clone_dir / record.clone_path, record.clone_url
                )
            except UnknownVCSError as e:
                logger.error(f"Skipping repository {record.id}: {e}")
                continue
            items.append(WorkItem(id=record.id, repo=repo))
        return items

    async def clone(self, repo: Repo) -> bool:
        logger.info(f"Cloning {repo.url} into {repo.abs_path}")
        try:
            await repo.clone()
        except Exception as e:
            logger.error(f"Impossible to clone {repo.url} in {repo.abs_path} ({e}), skipping")
            self._record(e)
            return False
        return True

    async def update(self, repo: Repo) -> FetchOutcome:
        logger.info(f"Updating {repo.abs_path}")
        try:
            await repo.update()
            return FetchOutcome.UPDATED
        except Exception as e:
            logger.warning(f"Impossible to update {repo.abs_path} ({e})")
            self._record(e)
            # we just want to skip on a network error
            if isinstance(e, NetworkError):
                return FetchOutcome.FAILED

        logger.info(f"Attempting to re-clone {repo.abs_path}")
        try:
            await asyncio.to_thread(shutil.rmtree, repo.abs_path)
        except OSError as e:
            logger.error(f"Cannot remove {repo.abs_path} ({e})")
            self._record(e)
            return FetchOutcome.FAILED

        if await self.clone(repo):
            return FetchOutcome.RECLONED
        return FetchOutcome.FAILED

    async def _extract_archive(self, repo: Repo) -> None:
        tar_path = archive.archive_path(repo.abs_path)
        if not tar_path.exists():
            return
        try:
            await asyncio.to_thread(archive.extract_in_place, tar_path)
        except Exception as e:
            logger.warning(
                f"Impossible to extract the tar archive ({tar_path}), "
                f"cannot update the repository: {e}"
            )
            self._record(e)
            # attempt to remove the eventual mess
            tar_path.unlink(missing_ok=True)
            await asyncio.to_thread(shutil.rmtree, repo.abs_path, True)

    async def _create_archive(self, repo: Repo) -> None:
        try:
            await asyncio.to_thread(archive.create_in_place, repo.abs_path)
        except Exception as e:
            logger.error(
                f"Impossible to create tar archive ({archive.archive_path(repo.abs_path)}): {e}"
            )
            self._record(e)

    async def process(self, item: WorkItem) -> FetchOutcome:
        """Run the fetch state machine for a single repository."""
        repo = item.repo

        await self._extract_archive(repo)

        if not repo.abs_path.exists() or is_dir_empty(repo.abs_path):
            outcome = FetchOutcome.CLONED if await self.clone(repo) else FetchOutcome.FAILED
        else:
            outcome = await self.update(repo)

        if outcome is FetchOutcome.FAILED:
            return outcome

        if self.tar_repos:
            await self._create_archive(repo)

        try:
            await repo.cleanup()
        except Exception as e:
            logger.warning(f"Cleanup of {repo.abs_path} failed: {e}")

        # notify we're done with this repository
        await self.completions.put(item.id)
        return outcome

    async def _worker(self, queue: "asyncio.Queue[WorkItem]", outcomes: Counter) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                outcome = await self.process(item)
            except Exception as e:
                # A bug in one repository's processing must not take down
                # the cycle barrier.
                logger.exception(f"Unexpected error fetching repository {item.id}")
                self._record(e)
                outcome = FetchOutcome.FAILED
            finally:
                queue.task_done()
            outcomes[outcome.value] += 1

    async def run_cycle(self) -> Dict[str, float]:
        """Run one fetch cycle and return its statistics."""
        logger.info("Starting the repositories fetcher")
        started = time.monotonic()

        items = await self.load_work()

        # The queue holds the whole cycle up front; once drained, workers
        # find it empty and exit.
        queue: "asyncio.Queue[WorkItem]" = asyncio.Queue(maxsize=max(len(items), 1))
        for item in items:
            queue.put_nowait(item)

        outcomes: Counter = Counter()
        workers = [
            asyncio.create_task(self._worker(queue, outcomes), name=f"fetch-worker-{i}")
            for i in range(self.max_workers)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for w in workers:
                w.cancel()

        self.cycles += 1
        stats = {
            "queued": len(items),
            "completed": len(items) - outcomes[FetchOutcome.FAILED.value],
            "cloned": outcomes[FetchOutcome.CLONED.value],
            "updated": outcomes[FetchOutcome.UPDATED.value],
            "recloned": outcomes[FetchOutcome.RECLONED.value],
            "failed": outcomes[FetchOutcome.FAILED.value],
            "duration_seconds": time.monotonic() - started,
        }
        logger.info(
            f"Fetch cycle {self.cycles} complete: {stats['completed']}/{stats['queued']} "
            f"repositories ({stats['cloned']} cloned, {stats['updated']} updated, "
            f"{stats['recloned']} re-cloned, {stats['failed']} failed) "
            f"in {stats['duration_seconds']:.0f}s"
        )
        return stats

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run fetch cycles until ``stop`` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_cycle()
            logger.info(f"Waiting for {self.fetch_interval:.0f}s before re-starting the fetcher")
            if await sleep_or_stop(self.fetch_interval, stop):
                break
        logger.info("Fetcher stopped")


async def sleep_or_stop(seconds: float, stop: asyncio.Event) -> bool:
    """Sleep for ``seconds`` unless ``stop`` is set first.

    Returns True if the caller should stop.
    """
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
    return stop.is_set()
