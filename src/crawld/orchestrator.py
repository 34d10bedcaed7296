"""Top-level orchestration.

The supervisor runs two independent long-lived loops:
- the crawl cycle, which runs every crawler concurrently and then sleeps;
- the fetch cycle (see ``crawld.fetcher``), fed from the catalog and
  reporting completions to the checkpoint writer.

An interrupt or termination signal cancels both loops immediately. In-flight
clones and updates are abandoned, not drained. The checkpoint file is then
flushed and closed, and the error bag deflated.
"""

import asyncio
import contextlib
import logging
import signal
from typing import Callable, List, Optional, Sequence

from crawld.checkpoint import CheckpointWriter, read_checkpoint
from crawld.config import CrawldConfig
from crawld.crawlers import Crawler
from crawld.errbag import ErrorBag
from crawld.fetcher import RepoFetcher, sleep_or_stop

logger = logging.getLogger(__name__)


class CrawlCycle:
    """Runs all crawlers concurrently, then sleeps, forever."""

    def __init__(self, crawlers: Sequence[Crawler], crawling_interval: float):
        self.crawlers = list(crawlers)
        self.crawling_interval = crawling_interval
        self.cycles = 0

    async def run_cycle(self) -> None:
        for c in self.crawlers:
            logger.info(f"Starting the {type(c).__name__} crawler")
        results = await asyncio.gather(
            *(c.crawl() for c in self.crawlers), return_exceptions=True
        )
        for crawler, result in zip(self.crawlers, results):
            if isinstance(result, Exception):
                logger.error(f"{type(crawler).__name__} crawler failed: {result}")
        self.cycles += 1

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.run_cycle()
            logger.info(
                f"Waiting for {self.crawling_interval:.0f}s before re-starting the crawlers"
            )
            if await sleep_or_stop(self.crawling_interval, stop):
                break
        logger.info("Crawlers stopped")


class Supervisor:
    """Owns the process lifecycle: loops, signals, checkpoint and error bag.

    Args:
        config: Daemon configuration.
        catalog: Repository catalog handle, shared by both loops.
        crawlers: Crawlers to run in the crawl cycle.
        enable_crawlers: Start the crawl cycle.
        enable_fetcher: Start the fetch cycle.
        repo_factory: Optional override of the fetcher's repository factory.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(
        self,
        config: CrawldConfig,
        catalog,
        crawlers: Sequence[Crawler] = (),
        enable_crawlers: bool = True,
        enable_fetcher: bool = True,
        repo_factory: Optional[Callable] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.crawlers = list(crawlers)
        self.enable_crawlers = enable_crawlers
        self.enable_fetcher = enable_fetcher
        self.repo_factory = repo_factory
        self.stop = asyncio.Event()
        self.errbag: Optional[ErrorBag] = None
        self.checkpoint: Optional[CheckpointWriter] = None
        self.fetcher: Optional[RepoFetcher] = None

    def request_stop(self, signame: str = "") -> None:
        if signame:
            logger.warning(f"Caught {signame}, exiting now...")
        self.stop.set()

    def _install_signal_handlers(self) -> List[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")
                continue
            installed.append(sig)
        return installed

    def _remove_signal_handlers(self, installed: List[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    async def _start_fetcher(self, stack: contextlib.AsyncExitStack) -> List[asyncio.Task]:
        cfg = self.config
        start_id = read_checkpoint(cfg.checkpoint_path)
        logger.info(f"Resuming fetch from repository id {start_id}")

        # Entered first so it is released last: checkpoint close, then deflate.
        self.errbag = await stack.enter_async_context(
            ErrorBag(cfg.throttler_wait_time, cfg.sliding_window_size, cfg.leak_interval)
        )
        self.checkpoint = await stack.enter_async_context(
            CheckpointWriter(cfg.checkpoint_path)
        )

        completions: "asyncio.Queue[int]" = asyncio.Queue(maxsize=1)
        self.fetcher = RepoFetcher(
            catalog=self.catalog,
            errbag=self.errbag,
            completions=completions,
            clone_dir=cfg.clone_dir,
            max_workers=cfg.max_fetcher_workers,
            fetch_interval=cfg.fetch_time_interval,
            languages=cfg.fetch_languages,
            tar_repos=cfg.tar_repos,
            start_id=start_id,
            clone_timeout=cfg.clone_timeout,
            repo_factory=self.repo_factory,
        )
        return [
            asyncio.create_task(self.checkpoint.consume(completions), name="checkpoint"),
            asyncio.create_task(self.fetcher.run_forever(self.stop), name="fetcher"),
        ]

    async def run(self) -> None:
        """Run until a signal arrives or a loop fails.

        Raises the failing loop's exception after releasing resources.
        """
        installed = self._install_signal_handlers()
        tasks: List[asyncio.Task] = []
        try:
            async with contextlib.AsyncExitStack() as stack:
                try:
                    if self.enable_crawlers and self.crawlers:
                        cycle = CrawlCycle(self.crawlers, self.config.crawling_time_interval)
                        tasks.append(
                            asyncio.create_task(cycle.run_forever(self.stop), name="crawlers")
                        )
                    if self.enable_fetcher:
                        tasks.extend(await self._start_fetcher(stack))

                    if not tasks:
                        logger.warning("Both the crawlers and the fetcher are disabled")
                        return

                    stop_waiter = asyncio.create_task(self.stop.wait(), name="stop")
                    done, _ = await asyncio.wait(
                        [stop_waiter, *tasks], return_when=asyncio.FIRST_COMPLETED
                    )
                    stop_waiter.cancel()
                finally:
                    # Abandon in-flight work before the checkpoint and the
                    # error bag are released.
                    for task in tasks:
                        task.cancel()
                    await asyncio.gather(*tasks, return_exceptions=True)

                for task in done:
                    if task is stop_waiter or task.cancelled():
                        continue
                    if task.exception() is not None:
                        raise task.exception()
        finally:
            self._remove_signal_handlers(installed)
