"""Sliding-window error-rate monitor.

The error bag absorbs a stream of recorded errors and exposes whether the
process is currently throttled. A background leak task periodically
discards entries older than the window. When more unexpired entries remain
than the bag can hold, the oldest are dropped and the leak task pauses for
the throttler wait time before resuming, so a sustained error rate keeps
the bag in the throttled state for longer.

Recording never blocks: entries go into a ``deque`` that the leak task
trims from the left while recorders append on the right.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Optional, Tuple

logger = logging.getLogger(__name__)


class ErrorBag:
    """Leaky bucket of timestamped errors.

    Args:
        throttler_wait: Seconds the leak task pauses when the bag overflows.
        sliding_window_size: Maximum number of entries kept after a leak pass.
        leak_interval: Seconds between leak passes.
        window: Seconds an entry stays counted. Defaults to
            ``sliding_window_size * leak_interval``.
    """

    def __init__(
        self,
        throttler_wait: float,
        sliding_window_size: int,
        leak_interval: float,
        window: Optional[float] = None,
    ):
        if sliding_window_size < 1:
            raise ValueError("sliding_window_size must be at least 1")
        if leak_interval <= 0:
            raise ValueError("leak_interval must be positive")
        if throttler_wait < 0:
            raise ValueError("throttler_wait must not be negative")

        self.throttler_wait = throttler_wait
        self.capacity = sliding_window_size
        self.leak_interval = leak_interval
        self.window = window if window is not None else sliding_window_size * leak_interval

        self._entries: Deque[Tuple[float, BaseException]] = deque()
        self._clear = asyncio.Event()
        self._clear.set()
        self._task: Optional[asyncio.Task] = None
        self._deflated = False
        self.total_recorded = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_throttled(self) -> bool:
        return not self._clear.is_set()

    def record(self, err: BaseException) -> None:
        """Record an error occurrence."""
        self._entries.append((time.monotonic(), err))
        self.total_recorded += 1

    async def wait_until_clear(self) -> None:
        """Block until the bag is no longer throttled."""
        await self._clear.wait()

    def _expire(self, now: float) -> int:
        expired = 0
        cutoff = now - self.window
        while self._entries and self._entries[0][0] <= cutoff:
            self._entries.popleft()
            expired += 1
        return expired

    async def leak(self) -> None:
        """Run a single leak pass."""
        self._expire(time.monotonic())

        overflow = len(self._entries) - self.capacity
        if overflow <= 0:
            return

        for _ in range(overflow):
            self._entries.popleft()

        logger.warning(
            f"Error bag overflowed by {overflow} entries "
            f"({self.capacity} within {self.window:.0f}s), "
            f"throttling for {self.throttler_wait:.0f}s"
        )
        self._clear.clear()
        try:
            await asyncio.sleep(self.throttler_wait)
        finally:
            self._clear.set()

    async def _leak_forever(self) -> None:
        while True:
            await asyncio.sleep(self.leak_interval)
            await self.leak()

    def inflate(self) -> None:
        """Start the background leak task."""
        if self._task is not None:
            raise RuntimeError("error bag already inflated")
        self._task = asyncio.get_running_loop().create_task(
            self._leak_forever(), name="errbag-leak"
        )

    async def deflate(self) -> None:
        """Stop the leak task and flush remaining entries to the log."""
        if self._deflated:
            return
        self._deflated = True

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._entries:
            logger.info(f"Error bag deflated with {len(self._entries)} unexpired errors")
            while self._entries:
                _, err = self._entries.popleft()
                logger.debug(f"  {type(err).__name__}: {err}")
        self._clear.set()

    async def __aenter__(self) -> "ErrorBag":
        self.inflate()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.deflate()
