"""Fetch progress checkpointing.

The checkpoint file holds the identifier of the most recently completed
repository as a 20-digit zero-padded decimal, which covers the full unsigned
64-bit range. It is rewritten in place on every completion.

Completions arrive from concurrent workers in no particular order, and the
writer keeps the last identifier it received rather than the largest. A
restart can therefore resume below a repository that was already fetched,
or past one that was not.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, TextIO

from crawld.errors import CheckpointError

logger = logging.getLogger(__name__)

CHECKPOINT_WIDTH = 20
MAX_CHECKPOINT_ID = 2**64 - 1


def read_checkpoint(path: Path) -> int:
    """Return the identifier stored at ``path``, or 0 if there is none."""
    try:
        raw = Path(path).read_text().strip()
    except OSError as e:
        logger.warning(f"Cannot get last fetched repository id ({e}), starting from 0...")
        return 0

    if not raw:
        logger.warning("Checkpoint file is empty, starting from 0...")
        return 0

    try:
        value = int(raw, 10)
    except ValueError:
        logger.warning(f"Cannot convert ({raw!r}) to a repository id, starting from 0...")
        return 0

    if not 0 <= value <= MAX_CHECKPOINT_ID:
        logger.warning(f"Repository id {value} out of range, starting from 0...")
        return 0
    return value


def encode_checkpoint(repo_id: int) -> str:
    if not 0 <= repo_id <= MAX_CHECKPOINT_ID:
        raise ValueError(f"repository id out of range: {repo_id}")
    return f"{repo_id:0{CHECKPOINT_WIDTH}d}"


class CheckpointWriter:
    """Single writer of the checkpoint file.

    Use as an async context manager: the file is opened on enter and
    flushed, synced and closed on exit, whichever way the block is left.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file: Optional[TextIO] = None
        self.last_written: Optional[int] = None
        self.writes = 0

    def open(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Not O_TRUNC and not O_APPEND: the value is overwritten in place.
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT, 0o644)
            self._file = os.fdopen(fd, "w")
        except OSError as e:
            raise CheckpointError(f"cannot open {self.path} for writing: {e}") from e

    def write(self, repo_id: int) -> None:
        """Overwrite the checkpoint with ``repo_id``."""
        if self._file is None:
            raise RuntimeError("checkpoint writer is not open")
        data = encode_checkpoint(repo_id)
        try:
            self._file.seek(0)
            self._file.write(data)
            self._file.flush()
        except OSError as e:
            logger.warning(f"Could not write id {repo_id} to {self.path}: {e}")
            return
        self.last_written = repo_id
        self.writes += 1

    async def consume(self, completions: "asyncio.Queue[int]") -> None:
        """Write every identifier received on ``completions``, one at a time."""
        while True:
            repo_id = await completions.get()
            try:
                self.write(repo_id)
            finally:
                completions.task_done()

    def close(self) -> None:
        if self._file is None:
            return
        f, self._file = self._file, None
        try:
            f.flush()
            os.fsync(f.fileno())
        except OSError as e:
            logger.warning(f"Could not sync {self.path}: {e}")
        finally:
            f.close()
        logger.info(f"Checkpoint closed at id {self.last_written}")

    async def __aenter__(self) -> "CheckpointWriter":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
