"""Repository contract shared by all VCS drivers."""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from crawld.errors import CrawldError

logger = logging.getLogger(__name__)

# Substrings of VCS stderr output that indicate a transport failure rather
# than a problem with the repository itself.
NETWORK_ERROR_MARKERS = (
    "could not resolve host",
    "could not read from remote",
    "unable to access",
    "connection timed out",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "operation timed out",
    "the remote end hung up",
    "early eof",
    "ssl",
    "tls",
    "gnutls",
    "rpc failed",
    "temporary failure in name resolution",
    "abort: error:",
)


class RepoError(CrawldError):
    """Base class for errors raised by repository operations."""

    def __init__(self, message: str, repo: Optional["Repo"] = None):
        super().__init__(message)
        self.repo = repo


class NetworkError(RepoError):
    """Transient transport failure. Nothing local needs cleaning up."""


class OperationError(RepoError):
    """Any other VCS failure (invalid remote, corrupt working copy, ...)."""


def is_network_error(stderr: str) -> bool:
    """Return True if VCS error output points at the network."""
    text = stderr.lower()
    return any(marker in text for marker in NETWORK_ERROR_MARKERS)


class Repo(ABC):
    """A single managed repository."""

    vcs: str = ""

    def __init__(self, abs_path: Path, url: str):
        self._abs_path = Path(abs_path)
        self._url = url

    @property
    def url(self) -> str:
        return self._url

    @property
    def abs_path(self) -> Path:
        return self._abs_path

    @abstractmethod
    async def clone(self) -> None:
        """Materialize the repository at ``abs_path``."""

    @abstractmethod
    async def update(self) -> None:
        """Refresh the materialized copy at ``abs_path``."""

    @abstractmethod
    async def cleanup(self) -> None:
        """Best-effort post-processing (e.g. size reduction)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._url!r}, {str(self._abs_path)!r})"


class CommandRepo(Repo):
    """Repository driven by an external VCS command line tool."""

    def __init__(self, abs_path: Path, url: str, timeout: Optional[float] = None):
        super().__init__(abs_path, url)
        self.timeout = timeout

    def _error(self, message: str, stderr: str = "") -> RepoError:
        cls = NetworkError if is_network_error(stderr) else OperationError
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        return cls(f"{message}{detail}", repo=self)

    async def _run(self, cmd: Sequence[str], cwd: Optional[Path] = None) -> str:
        """Execute a command with timeout, returning its stdout.

        Raises NetworkError on timeout or transport failure and
        OperationError on any other non-zero exit.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise OperationError(f"cannot run {cmd[0]}: {e}", repo=self) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise NetworkError(
                f"{' '.join(cmd[:2])} timed out after {self.timeout}s", repo=self
            ) from None
        except asyncio.CancelledError:
            process.kill()
            raise

        if process.returncode != 0:
            raise self._error(
                f"{' '.join(cmd[:2])} exited with status {process.returncode}",
                stderr.decode(errors="replace"),
            )
        return stdout.decode(errors="replace")

    async def _clone_with(self, cmd: List[str]) -> None:
        """Run a clone command, removing any partial clone on failure."""
        dest = self.abs_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._run(cmd)
        except RepoError:
            # Clean up partial clone
            if dest.exists():
                await asyncio.to_thread(shutil.rmtree, dest, True)
            raise
