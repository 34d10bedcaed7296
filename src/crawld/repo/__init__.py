"""Repository drivers and the VCS-kind registry."""

from pathlib import Path
from typing import Callable, Dict, Optional

from crawld.errors import UnknownVCSError
from crawld.repo.base import (
    CommandRepo,
    NetworkError,
    OperationError,
    Repo,
    RepoError,
    is_network_error,
)
from crawld.repo.git import GitRepo
from crawld.repo.hg import HgRepo

RepoFactory = Callable[..., Repo]

REPO_DRIVERS: Dict[str, RepoFactory] = {
    "git": GitRepo,
    "hg": HgRepo,
    "mercurial": HgRepo,
}


def new_repo(vcs: str, abs_path: Path, url: str, timeout: Optional[float] = None) -> Repo:
    """Construct the driver registered for ``vcs``."""
    try:
        driver = REPO_DRIVERS[vcs.lower()]
    except KeyError:
        raise UnknownVCSError(f"unsupported version control system: {vcs!r}") from None
    return driver(Path(abs_path), url, timeout=timeout)


__all__ = [
    "Repo",
    "CommandRepo",
    "GitRepo",
    "HgRepo",
    "RepoError",
    "NetworkError",
    "OperationError",
    "REPO_DRIVERS",
    "is_network_error",
    "new_repo",
]
