"""
crawld: keep a growing catalog of repositories cloned and up to date,
while crawlers keep adding to it.
"""

__version__ = "0.1.0"

from crawld.checkpoint import CheckpointWriter, read_checkpoint
from crawld.config import CrawldConfig, load_config
from crawld.errbag import ErrorBag
from crawld.fetcher import RepoFetcher
from crawld.orchestrator import CrawlCycle, Supervisor

__all__ = [
    "CheckpointWriter",
    "CrawlCycle",
    "CrawldConfig",
    "ErrorBag",
    "RepoFetcher",
    "Supervisor",
    "load_config",
    "read_checkpoint",
]
