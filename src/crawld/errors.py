"""Error taxonomy for crawld.

Fatal errors terminate the process through the CLI's fatal-exit path.
Repository errors (see ``crawld.repo.base``) are recoverable and only
recorded in the error bag.
"""


class CrawldError(Exception):
    """Base class for all crawld errors."""


class FatalError(CrawldError):
    """An error the process cannot recover from."""


class ConfigError(FatalError):
    """Configuration file is unreadable or invalid."""


class CatalogError(FatalError):
    """Catalog connection or query failed."""


class CheckpointError(FatalError):
    """Checkpoint file cannot be opened for writing."""


class UnknownCrawlerError(FatalError):
    """No crawler is registered under the configured name."""


class UnknownVCSError(FatalError):
    """No repository driver is registered for the given VCS kind."""
