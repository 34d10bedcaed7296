"""Crawler contract."""

from abc import ABC, abstractmethod

from crawld.config import CrawlerSettings


class Crawler(ABC):
    """A data crawler run periodically by the crawl cycle.

    Implementations handle their own failures: ``crawl`` is expected to log
    and swallow errors rather than raise them.
    """

    name: str = ""

    def __init__(self, settings: CrawlerSettings):
        self.settings = settings

    @abstractmethod
    async def crawl(self) -> None:
        """Run one crawl."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(languages={self.settings.languages})"
