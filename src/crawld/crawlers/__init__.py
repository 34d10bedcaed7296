"""Data crawlers and the crawler registry."""

from typing import Callable, Dict, List

from crawld.config import CrawlerSettings
from crawld.crawlers.base import Crawler
from crawld.crawlers.github import GitHubCrawler
from crawld.database import CatalogDatabase
from crawld.errors import UnknownCrawlerError

CrawlerFactory = Callable[[CrawlerSettings, CatalogDatabase], Crawler]

CRAWLERS: Dict[str, CrawlerFactory] = {
    "github": GitHubCrawler,
}


def new_crawler(settings: CrawlerSettings, db: CatalogDatabase) -> Crawler:
    """Construct the crawler registered under ``settings.type``."""
    try:
        factory = CRAWLERS[settings.type]
    except KeyError:
        raise UnknownCrawlerError(f"unknown crawler type: {settings.type!r}") from None
    return factory(settings, db)


def new_crawlers(settings: List[CrawlerSettings], db: CatalogDatabase) -> List[Crawler]:
    return [new_crawler(s, db) for s in settings]


__all__ = ["Crawler", "GitHubCrawler", "CRAWLERS", "new_crawler", "new_crawlers"]
