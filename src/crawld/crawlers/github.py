"""GitHub repository crawler.

Discovers repositories through the GitHub Search API and adds them to the
catalog. The Search API returns at most 1000 results per query, so each
language is queried over descending star ranges until the crawl limit is
reached or a range comes back empty.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from crawld.config import CrawlerSettings
from crawld.crawlers.base import Crawler
from crawld.crawlers.rate_limiter import RateLimitedClient, TokenRotator
from crawld.database import CatalogDatabase, RepoMetadata

logger = logging.getLogger(__name__)

# GitHub Search API hard limit - cannot retrieve more than 1000 results per query
GITHUB_SEARCH_LIMIT = 1000

# Star thresholds used to split queries into smaller ranges
STAR_THRESHOLDS = [100000, 50000, 20000, 10000, 5000, 2000, 1000, 500, 200, 100, 50, 20, 10]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_repo(data: Dict[str, Any]) -> RepoMetadata:
    """Parse a GitHub API repository object into RepoMetadata."""
    full_name = data["full_name"]
    return RepoMetadata(
        full_name=full_name,
        clone_url=data.get("clone_url") or f"https://github.com/{full_name}.git",
        clone_path=f"github.com/{full_name}",
        vcs="git",
        primary_language=data.get("language"),
        stars=data.get("stargazers_count", 0),
        fork=data.get("fork", False),
        archived=data.get("archived", False),
        created_at=_parse_timestamp(data.get("created_at")),
        updated_at=_parse_timestamp(data.get("updated_at")),
    )


def star_ranges(min_stars: int) -> List[Tuple[int, Optional[int]]]:
    """Split ``[min_stars, inf)`` into descending star ranges.

    >>> star_ranges(5000)[:3]
    [(100000, None), (50000, 99999), (20000, 49999)]
    """
    thresholds = [t for t in STAR_THRESHOLDS if t >= min_stars]
    if not thresholds or thresholds[-1] > min_stars:
        thresholds.append(min_stars)

    ranges: List[Tuple[int, Optional[int]]] = []
    for i, threshold in enumerate(thresholds):
        upper = None if i == 0 else thresholds[i - 1] - 1
        ranges.append((threshold, upper))
    return ranges


class GitHubCrawler(Crawler):
    """Adds popular GitHub repositories to the catalog."""

    name = "github"

    def __init__(
        self,
        settings: CrawlerSettings,
        db: CatalogDatabase,
        client: Optional[RateLimitedClient] = None,
    ):
        super().__init__(settings)
        self.db = db
        self._client = client
        self.exclude_forks = bool(settings.options.get("exclude_forks", True))

    def _build_query(
        self, min_stars: int, max_stars: Optional[int], language: Optional[str]
    ) -> str:
        if max_stars is not None:
            query = f"stars:{min_stars}..{max_stars}"
        else:
            query = f"stars:>={min_stars}"
        if language:
            query += f" language:{language}"
        if self.exclude_forks:
            query += " fork:false"
        return query

    async def _crawl_language(
        self,
        client: RateLimitedClient,
        language: Optional[str],
        seen: Set[str],
        budget: int,
    ) -> Tuple[int, int]:
        """Discover repositories for one language.

        Returns:
            Tuple of (repos found, repos new to the catalog)
        """
        found = new = 0
        for low, high in star_ranges(self.settings.min_stars):
            if found >= budget:
                break

            query = self._build_query(low, high, language)
            results, total = await client.search_repos(query)

            for data in results:
                if found >= budget:
                    break
                repo = parse_repo(data)
                if repo.full_name in seen:
                    continue
                seen.add(repo.full_name)
                found += 1
                if await self.db.upsert_repo(repo):
                    new += 1

            if total > GITHUB_SEARCH_LIMIT:
                logger.debug(f"{query}: {len(results)} retrieved ({total} total, truncated)")

            # If this range returned nothing, no point going lower
            if not results and total == 0:
                break

        return found, new

    async def crawl(self) -> None:
        languages: List[Optional[str]] = list(self.settings.languages) or [None]
        run_id = None
        found = new = 0
        error = None

        try:
            run_id = await self.db.start_crawl_run(self.name)
            client = self._client or RateLimitedClient(TokenRotator(self.settings.tokens))
            async with client:
                seen: Set[str] = set()
                for language in languages:
                    budget = self.settings.limit - found
                    if budget <= 0:
                        break
                    lang_found, lang_new = await self._crawl_language(
                        client, language, seen, budget
                    )
                    found += lang_found
                    new += lang_new
                    logger.info(
                        f"GitHub crawler: {lang_found} {language or 'any-language'} "
                        f"repositories found, {lang_new} new"
                    )
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"GitHub crawler failed: {error}")
        finally:
            if run_id is not None:
                try:
                    await self.db.end_crawl_run(run_id, found, new, error)
                except Exception as e:
                    logger.warning(f"Cannot record end of crawl run {run_id}: {e}")

        logger.info(f"GitHub crawler done: {found} repositories found, {new} new")
