"""Command-line interface for the crawld daemon.

Usage:
    crawld -c config.json
    crawld -c config.json --disable-crawlers
    python -m crawld -c config.json --disable-fetcher

Environment Variables (can be set in .env file):
    CRAWLD_CONFIG  - Path to the configuration file (default for -c)
    GITHUB_TOKEN   - Single GitHub personal access token
    GITHUB_TOKENS  - Multiple tokens, comma-separated (for higher throughput)
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from crawld.config import CrawldConfig, load_config
from crawld.crawlers import new_crawlers
from crawld.database import CatalogDatabase
from crawld.errors import FatalError
from crawld.orchestrator import Supervisor

logger = logging.getLogger("crawld")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def fatal(err, exc_info: bool = False) -> int:
    """Log a fatal error, flush the logs and return the exit status."""
    logger.critical(f"Fatal: {err}", exc_info=exc_info)
    logging.shutdown()
    return 1


async def run(config: CrawldConfig, enable_crawlers: bool, enable_fetcher: bool) -> None:
    async with CatalogDatabase(config.database.path) as db:
        logger.info(f"Catalog {config.database.path} holds {await db.count_repos()} repositories")
        for language, count in (await db.get_language_distribution()).items():
            logger.debug(f"  {language}: {count}")

        crawlers = new_crawlers(config.crawlers, db) if enable_crawlers else []
        supervisor = Supervisor(
            config,
            db,
            crawlers=crawlers,
            enable_crawlers=enable_crawlers,
            enable_fetcher=enable_fetcher,
        )
        await supervisor.run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crawld",
        description="Keep a catalog of repositories cloned and up to date",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        default=os.environ.get("CRAWLD_CONFIG"),
        help="Configuration file (env: CRAWLD_CONFIG)",
    )
    parser.add_argument(
        "--disable-crawlers", action="store_true", help="Disable the data crawlers"
    )
    parser.add_argument(
        "--disable-fetcher", action="store_true", help="Disable the repositories fetcher"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    if not args.config:
        return fatal("no configuration specified")

    try:
        config = load_config(args.config)
        asyncio.run(
            run(
                config,
                enable_crawlers=not args.disable_crawlers,
                enable_fetcher=not args.disable_fetcher,
            )
        )
    except FatalError as e:
        return fatal(e)
    except Exception as e:
        return fatal(f"unexpected {type(e).__name__}: {e}", exc_info=True)

    logging.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
