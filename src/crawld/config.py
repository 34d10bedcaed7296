"""Configuration for the crawld daemon.

The configuration is a JSON file. Durations may be given either as a number
of seconds or as duration strings (``"90s"``, ``"10m"``, ``"1h30m"``).
GitHub API tokens can additionally be supplied through the ``GITHUB_TOKEN``
and ``GITHUB_TOKENS`` environment variables (a ``.env`` file is honored).
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from crawld.errors import ConfigError

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}

CHECKPOINT_FILENAME = "last_fetched_id"


def parse_duration(value: Union[str, int, float], name: str = "duration") -> float:
    """Convert a duration to seconds.

    Accepts plain numbers (seconds), numeric strings, or strings
    made of ``<number><unit>`` parts where unit is one of h, m, s, ms.
    """
    if isinstance(value, bool):
        raise ConfigError(f"{name}: expected a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"{name}: invalid duration {value!r}") from None
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
    else:
        raise ConfigError(f"{name}: expected a duration, got {value!r}")

    if seconds < 0:
        raise ConfigError(f"{name}: duration must not be negative")
    return seconds


def get_github_tokens() -> List[str]:
    """Get GitHub tokens from environment."""
    tokens = []

    # Single token
    if os.environ.get("GITHUB_TOKEN"):
        tokens.append(os.environ["GITHUB_TOKEN"])

    # Multiple tokens (comma-separated)
    if os.environ.get("GITHUB_TOKENS"):
        tokens.extend(os.environ["GITHUB_TOKENS"].split(","))

    return [t.strip() for t in tokens if t.strip()]


@dataclass
class DatabaseConfig:
    """Location of the repository catalog."""

    path: Path = field(default_factory=lambda: Path("./data/crawld.db"))

    def __post_init__(self):
        if isinstance(self.path, str):
            self.path = Path(self.path)


@dataclass
class CrawlerSettings:
    """Settings for one crawler instance.

    Attributes:
        type: Registry name of the crawler implementation (e.g. "github").
        languages: Languages to crawl for.
        min_stars: Minimum star count for repository inclusion.
        limit: Maximum number of repositories to discover per crawl.
        tokens: API tokens for the crawler's remote service.
        options: Any remaining crawler-specific keys.
    """

    type: str
    languages: List[str] = field(default_factory=list)
    min_stars: int = 50
    limit: int = 1000
    tokens: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlerSettings":
        if not isinstance(data, dict) or not data.get("type"):
            raise ConfigError("crawlers: every crawler needs a 'type'")
        known = {f.name for f in fields(cls)} - {"options"}
        options = {k: v for k, v in data.items() if k not in known}
        try:
            return cls(
                type=str(data["type"]).lower(),
                languages=[str(lang).lower() for lang in data.get("languages") or []],
                min_stars=int(data.get("min_stars", 50)),
                limit=int(data.get("limit", 1000)),
                tokens=list(data.get("tokens") or []),
                options=options,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"crawlers: invalid settings for {data['type']!r}: {e}") from e


@dataclass
class CrawldConfig:
    """Configuration for the crawld daemon.

    Attributes:
        clone_dir: Base directory repositories are cloned into.
        checkpoint_path: File holding the last fetched repository id.
        fetch_time_interval: Seconds to sleep between fetch cycles.
        crawling_time_interval: Seconds to sleep between crawl cycles.
        max_fetcher_workers: Number of concurrent fetch workers.
        fetch_languages: Only fetch repositories with these primary languages.
        tar_repos: Store repositories as tar archives between cycles.
        clone_timeout: Maximum seconds for a single VCS command.
        throttler_wait_time: Seconds the error bag pauses when over capacity.
        sliding_window_size: Error bag capacity.
        leak_interval: Seconds between error bag leak passes.
        database: Catalog location.
        crawlers: Crawler definitions.
    """

    clone_dir: Path = field(default_factory=lambda: Path("./data/repos"))
    checkpoint_path: Optional[Path] = None
    fetch_time_interval: float = 3600.0
    crawling_time_interval: float = 12 * 3600.0
    max_fetcher_workers: int = 8
    fetch_languages: List[str] = field(default_factory=list)
    tar_repos: bool = False
    clone_timeout: float = 3600.0
    throttler_wait_time: float = 30.0
    sliding_window_size: int = 100
    leak_interval: float = 1.0
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    crawlers: List[CrawlerSettings] = field(default_factory=list)

    def __post_init__(self):
        """Ensure paths are Path objects and values are sane."""
        if isinstance(self.clone_dir, str):
            self.clone_dir = Path(self.clone_dir)
        if self.checkpoint_path is None:
            self.checkpoint_path = self.clone_dir / CHECKPOINT_FILENAME
        elif isinstance(self.checkpoint_path, str):
            self.checkpoint_path = Path(self.checkpoint_path)
        self.fetch_languages = [lang.lower() for lang in self.fetch_languages]

        if self.max_fetcher_workers < 1:
            raise ConfigError("max_fetcher_workers must be at least 1")
        if self.sliding_window_size < 1:
            raise ConfigError("sliding_window_size must be at least 1")
        if self.leak_interval <= 0:
            raise ConfigError("leak_interval must be positive")


_DURATION_KEYS = (
    "fetch_time_interval",
    "crawling_time_interval",
    "clone_timeout",
    "throttler_wait_time",
    "leak_interval",
)


def config_from_dict(data: Dict[str, Any]) -> CrawldConfig:
    """Build a CrawldConfig from a decoded JSON object."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object")

    known = {f.name for f in fields(CrawldConfig)}
    for key in sorted(set(data) - known):
        logger.warning(f"Ignoring unknown configuration key: {key}")

    kwargs: Dict[str, Any] = {}
    for key in _DURATION_KEYS:
        if data.get(key) is not None:
            kwargs[key] = parse_duration(data[key], key)

    try:
        if data.get("clone_dir"):
            kwargs["clone_dir"] = Path(data["clone_dir"])
        if data.get("checkpoint_path"):
            kwargs["checkpoint_path"] = Path(data["checkpoint_path"])
        if data.get("max_fetcher_workers") is not None:
            kwargs["max_fetcher_workers"] = int(data["max_fetcher_workers"])
        if data.get("sliding_window_size") is not None:
            kwargs["sliding_window_size"] = int(data["sliding_window_size"])
        if data.get("fetch_languages"):
            kwargs["fetch_languages"] = [str(lang) for lang in data["fetch_languages"]]
        kwargs["tar_repos"] = bool(data.get("tar_repos", False))
        if data.get("database"):
            kwargs["database"] = DatabaseConfig(**data["database"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    crawlers = [CrawlerSettings.from_dict(c) for c in data.get("crawlers") or []]
    env_tokens = get_github_tokens()
    for crawler in crawlers:
        if crawler.type == "github" and not crawler.tokens:
            crawler.tokens = list(env_tokens)
    kwargs["crawlers"] = crawlers

    return CrawldConfig(**kwargs)


def check_clone_dir(clone_dir: Path) -> None:
    """Make sure the clone directory exists and is writable."""
    try:
        clone_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"cannot create clone directory {clone_dir}: {e}") from e
    if not clone_dir.is_dir():
        raise ConfigError(f"clone path must be a directory: {clone_dir}")
    if not os.access(clone_dir, os.W_OK | os.X_OK):
        raise ConfigError(f"clone path must be writable: {clone_dir}")


def load_config(path: Union[str, Path]) -> CrawldConfig:
    """Read and validate the configuration file at ``path``."""
    load_dotenv()

    path = Path(path)
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read configuration file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid JSON in {path}: {e}") from e

    config = config_from_dict(data)
    check_clone_dir(config.clone_dir)
    return config
