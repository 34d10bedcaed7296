"""Repository catalog kept in SQLite.

Crawlers write discovered repositories into it. The fetcher reads it back as
``CatalogRecord`` rows ordered by their stable identifier. Each crawler
session is also logged in ``crawl_runs``.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import aiosqlite

from crawld.errors import CatalogError


@dataclass(frozen=True)
class CatalogRecord:
    """A repository as the fetcher sees it."""

    id: int
    vcs: str
    clone_path: str  # relative to the clone base directory
    clone_url: str


@dataclass
class RepoMetadata:
    """What a crawler knows about a repository it found."""

    full_name: str
    clone_url: str
    clone_path: str
    vcs: str = "git"
    primary_language: Optional[str] = None
    stars: int = 0
    fork: bool = False
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.full_name.split("/")[-1]


SCHEMA = """
-- repositories: the catalog; ids are assigned once and never change
CREATE TABLE IF NOT EXISTS repositories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    full_name TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    primary_language TEXT,
    vcs TEXT NOT NULL DEFAULT 'git',
    clone_url TEXT NOT NULL,
    clone_path TEXT UNIQUE NOT NULL,

    -- refreshed on every crawl
    stars INTEGER DEFAULT 0,
    fork BOOLEAN DEFAULT FALSE,
    archived BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP,
    updated_at TIMESTAMP,
    discovered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    metadata_updated_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_repos_language ON repositories(LOWER(primary_language));

-- one row per crawler session
CREATE TABLE IF NOT EXISTS crawl_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    crawler TEXT NOT NULL,
    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    ended_at TIMESTAMP,
    repos_discovered INTEGER DEFAULT 0,
    repos_new INTEGER DEFAULT 0,
    error TEXT
);
"""

class CatalogDatabase:
    """Async SQLite catalog shared by the fetcher and the crawlers.

    Writes are serialized on a lock so concurrent crawlers never interleave
    a read-then-write sequence.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Connect and make sure the schema exists."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self.db_path)
            db.row_factory = aiosqlite.Row
            await db.executescript(SCHEMA)
            await db.commit()
        except (OSError, aiosqlite.Error) as e:
            raise CatalogError(f"cannot open catalog {self.db_path}: {e}") from e
        self._db = db

    async def close(self) -> None:
        db, self._db = self._db, None
        if db is not None:
            await db.close()

    async def __aenter__(self) -> "CatalogDatabase":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def get_all_repos(
        self, start_id: int = 0, languages: Optional[Sequence[str]] = None
    ) -> List[CatalogRecord]:
        """Return every repository with ``id >= start_id``, ordered by id.

        Args:
            start_id: Smallest identifier to return.
            languages: If given, only repositories whose primary language
                (case-insensitive) is in this list.
        """
        query = "SELECT id, vcs, clone_path, clone_url FROM repositories WHERE id >= ?"
        params: list = [start_id]
        if languages:
            query += " AND LOWER(primary_language) IN ({})".format(
                ",".join("?" for _ in languages)
            )
            params.extend(lang.lower() for lang in languages)
        query += " ORDER BY id"

        try:
            async with self._db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except (aiosqlite.Error, AttributeError) as e:
            raise CatalogError(f"catalog query failed: {e}") from e

        return [
            CatalogRecord(
                id=row["id"],
                vcs=row["vcs"],
                clone_path=row["clone_path"],
                clone_url=row["clone_url"],
            )
            for row in rows
        ]

    async def _write(self, sql: str, params: Sequence = ()) -> aiosqlite.Cursor:
        cursor = await self._db.execute(sql, params)
        await self._db.commit()
        return cursor

    async def upsert_repo(self, repo: RepoMetadata) -> bool:
        """Add ``repo`` to the catalog, or refresh it if already known.

        Returns True for a newly added repository. A known repository keeps
        its identifier, VCS kind and clone location; only the crawl metadata
        is overwritten.
        """
        async with self._lock:
            async with self._db.execute(
                "SELECT 1 FROM repositories WHERE full_name = ?", (repo.full_name,)
            ) as cursor:
                known = await cursor.fetchone() is not None

            if known:
                await self._write(
                    """
                    UPDATE repositories
                    SET primary_language = ?, stars = ?, fork = ?, archived = ?,
                        updated_at = ?, metadata_updated_at = CURRENT_TIMESTAMP
                    WHERE full_name = ?
                    """,
                    (
                        repo.primary_language,
                        repo.stars,
                        repo.fork,
                        repo.archived,
                        repo.updated_at,
                        repo.full_name,
                    ),
                )
            else:
                await self._write(
                    """
                    INSERT INTO repositories (
                        full_name, name, primary_language, vcs, clone_url, clone_path,
                        stars, fork, archived, created_at, updated_at, metadata_updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                    (
                        repo.full_name,
                        repo.name,
                        repo.primary_language,
                        repo.vcs,
                        repo.clone_url,
                        repo.clone_path,
                        repo.stars,
                        repo.fork,
                        repo.archived,
                        repo.created_at,
                        repo.updated_at,
                    ),
                )
            return not known

    async def count_repos(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM repositories") as cursor:
            (total,) = await cursor.fetchone()
        return total

    async def get_language_distribution(self) -> Dict[str, int]:
        """Map each lowercased primary language to its repository count, largest first."""
        async with self._db.execute(
            "SELECT LOWER(primary_language) AS lang, COUNT(*) AS n FROM repositories"
            " WHERE primary_language IS NOT NULL GROUP BY lang ORDER BY n DESC"
        ) as cursor:
            return {lang: n for lang, n in await cursor.fetchall()}

    async def start_crawl_run(self, crawler: str) -> int:
        async with self._lock:
            cursor = await self._write("INSERT INTO crawl_runs (crawler) VALUES (?)", (crawler,))
            return cursor.lastrowid

    async def end_crawl_run(
        self, run_id: int, discovered: int, new: int, error: Optional[str] = None
    ) -> None:
        """Close a crawl run with its counts and, if it failed, the error."""
        async with self._lock:
            await self._write(
                "UPDATE crawl_runs SET ended_at = CURRENT_TIMESTAMP,"
                " repos_discovered = ?, repos_new = ?, error = ? WHERE id = ?",
                (discovered, new, error, run_id),
            )
