"""Tests for the SQLite repository catalog."""

import pytest
import pytest_asyncio

from crawld.database import CatalogDatabase, CatalogRecord, RepoMetadata
from crawld.errors import CatalogError


def make_meta(full_name, language=None, stars=0, vcs="git"):
    return RepoMetadata(
        full_name=full_name,
        clone_url=f"https://example.com/{full_name}.git",
        clone_path=f"example.com/{full_name}",
        vcs=vcs,
        primary_language=language,
        stars=stars,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    async with CatalogDatabase(tmp_path / "catalog" / "crawld.db") as catalog:
        yield catalog


class TestCatalog:

    @pytest.mark.asyncio
    async def test_upsert_reports_new(self, db):
        assert await db.upsert_repo(make_meta("a/one", "Go", 10)) is True
        assert await db.upsert_repo(make_meta("a/one", "Go", 20)) is False
        assert await db.count_repos() == 1

    @pytest.mark.asyncio
    async def test_get_all_repos_ordered_by_id(self, db):
        for name in ("a/one", "b/two", "c/three"):
            await db.upsert_repo(make_meta(name))

        records = await db.get_all_repos()

        assert [r.id for r in records] == sorted(r.id for r in records)
        assert records[0] == CatalogRecord(
            id=records[0].id,
            vcs="git",
            clone_path="example.com/a/one",
            clone_url="https://example.com/a/one.git",
        )

    @pytest.mark.asyncio
    async def test_start_id_is_inclusive(self, db):
        for name in ("a/one", "b/two", "c/three"):
            await db.upsert_repo(make_meta(name))
        ids = [r.id for r in await db.get_all_repos()]

        records = await db.get_all_repos(start_id=ids[1])

        assert [r.id for r in records] == ids[1:]

    @pytest.mark.asyncio
    async def test_language_filter_is_case_insensitive(self, db):
        await db.upsert_repo(make_meta("a/go", "Go"))
        await db.upsert_repo(make_meta("a/py", "Python"))
        await db.upsert_repo(make_meta("a/none"))

        records = await db.get_all_repos(languages=["go", "PYTHON"])

        assert {r.clone_path for r in records} == {"example.com/a/go", "example.com/a/py"}
        assert await db.get_language_distribution() == {"go": 1, "python": 1}

    @pytest.mark.asyncio
    async def test_update_keeps_identity(self, db):
        await db.upsert_repo(make_meta("a/one", "Go", 1))
        before = await db.get_all_repos()
        await db.upsert_repo(make_meta("a/one", "Rust", 99, vcs="hg"))

        assert await db.get_all_repos() == before

    @pytest.mark.asyncio
    async def test_crawl_runs(self, db):
        run_id = await db.start_crawl_run("github")
        await db.end_crawl_run(run_id, discovered=5, new=2, error=None)

        async with db._db.execute("SELECT * FROM crawl_runs WHERE id = ?", (run_id,)) as cur:
            row = await cur.fetchone()
        assert row["crawler"] == "github"
        assert row["repos_discovered"] == 5
        assert row["repos_new"] == 2
        assert row["ended_at"] is not None


@pytest.mark.asyncio
async def test_query_before_init_is_catalog_error(tmp_path):
    catalog = CatalogDatabase(tmp_path / "crawld.db")
    with pytest.raises(CatalogError):
        await catalog.get_all_repos()


@pytest.mark.asyncio
async def test_unopenable_catalog(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(CatalogError):
        await CatalogDatabase(blocker / "crawld.db").init()
