import asyncio
import time

import pytest

from linkcrawler.storage.database import DatabaseManager, create_backend, sqlite_path_from_url
from linkcrawler.storage.errors import (
    CrawlRequestNotFound, DatabaseError, InvalidTransitionError, NoTasksAvailable, NotFoundError
)
from linkcrawler.storage.models import TaskStatus
from linkcrawler.utils.config import DatabaseConfig


async def backdate_claim(database, task_id, seconds):
    """Pretend a task was claimed ``seconds`` ago."""
    await database.backend.conn.execute(
        "UPDATE tasks SET claimed_at = ? WHERE id = ?", (time.time() - seconds, task_id)
    )


class TestBackendSelection:
    def test_sqlite_paths(self):
        assert sqlite_path_from_url("sqlite:///data/crawler.db") == "data/crawler.db"
        assert sqlite_path_from_url("sqlite:////tmp/crawler.db") == "/tmp/crawler.db"
        assert sqlite_path_from_url("sqlite:///:memory:") == ":memory:"

    @pytest.mark.parametrize("url", ["sqlite://crawler.db", "sqlite:///"])
    def test_malformed_sqlite_url(self, url):
        with pytest.raises(DatabaseError):
            sqlite_path_from_url(url)

    def test_unknown_scheme(self):
        with pytest.raises(DatabaseError):
            create_backend(DatabaseConfig(url="mysql://localhost/crawler"))

    @pytest.mark.asyncio
    async def test_operations_require_initialize(self, database_config):
        manager = DatabaseManager(database_config)
        with pytest.raises(DatabaseError):
            await manager.claim_next_task()


class TestCrawlRequests:
    @pytest.mark.asyncio
    async def test_create_inserts_root_task(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 2)
        crawl_request = await database.get_crawl_request(crawl_request_id)
        assert crawl_request.url == "http://a.test/"
        assert crawl_request.levels == 2

        tasks = await database.list_tasks(crawl_request_id)
        assert len(tasks) == 1
        assert tasks[0].page_url == "http://a.test/"
        assert tasks[0].current_level == 0
        assert tasks[0].status == TaskStatus.NOT_STARTED
        assert tasks[0].seen_url is False

    @pytest.mark.asyncio
    async def test_unknown_crawl_request(self, database):
        with pytest.raises(CrawlRequestNotFound) as exc_info:
            await database.get_crawl_request(42)
        assert exc_info.value.crawl_request_id == 42


class TestTaskQueue:
    @pytest.mark.asyncio
    async def test_claim_order_is_request_then_task(self, database):
        first = await database.create_crawl_request("http://a.test/", 1)
        second = await database.create_crawl_request("http://b.test/", 1)
        later_task = await database.create_task(first, "http://c.test/", 1)

        claimed = [await database.claim_next_task() for _ in range(3)]
        assert [(t.crawl_request_id, t.page_url) for t in claimed] == [
            (first, "http://a.test/"),
            (first, "http://c.test/"),
            (second, "http://b.test/"),
        ]
        assert claimed[1].id == later_task
        assert all(t.status == TaskStatus.IN_PROGRESS for t in claimed)
        assert all(t.claimed_at is not None for t in claimed)

    @pytest.mark.asyncio
    async def test_empty_queue(self, database):
        with pytest.raises(NoTasksAvailable):
            await database.claim_next_task()

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_share_a_task(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 1)
        for i in range(9):
            await database.create_task(crawl_request_id, f"http://a.test/{i}", 1)

        results = await asyncio.gather(
            *(database.claim_next_task() for _ in range(15)), return_exceptions=True
        )
        tasks = [r for r in results if not isinstance(r, Exception)]
        empty = [r for r in results if isinstance(r, NoTasksAvailable)]
        assert len(tasks) == 10
        assert len({t.id for t in tasks}) == 10
        assert len(empty) == 5

    @pytest.mark.asyncio
    async def test_status_transitions(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 1)
        task = await database.claim_next_task()

        await database.set_task_status(task.id, TaskStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await database.set_task_status(task.id, TaskStatus.FAILED)
        assert exc_info.value.current == TaskStatus.COMPLETED

        tasks = await database.list_tasks(crawl_request_id)
        assert tasks[0].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unclaimed_task_cannot_complete(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 1)
        task_id = (await database.list_tasks(crawl_request_id))[0].id
        with pytest.raises(InvalidTransitionError):
            await database.set_task_status(task_id, TaskStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            await database.set_task_status(task_id, TaskStatus.NOT_STARTED)

    @pytest.mark.asyncio
    async def test_status_of_missing_task(self, database):
        with pytest.raises(NotFoundError):
            await database.set_task_status(999, TaskStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_status_counts_exclude_last_level(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 1)
        await database.create_task(crawl_request_id, "http://b.test/", 1)
        await database.create_task(crawl_request_id, "http://c.test/", 1)

        root = await database.claim_next_task()
        counts = await database.status_counts(crawl_request_id)
        assert (counts.completed, counts.in_progress, counts.failed) == (0, 1, 0)

        await database.set_task_status(root.id, TaskStatus.COMPLETED)
        last_level = await database.claim_next_task()
        await database.set_task_status(last_level.id, TaskStatus.FAILED)

        counts = await database.status_counts(crawl_request_id)
        assert (counts.completed, counts.in_progress, counts.failed) == (1, 0, 0)
        assert counts.total == 1

    @pytest.mark.asyncio
    async def test_requeue_only_stale_claims(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 1)
        await database.create_task(crawl_request_id, "http://b.test/", 1)
        stale = await database.claim_next_task()
        fresh = await database.claim_next_task()
        await backdate_claim(database, stale.id, 1000)

        assert await database.requeue_stale_tasks(600) == 1

        tasks = {t.id: t for t in await database.list_tasks(crawl_request_id)}
        assert tasks[stale.id].status == TaskStatus.NOT_STARTED
        assert tasks[stale.id].claimed_at is None
        assert tasks[fresh.id].status == TaskStatus.IN_PROGRESS

        reclaimed = await database.claim_next_task()
        assert reclaimed.id == stale.id

    @pytest.mark.asyncio
    async def test_release_tasks(self, database):
        crawl_request_id = await database.create_crawl_request("http://a.test/", 1)
        await database.create_task(crawl_request_id, "http://b.test/", 1)
        first = await database.claim_next_task()
        second = await database.claim_next_task()
        await database.set_task_status(second.id, TaskStatus.COMPLETED)

        # Only IN_PROGRESS tasks go back to the queue
        assert await database.release_tasks([first.id, second.id]) == 1
        assert await database.release_tasks([]) == 0

        tasks = {t.id: t for t in await database.list_tasks(crawl_request_id)}
        assert tasks[first.id].status == TaskStatus.NOT_STARTED
        assert tasks[second.id].status == TaskStatus.COMPLETED


class TestPageGraph:
    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, database):
        first = await database.upsert_page("http://a.test/")
        second = await database.upsert_page("http://a.test/")
        assert first == second

        page = await database.get_page(first)
        assert page.url == "http://a.test/"
        assert page.crawled_status is False

    @pytest.mark.asyncio
    async def test_missing_page(self, database):
        with pytest.raises(NotFoundError):
            await database.get_page(123)

    @pytest.mark.asyncio
    async def test_record_outlinks(self, database):
        page_id = await database.upsert_page("http://a.test/")
        await database.record_outlinks(page_id, [
            "http://b.test/",
            "http://a.test/",
            "http://c.test/",
            "http://b.test/",
        ])

        page = await database.get_page(page_id)
        assert page.crawled_status is True

        # No self edge and no duplicate edge
        edges = await database.edges_from(page_id)
        assert len(edges) == 2
        assert all(e.source_id == page_id and e.target_id != page_id for e in edges)
        assert await database.outlink_urls(page_id) == ["http://b.test/", "http://c.test/"]

        # Targets exist as uncrawled nodes
        target = await database.get_page(edges[0].target_id)
        assert target.crawled_status is False

    @pytest.mark.asyncio
    async def test_record_outlinks_twice_adds_nothing(self, database):
        page_id = await database.upsert_page("http://a.test/")
        await database.record_outlinks(page_id, ["http://b.test/"])
        await database.record_outlinks(page_id, ["http://b.test/"])
        assert len(await database.edges_from(page_id)) == 1

    @pytest.mark.asyncio
    async def test_page_without_links_is_marked_crawled(self, database):
        page_id = await database.upsert_page("http://a.test/")
        await database.record_outlinks(page_id, [])
        assert (await database.get_page(page_id)).crawled_status is True
        assert await database.outlink_urls(page_id) == []

    @pytest.mark.asyncio
    async def test_stats(self, database):
        await database.create_crawl_request("http://a.test/", 1)
        page_id = await database.upsert_page("http://a.test/")
        await database.record_outlinks(page_id, ["http://b.test/"])
        stats = await database.get_stats()
        assert stats == {
            'crawl_requests': 1,
            'tasks': 1,
            'pages': 2,
            'crawled_pages': 1,
            'edges': 1,
        }

    @pytest.mark.asyncio
    async def test_failed_record_outlinks_leaves_no_trace(self, database):
        page_id = await database.upsert_page("http://a.test/")
        await database.backend.conn.execute(
            """CREATE TRIGGER reject_bad_page BEFORE INSERT ON page_nodes
            WHEN NEW.url = 'http://bad.test/'
            BEGIN SELECT RAISE(ABORT, 'rejected'); END"""
        )

        with pytest.raises(DatabaseError):
            await database.record_outlinks(page_id, ["http://b.test/", "http://bad.test/"])

        # The page and edge written before the failure are rolled back too
        assert (await database.get_page(page_id)).crawled_status is False
        assert await database.edges_from(page_id) == []
        stats = await database.get_stats()
        assert (stats['pages'], stats['edges']) == (1, 0)
