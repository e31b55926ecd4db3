import pytest

from linkcrawler.crawler.normalizer import InvalidURLError
from linkcrawler.crawler.results import CrawlNotCompletedError
from linkcrawler.service import CrawlService
from linkcrawler.storage.errors import CrawlRequestNotFound
from linkcrawler.storage.models import TaskStatus


@pytest.fixture
def service(database):
    return CrawlService(database)


class TestCrawlService:
    @pytest.mark.asyncio
    async def test_create_normalizes_root(self, service, database):
        crawl_request_id = await service.create("example.com/#top", 2)
        crawl_request = await database.get_crawl_request(crawl_request_id)
        assert crawl_request.url == "http://example.com/"
        assert crawl_request.levels == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("levels", [-1, True, "2", 1.5, None])
    async def test_create_rejects_bad_levels(self, service, levels):
        with pytest.raises(ValueError):
            await service.create("http://example.com/", levels)

    @pytest.mark.asyncio
    async def test_create_rejects_bad_url(self, service):
        with pytest.raises(InvalidURLError):
            await service.create("ftp://example.com/", 1)

    @pytest.mark.asyncio
    async def test_status(self, service, database):
        crawl_request_id = await service.create("http://example.com/", 1)
        await database.create_task(crawl_request_id, "http://support.com/", 1)
        task = await database.claim_next_task()

        status = await service.status(crawl_request_id)
        assert status.to_dict() == {
            'url': "http://example.com/",
            'completed': 0,
            'failed': 0,
            'in_progress': 1,
            'total': 1,
        }

        await database.set_task_status(task.id, TaskStatus.COMPLETED)
        status = await service.status(crawl_request_id)
        assert (status.completed, status.in_progress, status.total) == (1, 0, 1)

    @pytest.mark.asyncio
    async def test_unknown_request(self, service):
        with pytest.raises(CrawlRequestNotFound):
            await service.status(5)
        with pytest.raises(CrawlRequestNotFound):
            await service.results(5)

    @pytest.mark.asyncio
    async def test_results_wait_for_every_task(self, service, database):
        crawl_request_id = await service.create("http://example.com/", 1)
        await database.create_task(crawl_request_id, "http://support.com/", 1)

        with pytest.raises(CrawlNotCompletedError):
            await service.results(crawl_request_id)

        for _ in range(2):
            task = await database.claim_next_task()
            await database.set_task_status(task.id, TaskStatus.COMPLETED)

        assert await service.results(crawl_request_id) == {"support.com": 1}
