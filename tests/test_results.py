import pytest

from linkcrawler.crawler.results import CrawlNotCompletedError, count_hosts
from linkcrawler.storage.models import CrawlRequest, Task, TaskStatus


def make_tasks(*entries):
    return [
        Task(id=i, crawl_request_id=1, page_url=url, current_level=1, status=status)
        for i, (url, status) in enumerate(entries, start=1)
    ]


class TestCountHosts:
    crawl_request = CrawlRequest(id=1, url="http://example.com/", levels=1)

    def test_counts_every_task_of_foreign_hosts(self):
        tasks = make_tasks(
            ("http://example.com/", TaskStatus.COMPLETED),
            ("http://example.com/about", TaskStatus.COMPLETED),
            ("http://support.com/", TaskStatus.COMPLETED),
            ("https://support.com/help", TaskStatus.FAILED),
            ("http://other.org/", TaskStatus.COMPLETED),
        )
        assert count_hosts(self.crawl_request, tasks) == {"support.com": 2, "other.org": 1}

    def test_subdomains_are_distinct_hosts(self):
        tasks = make_tasks(("http://www.example.com/", TaskStatus.COMPLETED))
        assert count_hosts(self.crawl_request, tasks) == {"www.example.com": 1}

    def test_host_case_is_ignored(self):
        tasks = make_tasks(
            ("http://EXAMPLE.com/", TaskStatus.COMPLETED),
            ("http://Support.com/", TaskStatus.COMPLETED),
            ("http://support.COM/help", TaskStatus.COMPLETED),
        )
        assert count_hosts(self.crawl_request, tasks) == {"support.com": 2}

    @pytest.mark.parametrize("status", [TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS])
    def test_unfinished_request(self, status):
        tasks = make_tasks(
            ("http://example.com/", TaskStatus.COMPLETED),
            ("http://support.com/", status),
        )
        with pytest.raises(CrawlNotCompletedError) as exc_info:
            count_hosts(self.crawl_request, tasks)
        assert exc_info.value.pending == 1
        assert exc_info.value.crawl_request_id == 1

    def test_unparseable_urls_are_skipped(self):
        tasks = make_tasks(
            ("http://[broken/", TaskStatus.COMPLETED),
            ("http://support.com/", TaskStatus.COMPLETED),
        )
        assert count_hosts(self.crawl_request, tasks) == {"support.com": 1}

    def test_no_tasks(self):
        assert count_hosts(self.crawl_request, []) == {}
