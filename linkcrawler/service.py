"""
Crawl request operations used by the HTTP API and the command line:
creating a request, reporting its progress and reporting its results.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict

from .crawler.normalizer import normalize_root_url
from .crawler.results import count_hosts
from .storage.database import DatabaseManager


@dataclass(frozen=True)
class CrawlStatus:
    """Progress of one crawl request, excluding last-level accounting tasks."""
    url: str
    completed: int
    failed: int
    in_progress: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CrawlService:
    """Create, status and results operations over the task queue and page graph."""

    def __init__(self, database: DatabaseManager):
        self.database = database
        self.logger = logging.getLogger(__name__)

    async def create(self, url: str, levels: int) -> int:
        """
        Create a crawl request and its level 0 task.

        Raises ValueError (InvalidURLError for bad URLs) on invalid input.
        """
        if isinstance(levels, bool) or not isinstance(levels, int) or levels < 0:
            raise ValueError("levels must be a non-negative integer")

        root_url = normalize_root_url(url)
        crawl_request_id = await self.database.create_crawl_request(root_url, levels)
        self.logger.info(
            f"Created crawl request {crawl_request_id} starting from {root_url} "
            f"with {levels} levels"
        )
        return crawl_request_id

    async def status(self, crawl_request_id: int) -> CrawlStatus:
        """Raises CrawlRequestNotFound for an unknown id."""
        crawl_request = await self.database.get_crawl_request(crawl_request_id)
        counts = await self.database.status_counts(crawl_request_id)
        return CrawlStatus(
            url=crawl_request.url,
            completed=counts.completed,
            failed=counts.failed,
            in_progress=counts.in_progress,
            total=counts.total,
        )

    async def results(self, crawl_request_id: int) -> Dict[str, int]:
        """
        Visits per external host.

        Raises CrawlRequestNotFound for an unknown id and CrawlNotCompletedError
        while any task is still waiting or running.
        """
        crawl_request = await self.database.get_crawl_request(crawl_request_id)
        tasks = await self.database.list_tasks(crawl_request_id)
        return count_hosts(crawl_request, tasks)
