"""
Aggregation of a finished crawl request into per-host visit counts.
"""

import logging
from collections import Counter
from typing import Dict, Iterable

from .normalizer import hostname_of
from ..storage.models import CrawlRequest, Task

logger = logging.getLogger(__name__)


class CrawlNotCompletedError(Exception):
    """Results were requested while some tasks are still waiting or running."""

    def __init__(self, crawl_request_id: int, pending: int):
        super().__init__(
            f"CrawlRequest {crawl_request_id} not yet completed ({pending} tasks pending)"
        )
        self.crawl_request_id = crawl_request_id
        self.pending = pending


def count_hosts(crawl_request: CrawlRequest, tasks: Iterable[Task]) -> Dict[str, int]:
    """
    Count one visit per task for every host other than the root URL's host.

    Raises CrawlNotCompletedError if any task has not reached a terminal
    status; no partial counts are returned in that case.
    """
    tasks = list(tasks)
    pending = sum(1 for t in tasks if not t.status.is_terminal)
    if pending:
        raise CrawlNotCompletedError(crawl_request.id, pending)

    origin = hostname_of(crawl_request.url)
    hosts: Counter = Counter()
    for task in tasks:
        host = hostname_of(task.page_url)
        if host is None:
            logger.warning(
                f"CrawlRequest {task.crawl_request_id}: Error parsing url {task.page_url} "
                f"for task {task.id}"
            )
            continue
        if host != origin:
            hosts[host] += 1
    return dict(hosts)

