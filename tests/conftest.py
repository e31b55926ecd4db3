import os
import sys
from typing import Dict, List

import pytest
import pytest_asyncio

# Add the project root to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from linkcrawler.crawler.fetcher import FetchError
from linkcrawler.storage.database import DatabaseManager
from linkcrawler.utils.config import Config, CrawlerConfig, DatabaseConfig, MonitoringConfig
from linkcrawler.utils.monitoring import CrawlerMetrics
from linkcrawler.utils.retry import RetryPolicy


@pytest.fixture
def database_config(tmp_path):
    return DatabaseConfig(
        url=f"sqlite:///{tmp_path / 'crawler.db'}",
        connect_retries=0,
        retry_delay=0,
        retry_backoff=0
    )


@pytest.fixture
def config(database_config):
    return Config(
        crawler=CrawlerConfig(
            max_workers=4,
            request_timeout=5,
            poll_interval=0.01,
            stale_claim_timeout=600
        ),
        database=database_config,
        monitoring=MonitoringConfig(metrics_enabled=False)
    )


@pytest_asyncio.fixture
async def database(database_config):
    manager = DatabaseManager(database_config, retry_policy=RetryPolicy(retries=0, delay=0, backoff=0))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def metrics():
    return CrawlerMetrics(enable_server=False)


class FakeFetcher:
    """Serves pages from a dict; URLs missing from it fail like a 404."""

    def __init__(self, pages: Dict[str, str]):
        self.pages = pages
        self.requested: List[str] = []

    async def fetch_page(self, url: str) -> str:
        self.requested.append(url)
        if url not in self.pages:
            raise FetchError(url, "Received a non-2xx status code: 404", 404)
        return self.pages[url]

    def get_stats(self):
        return {'total_requests': len(self.requested)}

    async def close(self):
        pass


@pytest.fixture
def fake_fetcher_factory():
    return FakeFetcher
