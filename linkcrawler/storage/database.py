"""
Database storage layer for the task queue and the page graph.
Supports both SQLite and PostgreSQL backends.
"""

import logging
from typing import Optional, Dict, List, Any

from .errors import DatabaseError
from .models import CrawlRequest, Edge, Page, StatusCounts, Task, TaskStatus
from ..utils.config import DatabaseConfig
from ..utils.retry import RetryPolicy


class StorageBackend:
    """Abstract base class for storage backends."""

    async def initialize(self):
        """Open connections and create the schema if needed."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError

    # Crawl requests

    async def create_crawl_request(self, url: str, levels: int) -> int:
        """Insert a crawl request together with its level 0 task."""
        raise NotImplementedError

    async def get_crawl_request(self, crawl_request_id: int) -> CrawlRequest:
        raise NotImplementedError

    # Task queue

    async def create_task(self, crawl_request_id: int, url: str, level: int,
                          seen: bool = False) -> int:
        """Insert a NOT_STARTED task and return its id."""
        raise NotImplementedError

    async def claim_next_task(self) -> Task:
        """
        Atomically move the oldest waiting task to IN_PROGRESS and return it.

        Raises NoTasksAvailable when nothing is waiting.
        """
        raise NotImplementedError

    async def set_task_status(self, task_id: int, status: TaskStatus):
        """Move a task to ``status``; raises InvalidTransitionError if not allowed."""
        raise NotImplementedError

    async def list_tasks(self, crawl_request_id: int) -> List[Task]:
        raise NotImplementedError

    async def status_counts(self, crawl_request_id: int) -> StatusCounts:
        """Counts of tasks strictly below the request's depth bound."""
        raise NotImplementedError

    async def requeue_stale_tasks(self, older_than: float) -> int:
        """Reset IN_PROGRESS tasks claimed more than ``older_than`` seconds ago."""
        raise NotImplementedError

    async def release_tasks(self, task_ids: List[int]) -> int:
        """Return claimed-but-unstarted tasks to NOT_STARTED."""
        raise NotImplementedError

    # Page graph

    async def upsert_page(self, url: str) -> int:
        raise NotImplementedError

    async def get_page(self, page_id: int) -> Page:
        raise NotImplementedError

    async def edges_from(self, page_id: int) -> List[Edge]:
        raise NotImplementedError

    async def outlink_urls(self, page_id: int) -> List[str]:
        """Target URLs of a page's outgoing edges, in insertion order."""
        raise NotImplementedError

    async def record_outlinks(self, page_id: int, urls: List[str]):
        """Upsert targets, add edges and mark the page crawled, all or nothing."""
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        raise NotImplementedError


def create_backend(config: DatabaseConfig) -> StorageBackend:
    """Pick a backend from the scheme of the connection string."""
    scheme = config.scheme
    if scheme == 'sqlite':
        from .sqlite import SQLiteBackend
        return SQLiteBackend(sqlite_path_from_url(config.url))
    if scheme in ('postgres', 'postgresql'):
        from .postgres import PostgresBackend
        return PostgresBackend(config.url, pool_size=config.pool_size)
    raise DatabaseError(f"Unknown database type: {scheme}")


def sqlite_path_from_url(url: str) -> str:
    """
    Translate ``sqlite:///relative.db``, ``sqlite:////abs/path.db`` or
    ``sqlite:///:memory:`` into a path aiosqlite understands.
    """
    prefix = 'sqlite:///'
    if not url.startswith(prefix):
        raise DatabaseError(f"Malformed SQLite url: {url}")
    path = url[len(prefix):]
    if not path:
        raise DatabaseError(f"SQLite url has no path: {url}")
    return path


class DatabaseManager:
    """Owns the storage backend and exposes the task queue and page graph operations."""

    def __init__(self, config: DatabaseConfig, retry_policy: Optional[RetryPolicy] = None):
        self.config = config
        self.retry_policy = retry_policy or config.retry_policy()
        self.backend: Optional[StorageBackend] = None
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """Connect to the configured backend, retrying per the retry policy."""

        async def connect() -> StorageBackend:
            backend = create_backend(self.config)
            await backend.initialize()
            return backend

        self.backend = await self.retry_policy.run(
            connect,
            f"connecting to {self.config.scheme} storage",
            retry_on=(DatabaseError, OSError)
        )
        self.logger.info(f"Database manager initialized with {self.config.scheme} backend")

    def _require_backend(self) -> StorageBackend:
        if not self.backend:
            raise DatabaseError("Database not initialized")
        return self.backend

    async def create_crawl_request(self, url: str, levels: int) -> int:
        return await self._require_backend().create_crawl_request(url, levels)

    async def get_crawl_request(self, crawl_request_id: int) -> CrawlRequest:
        return await self._require_backend().get_crawl_request(crawl_request_id)

    async def create_task(self, crawl_request_id: int, url: str, level: int,
                          seen: bool = False) -> int:
        return await self._require_backend().create_task(crawl_request_id, url, level, seen)

    async def claim_next_task(self) -> Task:
        return await self._require_backend().claim_next_task()

    async def set_task_status(self, task_id: int, status: TaskStatus):
        await self._require_backend().set_task_status(task_id, status)

    async def list_tasks(self, crawl_request_id: int) -> List[Task]:
        return await self._require_backend().list_tasks(crawl_request_id)

    async def status_counts(self, crawl_request_id: int) -> StatusCounts:
        return await self._require_backend().status_counts(crawl_request_id)

    async def requeue_stale_tasks(self, older_than: float) -> int:
        return await self._require_backend().requeue_stale_tasks(older_than)

    async def release_tasks(self, task_ids: List[int]) -> int:
        if not task_ids:
            return 0
        return await self._require_backend().release_tasks(task_ids)

    async def upsert_page(self, url: str) -> int:
        return await self._require_backend().upsert_page(url)

    async def get_page(self, page_id: int) -> Page:
        return await self._require_backend().get_page(page_id)

    async def edges_from(self, page_id: int) -> List[Edge]:
        return await self._require_backend().edges_from(page_id)

    async def outlink_urls(self, page_id: int) -> List[str]:
        return await self._require_backend().outlink_urls(page_id)

    async def record_outlinks(self, page_id: int, urls: List[str]):
        await self._require_backend().record_outlinks(page_id, urls)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._require_backend().get_stats()

    async def close(self):
        """Close database connections."""
        if self.backend:
            await self.backend.close()
            self.backend = None
            self.logger.info("Database connections closed")
