"""
PostgreSQL storage backend (asyncpg).

Claims use ``FOR UPDATE SKIP LOCKED`` so that any number of engine processes
can poll the same tasks table without handing out a task twice.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import asyncpg

from .database import StorageBackend
from .errors import (
    CrawlRequestNotFound,
    DatabaseError,
    InvalidTransitionError,
    NoTasksAvailable,
    NotFoundError,
)
from .models import CrawlRequest, Edge, Page, StatusCounts, Task, TaskStatus
from .schema import POSTGRES_SCHEMA

TASK_COLUMNS = "id, crawl_request_id, page_url, current_level, status, seen_url, claimed_at"

UPSERT_PAGE = """
    INSERT INTO page_nodes (url, crawled_status) VALUES ($1, FALSE)
    ON CONFLICT (url) DO UPDATE SET url = EXCLUDED.url
    RETURNING id
"""


def _row_to_task(row: asyncpg.Record) -> Task:
    claimed_at = row['claimed_at']
    return Task(
        id=row['id'],
        crawl_request_id=row['crawl_request_id'],
        page_url=row['page_url'],
        current_level=row['current_level'],
        status=TaskStatus(row['status']),
        seen_url=row['seen_url'],
        claimed_at=claimed_at.timestamp() if claimed_at is not None else None,
    )


def _affected_rows(command_tag: str) -> int:
    """Number of rows from an asyncpg status string such as ``UPDATE 3``."""
    try:
        return int(command_tag.split()[-1])
    except (IndexError, ValueError):
        return 0


class PostgresBackend(StorageBackend):
    """PostgreSQL backend for multi-process deployments."""

    def __init__(self, dsn: str, pool_size: int = 10):
        self.dsn = dsn
        self.pool_size = pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Create the connection pool and the tables."""
        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=self.pool_size,
            )
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for statement in POSTGRES_SCHEMA:
                        await conn.execute(statement)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            if self.pool is not None:
                await self.pool.close()
                self.pool = None
            raise DatabaseError(f"Failed to initialize PostgreSQL storage: {e}")

        self.logger.info("PostgreSQL storage initialized")

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL connections closed")

    @contextmanager
    def _errors(self, action: str):
        try:
            yield
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise DatabaseError(f"Unable to {action}: {e}") from e

    def _pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise DatabaseError("PostgreSQL storage not initialized")
        return self.pool

    # Crawl requests

    async def create_crawl_request(self, url: str, levels: int) -> int:
        with self._errors(f"create crawl request with url {url} and {levels} levels"):
            async with self._pool().acquire() as conn:
                async with conn.transaction():
                    crawl_request_id = await conn.fetchval(
                        "INSERT INTO crawl_requests (url, levels) VALUES ($1, $2) RETURNING id",
                        url, levels
                    )
                    await conn.execute(
                        """INSERT INTO tasks (crawl_request_id, page_url, current_level, status, seen_url)
                        VALUES ($1, $2, 0, $3, FALSE)""",
                        crawl_request_id, url, TaskStatus.NOT_STARTED.value
                    )
        return crawl_request_id

    async def get_crawl_request(self, crawl_request_id: int) -> CrawlRequest:
        with self._errors(f"get crawl request {crawl_request_id}"):
            row = await self._pool().fetchrow(
                "SELECT id, url, levels FROM crawl_requests WHERE id = $1", crawl_request_id
            )
        if row is None:
            raise CrawlRequestNotFound(crawl_request_id)
        return CrawlRequest(id=row['id'], url=row['url'], levels=row['levels'])

    # Task queue

    async def create_task(self, crawl_request_id: int, url: str, level: int,
                          seen: bool = False) -> int:
        with self._errors(f"create task for {url}"):
            return await self._pool().fetchval(
                """INSERT INTO tasks (crawl_request_id, page_url, current_level, status, seen_url)
                VALUES ($1, $2, $3, $4, $5) RETURNING id""",
                crawl_request_id, url, level, TaskStatus.NOT_STARTED.value, seen
            )

    async def claim_next_task(self) -> Task:
        with self._errors("retrieve next task"):
            row = await self._pool().fetchrow(
                f"""UPDATE tasks
                SET status = $1, claimed_at = now()
                WHERE id = (
                    SELECT id FROM tasks
                    WHERE status = $2
                    ORDER BY crawl_request_id ASC, id ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED)
                RETURNING {TASK_COLUMNS}""",
                TaskStatus.IN_PROGRESS.value, TaskStatus.NOT_STARTED.value
            )
        if row is None:
            raise NoTasksAvailable("no tasks available right now")
        return _row_to_task(row)

    async def set_task_status(self, task_id: int, status: TaskStatus):
        predecessors = [s.value for s in status.allowed_predecessors()]
        if not predecessors:
            raise InvalidTransitionError(task_id, status)

        with self._errors(f"update task {task_id}"):
            async with self._pool().acquire() as conn:
                updated = await conn.fetchval(
                    """UPDATE tasks SET status = $2
                    WHERE id = $1 AND status = ANY($3::text[])
                    RETURNING id""",
                    task_id, status.value, predecessors
                )
                if updated is not None:
                    return
                current = await conn.fetchval("SELECT status FROM tasks WHERE id = $1", task_id)
        if current is None:
            raise NotFoundError(f"Task {task_id} does not exist")
        raise InvalidTransitionError(task_id, status, TaskStatus(current))

    async def list_tasks(self, crawl_request_id: int) -> List[Task]:
        with self._errors(f"get tasks for crawl request {crawl_request_id}"):
            rows = await self._pool().fetch(
                f"SELECT {TASK_COLUMNS} FROM tasks WHERE crawl_request_id = $1 ORDER BY id",
                crawl_request_id
            )
        return [_row_to_task(row) for row in rows]

    async def status_counts(self, crawl_request_id: int) -> StatusCounts:
        with self._errors(f"count tasks for crawl request {crawl_request_id}"):
            rows = await self._pool().fetch(
                """SELECT status, COUNT(*) AS n
                FROM tasks
                WHERE crawl_request_id = $1
                AND current_level < (SELECT levels FROM crawl_requests WHERE id = $1)
                GROUP BY status""",
                crawl_request_id
            )
        counts = {row['status']: row['n'] for row in rows}
        return StatusCounts(
            completed=counts.get(TaskStatus.COMPLETED.value, 0),
            in_progress=counts.get(TaskStatus.IN_PROGRESS.value, 0),
            failed=counts.get(TaskStatus.FAILED.value, 0),
        )

    async def requeue_stale_tasks(self, older_than: float) -> int:
        with self._errors("requeue stale tasks"):
            tag = await self._pool().execute(
                """UPDATE tasks SET status = $1, claimed_at = NULL
                WHERE status = $2
                AND (claimed_at IS NULL OR claimed_at < now() - make_interval(secs => $3))""",
                TaskStatus.NOT_STARTED.value, TaskStatus.IN_PROGRESS.value, float(older_than)
            )
        return _affected_rows(tag)

    async def release_tasks(self, task_ids: List[int]) -> int:
        with self._errors("release claimed tasks"):
            tag = await self._pool().execute(
                """UPDATE tasks SET status = $1, claimed_at = NULL
                WHERE status = $2 AND id = ANY($3::int[])""",
                TaskStatus.NOT_STARTED.value, TaskStatus.IN_PROGRESS.value, list(task_ids)
            )
        return _affected_rows(tag)

    # Page graph

    async def upsert_page(self, url: str) -> int:
        with self._errors(f"upsert page with url {url}"):
            return await self._pool().fetchval(UPSERT_PAGE, url)

    async def get_page(self, page_id: int) -> Page:
        with self._errors(f"get page {page_id}"):
            row = await self._pool().fetchrow(
                "SELECT id, url, crawled_status FROM page_nodes WHERE id = $1", page_id
            )
        if row is None:
            raise NotFoundError(f"Page {page_id} does not exist")
        return Page(id=row['id'], url=row['url'], crawled_status=row['crawled_status'])

    async def edges_from(self, page_id: int) -> List[Edge]:
        with self._errors(f"retrieve edges for page {page_id}"):
            rows = await self._pool().fetch(
                "SELECT id, source_id, target_id FROM edges WHERE source_id = $1 ORDER BY id",
                page_id
            )
        return [Edge(id=row['id'], source_id=row['source_id'], target_id=row['target_id'])
                for row in rows]

    async def outlink_urls(self, page_id: int) -> List[str]:
        with self._errors(f"retrieve outlinks for page {page_id}"):
            rows = await self._pool().fetch(
                """SELECT p.url FROM edges e
                JOIN page_nodes p ON p.id = e.target_id
                WHERE e.source_id = $1
                ORDER BY e.id""",
                page_id
            )
        return [row['url'] for row in rows]

    async def record_outlinks(self, page_id: int, urls: List[str]):
        with self._errors(f"update edges of page {page_id}"):
            async with self._pool().acquire() as conn:
                async with conn.transaction():
                    source_url = await conn.fetchval(
                        "SELECT url FROM page_nodes WHERE id = $1", page_id
                    )
                    if source_url is None:
                        raise NotFoundError(f"Page {page_id} does not exist")

                    # Page rows are always locked in url order, source included
                    page_ids = {}
                    for url in sorted(set(urls) | {source_url}):
                        page_ids[url] = await conn.fetchval(UPSERT_PAGE, url)

                    linked = set()
                    for url in urls:
                        target_id = page_ids[url]
                        if target_id == page_id or target_id in linked:
                            continue
                        linked.add(target_id)
                        await conn.execute(
                            """INSERT INTO edges (source_id, target_id) VALUES ($1, $2)
                            ON CONFLICT (source_id, target_id) DO NOTHING""",
                            page_id, target_id
                        )
                    await conn.execute(
                        """UPDATE page_nodes SET crawled_status = TRUE
                        WHERE id = $1 AND crawled_status = FALSE""",
                        page_id
                    )

    async def get_stats(self) -> Dict[str, Any]:
        with self._errors("collect storage statistics"):
            row = await self._pool().fetchrow(
                """SELECT
                    (SELECT COUNT(*) FROM crawl_requests) AS crawl_requests,
                    (SELECT COUNT(*) FROM tasks) AS tasks,
                    (SELECT COUNT(*) FROM page_nodes) AS pages,
                    (SELECT COUNT(*) FROM page_nodes WHERE crawled_status) AS crawled_pages,
                    (SELECT COUNT(*) FROM edges) AS edges"""
            )
        return dict(row)
