"""
SQLite storage backend (aiosqlite).

A single connection is shared by every worker of the process, so statements
and transactions are serialized with an asyncio lock. Cross-process safety
comes from SQLite's database write lock: each claim is one UPDATE ... RETURNING
statement.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from .database import StorageBackend
from .errors import (
    CrawlRequestNotFound,
    DatabaseError,
    InvalidTransitionError,
    NoTasksAvailable,
    NotFoundError,
)
from .models import CrawlRequest, Edge, Page, StatusCounts, Task, TaskStatus
from .schema import SQLITE_SCHEMA

TASK_COLUMNS = "id, crawl_request_id, page_url, current_level, status, seen_url, claimed_at"


def _row_to_task(row) -> Task:
    return Task(
        id=row['id'],
        crawl_request_id=row['crawl_request_id'],
        page_url=row['page_url'],
        current_level=row['current_level'],
        status=TaskStatus(row['status']),
        seen_url=bool(row['seen_url']),
        claimed_at=row['claimed_at'],
    )


class SQLiteBackend(StorageBackend):
    """SQLite backend for tests and single-host deployments."""

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Open the database file and create tables."""
        try:
            if self.db_path != ':memory:':
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None: autocommit, transactions are opened explicitly
            self.conn = await aiosqlite.connect(
                self.db_path, timeout=self.busy_timeout, isolation_level=None
            )
            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA journal_mode=WAL")
            await self.conn.execute("PRAGMA foreign_keys=ON")
            for statement in SQLITE_SCHEMA:
                await self.conn.execute(statement)
        except (aiosqlite.Error, OSError) as e:
            if self.conn is not None:
                await self.conn.close()
                self.conn = None
            raise DatabaseError(f"Failed to initialize SQLite storage at {self.db_path}: {e}")

        self.logger.info(f"SQLite storage initialized at {self.db_path}")

    async def close(self):
        if self.conn is not None:
            await self.conn.close()
            self.conn = None

    @contextmanager
    def _errors(self, action: str):
        try:
            yield
        except aiosqlite.Error as e:
            raise DatabaseError(f"Unable to {action}: {e}") from e

    def _connection(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise DatabaseError("SQLite storage not initialized")
        return self.conn

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self._lock:
            async with self._connection().execute(query, params) as cursor:
                return list(await cursor.fetchall())

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(query, params)
        return rows[0] if rows else None

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        async with self._lock:
            async with self._connection().execute(query, params) as cursor:
                return cursor.rowcount

    @asynccontextmanager
    async def _transaction(self):
        """Hold the connection lock for the duration of one write transaction."""
        async with self._lock:
            conn = self._connection()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    @staticmethod
    async def _returning_id(conn: aiosqlite.Connection, query: str, params: Sequence[Any]) -> int:
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return rows[0][0]

    # Crawl requests

    async def create_crawl_request(self, url: str, levels: int) -> int:
        with self._errors(f"create crawl request with url {url} and {levels} levels"):
            async with self._transaction() as conn:
                crawl_request_id = await self._returning_id(
                    conn,
                    "INSERT INTO crawl_requests (url, levels) VALUES (?, ?) RETURNING id",
                    (url, levels)
                )
                await conn.execute(
                    """INSERT INTO tasks (crawl_request_id, page_url, current_level, status, seen_url)
                    VALUES (?, ?, 0, ?, 0)""",
                    (crawl_request_id, url, TaskStatus.NOT_STARTED.value)
                )
        return crawl_request_id

    async def get_crawl_request(self, crawl_request_id: int) -> CrawlRequest:
        with self._errors(f"get crawl request {crawl_request_id}"):
            row = await self._fetchone(
                "SELECT id, url, levels FROM crawl_requests WHERE id = ?",
                (crawl_request_id,)
            )
        if row is None:
            raise CrawlRequestNotFound(crawl_request_id)
        return CrawlRequest(id=row['id'], url=row['url'], levels=row['levels'])

    # Task queue

    async def create_task(self, crawl_request_id: int, url: str, level: int,
                          seen: bool = False) -> int:
        with self._errors(f"create task for {url}"):
            async with self._lock:
                return await self._returning_id(
                    self._connection(),
                    """INSERT INTO tasks (crawl_request_id, page_url, current_level, status, seen_url)
                    VALUES (?, ?, ?, ?, ?) RETURNING id""",
                    (crawl_request_id, url, level, TaskStatus.NOT_STARTED.value, int(seen))
                )

    async def claim_next_task(self) -> Task:
        with self._errors("retrieve next task"):
            row = await self._fetchone(
                f"""UPDATE tasks
                SET status = ?, claimed_at = ?
                WHERE status = ? AND id = (
                    SELECT id FROM tasks
                    WHERE status = ?
                    ORDER BY crawl_request_id ASC, id ASC
                    LIMIT 1)
                RETURNING {TASK_COLUMNS}""",
                (TaskStatus.IN_PROGRESS.value, time.time(),
                 TaskStatus.NOT_STARTED.value, TaskStatus.NOT_STARTED.value)
            )
        if row is None:
            raise NoTasksAvailable("no tasks available right now")
        return _row_to_task(row)

    async def set_task_status(self, task_id: int, status: TaskStatus):
        predecessors = [s.value for s in status.allowed_predecessors()]
        if not predecessors:
            raise InvalidTransitionError(task_id, status)

        placeholders = ", ".join("?" for _ in predecessors)
        with self._errors(f"update task {task_id}"):
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    f"UPDATE tasks SET status = ? WHERE id = ? AND status IN ({placeholders})",
                    (status.value, task_id, *predecessors)
                )
                if cursor.rowcount == 1:
                    return
                async with conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)) as c:
                    row = await c.fetchone()
        if row is None:
            raise NotFoundError(f"Task {task_id} does not exist")
        raise InvalidTransitionError(task_id, status, TaskStatus(row['status']))

    async def list_tasks(self, crawl_request_id: int) -> List[Task]:
        with self._errors(f"get tasks for crawl request {crawl_request_id}"):
            rows = await self._fetchall(
                f"SELECT {TASK_COLUMNS} FROM tasks WHERE crawl_request_id = ? ORDER BY id",
                (crawl_request_id,)
            )
        return [_row_to_task(row) for row in rows]

    async def status_counts(self, crawl_request_id: int) -> StatusCounts:
        with self._errors(f"count tasks for crawl request {crawl_request_id}"):
            rows = await self._fetchall(
                """SELECT status, COUNT(*) AS n
                FROM tasks
                WHERE crawl_request_id = ?
                AND current_level < (SELECT levels FROM crawl_requests WHERE id = ?)
                GROUP BY status""",
                (crawl_request_id, crawl_request_id)
            )
        counts = {row['status']: row['n'] for row in rows}
        return StatusCounts(
            completed=counts.get(TaskStatus.COMPLETED.value, 0),
            in_progress=counts.get(TaskStatus.IN_PROGRESS.value, 0),
            failed=counts.get(TaskStatus.FAILED.value, 0),
        )

    async def requeue_stale_tasks(self, older_than: float) -> int:
        with self._errors("requeue stale tasks"):
            return await self._execute(
                """UPDATE tasks SET status = ?, claimed_at = NULL
                WHERE status = ? AND (claimed_at IS NULL OR claimed_at < ?)""",
                (TaskStatus.NOT_STARTED.value, TaskStatus.IN_PROGRESS.value,
                 time.time() - older_than)
            )

    async def release_tasks(self, task_ids: List[int]) -> int:
        placeholders = ", ".join("?" for _ in task_ids)
        with self._errors("release claimed tasks"):
            return await self._execute(
                f"""UPDATE tasks SET status = ?, claimed_at = NULL
                WHERE status = ? AND id IN ({placeholders})""",
                (TaskStatus.NOT_STARTED.value, TaskStatus.IN_PROGRESS.value, *task_ids)
            )

    # Page graph

    @staticmethod
    async def _upsert_page(conn: aiosqlite.Connection, url: str) -> int:
        return await SQLiteBackend._returning_id(
            conn,
            """INSERT INTO page_nodes (url, crawled_status) VALUES (?, 0)
            ON CONFLICT (url) DO UPDATE SET url = excluded.url
            RETURNING id""",
            (url,)
        )

    async def upsert_page(self, url: str) -> int:
        with self._errors(f"upsert page with url {url}"):
            async with self._lock:
                return await self._upsert_page(self._connection(), url)

    async def get_page(self, page_id: int) -> Page:
        with self._errors(f"get page {page_id}"):
            row = await self._fetchone(
                "SELECT id, url, crawled_status FROM page_nodes WHERE id = ?", (page_id,)
            )
        if row is None:
            raise NotFoundError(f"Page {page_id} does not exist")
        return Page(id=row['id'], url=row['url'], crawled_status=bool(row['crawled_status']))

    async def edges_from(self, page_id: int) -> List[Edge]:
        with self._errors(f"retrieve edges for page {page_id}"):
            rows = await self._fetchall(
                "SELECT id, source_id, target_id FROM edges WHERE source_id = ? ORDER BY id",
                (page_id,)
            )
        return [Edge(id=row['id'], source_id=row['source_id'], target_id=row['target_id'])
                for row in rows]

    async def outlink_urls(self, page_id: int) -> List[str]:
        with self._errors(f"retrieve outlinks for page {page_id}"):
            rows = await self._fetchall(
                """SELECT p.url FROM edges e
                JOIN page_nodes p ON p.id = e.target_id
                WHERE e.source_id = ?
                ORDER BY e.id""",
                (page_id,)
            )
        return [row['url'] for row in rows]

    async def record_outlinks(self, page_id: int, urls: List[str]):
        with self._errors(f"update edges of page {page_id}"):
            async with self._transaction() as conn:
                for url in urls:
                    target_id = await self._upsert_page(conn, url)
                    if target_id == page_id:
                        continue
                    await conn.execute(
                        """INSERT INTO edges (source_id, target_id) VALUES (?, ?)
                        ON CONFLICT (source_id, target_id) DO NOTHING""",
                        (page_id, target_id)
                    )
                await conn.execute(
                    "UPDATE page_nodes SET crawled_status = 1 WHERE id = ? AND crawled_status = 0",
                    (page_id,)
                )

    async def get_stats(self) -> Dict[str, Any]:
        with self._errors("collect storage statistics"):
            row = await self._fetchone(
                """SELECT
                    (SELECT COUNT(*) FROM crawl_requests) AS crawl_requests,
                    (SELECT COUNT(*) FROM tasks) AS tasks,
                    (SELECT COUNT(*) FROM page_nodes) AS pages,
                    (SELECT COUNT(*) FROM page_nodes WHERE crawled_status = 1) AS crawled_pages,
                    (SELECT COUNT(*) FROM edges) AS edges"""
            )
        return dict(row)
