"""
Crawl engine: claims tasks from the shared queue and runs them with bounded
concurrency.

Each task either expands a page (fetching it the first time the page graph
sees its URL, or reading its stored edges afterwards) and queues the linked
pages one level deeper, or, at the deepest level, is completed without any
work so that result counting can see the URL was reached.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from .fetcher import WebFetcher
from .parser import ContentParser
from ..storage.database import DatabaseManager
from ..storage.errors import DatabaseError, NoTasksAvailable
from ..storage.models import CrawlRequest, Task, TaskStatus
from ..utils.config import Config
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMetrics


class CrawlerScheduler:
    """
    Main scheduler that coordinates all crawler components.

    In ``batch`` mode every cycle claims up to ``max_workers`` tasks, runs
    them concurrently and waits for the whole batch before claiming again.
    In ``pool`` mode a single dispatcher keeps up to ``max_workers`` tasks
    running at all times. In both modes the atomic claim of the storage layer
    is the only thing keeping two workers (or two processes) off the same task.
    """

    def __init__(self, config: Config, database: Optional[DatabaseManager] = None,
                 fetcher: Optional[WebFetcher] = None, parser: Optional[ContentParser] = None,
                 metrics: Optional[CrawlerMetrics] = None):
        self.config = config
        self.logger = get_crawler_logger(__name__)

        crawler_config = config.crawler
        self.max_workers = crawler_config.max_workers
        self.scheduling_mode = crawler_config.scheduling_mode
        self.poll_interval = crawler_config.poll_interval
        self.stale_claim_timeout = crawler_config.stale_claim_timeout

        # Components passed in are owned by the caller
        self.database = database
        self.fetcher = fetcher
        self.parser = parser or ContentParser()
        self.metrics = metrics or CrawlerMetrics(
            enable_server=config.monitoring.metrics_enabled,
            prometheus_port=config.monitoring.prometheus_port
        )
        self._owns_database = database is None
        self._owns_fetcher = fetcher is None

        self.is_running = False
        self.start_time = time.time()
        self._shutdown = asyncio.Event()
        self._last_recovery = 0.0

    async def initialize(self):
        """Create the components that were not supplied."""
        try:
            if self.database is None:
                self.database = DatabaseManager(self.config.database)
                await self.database.initialize()

            if self.fetcher is None:
                self.fetcher = WebFetcher(
                    user_agent=self.config.crawler.user_agent,
                    request_timeout=self.config.crawler.request_timeout,
                    max_connections=self.max_workers,
                    max_content_size=self.config.crawler.max_content_size
                )
                await self.fetcher.start()

            self.metrics.start_server()
            self.logger.info("Crawler scheduler initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize crawler scheduler: {e}")
            raise

    # Scheduling loop

    async def start_crawling(self):
        """Run until stop() is called."""
        if self.is_running:
            self.logger.warning("Crawler is already running")
            return

        self.is_running = True
        self.start_time = time.time()
        self._shutdown.clear()
        self.logger.info(
            f"Starting crawl engine with up to {self.max_workers} workers "
            f"({self.scheduling_mode} scheduling)"
        )

        try:
            await self.recover_orphaned_tasks()
            if self.scheduling_mode == 'pool':
                await self._run_pool()
            else:
                await self._run_batches()
        finally:
            self.is_running = False
            await self._log_final_stats()

    async def stop_crawling(self):
        """Stop claiming new tasks; tasks already running are allowed to finish."""
        self.logger.info("Stopping crawler...")
        self._shutdown.set()

    async def recover_orphaned_tasks(self) -> int:
        """
        Requeue tasks left IN_PROGRESS by an engine that died mid-task.

        Only claims older than ``stale_claim_timeout`` are touched, so tasks
        being worked on by another live engine are left alone.
        """
        self._last_recovery = time.monotonic()
        count = await self.database.requeue_stale_tasks(self.stale_claim_timeout)
        if count:
            self.metrics.tasks_requeued.inc(count)
            self.logger.warning(f"Requeued {count} stale IN_PROGRESS tasks")
        return count

    async def _recover_if_due(self):
        """
        Repeat the stale-claim sweep once per ``stale_claim_timeout`` while
        running. Claims orphaned shortly before a restart are still too young
        at startup and only become stale later.
        """
        if time.monotonic() - self._last_recovery < self.stale_claim_timeout:
            return
        try:
            await self.recover_orphaned_tasks()
        except DatabaseError as e:
            self._last_recovery = time.monotonic()
            self.logger.error(f"Could not requeue stale tasks: {e}")

    async def run_once(self) -> int:
        """
        One batch cycle: claim up to ``max_workers`` tasks, run them all and
        wait for every one of them. Returns the number of tasks run.
        """
        tasks = await self._claim_batch(self.max_workers)
        if tasks:
            await asyncio.gather(*(self._run_worker(task) for task in tasks))
        return len(tasks)

    async def _run_batches(self):
        while not self._shutdown.is_set():
            await self._recover_if_due()
            processed = await self.run_once()
            if processed == 0:
                await self._idle()

    async def _claim_batch(self, limit: int) -> List[Task]:
        claimed = []
        for _ in range(limit):
            if self._shutdown.is_set():
                break
            task = await self._claim()
            if task is None:
                break
            claimed.append(task)
        return claimed

    async def _claim(self) -> Optional[Task]:
        """Claim one task; None when there is nothing to do or storage failed."""
        try:
            task = await self.database.claim_next_task()
        except NoTasksAvailable:
            return None
        except DatabaseError as e:
            self.logger.error(f"Could not claim next task: {e}")
            return None
        self.metrics.tasks_claimed.inc()
        return task

    async def _idle(self):
        """Sleep for the poll interval, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _run_pool(self):
        slots = asyncio.Semaphore(self.max_workers)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_workers)
        workers = [
            asyncio.create_task(self._pool_worker(f"worker-{i}", queue, slots))
            for i in range(self.max_workers)
        ]
        try:
            while not self._shutdown.is_set():
                await slots.acquire()
                if self._shutdown.is_set():
                    slots.release()
                    break
                await self._recover_if_due()
                task = await self._claim()
                if task is None:
                    slots.release()
                    await self._idle()
                    continue
                queue.put_nowait(task)
        finally:
            unstarted = []
            while not queue.empty():
                unstarted.append(queue.get_nowait())
            if unstarted:
                await self._release_unstarted(unstarted)
            for _ in workers:
                queue.put_nowait(None)
            await asyncio.gather(*workers, return_exceptions=True)

    async def _pool_worker(self, worker_id: str, queue: asyncio.Queue, slots: asyncio.Semaphore):
        self.logger.debug(f"Worker {worker_id} started")
        while True:
            task = await queue.get()
            if task is None:
                break
            try:
                await self._run_worker(task)
            finally:
                slots.release()
        self.logger.debug(f"Worker {worker_id} finished")

    async def _release_unstarted(self, tasks: List[Task]):
        try:
            count = await self.database.release_tasks([t.id for t in tasks])
            self.metrics.tasks_requeued.inc(count)
            self.logger.info(f"Returned {count} claimed but unstarted tasks to the queue")
        except DatabaseError as e:
            self.logger.error(f"Could not return unstarted tasks to the queue: {e}")

    async def _run_worker(self, task: Task) -> TaskStatus:
        self.metrics.active_workers.inc()
        try:
            return await self.process_task(task)
        finally:
            self.metrics.active_workers.dec()

    # Per-task state machine

    async def process_task(self, task: Task) -> TaskStatus:
        """
        Run one claimed task to a terminal status.

        Any error aborts the task: it is logged with the task's context and
        the task is marked FAILED. Failed tasks are never retried.
        """
        try:
            crawl_request = await self.database.get_crawl_request(task.crawl_request_id)

            if task.current_level >= crawl_request.levels:
                # Last level: the task only records that the URL was reached
                await self.database.set_task_status(task.id, TaskStatus.COMPLETED)
                self.metrics.tasks_completed.inc()
                return TaskStatus.COMPLETED

            self.logger.log_task_event(logging.INFO, task.context(), "Crawling new page")
            urls = await self._discover_links(task)
            await self._create_child_tasks(task, crawl_request, urls)
            await self.database.set_task_status(task.id, TaskStatus.COMPLETED)

        except Exception as e:
            await self._fail_task(task, e)
            return TaskStatus.FAILED

        self.metrics.tasks_completed.inc()
        return TaskStatus.COMPLETED

    async def _discover_links(self, task: Task) -> List[str]:
        """
        Outbound links of the task's page, from the page graph when the page
        was already crawled, otherwise by fetching it and recording its edges.
        """
        page_id = await self.database.upsert_page(task.page_url)
        page = await self.database.get_page(page_id)

        if page.crawled_status:
            self.metrics.graph_reuse.inc()
            return await self.database.outlink_urls(page.id)

        with self.metrics.fetch_duration.time():
            html = await self.fetcher.fetch_page(page.url)
        self.metrics.pages_fetched.inc()

        parsed = self.parser.parse(page.url, html)
        await self.database.record_outlinks(page.id, parsed.links)
        return parsed.links

    async def _create_child_tasks(self, task: Task, crawl_request: CrawlRequest,
                                  urls: List[str]) -> int:
        """Queue one task per link at the next level; returns how many are new URLs."""
        if task.current_level >= crawl_request.levels:
            return 0

        known_urls = {t.page_url for t in await self.database.list_tasks(crawl_request.id)}
        new_count = 0
        for url in urls:
            seen = url in known_urls
            if not seen:
                known_urls.add(url)
                new_count += 1
            await self.database.create_task(crawl_request.id, url, task.current_level + 1, seen)

        self.logger.info(
            f"CrawlRequest {crawl_request.id}: Added {len(urls)} tasks, "
            f"{new_count} of them for URLs new to this request"
        )
        return new_count

    async def _fail_task(self, task: Task, error: Exception):
        self.metrics.record_failure(error)
        self.logger.log_task_event(
            logging.ERROR, task.context(), f"Error while crawling: {error}"
        )
        try:
            await self.database.set_task_status(task.id, TaskStatus.FAILED)
        except DatabaseError as e:
            self.logger.log_task_event(
                logging.ERROR, task.context(), f"Error while marking task FAILED: {e}"
            )

    # Statistics and cleanup

    def get_stats(self) -> Dict:
        """Get current crawl statistics."""
        stats = self.metrics.snapshot()
        stats['elapsed_time'] = time.time() - self.start_time
        stats['is_running'] = self.is_running
        return stats

    async def _log_final_stats(self):
        self.logger.info("=== CRAWL ENGINE STOPPED ===")
        for name, value in self.get_stats().items():
            self.logger.info(f"{name}: {value}")
        if self.fetcher:
            self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")
        if self.database and self.database.backend:
            try:
                self.logger.info(f"Database stats: {await self.database.get_stats()}")
            except DatabaseError as e:
                self.logger.error(f"Could not collect database stats: {e}")

    async def close(self):
        """Close the components this scheduler created."""
        if self.is_running:
            await self.stop_crawling()

        if self.fetcher and self._owns_fetcher:
            await self.fetcher.close()

        if self.database and self._owns_database:
            await self.database.close()

        self.logger.info("Crawler scheduler closed")
