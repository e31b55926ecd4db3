"""
Monitoring and metrics collection for the crawl engine.
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class CrawlerMetrics:
    """
    Prometheus metrics for the crawl engine.

    Each instance owns its own registry so that several engines (or tests)
    in one process do not collide.
    """

    def __init__(self, enable_server: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()

        self.tasks_claimed = Counter(
            'crawler_tasks_claimed_total',
            'Tasks claimed from the queue',
            registry=self.registry
        )
        self.tasks_completed = Counter(
            'crawler_tasks_completed_total',
            'Tasks marked COMPLETED',
            registry=self.registry
        )
        self.tasks_failed = Counter(
            'crawler_tasks_failed_total',
            'Tasks marked FAILED',
            ['error_type'],
            registry=self.registry
        )
        self.pages_fetched = Counter(
            'crawler_pages_fetched_total',
            'Pages fetched over HTTP',
            registry=self.registry
        )
        self.graph_reuse = Counter(
            'crawler_graph_reuse_total',
            'Pages expanded from stored edges instead of a fetch',
            registry=self.registry
        )
        self.tasks_requeued = Counter(
            'crawler_tasks_requeued_total',
            'Stale or unstarted tasks returned to the queue',
            registry=self.registry
        )
        self.fetch_duration = Histogram(
            'crawler_fetch_duration_seconds',
            'Time spent fetching a page',
            registry=self.registry
        )
        self.active_workers = Gauge(
            'crawler_active_workers',
            'Number of workers currently running a task',
            registry=self.registry
        )

    def start_server(self):
        """Expose the registry over HTTP if enabled."""
        if not self.enable_server:
            return
        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_failure(self, error: BaseException):
        self.tasks_failed.labels(error_type=type(error).__name__).inc()

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a sample, 0 if it has not been recorded yet."""
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def snapshot(self) -> Dict[str, float]:
        """Current values of the counters and gauges, for logging."""
        failed = sum(
            sample.value
            for metric in self.registry.collect()
            if metric.name == 'crawler_tasks_failed'
            for sample in metric.samples
            if sample.name == 'crawler_tasks_failed_total'
        )
        return {
            'tasks_claimed': self.value('crawler_tasks_claimed_total'),
            'tasks_completed': self.value('crawler_tasks_completed_total'),
            'tasks_failed': failed,
            'pages_fetched': self.value('crawler_pages_fetched_total'),
            'graph_reuse': self.value('crawler_graph_reuse_total'),
            'tasks_requeued': self.value('crawler_tasks_requeued_total'),
            'active_workers': self.value('crawler_active_workers'),
        }
