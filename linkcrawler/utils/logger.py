"""
Logging utilities for the link crawler.
"""

import logging
import logging.handlers
import json
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from .config import LoggingConfig

TASK_CONTEXT_FIELDS = ('crawl_request_id', 'task_id', 'url', 'level')


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Task context attached through CrawlerLogAdapter
        for key in TASK_CONTEXT_FIELDS + ('worker', 'event_type'):
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Logger adapter that adds crawler-specific context."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Add extra context to log messages."""
        if 'extra' not in kwargs:
            kwargs['extra'] = {}

        # Call-site fields win over adapter fields
        kwargs['extra'] = {**self.extra, **kwargs['extra']}

        return msg, kwargs

    def log_task_event(self, level: int, task_context: Dict[str, Any], message: str, **kwargs):
        """
        Log an event about one task, prefixed with its crawl request, task id,
        URL and level so that plain-text logs carry the same context as JSON ones.
        """
        extra = dict(kwargs.pop('extra', {}))
        extra.update(task_context)
        extra['event_type'] = 'task_event'
        prefix = (
            f"CrawlRequest {task_context.get('crawl_request_id')}: "
            f"task {task_context.get('task_id')} "
            f"(url {task_context.get('url')}, level {task_context.get('level')}): "
        )
        self.log(level, prefix + message, extra=extra, **kwargs)


class PerformanceFilter(logging.Filter):
    """Filter to suppress noisy third-party logs."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = suppress_modules or [
            'aiohttp.access',
            'asyncio',
        ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter out noisy log records."""
        if any(record.name.startswith(module) for module in self.suppress_modules):
            return record.levelno >= logging.WARNING
        return True


def _rotating_handler(path: Path, max_bytes: int, backup_count: int, level: int,
                      formatter: logging.Formatter,
                      log_filter: Optional[logging.Filter] = None) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    if log_filter is not None:
        handler.addFilter(log_filter)
    return handler


def setup_logging(config: LoggingConfig,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Configure the root logger for the engine or API process.

    Records go to stdout, to a rotating ``config.file`` and, from ERROR up,
    to a rotating ``errors.log`` next to it.

    Args:
        config: Logging configuration
        enable_performance_filtering: Drop INFO chatter from aiohttp and asyncio

    Returns:
        Configured root logger
    """
    level = logging.getLevelName(config.level.upper())
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    error_log_file = log_file.parent / 'errors.log'

    formatter = JSONFormatter() if config.json else logging.Formatter(config.format)
    noise_filter = PerformanceFilter() if enable_performance_filtering else None

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    if noise_filter is not None:
        console_handler.addFilter(noise_filter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(
        _rotating_handler(log_file, 50 * 1024 * 1024, 5, logging.DEBUG, formatter, noise_filter)
    )
    root_logger.addHandler(
        _rotating_handler(error_log_file, 10 * 1024 * 1024, 3, logging.ERROR, formatter)
    )

    for name in ('aiohttp', 'asyncpg', 'aiosqlite', 'asyncio'):
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(
        f"Logging initialized: level {config.level}, file {log_file}, "
        f"errors {error_log_file}, json {config.json}"
    )
    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """Logger whose records all carry ``extra_context``."""
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)


def log_system_info():
    """Log host details once at startup."""
    import platform
    import psutil

    logger = logging.getLogger(__name__)
    memory = psutil.virtual_memory()
    logger.info(
        f"Host {platform.node()} ({platform.platform()}), Python {platform.python_version()}, "
        f"{psutil.cpu_count()} CPUs, {memory.total / 1024**3:.1f} GB memory "
        f"({memory.percent}% used)"
    )
