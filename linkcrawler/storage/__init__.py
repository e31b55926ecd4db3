"""
Storage layer for the crawl task queue and the shared page graph.
"""

from .database import DatabaseManager, StorageBackend, create_backend
from .errors import (
    DatabaseError, NoTasksAvailable, NotFoundError,
    CrawlRequestNotFound, InvalidTransitionError
)
from .models import CrawlRequest, Task, TaskStatus, Page, Edge, StatusCounts

__all__ = [
    'DatabaseManager', 'StorageBackend', 'create_backend',
    'DatabaseError', 'NoTasksAvailable', 'NotFoundError',
    'CrawlRequestNotFound', 'InvalidTransitionError',
    'CrawlRequest', 'Task', 'TaskStatus', 'Page', 'Edge', 'StatusCounts'
]
