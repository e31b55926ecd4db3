"""
Exceptions raised by the storage layer.
"""


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class NoTasksAvailable(Exception):
    """Raised by a claim when no task is waiting to be started."""
    pass


class NotFoundError(DatabaseError):
    """A requested row does not exist."""
    pass


class CrawlRequestNotFound(NotFoundError):
    """No crawl request with the given id."""

    def __init__(self, crawl_request_id: int):
        super().__init__(f"There is no crawl request with id {crawl_request_id}")
        self.crawl_request_id = crawl_request_id


class InvalidTransitionError(DatabaseError):
    """A task status change that the lifecycle does not allow."""

    def __init__(self, task_id: int, target, current=None):
        current_name = current.value if current is not None else "unknown"
        super().__init__(
            f"Task {task_id} cannot move from {current_name} to {target.value}"
        )
        self.task_id = task_id
        self.target = target
        self.current = current
