"""
Data model for crawl requests, tasks and the shared page graph.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class TaskStatus(Enum):
    """Lifecycle states of a crawl task."""
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def allowed_predecessors(self) -> FrozenSet['TaskStatus']:
        """Statuses a task may be in right before moving to this one."""
        return frozenset(
            source for source, targets in TASK_TRANSITIONS.items() if self in targets
        )

    def can_transition_to(self, target: 'TaskStatus') -> bool:
        return target in TASK_TRANSITIONS[self]


TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class CrawlRequest:
    """A user request to crawl outward from a root URL."""
    id: int
    url: str
    levels: int


@dataclass
class Task:
    """One URL to visit (or account for) at one level of a crawl request."""
    id: int
    crawl_request_id: int
    page_url: str
    current_level: int
    status: TaskStatus
    seen_url: bool = False
    claimed_at: Optional[float] = None

    def context(self) -> Dict[str, object]:
        """Identifying fields used when logging about this task."""
        return {
            'crawl_request_id': self.crawl_request_id,
            'task_id': self.id,
            'url': self.page_url,
            'level': self.current_level,
        }


@dataclass(frozen=True)
class Page:
    """A node of the page graph."""
    id: int
    url: str
    crawled_status: bool = False


@dataclass(frozen=True)
class Edge:
    """A directed link between two page nodes."""
    id: int
    source_id: int
    target_id: int


@dataclass(frozen=True)
class StatusCounts:
    """Progress counters for a crawl request (tasks below the depth bound only)."""
    completed: int = 0
    in_progress: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.in_progress + self.failed
