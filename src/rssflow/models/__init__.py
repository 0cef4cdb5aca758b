"""Core data models for durable execution.

Defines types for workflow runs, their history, activity tasks, queue
entries and retry behavior.

Design: Dependency-Free Models
These types have no dependencies on core or storage modules to
prevent circular imports and enable clean layering.
"""

from rssflow.models.activity_task import (
    DEFAULT_START_TO_CLOSE_TIMEOUT,
    ActivityOptions,
    ActivityTask,
)
from rssflow.models.failure import Failure
from rssflow.models.history import HistoryEvent
from rssflow.models.queue_entry import TaskQueueEntry
from rssflow.models.retry import ApplicationError, RetryableError, RetryPolicy
from rssflow.models.run import RunClosure, WorkflowRun
from rssflow.models.status import (
    ActivityStatus,
    EntryStatus,
    EventType,
    TaskKind,
    WorkflowStatus,
)
from rssflow.models.timer_info import TimerInfo

__all__ = [
    "ActivityOptions",
    "ActivityStatus",
    "ActivityTask",
    "ApplicationError",
    "DEFAULT_START_TO_CLOSE_TIMEOUT",
    "EntryStatus",
    "EventType",
    "Failure",
    "HistoryEvent",
    "RetryPolicy",
    "RetryableError",
    "RunClosure",
    "TaskKind",
    "TaskQueueEntry",
    "TimerInfo",
    "WorkflowRun",
    "WorkflowStatus",
]
