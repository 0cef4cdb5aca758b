"""Core durable-execution primitives.

Exports the orchestration context used by workflow code, the activity
context used by activity code, the commands replay emits, and the
errors that cross those boundaries.
"""

from rssflow.core.activity_context import ACTIVITY_CONTEXT, ActivityContext, current_activity
from rssflow.core.commands import (
    CancelWorkflow,
    Command,
    CompleteWorkflow,
    FailWorkflow,
    RecordStage,
    ScheduleActivity,
    StartTimer,
)
from rssflow.core.context import EXECUTION_CONTEXT, WorkflowContext, get_current_context
from rssflow.core.errors import (
    ActivityError,
    ActivityTimeoutError,
    ConfigurationError,
    NonDeterminismError,
    WorkflowAlreadyExistsError,
    WorkflowCancelledError,
    WorkflowFailureError,
)
from rssflow.core.outcome import Completed, Suspended, SuspendReason, WorkflowOutcome

__all__ = [
    "ACTIVITY_CONTEXT",
    "ActivityContext",
    "ActivityError",
    "ActivityTimeoutError",
    "CancelWorkflow",
    "Command",
    "CompleteWorkflow",
    "Completed",
    "ConfigurationError",
    "EXECUTION_CONTEXT",
    "FailWorkflow",
    "NonDeterminismError",
    "RecordStage",
    "ScheduleActivity",
    "StartTimer",
    "SuspendReason",
    "Suspended",
    "WorkflowAlreadyExistsError",
    "WorkflowCancelledError",
    "WorkflowContext",
    "WorkflowFailureError",
    "WorkflowOutcome",
    "current_activity",
    "get_current_context",
]
