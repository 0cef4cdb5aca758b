"""Commands emitted by workflow code during a workflow task.

Replay never writes to storage. Each primitive on WorkflowContext that
would change the run (scheduling an activity, starting a timer, recording
a stage, finishing) appends a command instead; the orchestrator turns the
commands of one workflow task into history events in a single atomic
commit.
"""

from dataclasses import dataclass
from datetime import datetime

from rssflow.models import ActivityOptions, Failure

__all__ = [
    "Command",
    "ScheduleActivity",
    "StartTimer",
    "RecordStage",
    "CompleteWorkflow",
    "FailWorkflow",
    "CancelWorkflow",
]


@dataclass(frozen=True)
class ScheduleActivity:
    """Dispatch an activity for the call site `seq`."""

    seq: int
    activity_type: str
    input: bytes
    input_hash: str
    options: ActivityOptions


@dataclass(frozen=True)
class StartTimer:
    """Start a durable timer for the sleep call `seq`."""

    seq: int
    fire_at: datetime


@dataclass(frozen=True)
class RecordStage:
    """Record a named stage marker at `seq`."""

    seq: int
    stage: str


@dataclass(frozen=True)
class CompleteWorkflow:
    """Workflow code returned."""

    result: bytes


@dataclass(frozen=True)
class FailWorkflow:
    """Workflow code raised (or replay hit an orchestration error)."""

    failure: Failure


@dataclass(frozen=True)
class CancelWorkflow:
    """Workflow code let the cancellation propagate."""

    failure: Failure


Command = (
    ScheduleActivity | StartTimer | RecordStage | CompleteWorkflow | FailWorkflow | CancelWorkflow
)
