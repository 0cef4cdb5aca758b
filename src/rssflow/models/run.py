"""Workflow run record owned by the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from rssflow.models.failure import Failure
from rssflow.models.status import WorkflowStatus

__all__ = ["WorkflowRun", "RunClosure"]


@dataclass
class WorkflowRun:
    """A single execution of a workflow.

    Identity is the caller-supplied workflow_id, which must be unique among
    RUNNING runs, plus the engine-assigned run_id. History events are keyed
    by run_id, so a closed run's workflow_id can be reused without the two
    histories ever mixing.

    The run is mutated only by the storage layer while applying
    orchestrator transitions: next_event_id advances as events are
    appended, and the terminal fields are written exactly once.
    """

    workflow_id: str
    """Caller-supplied identifier."""

    run_id: str
    """Engine-assigned identifier (uuid7)."""

    workflow_type: str
    """Registered workflow name."""

    task_queue: str
    """Queue that carries this run's workflow tasks (and default activity queue)."""

    input: bytes
    """Pickled positional arguments for the workflow function."""

    status: WorkflowStatus
    """Current lifecycle state."""

    created_at: datetime
    """When the start request was persisted."""

    next_event_id: int = 1
    """event_id the next appended history event will get."""

    cancel_requested: bool = False
    """True once a CANCEL_REQUESTED event has been recorded."""

    deadline: datetime | None = None
    """Run-level deadline; None means the run may take as long as it needs."""

    version: str | None = None
    """Deployment version of the client that started the run."""

    result: bytes | None = None
    """Pickled return value (COMPLETED runs only)."""

    failure: Failure | None = None
    """Structured cause (FAILED, TIMED_OUT and CANCELLED runs)."""

    closed_at: datetime | None = None
    """When the terminal status was set."""

    @property
    def is_running(self) -> bool:
        """Check if the run can still make progress."""
        return self.status == WorkflowStatus.RUNNING

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"WorkflowRun(workflow_id={self.workflow_id!r}, run_id={self.run_id!r}, "
            f"type={self.workflow_type!r}, status={self.status.value})"
        )


@dataclass(frozen=True)
class RunClosure:
    """Terminal outcome applied to a run in the same write as its closing event."""

    status: WorkflowStatus
    result: bytes | None = None
    failure: Failure | None = None

    def __post_init__(self) -> None:
        if not self.status.is_terminal:
            raise ValueError(f"RunClosure requires a terminal status, got {self.status}")
