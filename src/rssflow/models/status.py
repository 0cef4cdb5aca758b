"""Status enumerations for durable execution tracking.

Defines lifecycle states for workflow runs, activity tasks and
task-queue entries, plus the kinds of events recorded in run history.
"""

from enum import Enum


class WorkflowStatus(Enum):
    """Status of a workflow run.

    Lifecycle:
        RUNNING → COMPLETED / FAILED / TIMED_OUT / CANCELLED

    A terminal status is set exactly once. After that the run is immutable
    and its workflow id may be reused by a new run.
    """

    RUNNING = "RUNNING"
    """Run is active; its history may still grow."""

    COMPLETED = "COMPLETED"
    """Workflow code returned a value."""

    FAILED = "FAILED"
    """Workflow code raised, or an orchestration error closed the run."""

    TIMED_OUT = "TIMED_OUT"
    """The run-level deadline elapsed before the workflow finished."""

    CANCELLED = "CANCELLED"
    """Cancellation was requested and the workflow let it propagate."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work needed)."""
        return self != WorkflowStatus.RUNNING

    def __str__(self) -> str:
        return self.value


class ActivityStatus(Enum):
    """Status of an activity task.

    Lifecycle:
        SCHEDULED → STARTED → (SCHEDULED on retry) → COMPLETED / FAILED

    CANCELLED is used when the owning run closes while the activity is
    still open, so late results are discarded.
    """

    SCHEDULED = "SCHEDULED"
    """Waiting for a worker to start the current attempt."""

    STARTED = "STARTED"
    """Current attempt claimed by a worker; start-to-close deadline set."""

    COMPLETED = "COMPLETED"
    """Result recorded in history."""

    FAILED = "FAILED"
    """Terminal failure recorded in history (retries exhausted or non-retryable)."""

    CANCELLED = "CANCELLED"
    """Owning run closed before the activity finished."""

    @property
    def is_open(self) -> bool:
        """Check if the activity can still accept a result."""
        return self in (ActivityStatus.SCHEDULED, ActivityStatus.STARTED)

    def __str__(self) -> str:
        return self.value


class TaskKind(Enum):
    """What a task-queue entry points at."""

    WORKFLOW = "WORKFLOW"
    """Replay/advance a workflow run (ref_id is the run id)."""

    ACTIVITY = "ACTIVITY"
    """Execute an activity attempt (ref_id is the activity task id)."""

    def __str__(self) -> str:
        return self.value


class EntryStatus(Enum):
    """Status of a task-queue entry.

    Lifecycle:
        PENDING → CLAIMED → (deleted on complete)
        CLAIMED → PENDING (fail/nack, or lease expiry on next poll)
    """

    PENDING = "PENDING"
    """Entry is waiting to be claimed (possibly not yet visible)."""

    CLAIMED = "CLAIMED"
    """Entry is leased to a worker until lease_expires_at."""

    def __str__(self) -> str:
        return self.value


class EventType(Enum):
    """Kinds of events recorded in a run's append-only history."""

    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    ACTIVITY_SCHEDULED = "ACTIVITY_SCHEDULED"
    ACTIVITY_COMPLETED = "ACTIVITY_COMPLETED"
    ACTIVITY_FAILED = "ACTIVITY_FAILED"
    TIMER_STARTED = "TIMER_STARTED"
    TIMER_FIRED = "TIMER_FIRED"
    STAGE_CHANGED = "STAGE_CHANGED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"
    WORKFLOW_CANCELLED = "WORKFLOW_CANCELLED"
    WORKFLOW_TIMED_OUT = "WORKFLOW_TIMED_OUT"

    @property
    def is_command(self) -> bool:
        """Check if this event records a command issued by workflow code.

        Command events carry the workflow's sequence number and are the
        ones compared against re-executed code during replay.
        """
        return self in (
            EventType.ACTIVITY_SCHEDULED,
            EventType.TIMER_STARTED,
            EventType.STAGE_CHANGED,
        )

    @property
    def is_resolution(self) -> bool:
        """Check if this event resolves a pending command."""
        return self in (
            EventType.ACTIVITY_COMPLETED,
            EventType.ACTIVITY_FAILED,
            EventType.TIMER_FIRED,
        )

    @property
    def is_closing(self) -> bool:
        """Check if this event closes the run."""
        return self in (
            EventType.WORKFLOW_COMPLETED,
            EventType.WORKFLOW_FAILED,
            EventType.WORKFLOW_CANCELLED,
            EventType.WORKFLOW_TIMED_OUT,
        )

    def __str__(self) -> str:
        return self.value
