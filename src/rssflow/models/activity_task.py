"""Activity task state and per-call options."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from rssflow.models.failure import Failure
from rssflow.models.retry import RetryPolicy
from rssflow.models.status import ActivityStatus

__all__ = ["ActivityOptions", "ActivityTask", "DEFAULT_START_TO_CLOSE_TIMEOUT"]

DEFAULT_START_TO_CLOSE_TIMEOUT = 180.0
"""Seconds an attempt may run when neither the activity nor the call sets a timeout."""


@dataclass(frozen=True)
class ActivityOptions:
    """Per-call dispatch options.

    Unset fields fall back to the defaults declared on the @activity
    decorator, then to the engine defaults.

    Example:
        await ctx.call_activity(
            fetch_feeds,
            urls,
            options=ActivityOptions(
                start_to_close_timeout=30.0,
                retry_policy=RetryPolicy.with_max_attempts(5),
            ),
        )
    """

    start_to_close_timeout: float | None = None
    """Seconds a single attempt may run before it is timed out."""

    retry_policy: RetryPolicy | None = None
    """Retry behavior for this call."""

    task_queue: str | None = None
    """Queue to dispatch on; defaults to the run's queue."""

    def merged_over(self, defaults: ActivityOptions | None) -> ActivityOptions:
        """Fill unset fields from `defaults`."""
        if defaults is None:
            return self
        return ActivityOptions(
            start_to_close_timeout=(
                self.start_to_close_timeout
                if self.start_to_close_timeout is not None
                else defaults.start_to_close_timeout
            ),
            retry_policy=self.retry_policy or defaults.retry_policy,
            task_queue=self.task_queue or defaults.task_queue,
        )


@dataclass
class ActivityTask:
    """A scheduled activity invocation and its attempt state.

    Created when workflow code schedules an activity. On each retry the
    attempt count increments and the deadline is cleared; the next worker
    to start the attempt computes a fresh start-to-close deadline. Closed
    (no longer open) once a terminal result is recorded in history.
    """

    task_id: str
    run_id: str
    workflow_id: str
    seq: int
    """Command sequence number of the call site in the workflow."""

    activity_type: str
    task_queue: str
    input: bytes
    """Pickled positional arguments."""

    start_to_close_timeout: float
    retry_policy: RetryPolicy
    scheduled_at: datetime
    attempt: int = 1
    status: ActivityStatus = ActivityStatus.SCHEDULED
    started_at: datetime | None = None
    deadline: datetime | None = None
    next_attempt_at: datetime | None = None
    last_failure: Failure | None = None

    @property
    def is_open(self) -> bool:
        """Check if the activity can still accept a result."""
        return self.status.is_open

    def start(self, now: datetime) -> ActivityTask:
        """Return a copy with the current attempt started at `now`.

        The deadline is only computed for the first delivery of an attempt;
        a lease redelivery of the same attempt keeps the original deadline.
        """
        if self.deadline is not None:
            return self
        return replace(
            self,
            status=ActivityStatus.STARTED,
            started_at=now,
            deadline=now + timedelta(seconds=self.start_to_close_timeout),
        )

    def remaining(self, now: datetime) -> float:
        """Seconds left before this attempt's deadline (never negative)."""
        if self.deadline is None:
            return self.start_to_close_timeout
        return max((self.deadline - now).total_seconds(), 0.0)

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"ActivityTask(task_id={self.task_id!r}, type={self.activity_type!r}, "
            f"seq={self.seq}, attempt={self.attempt}, status={self.status.value})"
        )
