"""Exceptions raised to workflow code, activity code and clients.

Activity failures reach workflow code as ActivityError, which preserves
the failing step, attempt count and last error, allowing the workflow to
branch on a failure or let it propagate and fail the run.
"""

from rssflow.models import Failure, RetryableError, WorkflowStatus

__all__ = [
    "ActivityError",
    "ActivityTimeoutError",
    "ConfigurationError",
    "NonDeterminismError",
    "WorkflowAlreadyExistsError",
    "WorkflowCancelledError",
    "WorkflowFailureError",
]


class ActivityError(Exception):
    """Terminal failure of an activity, delivered into workflow code.

    Raised from ctx.call_activity() when the activity's failure is
    recorded in history (retries exhausted or non-retryable).

    Example:
        ```python
        try:
            await ctx.call_activity(notify_by_email, keywords)
        except ActivityError as e:
            ctx.logger.warning(f"notification skipped: {e}")
        ```

    Attributes:
        activity_type: Name of the failed activity
        seq: Call-site sequence number in the workflow
        failure: Structured cause (error type, message, attempt)
    """

    def __init__(self, activity_type: str, seq: int, failure: Failure):
        super().__init__(failure.describe())
        self.activity_type = activity_type
        self.seq = seq
        self.failure = failure

    @property
    def attempt(self) -> int | None:
        """Attempt that produced the terminal failure."""
        return self.failure.attempt

    @property
    def timed_out(self) -> bool:
        """True if the last attempt exceeded its start-to-close timeout."""
        return self.failure.timed_out

    def __repr__(self) -> str:
        return (
            f"ActivityError(activity_type={self.activity_type!r}, seq={self.seq}, "
            f"failure={self.failure!r})"
        )


class ActivityTimeoutError(RetryableError):
    """An activity attempt exceeded its start-to-close timeout.

    Retryable: a timed-out attempt is retried like any transient error.
    """

    timed_out = True

    def __init__(self, activity_type: str, attempt: int, timeout: float):
        super().__init__(
            f"attempt {attempt} of {activity_type!r} exceeded start-to-close timeout "
            f"of {timeout:g}s"
        )
        self.activity_type = activity_type
        self.attempt = attempt
        self.timeout = timeout


class WorkflowCancelledError(Exception):
    """Cancellation delivered to workflow code at its suspended call site.

    If the workflow lets it propagate, the run closes as CANCELLED.
    """

    def __init__(self, workflow_id: str):
        super().__init__(f"workflow {workflow_id!r} was cancelled")
        self.workflow_id = workflow_id


class NonDeterminismError(Exception):
    """Re-executed workflow code diverged from its recorded history.

    Orchestration error: fatal to the affected run, never to other runs.
    """

    pass


class WorkflowAlreadyExistsError(Exception):
    """A RUNNING run already uses the requested workflow id."""

    def __init__(self, workflow_id: str, run_id: str):
        super().__init__(f"workflow {workflow_id!r} is already running (run_id={run_id})")
        self.workflow_id = workflow_id
        self.run_id = run_id


class WorkflowFailureError(Exception):
    """Raised by get_result() when a run ends in a non-COMPLETED status.

    Attributes:
        workflow_id: Workflow identifier
        status: Terminal status (FAILED, TIMED_OUT or CANCELLED)
        failure: Structured cause: failed step name, attempt count, last error
    """

    def __init__(self, workflow_id: str, status: WorkflowStatus, failure: Failure | None):
        detail = failure.describe() if failure is not None else "no failure recorded"
        super().__init__(f"workflow {workflow_id!r} {status.value.lower()}: {detail}")
        self.workflow_id = workflow_id
        self.status = status
        self.failure = failure


class ConfigurationError(Exception):
    """Registries or definitions are inconsistent (detected before polling starts)."""

    pass
