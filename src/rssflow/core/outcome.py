"""
Workflow task outcomes and suspension reasons.

A workflow task either runs the workflow function to completion
(Completed) or stops at a call site whose result is not in history yet
(Suspended). Suspension is explicit: the call site raises an internal
control signal, the replay executor catches it, and the next workflow
task re-executes the function from the top against the longer history.

Example:
    ```python
    result = await executor.replay(run, history)

    match result.outcome:
        case Completed(value):
            print(f"Workflow returned: {value}")
        case Suspended(reason):
            print(f"Workflow waiting on: {reason}")
    ```
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

__all__ = [
    "SuspendReason",
    "Completed",
    "Suspended",
    "WorkflowOutcome",
    "_SuspendExecution",
]

R = TypeVar("R")


# =============================================================================
# Control Signals (Not Errors)
# =============================================================================


class _WorkflowControl(BaseException):
    """
    Base class for workflow control signals.

    Like StopIteration and GeneratorExit, these are control flow, not
    errors. They inherit from BaseException so that workflow code written
    with `except Exception:` cannot accidentally swallow a suspension.
    """

    pass


class _SuspendExecution(_WorkflowControl):  # noqa: N818
    """
    Signal that the workflow must wait for a history event.

    Raised by call_activity() and sleep() when their result is not yet
    recorded. Never visible outside the replay executor.
    """

    def __init__(self, reason: "SuspendReason"):
        super().__init__(str(reason))
        self.reason = reason


@dataclass(frozen=True)
class SuspendReason:
    """
    Why a workflow task stopped.

    Attributes:
        run_id: Run that suspended
        seq: Call-site sequence number it is waiting on
        activity_type: Activity awaited, None if waiting for a timer
    """

    run_id: str
    seq: int
    activity_type: str | None = None

    def is_timer(self) -> bool:
        """True if waiting for a durable timer."""
        return self.activity_type is None

    def __str__(self) -> str:
        if self.is_timer():
            return f"Timer(run_id={self.run_id}, seq={self.seq})"
        return f"Activity(run_id={self.run_id}, seq={self.seq}, type={self.activity_type!r})"


@dataclass(frozen=True)
class Completed(Generic[R]):
    """
    Workflow function finished (returned or raised).

    Attributes:
        result: The return value, or the raised exception
    """

    result: R

    def is_success(self) -> bool:
        """True if the workflow returned rather than raised."""
        return not isinstance(self.result, BaseException)


@dataclass(frozen=True)
class Suspended:
    """
    Workflow function is waiting on a pending call site.

    Attributes:
        reason: What it is waiting on
    """

    reason: SuspendReason


WorkflowOutcome = Completed | Suspended
