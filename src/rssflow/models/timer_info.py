"""Metadata for durable workflow timers."""

from dataclasses import dataclass
from datetime import datetime

__all__ = ["TimerInfo"]


@dataclass(frozen=True)
class TimerInfo:
    """A timer started by workflow code through ctx.sleep().

    Returned by ExecutionLog.get_expired_timers() to identify which runs
    need a TIMER_FIRED event and a new workflow task.

    Immutable: frozen=True prevents modification after creation.
    """

    run_id: str
    """Run waiting for this timer."""

    seq: int
    """Command sequence number of the sleep call."""

    fire_at: datetime
    """When the timer is due."""

    task_queue: str
    """Queue on which the run's next workflow task is enqueued."""

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"TimerInfo(run_id={self.run_id!r}, seq={self.seq}, "
            f"fire_at={self.fire_at.isoformat()})"
        )
