"""Execution context for activity code.

Activities are plain functions of their input. When one needs to know
which attempt it is running, or to keep a long attempt's queue lease
alive, it asks for the ActivityContext of the current task. It exposes
nothing about the workflow's history or state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime

__all__ = ["ActivityContext", "ACTIVITY_CONTEXT", "current_activity"]


@dataclass
class ActivityContext:
    """Information about the activity attempt being executed."""

    task_id: str
    activity_type: str
    workflow_id: str
    run_id: str
    attempt: int
    deadline: datetime | None
    _heartbeat: Callable[[], Awaitable[bool]] | None = None

    async def heartbeat(self) -> bool:
        """Extend the queue lease of this attempt.

        Returns:
            False if the lease was lost (another worker may now hold the task)
        """
        if self._heartbeat is None:
            return True
        return await self._heartbeat()


ACTIVITY_CONTEXT: ContextVar[ActivityContext | None] = ContextVar(
    "activity_context", default=None
)


def current_activity() -> ActivityContext:
    """Get the ActivityContext of the running activity.

    Raises:
        RuntimeError: Called outside an activity executor
    """
    ctx = ACTIVITY_CONTEXT.get()
    if ctx is None:
        raise RuntimeError("current_activity() called outside of an activity")
    return ctx
