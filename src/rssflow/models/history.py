"""Events recorded in a run's append-only history."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from rssflow.models.status import EventType

__all__ = ["HistoryEvent"]


@dataclass(frozen=True)
class HistoryEvent:
    """One entry of a run's history.

    Events are created by the orchestrator with event_id=0 and receive
    their final, dense event_id from storage inside the same write that
    appends them. Once appended an event is never rewritten.

    Payload depends on event_type:
        WORKFLOW_STARTED    pickled workflow args
        ACTIVITY_SCHEDULED  pickled activity args
        ACTIVITY_COMPLETED  pickled activity result
        ACTIVITY_FAILED     pickled Failure
        TIMER_STARTED       pickled fire_at datetime
        STAGE_CHANGED       pickled stage name
        WORKFLOW_COMPLETED  pickled workflow result
        WORKFLOW_FAILED / _CANCELLED / _TIMED_OUT  pickled Failure
    """

    run_id: str
    event_type: EventType
    timestamp: datetime
    event_id: int = 0
    seq: int | None = None
    """Command sequence number within the workflow (command and resolution events)."""

    activity_type: str | None = None
    payload: bytes | None = None
    attempt: int | None = None
    input_hash: str | None = None
    """Hash of the command's input, compared on replay."""

    def numbered(self, event_id: int) -> HistoryEvent:
        """Return a copy carrying its assigned event_id."""
        return replace(self, event_id=event_id)

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        seq_str = f", seq={self.seq}" if self.seq is not None else ""
        type_str = f", activity={self.activity_type!r}" if self.activity_type else ""
        return f"HistoryEvent(#{self.event_id} {self.event_type.value}{seq_str}{type_str})"
