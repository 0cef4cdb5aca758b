"""Task-queue entry for the lease-based work queue."""

from dataclasses import dataclass, field
from datetime import datetime

from rssflow.models.status import EntryStatus, TaskKind


@dataclass
class TaskQueueEntry:
    """Pointer binding a queue name to a pending workflow or activity task.

    Workers poll entries, hold a time-bounded lease while they process
    them, and delete them on completion. An entry whose lease expires
    before it is completed is handed out again (at-least-once delivery).

    Design: Value Object
        Represents queue state snapshot with the lease metadata needed
        for distributed execution.
    """

    entry_id: str
    """Unique identifier for this entry (uuid7 string)."""

    queue_name: str
    """Name of the queue this entry lives on."""

    kind: TaskKind
    """Whether ref_id names a run (WORKFLOW) or an activity task (ACTIVITY)."""

    ref_id: str
    """Run id or activity task id."""

    attempt: int = 1
    """Activity attempt this entry was created for (stale entries are skipped)."""

    status: EntryStatus = EntryStatus.PENDING
    """PENDING or CLAIMED."""

    visible_at: datetime = field(default_factory=datetime.now)
    """Entry is not handed out before this time (retry backoff)."""

    locked_by: str | None = None
    """Worker ID holding the lease, None if unclaimed."""

    lease_expires_at: datetime | None = None
    """When the current lease lapses and the entry becomes claimable again."""

    delivery_count: int = 0
    """How many times this entry has been handed to a worker."""

    created_at: datetime = field(default_factory=datetime.now)
    """When this entry was enqueued."""

    last_error: str | None = None
    """Error from the last failed delivery, None if no error."""

    def is_claimable(self, now: datetime) -> bool:
        """Check if a poll at `now` may hand out this entry."""
        if self.status == EntryStatus.PENDING:
            return self.visible_at <= now
        return self.lease_expires_at is not None and self.lease_expires_at <= now

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return (
            f"TaskQueueEntry(entry_id={self.entry_id!r}, queue={self.queue_name!r}, "
            f"kind={self.kind.value}, ref_id={self.ref_id!r}, status={self.status.value}, "
            f"deliveries={self.delivery_count})"
        )
