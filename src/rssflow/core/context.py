"""Orchestration context handed to workflow code.

WorkflowContext is the only way workflow code interacts with the outside
world. Every primitive on it is deterministic with respect to the run's
history: on first execution a primitive emits a command, and on replay it
returns exactly what was recorded. Activity code gets an ActivityContext
instead (see activity_context.py); the two never mix.

Design: Task-Local State (contextvars)
    The context is passed explicitly as the workflow's first argument and
    is also available through EXECUTION_CONTEXT for helpers called deep
    inside workflow code.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any

from rssflow.core.commands import Command, RecordStage, ScheduleActivity, StartTimer
from rssflow.core.errors import (
    ActivityError,
    ConfigurationError,
    NonDeterminismError,
    WorkflowCancelledError,
)
from rssflow.core.outcome import SuspendReason, _SuspendExecution
from rssflow.core.serialization import decode, encode, payload_hash
from rssflow.decorators import WorkflowDefinition, activity_definition
from rssflow.models import ActivityOptions, EventType, HistoryEvent, WorkflowRun

logger = logging.getLogger(__name__)

EXECUTION_CONTEXT: ContextVar[WorkflowContext | None] = ContextVar(
    "workflow_context", default=None
)
"""Task-local WorkflowContext for the workflow currently replaying."""


class ReplayAwareLogger(logging.LoggerAdapter):
    """Logger that stays silent while the workflow is replaying old history.

    Without this, every log line written before a suspension point would
    repeat on each workflow task.
    """

    def __init__(self, base: logging.Logger, ctx: WorkflowContext):
        super().__init__(base, {})
        self._ctx = ctx

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802
        if self._ctx.is_replaying:
            return False
        return super().isEnabledFor(level)

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        return f"[{self._ctx.workflow_id}] {msg}", kwargs


class WorkflowContext:
    """Deterministic view of one run during one workflow task.

    Built by the replay executor from the run and its full history. Call
    sites are numbered in the order the workflow code reaches them (seq);
    a command recorded in history under the same seq must match the
    re-executed call exactly, or replay fails with NonDeterminismError.

    Example:
        ```python
        @workflow
        async def pipeline(ctx: WorkflowContext, urls: list[str]) -> str:
            ctx.set_stage("fetching")
            titles = await ctx.call_activity(fetch_feeds, urls)
            await ctx.sleep(60)
            return f"{len(titles)} titles at {ctx.now():%H:%M}"
        ```
    """

    def __init__(
        self,
        run: WorkflowRun,
        history: list[HistoryEvent],
        definition: WorkflowDefinition | None = None,
    ):
        self._run = run
        self._definition = definition
        self._commands: list[Command] = []
        self._seq = 0

        self._recorded: dict[int, HistoryEvent] = {}
        self._resolutions: dict[int, HistoryEvent] = {}
        self._cancel_event: HistoryEvent | None = None
        for event in history:
            if event.event_type.is_command and event.seq is not None:
                self._recorded[event.seq] = event
            elif event.event_type.is_resolution and event.seq is not None:
                self._resolutions.setdefault(event.seq, event)
            elif event.event_type == EventType.CANCEL_REQUESTED and self._cancel_event is None:
                self._cancel_event = event

        self._unconsumed = len(self._resolutions)
        self._cancel_delivered = False
        self._current_time = history[0].timestamp if history else run.created_at
        self._latest_time = history[-1].timestamp if history else run.created_at
        self._stage: str | None = None
        self._rng = random.Random(run.run_id)

        self.logger = ReplayAwareLogger(
            logging.getLogger(f"rssflow.workflow.{run.workflow_type}"), self
        )

    def __repr__(self) -> str:
        """Readable representation for debugging."""
        return f"WorkflowContext(workflow_id={self.workflow_id!r}, seq={self._seq})"

    # =========================================================================
    # Run information
    # =========================================================================

    @property
    def workflow_id(self) -> str:
        return self._run.workflow_id

    @property
    def run_id(self) -> str:
        return self._run.run_id

    @property
    def workflow_type(self) -> str:
        return self._run.workflow_type

    @property
    def task_queue(self) -> str:
        return self._run.task_queue

    @property
    def stage(self) -> str | None:
        """Most recent stage recorded with set_stage()."""
        return self._stage

    @property
    def is_replaying(self) -> bool:
        """True while recorded results remain to be consumed."""
        return self._unconsumed > 0

    @property
    def commands(self) -> list[Command]:
        """Commands emitted so far in this workflow task."""
        return list(self._commands)

    @property
    def last_seq(self) -> int:
        """Highest call-site number reached so far."""
        return self._seq

    def unreached_commands(self) -> list[int]:
        """Recorded call sites beyond the point the code reached."""
        return sorted(seq for seq in self._recorded if seq > self._seq)

    # =========================================================================
    # Deterministic primitives
    # =========================================================================

    def now(self) -> datetime:
        """Workflow time.

        The timestamp of the most recently consumed history event, or of
        the newest event once replay has caught up with history. Never
        reads the wall clock, so replay sees the same value.
        """
        if self.is_replaying:
            return self._current_time
        return max(self._current_time, self._latest_time)

    def random(self) -> float:
        """Deterministic random float in [0, 1), seeded by the run id."""
        return self._rng.random()

    def uuid4(self) -> uuid.UUID:
        """Deterministic random UUID, seeded by the run id."""
        return uuid.UUID(int=self._rng.getrandbits(128), version=4)

    def set_stage(self, stage: str) -> None:
        """Record a named stage marker (STAGE_CHANGED) in history.

        Does not suspend. Observers read the current stage through
        Orchestrator.current_stage().
        """
        seq = self._next_seq()
        recorded = self._recorded.get(seq)
        if recorded is None:
            self._commands.append(RecordStage(seq=seq, stage=stage))
        else:
            self._verify(recorded, EventType.STAGE_CHANGED, None, payload_hash(stage))
        self._stage = stage

    async def sleep(self, seconds: float) -> None:
        """Durable sleep: the run is woken by a TIMER_FIRED event.

        Survives worker restarts; no worker is occupied while waiting.
        """
        seq = self._next_seq()
        recorded = self._recorded.get(seq)
        if recorded is None:
            self._deliver_cancellation()
            fire_at = self.now() + timedelta(seconds=seconds)
            self._commands.append(StartTimer(seq=seq, fire_at=fire_at))
            raise _SuspendExecution(SuspendReason(self.run_id, seq))

        self._verify(recorded, EventType.TIMER_STARTED, None, None)
        resolution = self._pending_or_cancelled(seq)
        if resolution is None:
            raise _SuspendExecution(SuspendReason(self.run_id, seq))
        self._consume(resolution)

    async def call_activity(
        self,
        activity: Callable[..., Any] | str,
        *args: Any,
        options: ActivityOptions | None = None,
    ) -> Any:
        """
        Invoke an activity durably and return its result.

        First execution: emits a ScheduleActivity command and suspends the
        workflow. Replay: returns the recorded result without invoking the
        activity again, or raises ActivityError for a recorded terminal
        failure.

        Args:
            activity: Decorated activity function, or its registered name
            *args: Positional arguments (must be picklable)
            options: Per-call overrides of timeout, retry policy and queue

        Returns:
            The activity's result

        Raises:
            ActivityError: Activity failed terminally
            WorkflowCancelledError: Run cancellation was requested while waiting
            NonDeterminismError: History holds a different command for this call
        """
        if isinstance(activity, str):
            name = activity
            defaults = None
        else:
            definition = activity_definition(activity)
            name = definition.name
            defaults = definition.defaults

        if (
            self._definition is not None
            and self._definition.activities
            and not self._definition.declares(name)
        ):
            raise ConfigurationError(
                f"workflow {self._definition.name!r} calls undeclared activity {name!r}"
            )

        seq = self._next_seq()
        payload = encode(tuple(args))
        input_hash = payload_hash(tuple(args))

        recorded = self._recorded.get(seq)
        if recorded is None:
            self._deliver_cancellation()
            merged = (options or ActivityOptions()).merged_over(defaults)
            self._commands.append(
                ScheduleActivity(
                    seq=seq,
                    activity_type=name,
                    input=payload,
                    input_hash=input_hash,
                    options=merged,
                )
            )
            logger.debug(f"Run {self.run_id}: scheduling {name!r} at seq={seq}")
            raise _SuspendExecution(SuspendReason(self.run_id, seq, name))

        self._verify(recorded, EventType.ACTIVITY_SCHEDULED, name, input_hash)
        resolution = self._pending_or_cancelled(seq)
        if resolution is None:
            raise _SuspendExecution(SuspendReason(self.run_id, seq, name))

        self._consume(resolution)
        if resolution.event_type == EventType.ACTIVITY_COMPLETED:
            return decode(resolution.payload)
        raise ActivityError(name, seq, decode(resolution.payload))

    # =========================================================================
    # Replay bookkeeping
    # =========================================================================

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _verify(
        self,
        recorded: HistoryEvent,
        event_type: EventType,
        activity_type: str | None,
        input_hash: str | None,
    ) -> None:
        if recorded.event_type != event_type:
            raise NonDeterminismError(
                f"run {self.run_id} seq={recorded.seq}: history has "
                f"{recorded.event_type.value}, workflow code issued {event_type.value}"
            )
        if activity_type is not None and recorded.activity_type != activity_type:
            raise NonDeterminismError(
                f"run {self.run_id} seq={recorded.seq}: history scheduled "
                f"{recorded.activity_type!r}, workflow code called {activity_type!r}"
            )
        if input_hash is not None and recorded.input_hash != input_hash:
            raise NonDeterminismError(
                f"run {self.run_id} seq={recorded.seq}: input of "
                f"{recorded.activity_type or recorded.event_type.value} changed since it "
                "was recorded"
            )

    def _pending_or_cancelled(self, seq: int) -> HistoryEvent | None:
        """Return the resolution for `seq`, or None if the call must keep waiting.

        Cancellation wins over a resolution recorded after it: the call was
        still suspended when the cancel arrived.
        """
        resolution = self._resolutions.get(seq)
        cancel = self._cancel_event
        if (
            cancel is not None
            and not self._cancel_delivered
            and (resolution is None or cancel.event_id < resolution.event_id)
        ):
            if resolution is not None:
                self._consume(resolution)
            self._deliver_cancellation()
        return resolution

    def _deliver_cancellation(self) -> None:
        if self._cancel_event is None or self._cancel_delivered:
            return
        self._cancel_delivered = True
        self._current_time = max(self._current_time, self._cancel_event.timestamp)
        raise WorkflowCancelledError(self.workflow_id)

    def _consume(self, resolution: HistoryEvent) -> None:
        self._unconsumed -= 1
        self._current_time = max(self._current_time, resolution.timestamp)


def get_current_context() -> WorkflowContext | None:
    """Get the WorkflowContext of the workflow currently replaying, if any."""
    return EXECUTION_CONTEXT.get()
