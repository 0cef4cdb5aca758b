"""
Replay executor - runs workflow code against recorded history.

One workflow task = one replay: build a WorkflowContext from the run's
full history, set it as task-local, execute the workflow function from
the top, and collect the commands it emitted. The function either
finishes (Completed) or stops at a call site whose result is not in
history yet (Suspended).

Replay never writes to storage. The orchestrator commits the returned
commands atomically, conditioned on expected_next_event_id, so a replay
computed from a history that has since grown is discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rssflow.core.commands import CancelWorkflow, Command, CompleteWorkflow, FailWorkflow
from rssflow.core.context import EXECUTION_CONTEXT, WorkflowContext
from rssflow.core.errors import ActivityError, NonDeterminismError, WorkflowCancelledError
from rssflow.core.outcome import Completed, Suspended, WorkflowOutcome, _SuspendExecution
from rssflow.core.serialization import decode, encode
from rssflow.decorators import WorkflowDefinition
from rssflow.models import Failure, HistoryEvent, WorkflowRun

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowTaskResult:
    """Everything one replay produced.

    Attributes:
        outcome: Completed (returned or raised) or Suspended
        commands: Commands to commit, in emission order
        expected_next_event_id: next_event_id of the history this replay saw
    """

    outcome: WorkflowOutcome
    commands: list[Command]
    expected_next_event_id: int


class WorkflowExecutor:
    """
    Execute one workflow definition against a run's history.

    Usage:
        executor = WorkflowExecutor(workflow_definition(summarize_rss_feed))
        result = await executor.replay(run, history)

        match result.outcome:
            case Completed(value):
                print(f"Workflow finished: {value!r}")
            case Suspended(reason):
                print(f"Workflow waiting on: {reason}")
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition

    async def replay(self, run: WorkflowRun, history: list[HistoryEvent]) -> WorkflowTaskResult:
        """
        Re-execute the workflow function from the top.

        Exceptions raised by workflow code are turned into terminal
        commands:
        - WorkflowCancelledError propagating: CancelWorkflow
        - ActivityError propagating: FailWorkflow carrying the activity's failure
        - NonDeterminismError, undecodable input, anything else: FailWorkflow

        Args:
            run: The run being executed
            history: Its complete history, in event_id order

        Returns:
            WorkflowTaskResult with the outcome and commands to commit
        """
        expected_next_event_id = history[-1].event_id + 1 if history else run.next_event_id
        ctx = WorkflowContext(run, history, self.definition)
        token = EXECUTION_CONTEXT.set(ctx)

        try:
            try:
                args = decode(run.input)
                value = await self.definition.fn(ctx, *args)
            except _SuspendExecution as suspension:
                logger.debug(f"Run {run.run_id} suspended: {suspension.reason}")
                return WorkflowTaskResult(
                    outcome=Suspended(suspension.reason),
                    commands=ctx.commands,
                    expected_next_event_id=expected_next_event_id,
                )
            except Exception as e:
                outcome = Completed(e)
            else:
                outcome = Completed(value)
        finally:
            EXECUTION_CONTEXT.reset(token)

        commands = ctx.commands
        unreached = ctx.unreached_commands()
        if unreached and not isinstance(outcome.result, NonDeterminismError):
            outcome = Completed(
                NonDeterminismError(
                    f"run {run.run_id}: workflow finished at seq={ctx.last_seq} but history "
                    f"records commands at seq={unreached}"
                )
            )

        commands.append(self._closing_command(run, outcome))
        return WorkflowTaskResult(
            outcome=outcome,
            commands=commands,
            expected_next_event_id=expected_next_event_id,
        )

    def _closing_command(self, run: WorkflowRun, outcome: Completed) -> Command:
        result = outcome.result

        if outcome.is_success():
            try:
                return CompleteWorkflow(result=encode(result))
            except Exception as e:
                logger.error(f"Run {run.run_id}: result of {run.workflow_type} is not picklable")
                return FailWorkflow(failure=Failure.from_exception(e))

        if isinstance(result, WorkflowCancelledError):
            logger.info(f"Run {run.run_id} ({run.workflow_id}) cancelled")
            return CancelWorkflow(failure=Failure.from_exception(result))

        if isinstance(result, ActivityError):
            logger.info(f"Run {run.run_id} ({run.workflow_id}) failed: {result.failure}")
            return FailWorkflow(failure=result.failure)

        if isinstance(result, NonDeterminismError):
            logger.error(f"Run {run.run_id} ({run.workflow_id}): {result}")
        else:
            logger.info(
                f"Run {run.run_id} ({run.workflow_id}) raised {type(result).__name__}: {result}"
            )
        return FailWorkflow(failure=Failure.from_exception(result))
