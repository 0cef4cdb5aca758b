"""
Command-line interface for rssflow.

    rssflow worker                      poll the task queue until interrupted
    rssflow start [URL ...] [--wait]    start a summarize_rss_feed run
    rssflow result [ID]                 wait for a run's result
    rssflow cancel [ID]                 request cancellation
    rssflow history [ID]                print a run's history
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from rssflow.config import Settings
from rssflow.core.errors import (
    ConfigurationError,
    WorkflowAlreadyExistsError,
    WorkflowFailureError,
)
from rssflow.core.serialization import decode
from rssflow.executor.client import Client
from rssflow.executor.orchestrator import ClientError, Orchestrator
from rssflow.executor.queue import TaskQueue
from rssflow.executor.worker import Worker
from rssflow.models import EventType, HistoryEvent
from rssflow.pipeline.feeds import HttpFeedReader
from rssflow.pipeline.workflow import PipelineRequest, summarize_rss_feed
from rssflow.storage.base import StorageError

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="rssflow",
        description="Durable RSS keyword pipeline",
    )
    parser.add_argument(
        "--store",
        help="SQLite path or redis:// URL (default: $RSSFLOW_STORE or rssflow.db)",
    )
    parser.add_argument(
        "--task-queue",
        help="Task queue name (default: $RSSFLOW_TASK_QUEUE or rss-summary)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: $RSSFLOW_LOG_LEVEL or INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    worker = commands.add_parser("worker", help="Run a worker until interrupted")
    worker.add_argument("--max-concurrent", type=int, help="Concurrent task limit")

    start = commands.add_parser("start", help="Start a summarize_rss_feed run")
    start.add_argument("urls", nargs="*", help="Feed URLs (default: $RSSFLOW_FEEDS)")
    start.add_argument("--workflow-id", help="Workflow id (default: rss-summary-workflow)")
    start.add_argument("--summarize", action="store_true", help="Append an LLM summary")
    start.add_argument("--notify", action="store_true", help="Email the keywords")
    start.add_argument("--run-timeout", type=float, help="Run-level deadline in seconds")
    start.add_argument("--wait", action="store_true", help="Wait for and print the result")
    start.add_argument("--timeout", type=float, help="Seconds to wait with --wait")

    result = commands.add_parser("result", help="Wait for a run's result")
    result.add_argument("workflow_id", nargs="?", help="Workflow id")
    result.add_argument("--timeout", type=float, help="Seconds to wait")

    cancel = commands.add_parser("cancel", help="Request cancellation of a run")
    cancel.add_argument("workflow_id", nargs="?", help="Workflow id")

    history = commands.add_parser("history", help="Print a run's history")
    history.add_argument("workflow_id", nargs="?", help="Workflow id")

    return parser.parse_args(argv)


def format_event(event: HistoryEvent) -> str:
    """One line of `rssflow history` output."""
    parts = [
        f"{event.event_id:>4}",
        event.timestamp.isoformat(timespec="seconds"),
        str(event.event_type),
    ]
    if event.seq is not None:
        parts.append(f"seq={event.seq}")
    if event.activity_type:
        parts.append(event.activity_type)
    if event.attempt is not None:
        parts.append(f"attempt={event.attempt}")
    if event.event_type in (EventType.STAGE_CHANGED, EventType.ACTIVITY_FAILED) and event.payload:
        parts.append(str(decode(event.payload)))
    return "  ".join(parts)


async def run_worker(settings: Settings) -> None:
    reader = HttpFeedReader()
    try:
        activities = settings.build_activities(reader)
    except ConfigurationError:
        await reader.aclose()
        raise
    storage = await settings.open_storage()
    try:
        orchestrator = Orchestrator(storage, version=settings.deploy_version)
        worker = (
            Worker(
                orchestrator,
                TaskQueue(storage, settings.task_queue),
                workflows=[summarize_rss_feed],
                activities=[activities],
            )
            .with_max_concurrent_tasks(settings.max_concurrent_tasks)
            .with_lease_duration(settings.lease_duration)
        )
        logger.info(f"Worker {worker.worker_id} polling {settings.task_queue!r} on {storage!r}")
        await worker.run()
    finally:
        await reader.aclose()
        await storage.close()


async def run_client_command(args: argparse.Namespace, settings: Settings) -> int:
    storage = await settings.open_storage()
    try:
        client = Client(storage, settings.task_queue, version=settings.deploy_version)
        workflow_id = getattr(args, "workflow_id", None) or settings.workflow_id

        if args.command == "start":
            request = PipelineRequest(
                urls=tuple(args.urls) or settings.feeds,
                summarize=args.summarize or settings.summarize,
                notify=args.notify,
            )
            handle = await client.start(
                summarize_rss_feed,
                request,
                workflow_id=workflow_id,
                run_timeout=args.run_timeout,
            )
            print(f"Started {handle.workflow_id} (run {handle.run_id})")
            if args.wait:
                print(await handle.result(timeout=args.timeout))

        elif args.command == "result":
            print(await client.result(workflow_id, timeout=args.timeout))

        elif args.command == "cancel":
            if await client.cancel(workflow_id):
                print(f"Cancellation requested for {workflow_id}")
            else:
                print(f"{workflow_id} is not running or already cancelling")

        elif args.command == "history":
            run = await client.describe(workflow_id)
            print(f"{run.workflow_id} run={run.run_id} status={run.status}")
            for event in await client.history(workflow_id):
                print(format_event(event))

        return 0
    finally:
        await storage.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the rssflow command."""
    args = parse_args(argv)
    try:
        settings = Settings.from_env().with_overrides(
            store=args.store,
            task_queue=args.task_queue,
            log_level=args.log_level,
            max_concurrent_tasks=getattr(args, "max_concurrent", None),
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "worker":
            asyncio.run(run_worker(settings))
            return 0
        return asyncio.run(run_client_command(args, settings))
    except KeyboardInterrupt:
        return 130
    except WorkflowAlreadyExistsError as e:
        print(f"Already running: {e}", file=sys.stderr)
        return 1
    except WorkflowFailureError as e:
        print(f"Workflow did not complete: {e}", file=sys.stderr)
        return 1
    except TimeoutError:
        print("Timed out waiting for the result", file=sys.stderr)
        return 1
    except (ClientError, ConfigurationError, StorageError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
