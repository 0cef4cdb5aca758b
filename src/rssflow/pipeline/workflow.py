"""
The summarize_rss_feed workflow.

Stages, recorded in history through ctx.set_stage:

    STARTED → FETCHING → EXTRACTING → REPORTING → COMPLETED
                  └───────────┴────────────┴──→ FAILED

A terminal failure of fetch, extract or report moves the run to FAILED
and propagates. Summarization and email notification are optional; if
either fails, the failure stays in history and the workflow carries on.
A cancelled run closes CANCELLED with its stage left where it stopped.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from rssflow.core.context import WorkflowContext
from rssflow.core.errors import ActivityError
from rssflow.decorators import workflow
from rssflow.models import ActivityOptions, RetryPolicy
from rssflow.pipeline.activities import PipelineActivities

COMPLETION_MESSAGE = "Report generated"

DEFAULT_FEEDS = (
    "https://www.latimes.com/local/rss2.0.xml",
    "https://www.yahoo.com/news/rss",
)


class PipelineStage(Enum):
    """Progress marker of a pipeline run."""

    STARTED = "STARTED"
    FETCHING = "FETCHING"
    EXTRACTING = "EXTRACTING"
    REPORTING = "REPORTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PipelineRequest:
    """Input of summarize_rss_feed."""

    urls: tuple[str, ...] = DEFAULT_FEEDS
    summarize: bool = False
    """Ask the LLM for a summary and append it to the report."""

    notify: bool = False
    """Email the keywords once the report is written."""

    start_to_close_timeout: float | None = None
    retry_policy: RetryPolicy | None = None
    """Overrides for the activities' own defaults."""

    @property
    def activity_options(self) -> ActivityOptions:
        return ActivityOptions(
            start_to_close_timeout=self.start_to_close_timeout,
            retry_policy=self.retry_policy,
        )


@workflow(
    name="summarize_rss_feed",
    activities=[
        PipelineActivities.fetch_feeds,
        PipelineActivities.extract_keywords,
        PipelineActivities.summarize_keywords,
        PipelineActivities.generate_report,
        PipelineActivities.notify_by_email,
    ],
)
async def summarize_rss_feed(ctx: WorkflowContext, request: PipelineRequest) -> str:
    """
    Fetch the feeds, extract keywords and write the report.

    Cancellation is not handled here: the WorkflowCancelledError raised at
    the pending call propagates, so the run closes CANCELLED rather than
    FAILED and no FAILED stage is recorded. Clients tell the two apart by
    run status.
    """
    options = request.activity_options
    ctx.set_stage(PipelineStage.STARTED.value)

    try:
        ctx.set_stage(PipelineStage.FETCHING.value)
        titles = await ctx.call_activity(
            PipelineActivities.fetch_feeds, list(request.urls), options=options
        )

        ctx.set_stage(PipelineStage.EXTRACTING.value)
        keywords = await ctx.call_activity(
            PipelineActivities.extract_keywords, titles, options=options
        )

        ctx.set_stage(PipelineStage.REPORTING.value)
        summary = None
        if request.summarize:
            try:
                summary = await ctx.call_activity(
                    PipelineActivities.summarize_keywords, keywords, options=options
                )
            except ActivityError as e:
                ctx.logger.warning(f"Summary unavailable, writing report without it: {e}")

        await ctx.call_activity(
            PipelineActivities.generate_report, keywords, summary, options=options
        )
    except ActivityError as e:
        ctx.set_stage(PipelineStage.FAILED.value)
        ctx.logger.error(f"Pipeline failed in {e.activity_type}: {e.failure}")
        raise

    if request.notify:
        try:
            await ctx.call_activity(PipelineActivities.notify_by_email, keywords, options=options)
        except ActivityError as e:
            ctx.logger.warning(f"Email notification failed: {e}")

    ctx.set_stage(PipelineStage.COMPLETED.value)
    ctx.logger.info(f"Report generated with keywords: {', '.join(keywords)}")
    return COMPLETION_MESSAGE
