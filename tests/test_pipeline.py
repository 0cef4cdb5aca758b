"""Tests for the RSS keyword pipeline, end to end and activity by activity."""

import asyncio
from email.message import EmailMessage

import pytest

from conftest import CATS_FEEDS, FakeFeedReader, FakeSummarizer, RecordingMailer, running_worker
from rssflow.core.errors import WorkflowFailureError
from rssflow.core.serialization import decode
from rssflow.models import ApplicationError, EventType, RetryPolicy, WorkflowStatus
from rssflow.pipeline import (
    COMPLETION_MESSAGE,
    PipelineActivities,
    PipelineRequest,
    PipelineStage,
    summarize_rss_feed,
)
from rssflow.pipeline.activities import render_report, write_durably
from rssflow.pipeline.feeds import FeedError
from rssflow.pipeline.mail import EmailEnvelope

QUEUE = "test-queue"
URLS = ("https://feedA", "https://feedB")
FAST_RETRY = RetryPolicy(maximum_attempts=3, initial_interval_ms=10, maximum_interval_ms=50)


@pytest.fixture
def report_path(tmp_path):
    return tmp_path / "out" / "keyword-report.txt"


def stages(history):
    return [decode(e.payload) for e in history if e.event_type == EventType.STAGE_CHANGED]


class GatedFeedReader(FakeFeedReader):
    """Blocks every read until `release` is set."""

    def __init__(self, feeds):
        super().__init__(feeds)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def read(self, url):
        self.entered.set()
        await self.release.wait()
        return await super().read(url)


@pytest.mark.asyncio
async def test_pipeline_writes_report(orchestrator, random_workflow_id, report_path):
    reader = FakeFeedReader(CATS_FEEDS)
    activities = PipelineActivities(reader, report_path)

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        assert await handle.result(timeout=10) == COMPLETION_MESSAGE

    assert report_path.read_text() == "Top Keywords: cats, great, dogs, too, win, again"
    assert reader.calls == list(URLS)

    history = await orchestrator.get_history(random_workflow_id)
    assert stages(history) == ["STARTED", "FETCHING", "EXTRACTING", "REPORTING", "COMPLETED"]
    scheduled = [e.activity_type for e in history if e.event_type == EventType.ACTIVITY_SCHEDULED]
    assert scheduled == ["fetch_feeds", "extract_keywords", "generate_report"]
    assert await orchestrator.current_stage(random_workflow_id) == str(PipelineStage.COMPLETED)


@pytest.mark.asyncio
async def test_pipeline_appends_summary(orchestrator, random_workflow_id, report_path):
    summarizer = FakeSummarizer("Pets dominate the headlines.")
    activities = PipelineActivities(FakeFeedReader(CATS_FEEDS), report_path, summarizer=summarizer)

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS, summarize=True),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        await handle.result(timeout=10)

    assert report_path.read_text().splitlines() == [
        "Top Keywords: cats, great, dogs, too, win, again",
        "The summary of the keywords are the following: Pets dominate the headlines.",
    ]
    assert len(summarizer.prompts) == 1
    assert "cats, great, dogs" in summarizer.prompts[0]


@pytest.mark.asyncio
async def test_missing_summarizer_degrades_to_plain_report(
    orchestrator, random_workflow_id, report_path
):
    activities = PipelineActivities(FakeFeedReader(CATS_FEEDS), report_path)

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS, summarize=True),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        assert await handle.result(timeout=10) == COMPLETION_MESSAGE

    assert report_path.read_text() == "Top Keywords: cats, great, dogs, too, win, again"


@pytest.mark.asyncio
async def test_pipeline_sends_email(orchestrator, random_workflow_id, report_path):
    mailer = RecordingMailer()
    activities = PipelineActivities(
        FakeFeedReader(CATS_FEEDS),
        report_path,
        mailer=mailer,
        mail_to="reader@example.com",
        mail_from="rssflow@example.com",
    )

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS, notify=True),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        await handle.result(timeout=10)

    assert len(mailer.sent) == 1
    envelope = mailer.sent[0]
    assert envelope.to == "reader@example.com"
    assert envelope.text == "Top Keywords: cats, great, dogs, too, win, again"


@pytest.mark.asyncio
async def test_email_failure_does_not_fail_run(orchestrator, random_workflow_id, report_path):
    activities = PipelineActivities(
        FakeFeedReader(CATS_FEEDS),
        report_path,
        mailer=RecordingMailer(fail=True),
        mail_to="reader@example.com",
        mail_from="rssflow@example.com",
    )

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS, notify=True, retry_policy=FAST_RETRY),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        assert await handle.result(timeout=10) == COMPLETION_MESSAGE

    assert report_path.exists()
    history = await orchestrator.get_history(random_workflow_id)
    failed = [e for e in history if e.event_type == EventType.ACTIVITY_FAILED]
    assert [e.activity_type for e in failed] == ["notify_by_email"]
    assert failed[0].attempt == 3
    assert stages(history)[-1] == "COMPLETED"


@pytest.mark.asyncio
async def test_fetch_failure_fails_run(orchestrator, random_workflow_id, report_path):
    reader = FakeFeedReader(CATS_FEEDS, failing={"https://feedB"})
    activities = PipelineActivities(reader, report_path)

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS, retry_policy=FAST_RETRY),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        with pytest.raises(WorkflowFailureError) as exc_info:
            await handle.result(timeout=10)

    assert exc_info.value.status == WorkflowStatus.FAILED
    failure = exc_info.value.failure
    assert failure.activity_type == "fetch_feeds"
    assert failure.error_type == "FeedError"
    assert failure.attempt == 3
    # Every attempt refetched both feeds
    assert reader.calls == list(URLS) * 3

    assert not report_path.exists()
    assert await orchestrator.current_stage(random_workflow_id) == "FAILED"


@pytest.mark.asyncio
async def test_cancelled_run_closes_cancelled_not_failed(
    orchestrator, random_workflow_id, report_path
):
    reader = GatedFeedReader(CATS_FEEDS)
    activities = PipelineActivities(reader, report_path)

    async with running_worker(orchestrator, [summarize_rss_feed], [activities]):
        handle = await orchestrator.start_workflow(
            summarize_rss_feed,
            PipelineRequest(urls=URLS),
            workflow_id=random_workflow_id,
            task_queue=QUEUE,
        )
        try:
            await asyncio.wait_for(reader.entered.wait(), timeout=5)
            assert await handle.cancel()
            with pytest.raises(WorkflowFailureError) as exc_info:
                await handle.result(timeout=5)
        finally:
            # The in-flight fetch must finish before the worker can shut down
            reader.release.set()

    assert exc_info.value.status == WorkflowStatus.CANCELLED
    history = await orchestrator.get_history(random_workflow_id)
    assert stages(history) == ["STARTED", "FETCHING"]
    assert history[-1].event_type == EventType.WORKFLOW_CANCELLED
    assert await orchestrator.current_stage(random_workflow_id) == "FETCHING"
    assert not report_path.exists()


@pytest.mark.asyncio
async def test_fetch_feeds_keeps_feed_order():
    reader = FakeFeedReader({"a": ["one", "", "two"], "b": ["three"]})

    titles = await PipelineActivities(reader).fetch_feeds(["b", "a"])

    assert titles == ["three", "one", "two"]


@pytest.mark.asyncio
async def test_fetch_feeds_propagates_reader_errors():
    reader = FakeFeedReader({}, failing={"bad"})

    with pytest.raises(FeedError):
        await PipelineActivities(reader).fetch_feeds(["bad"])


def test_extract_keywords_activity():
    activities = PipelineActivities(reader=None)

    assert activities.extract_keywords(["Cats are great", "Cats win"]) == ["cats", "great", "win"]


def test_render_report():
    assert render_report(["a", "b"]) == "Top Keywords: a, b"
    assert render_report([]) == "Top Keywords: "
    assert render_report(["a"], "short") == (
        "Top Keywords: a\nThe summary of the keywords are the following: short"
    )


def test_generate_report_overwrites(tmp_path):
    path = tmp_path / "report.txt"
    path.write_text("stale")
    activities = PipelineActivities(reader=None, report_path=path)

    activities.generate_report(["x", "y"])
    activities.generate_report(["x", "y"])

    assert path.read_text() == "Top Keywords: x, y"
    # No temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == ["report.txt"]


def test_write_durably_creates_parent(tmp_path):
    path = tmp_path / "nested" / "dir" / "file.txt"

    write_durably(path, "content")

    assert path.read_text() == "content"


@pytest.mark.asyncio
async def test_notify_without_configuration_is_non_retryable():
    activities = PipelineActivities(reader=None, mailer=RecordingMailer())

    with pytest.raises(ApplicationError) as exc_info:
        await activities.notify_by_email(["cats"])
    assert not exc_info.value.is_retryable()


def test_envelope_to_message_escapes_html():
    envelope = EmailEnvelope(
        to="a@example.com",
        sender="b@example.com",
        subject="RSS keyword summary",
        text="Top Keywords: <b>",
        html="<p>&lt;b&gt;</p>",
    )

    message = envelope.to_message()

    assert isinstance(message, EmailMessage)
    assert message["Subject"] == "RSS keyword summary"
    assert message.is_multipart()
    parts = [part.get_content_type() for part in message.iter_parts()]
    assert parts == ["text/plain", "text/html"]
