"""
Activities of the RSS keyword pipeline.

PipelineActivities bundles the executors with the collaborators they
need (feed reader, summarizer, mail transport, report path). Register an
instance with the worker; workflows reference the unbound methods:

    ```python
    activities = PipelineActivities(HttpFeedReader(), report_path="keyword-report.txt")
    worker = Worker(orchestrator, "rss-summary",
                    workflows=[summarize_rss_feed], activities=[activities])
    ```

Every activity may run more than once for the same call (at-least-once
delivery), so each is either pure or idempotent on its output.
"""

from __future__ import annotations

import html
import logging
import os
import tempfile
from pathlib import Path

from rssflow.core.activity_context import ACTIVITY_CONTEXT
from rssflow.decorators import activity
from rssflow.models import DEFAULT_START_TO_CLOSE_TIMEOUT, ApplicationError, RetryPolicy
from rssflow.pipeline.feeds import FeedReader
from rssflow.pipeline.keywords import extract_keywords as rank_keywords
from rssflow.pipeline.mail import EmailEnvelope, MailTransport
from rssflow.pipeline.summarizer import Summarizer, build_prompt

logger = logging.getLogger(__name__)

DEFAULT_REPORT_PATH = "keyword-report.txt"
REPORT_HEADER = "Top Keywords: "
SUMMARY_HEADER = "The summary of the keywords are the following: "
EMAIL_SUBJECT = "RSS keyword summary"


def render_report(keywords: list[str], summary: str | None = None) -> str:
    """Text written to the report artifact."""
    text = REPORT_HEADER + ", ".join(keywords)
    if summary:
        text += "\n" + SUMMARY_HEADER + summary
    return text


def write_durably(path: Path, content: str) -> None:
    """
    Replace `path` with `content`, fsynced before the rename.

    A retried attempt rewrites the same bytes, and readers never see a
    partially written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class PipelineActivities:
    """Executors for fetch, extract, summarize, report and notify."""

    def __init__(
        self,
        reader: FeedReader,
        report_path: str | os.PathLike[str] = DEFAULT_REPORT_PATH,
        *,
        summarizer: Summarizer | None = None,
        mailer: MailTransport | None = None,
        mail_to: str | None = None,
        mail_from: str | None = None,
    ):
        self.reader = reader
        self.report_path = Path(report_path)
        self.summarizer = summarizer
        self.mailer = mailer
        self.mail_to = mail_to
        self.mail_from = mail_from

    @activity(name="fetch_feeds", start_to_close_timeout=DEFAULT_START_TO_CLOSE_TIMEOUT)
    async def fetch_feeds(self, urls: list[str]) -> list[str]:
        """
        Collect the titles of every item in every feed, in feed order.

        Any failing URL fails the whole attempt; the retry refetches all
        feeds.
        """
        ctx = ACTIVITY_CONTEXT.get()
        titles: list[str] = []
        for url in urls:
            items = await self.reader.read(url)
            titles.extend(item.title for item in items if item.title)
            if ctx is not None:
                await ctx.heartbeat()

        logger.info(f"Fetched {len(titles)} titles from {len(urls)} feeds")
        return titles

    @activity(name="extract_keywords")
    def extract_keywords(self, texts: list[str]) -> list[str]:
        keywords = rank_keywords(texts)
        logger.debug(f"Extracted keywords: {keywords}")
        return keywords

    @activity(name="summarize_keywords", retry_policy=RetryPolicy.STANDARD)
    async def summarize_keywords(self, keywords: list[str]) -> str:
        if self.summarizer is None:
            raise ApplicationError("no summarizer configured", non_retryable=True)
        return await self.summarizer.summarize(build_prompt(keywords))

    @activity(name="generate_report")
    def generate_report(self, keywords: list[str], summary: str | None = None) -> None:
        """Write the report artifact. Write errors fail the attempt."""
        write_durably(self.report_path, render_report(keywords, summary))
        logger.info(f"Report written to {self.report_path}")

    @activity(name="notify_by_email", retry_policy=RetryPolicy.STANDARD)
    async def notify_by_email(self, keywords: list[str]) -> None:
        if self.mailer is None or not self.mail_to or not self.mail_from:
            raise ApplicationError("email notification is not configured", non_retryable=True)

        envelope = EmailEnvelope(
            to=self.mail_to,
            sender=self.mail_from,
            subject=EMAIL_SUBJECT,
            text=render_report(keywords),
            html=(
                f"<p><strong>{html.escape(REPORT_HEADER.strip())}</strong> "
                f"{html.escape(', '.join(keywords))}</p>"
            ),
        )
        await self.mailer.send(envelope)
