"""RSS keyword pipeline: collaborators, activities and the workflow."""

from rssflow.pipeline.activities import PipelineActivities, render_report
from rssflow.pipeline.feeds import FeedError, FeedItem, FeedReader, HttpFeedReader
from rssflow.pipeline.keywords import STOP_WORDS, extract_keywords
from rssflow.pipeline.mail import EmailEnvelope, MailTransport, SmtpMailTransport
from rssflow.pipeline.summarizer import OpenAISummarizer, Summarizer
from rssflow.pipeline.workflow import (
    COMPLETION_MESSAGE,
    DEFAULT_FEEDS,
    PipelineRequest,
    PipelineStage,
    summarize_rss_feed,
)

__all__ = [
    "COMPLETION_MESSAGE",
    "DEFAULT_FEEDS",
    "EmailEnvelope",
    "FeedError",
    "FeedItem",
    "FeedReader",
    "HttpFeedReader",
    "MailTransport",
    "OpenAISummarizer",
    "PipelineActivities",
    "PipelineRequest",
    "PipelineStage",
    "STOP_WORDS",
    "SmtpMailTransport",
    "Summarizer",
    "extract_keywords",
    "render_report",
    "summarize_rss_feed",
]
