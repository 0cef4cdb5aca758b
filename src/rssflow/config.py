"""
Runtime settings loaded from the environment.

Every field has a default, so `Settings.from_env()` works with nothing
set. Variables are prefixed with RSSFLOW_, except DEPLOY_VERSION, which
is shared with Client.from_env():

    RSSFLOW_STORE           sqlite path, ":memory:" or redis:// URL (rssflow.db)
    RSSFLOW_TASK_QUEUE      queue polled by workers (rss-summary)
    RSSFLOW_WORKFLOW_ID     default workflow id (rss-summary-workflow)
    RSSFLOW_REPORT_PATH     report artifact (keyword-report.txt)
    RSSFLOW_FEEDS           comma-separated default feed URLs
    RSSFLOW_MAX_CONCURRENT  worker task concurrency (10)
    RSSFLOW_LEASE_SECONDS   queue lease duration (30)
    RSSFLOW_SUMMARIZE       "1"/"true" to enable LLM summaries
    RSSFLOW_OPENAI_MODEL    model used for summaries
    RSSFLOW_SMTP_HOST, RSSFLOW_SMTP_PORT, RSSFLOW_SMTP_USERNAME,
    RSSFLOW_SMTP_PASSWORD, RSSFLOW_MAIL_FROM, RSSFLOW_MAIL_TO
    RSSFLOW_LOG_LEVEL       logging level (INFO)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace

from rssflow.core.errors import ConfigurationError
from rssflow.pipeline.activities import DEFAULT_REPORT_PATH, PipelineActivities
from rssflow.pipeline.feeds import FeedReader, HttpFeedReader
from rssflow.pipeline.mail import SmtpMailTransport
from rssflow.pipeline.summarizer import DEFAULT_MODEL, OpenAISummarizer
from rssflow.pipeline.workflow import DEFAULT_FEEDS
from rssflow.storage.base import ExecutionLog

logger = logging.getLogger(__name__)

DEFAULT_TASK_QUEUE = "rss-summary"
DEFAULT_WORKFLOW_ID = "rss-summary-workflow"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    store: str = "rssflow.db"
    task_queue: str = DEFAULT_TASK_QUEUE
    workflow_id: str = DEFAULT_WORKFLOW_ID
    report_path: str = DEFAULT_REPORT_PATH
    feeds: tuple[str, ...] = DEFAULT_FEEDS

    max_concurrent_tasks: int = 10
    lease_duration: float = 30.0

    summarize: bool = False
    openai_model: str = DEFAULT_MODEL

    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    mail_from: str | None = None
    mail_to: str | None = None

    deploy_version: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: A variable holds a value of the wrong type
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, default: str | None) -> str | None:
            return env.get(f"RSSFLOW_{name}", default)

        feeds = get("FEEDS", None)
        return cls(
            store=get("STORE", defaults.store) or defaults.store,
            task_queue=get("TASK_QUEUE", defaults.task_queue) or defaults.task_queue,
            workflow_id=get("WORKFLOW_ID", defaults.workflow_id) or defaults.workflow_id,
            report_path=get("REPORT_PATH", defaults.report_path) or defaults.report_path,
            feeds=(
                tuple(url.strip() for url in feeds.split(",") if url.strip())
                if feeds
                else defaults.feeds
            ),
            max_concurrent_tasks=_parse_int(
                "RSSFLOW_MAX_CONCURRENT", get("MAX_CONCURRENT", None), defaults.max_concurrent_tasks
            ),
            lease_duration=_parse_float(
                "RSSFLOW_LEASE_SECONDS", get("LEASE_SECONDS", None), defaults.lease_duration
            ),
            summarize=_parse_bool("RSSFLOW_SUMMARIZE", get("SUMMARIZE", None), defaults.summarize),
            openai_model=get("OPENAI_MODEL", defaults.openai_model) or defaults.openai_model,
            smtp_host=get("SMTP_HOST", None) or None,
            smtp_port=_parse_int("RSSFLOW_SMTP_PORT", get("SMTP_PORT", None), defaults.smtp_port),
            smtp_username=get("SMTP_USERNAME", None) or None,
            smtp_password=get("SMTP_PASSWORD", None) or None,
            mail_from=get("MAIL_FROM", None) or None,
            mail_to=get("MAIL_TO", None) or None,
            deploy_version=env.get("DEPLOY_VERSION") or None,
            log_level=(get("LOG_LEVEL", defaults.log_level) or defaults.log_level).upper(),
        )

    def with_overrides(self, **changes: object) -> Settings:
        """Copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.smtp_host and self.mail_from and self.mail_to)

    async def open_storage(self) -> ExecutionLog:
        """Create and connect the backend selected by `store`."""
        if self.store.startswith(("redis://", "rediss://", "unix://")):
            from rssflow.storage.redis import RedisExecutionLog

            redis_log = RedisExecutionLog(self.store)
            await redis_log.connect()
            storage: ExecutionLog = redis_log
        else:
            from rssflow.storage.sqlite import SqliteExecutionLog

            sqlite_log = SqliteExecutionLog(self.store)
            await sqlite_log.connect()
            storage = sqlite_log

        logger.debug(f"Opened storage {storage!r}")
        return storage

    def build_activities(self, reader: FeedReader | None = None) -> PipelineActivities:
        """Wire PipelineActivities with the production collaborators."""
        mailer = None
        mail_settings = {
            "RSSFLOW_SMTP_HOST": self.smtp_host,
            "RSSFLOW_MAIL_FROM": self.mail_from,
            "RSSFLOW_MAIL_TO": self.mail_to,
        }
        missing = [name for name, value in mail_settings.items() if not value]
        if missing and len(missing) < len(mail_settings):
            raise ConfigurationError(
                f"Email notification is partly configured; also set {', '.join(missing)}"
            )
        if not missing:
            mailer = SmtpMailTransport(
                mail_settings["RSSFLOW_SMTP_HOST"],
                self.smtp_port,
                username=self.smtp_username,
                password=self.smtp_password,
            )

        return PipelineActivities(
            reader or HttpFeedReader(),
            self.report_path,
            summarizer=OpenAISummarizer(model=self.openai_model) if self.summarize else None,
            mailer=mailer,
            mail_to=self.mail_to,
            mail_from=self.mail_from,
        )


def _parse_int(name: str, raw: str | None, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _parse_float(name: str, raw: str | None, default: float) -> float:
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _parse_bool(name: str, raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")
