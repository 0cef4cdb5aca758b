"""Tests for environment settings and the rssflow command line."""

from datetime import datetime

import pytest

from rssflow.cli import format_event, main, parse_args
from rssflow.config import DEFAULT_TASK_QUEUE, Settings
from rssflow.core.errors import ConfigurationError
from rssflow.core.serialization import encode
from rssflow.models import EventType, HistoryEvent
from rssflow.pipeline import DEFAULT_FEEDS
from rssflow.pipeline.mail import SmtpMailTransport
from rssflow.storage import SqliteExecutionLog


def test_defaults_without_environment():
    settings = Settings.from_env({})

    assert settings == Settings()
    assert settings.task_queue == DEFAULT_TASK_QUEUE
    assert settings.feeds == DEFAULT_FEEDS
    assert not settings.notifications_enabled


def test_from_env_reads_prefixed_variables():
    settings = Settings.from_env(
        {
            "RSSFLOW_STORE": "redis://localhost:6379/0",
            "RSSFLOW_FEEDS": "https://a/rss, https://b/rss ,",
            "RSSFLOW_MAX_CONCURRENT": "4",
            "RSSFLOW_LEASE_SECONDS": "12.5",
            "RSSFLOW_SUMMARIZE": "yes",
            "RSSFLOW_LOG_LEVEL": "debug",
            "RSSFLOW_SMTP_HOST": "smtp.example.com",
            "RSSFLOW_MAIL_FROM": "rssflow@example.com",
            "RSSFLOW_MAIL_TO": "reader@example.com",
            "DEPLOY_VERSION": "v2",
        }
    )

    assert settings.store == "redis://localhost:6379/0"
    assert settings.feeds == ("https://a/rss", "https://b/rss")
    assert settings.max_concurrent_tasks == 4
    assert settings.lease_duration == 12.5
    assert settings.summarize is True
    assert settings.log_level == "DEBUG"
    assert settings.deploy_version == "v2"
    assert settings.notifications_enabled


@pytest.mark.parametrize(
    "name, value",
    [
        ("RSSFLOW_MAX_CONCURRENT", "ten"),
        ("RSSFLOW_LEASE_SECONDS", "soon"),
        ("RSSFLOW_SMTP_PORT", "25a"),
        ("RSSFLOW_SUMMARIZE", "maybe"),
    ],
)
def test_invalid_values_raise_configuration_error(name, value):
    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env({name: value})


def test_with_overrides_ignores_none():
    settings = Settings().with_overrides(store="other.db", task_queue=None)

    assert settings.store == "other.db"
    assert settings.task_queue == DEFAULT_TASK_QUEUE


def test_build_activities_wires_mailer(tmp_path):
    settings = Settings(
        report_path=str(tmp_path / "report.txt"),
        smtp_host="smtp.example.com",
        mail_from="rssflow@example.com",
        mail_to="reader@example.com",
    )

    activities = settings.build_activities(reader=object())

    assert isinstance(activities.mailer, SmtpMailTransport)
    assert activities.summarizer is None
    assert activities.report_path == tmp_path / "report.txt"


@pytest.mark.parametrize("missing", ["smtp_host", "mail_from", "mail_to"])
def test_partial_mail_settings_raise_configuration_error(missing):
    values = {
        "smtp_host": "smtp.example.com",
        "mail_from": "rssflow@example.com",
        "mail_to": "reader@example.com",
    }
    values[missing] = None

    with pytest.raises(ConfigurationError, match=f"RSSFLOW_{missing.upper()}"):
        Settings(**values).build_activities(reader=object())


def test_build_activities_without_mail_settings():
    activities = Settings().build_activities(reader=object())

    assert activities.mailer is None


def test_main_worker_rejects_partial_mail_settings(tmp_path, monkeypatch, capsys):
    for name in ["RSSFLOW_SMTP_HOST", "RSSFLOW_MAIL_FROM"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RSSFLOW_MAIL_TO", "reader@example.com")
    store = tmp_path / "worker.db"

    assert main(["--store", str(store), "worker"]) == 1
    err = capsys.readouterr().err
    assert "RSSFLOW_SMTP_HOST" in err
    assert "RSSFLOW_MAIL_FROM" in err
    # Nothing was opened
    assert not store.exists()


@pytest.mark.asyncio
async def test_open_storage_selects_sqlite(tmp_path):
    storage = await Settings(store=str(tmp_path / "flow.db")).open_storage()
    try:
        assert isinstance(storage, SqliteExecutionLog)
    finally:
        await storage.close()


def test_parse_start_arguments():
    args = parse_args(
        ["--store", "x.db", "start", "https://a", "https://b", "--summarize", "--wait"]
    )

    assert args.command == "start"
    assert args.store == "x.db"
    assert args.urls == ["https://a", "https://b"]
    assert args.summarize and args.wait
    assert not args.notify


def test_parse_requires_command():
    with pytest.raises(SystemExit):
        parse_args([])


def test_format_event():
    event = HistoryEvent(
        run_id="r",
        event_type=EventType.STAGE_CHANGED,
        timestamp=datetime(2024, 1, 2, 3, 4, 5),
        event_id=2,
        seq=1,
        payload=encode("FETCHING"),
    )

    line = format_event(event)

    assert line.split() == ["2", "2024-01-02T03:04:05", "STAGE_CHANGED", "seq=1", "FETCHING"]


def test_main_rejects_bad_environment(monkeypatch, capsys):
    monkeypatch.setenv("RSSFLOW_MAX_CONCURRENT", "lots")

    assert main(["worker"]) == 2
    assert "RSSFLOW_MAX_CONCURRENT" in capsys.readouterr().err


def test_main_start_history_cancel(tmp_path, monkeypatch, capsys):
    for name in ["RSSFLOW_STORE", "RSSFLOW_TASK_QUEUE", "RSSFLOW_WORKFLOW_ID", "DEPLOY_VERSION"]:
        monkeypatch.delenv(name, raising=False)
    store = str(tmp_path / "cli.db")

    assert main(["--store", store, "start", "https://a", "--workflow-id", "cli-run"]) == 0
    assert "Started cli-run" in capsys.readouterr().out

    # A second start with the same id fails fast
    assert main(["--store", store, "start", "--workflow-id", "cli-run"]) == 1
    assert "Already running" in capsys.readouterr().err

    assert main(["--store", store, "history", "cli-run"]) == 0
    out = capsys.readouterr().out
    assert "status=RUNNING" in out
    assert "WORKFLOW_STARTED" in out

    assert main(["--store", store, "cancel", "cli-run"]) == 0
    assert "Cancellation requested for cli-run" in capsys.readouterr().out

    assert main(["--store", store, "result", "cli-run", "--timeout", "0.1"]) == 1
    assert "Timed out" in capsys.readouterr().err


def test_main_unknown_workflow_id(tmp_path, capsys):
    store = str(tmp_path / "cli.db")

    assert main(["--store", store, "history", "missing"]) == 1
    assert "Unknown workflow id" in capsys.readouterr().err
